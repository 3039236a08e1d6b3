"""
Unimem Sync
===========
Local-first replication: SyncManager pushes pending local changes to a
SyncPeer, pulls remote ones and records conflicts in the sync log.
"""

from .manager import SyncManager
from .models import ConflictPolicy, ConflictResolution, SyncConflict, SyncResult, SyncState, SyncStatus
from .peer import HttpSyncPeer, InMemorySyncPeer, SyncPeer

__all__ = [
    "SyncManager",
    "SyncPeer",
    "HttpSyncPeer",
    "InMemorySyncPeer",
    "SyncState",
    "SyncStatus",
    "SyncConflict",
    "SyncResult",
    "ConflictPolicy",
    "ConflictResolution",
]
