"""
Sync state and conflict types.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from unimem.core.sync_log import SyncLogRecord


class SyncStatus(str, Enum):
    SYNCED = "synced"
    PENDING = "pending"
    CONFLICT = "conflict"
    ERROR = "error"


class ConflictResolution(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    MERGED = "merged"


class ConflictPolicy(str, Enum):
    """Automatic handling of freshly detected conflicts."""
    LOCAL_WINS = "local-wins"
    REMOTE_WINS = "remote-wins"
    MANUAL = "manual"


@dataclass
class SyncState:
    status: SyncStatus = SyncStatus.SYNCED
    pending_changes: int = 0
    conflict_count: int = 0
    last_synced_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_sync_version: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "pendingChanges": self.pending_changes,
            "conflictCount": self.conflict_count,
            "lastSyncedAt": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "lastError": self.last_error,
            "lastSyncVersion": self.last_sync_version,
        }


@dataclass
class SyncConflict:
    """
    An open divergence between the local entity and the peer's version.

    ``local_version`` is None when the entity was deleted locally;
    ``remote_version`` is None when the peer deleted it.
    """
    entity_id: str
    local_version: Optional[Dict[str, Any]]
    remote_version: Optional[Dict[str, Any]]
    remote_sync_version: Optional[int]
    detected_at: datetime
    record_ids: List[int] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: SyncLogRecord, local_version: Optional[Dict[str, Any]]) -> "SyncConflict":
        payload = record.payload or {}
        return cls(
            entity_id=record.entity_id,
            local_version=local_version,
            remote_version=payload.get("entity"),
            remote_sync_version=payload.get("syncVersion"),
            detected_at=record.timestamp,
            record_ids=[record.id] if record.id is not None else [],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entityId": self.entity_id,
            "localVersion": self.local_version,
            "remoteVersion": self.remote_version,
            "remoteSyncVersion": self.remote_sync_version,
            "detectedAt": self.detected_at.isoformat(),
            "recordIds": list(self.record_ids),
        }


@dataclass
class SyncResult:
    """Counters for one sync pass."""
    pushed: int = 0
    deletions_pushed: int = 0
    pulled: int = 0
    deleted_locally: int = 0
    conflicts_detected: int = 0
    conflicts_auto_resolved: int = 0
