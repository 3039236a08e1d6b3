"""
Per-entity sync bookkeeping shared by the storage backends and the sync manager.

Every stored entity carries a sync status (``pending`` after a local write,
``synced`` once the peer acknowledged it) and the server version it was
last reconciled against. SyncLogRecords form the append-only audit trail:
records are only ever resolved, never deleted.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class EntitySyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"


class SyncOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class SyncMetadata:
    status: EntitySyncStatus = EntitySyncStatus.PENDING
    version: Optional[int] = None
    synced_at: Optional[datetime] = None


@dataclass
class SyncLogRecord:
    """
    One entry of the sync log.

    ``resolved`` is None while the change is unacknowledged (local change)
    or the conflict is open (record written on behalf of another client).
    """
    entity_id: str
    operation: SyncOperation
    payload: Optional[Dict[str, Any]]
    timestamp: datetime
    client_id: str
    resolved: Optional[datetime] = None
    id: Optional[int] = None

    def __post_init__(self):
        self.operation = SyncOperation(self.operation)

    @property
    def is_resolved(self) -> bool:
        return self.resolved is not None
