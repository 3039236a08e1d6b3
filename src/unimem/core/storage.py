"""
Storage Module
==============
The storage contract consumed by the memory engine, plus the in-process
backend.

StorageAdapter is the abstract collaborator behind every entity read and
write: CRUD, predicate queries, the similarity scan, bulk operations and
the sync bookkeeping (per-entity sync status, the append-only sync log and
small key/value metadata such as the last sync version).

Backends:
- InMemoryStorage (this module): dict-backed, non-durable
- SQLiteStorage (sqlite_storage.py): durable single-file database
"""

import copy
import dataclasses
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from loguru import logger

from unimem.core._utils import new_client_id
from unimem.core.exceptions import StorageError, ValidationError
from unimem.core.memory_model import BaseEntity, EntityFilter, MemoryStats, SearchResult, entity_to_dict
from unimem.core.similarity import cosine_similarity
from unimem.core.sync_log import EntitySyncStatus, SyncLogRecord, SyncMetadata


class StorageAdapter(ABC):
    """
    Abstract base class for entity storage backends.

    Writes performed through create()/update() mark the entity ``pending``
    for the next sync; apply_remote() writes on behalf of the peer and marks
    it ``synced``.
    """

    backend_name: str = "abstract"

    async def initialize(self) -> None:
        """Prepare the backend (create tables, open files). Idempotent."""

    async def close(self) -> None:
        """Release backend resources."""

    # ---- Entities ---- #

    @abstractmethod
    async def create(self, entity: BaseEntity) -> BaseEntity:
        """Persist a new entity. Raises StorageError if the id already exists."""

    @abstractmethod
    async def read(self, entity_id: str) -> Optional[BaseEntity]:
        """Return the entity or None when absent."""

    @abstractmethod
    async def update(self, entity_id: str, changes: Dict[str, Any]) -> Optional[BaseEntity]:
        """Apply a field partial. Returns the updated entity or None when absent."""

    @abstractmethod
    async def delete(self, entity_id: str) -> bool:
        """Remove an entity. Returns True if something was removed."""

    @abstractmethod
    async def query(self, entity_filter: Optional[EntityFilter] = None, limit: Optional[int] = None) -> List[BaseEntity]:
        """Entities matching the filter, oldest first."""

    async def similarity_search(
        self,
        query_vector: Sequence[float],
        limit: int = 10,
        threshold: float = 0.7,
        entity_filter: Optional[EntityFilter] = None,
    ) -> List[SearchResult]:
        """
        Rank embedded entities by cosine similarity to ``query_vector``.

        Only entities scoring at or above ``threshold`` are returned; the
        raw similarity is reported in both ``score`` and ``raw_score``.
        """
        results = []
        for entity in await self.query(entity_filter):
            if not entity.embedding:
                continue
            score = cosine_similarity(query_vector, entity.embedding)
            if score >= threshold:
                results.append(SearchResult(entity=entity, score=score, raw_score=score))
        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit]

    async def bulk_create(self, entities: Iterable[BaseEntity]) -> List[BaseEntity]:
        return [await self.create(entity) for entity in entities]

    async def bulk_delete(self, entity_ids: Iterable[str]) -> int:
        removed = 0
        for entity_id in entity_ids:
            if await self.delete(entity_id):
                removed += 1
        return removed

    async def get_stats(self) -> MemoryStats:
        return MemoryStats.from_entities(await self.query())

    # ---- Sync bookkeeping ---- #

    @abstractmethod
    async def get_sync_metadata(self, entity_id: str) -> Optional[SyncMetadata]:
        """Sync status and version of an entity, None when absent."""

    @abstractmethod
    async def get_pending_entities(self) -> List[BaseEntity]:
        """Entities whose sync status is pending."""

    @abstractmethod
    async def mark_synced(self, entity_id: str, version: Optional[int], synced_at: datetime) -> None:
        """Record that the peer acknowledged ``version`` of the entity."""

    @abstractmethod
    async def mark_pending(self, entity_id: str, version: Optional[int] = None) -> None:
        """Flag the entity for the next push, optionally rebasing its version."""

    @abstractmethod
    async def apply_remote(self, entity: BaseEntity, version: Optional[int], synced_at: datetime) -> BaseEntity:
        """Upsert an entity received from the peer and mark it synced."""

    @abstractmethod
    async def append_sync_log(self, record: SyncLogRecord) -> SyncLogRecord:
        """Append a record; the returned copy carries its assigned id."""

    @abstractmethod
    async def get_sync_log(
        self,
        unresolved_only: bool = False,
        entity_id: Optional[str] = None,
    ) -> List[SyncLogRecord]:
        """Records in append order."""

    @abstractmethod
    async def resolve_sync_log(self, record_ids: Iterable[int], resolved_at: datetime) -> int:
        """Set ``resolved`` on the given records. Returns how many changed."""

    @abstractmethod
    async def get_meta(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Read a backend-level metadata value."""

    @abstractmethod
    async def set_meta(self, key: str, value: str) -> None:
        """Write a backend-level metadata value."""


CLIENT_ID_KEY = "client_id"


async def ensure_client_id(storage: StorageAdapter, configured: Optional[str] = None) -> str:
    """
    Resolve this client's sync identity.

    A configured id wins and is persisted; otherwise the stored id is reused,
    and a fresh one is generated on first use.
    """
    if configured:
        await storage.set_meta(CLIENT_ID_KEY, configured)
        return configured
    stored = await storage.get_meta(CLIENT_ID_KEY)
    if stored:
        return stored
    client_id = new_client_id()
    await storage.set_meta(CLIENT_ID_KEY, client_id)
    logger.info(f"Generated client id {client_id}")
    return client_id


def apply_changes(entity: BaseEntity, changes: Dict[str, Any]) -> BaseEntity:
    """Return a copy of ``entity`` with ``changes`` applied (variant validation re-runs)."""
    try:
        return dataclasses.replace(entity, **changes)
    except TypeError as exc:
        raise ValidationError("changes", str(exc), list(changes)) from exc


class InMemoryStorage(StorageAdapter):
    """
    Dict-backed storage.

    Entities are deep-copied on the way in and out so callers never hold a
    reference into the store.
    """

    backend_name = "memory"

    def __init__(self):
        self._entities: Dict[str, BaseEntity] = {}
        self._sync: Dict[str, SyncMetadata] = {}
        self._sync_log: List[SyncLogRecord] = []
        self._meta: Dict[str, str] = {}
        self._next_log_id = 1

    async def create(self, entity: BaseEntity) -> BaseEntity:
        if entity.id in self._entities:
            raise StorageError(f"[memory] create failed: entity '{entity.id}' already exists", {"entity_id": entity.id})
        self._entities[entity.id] = copy.deepcopy(entity)
        self._sync[entity.id] = SyncMetadata()
        return copy.deepcopy(entity)

    async def read(self, entity_id: str) -> Optional[BaseEntity]:
        entity = self._entities.get(entity_id)
        return copy.deepcopy(entity) if entity is not None else None

    async def update(self, entity_id: str, changes: Dict[str, Any]) -> Optional[BaseEntity]:
        current = self._entities.get(entity_id)
        if current is None:
            return None
        updated = apply_changes(current, copy.deepcopy(changes))
        self._entities[entity_id] = updated
        meta = self._sync.setdefault(entity_id, SyncMetadata())
        meta.status = EntitySyncStatus.PENDING
        return copy.deepcopy(updated)

    async def delete(self, entity_id: str) -> bool:
        removed = self._entities.pop(entity_id, None)
        self._sync.pop(entity_id, None)
        return removed is not None

    async def query(self, entity_filter: Optional[EntityFilter] = None, limit: Optional[int] = None) -> List[BaseEntity]:
        matches = [
            e for e in self._entities.values()
            if entity_filter is None or entity_filter.matches(e)
        ]
        matches.sort(key=lambda e: e.created_at)
        if limit is not None:
            matches = matches[:limit]
        return [copy.deepcopy(e) for e in matches]

    async def get_stats(self) -> MemoryStats:
        stats = MemoryStats.from_entities(self._entities.values())
        # Approximate footprint: size of the serialized entities
        stats.storage_size = sum(len(str(entity_to_dict(e))) for e in self._entities.values())
        return stats

    # ---- Sync bookkeeping ---- #

    async def get_sync_metadata(self, entity_id: str) -> Optional[SyncMetadata]:
        meta = self._sync.get(entity_id)
        return copy.copy(meta) if meta is not None else None

    async def get_pending_entities(self) -> List[BaseEntity]:
        return [
            copy.deepcopy(self._entities[eid])
            for eid, meta in self._sync.items()
            if meta.status == EntitySyncStatus.PENDING and eid in self._entities
        ]

    async def mark_synced(self, entity_id: str, version: Optional[int], synced_at: datetime) -> None:
        if entity_id in self._entities:
            self._sync[entity_id] = SyncMetadata(EntitySyncStatus.SYNCED, version, synced_at)

    async def mark_pending(self, entity_id: str, version: Optional[int] = None) -> None:
        meta = self._sync.get(entity_id)
        if meta is None:
            return
        meta.status = EntitySyncStatus.PENDING
        if version is not None:
            meta.version = version

    async def apply_remote(self, entity: BaseEntity, version: Optional[int], synced_at: datetime) -> BaseEntity:
        self._entities[entity.id] = copy.deepcopy(entity)
        self._sync[entity.id] = SyncMetadata(EntitySyncStatus.SYNCED, version, synced_at)
        logger.debug(f"[memory] Applied remote version {version} of {entity.id}")
        return copy.deepcopy(entity)

    async def append_sync_log(self, record: SyncLogRecord) -> SyncLogRecord:
        stored = dataclasses.replace(record, id=self._next_log_id, payload=copy.deepcopy(record.payload))
        self._next_log_id += 1
        self._sync_log.append(stored)
        return dataclasses.replace(stored)

    async def get_sync_log(
        self,
        unresolved_only: bool = False,
        entity_id: Optional[str] = None,
    ) -> List[SyncLogRecord]:
        return [
            dataclasses.replace(r, payload=copy.deepcopy(r.payload))
            for r in self._sync_log
            if (not unresolved_only or not r.is_resolved)
            and (entity_id is None or r.entity_id == entity_id)
        ]

    async def resolve_sync_log(self, record_ids: Iterable[int], resolved_at: datetime) -> int:
        wanted = set(record_ids)
        changed = 0
        for record in self._sync_log:
            if record.id in wanted and not record.is_resolved:
                record.resolved = resolved_at
                changed += 1
        return changed

    async def get_meta(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._meta.get(key, default)

    async def set_meta(self, key: str, value: str) -> None:
        self._meta[key] = value
