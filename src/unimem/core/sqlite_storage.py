"""
SQLite Storage Backend
======================
Durable single-file implementation of the StorageAdapter contract.

Each entity row keeps the indexed columns (type, layer, timestamps, sync
status) next to the full JSON document produced by entity_to_dict().
Blocking sqlite3 calls run in the default thread pool via run_in_thread;
a single connection guarded by a lock serializes them.
"""

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from unimem.core._utils import run_in_thread
from unimem.core.exceptions import StorageError, wrap_storage_exception
from unimem.core.memory_model import (
    BaseEntity,
    EntityFilter,
    MemoryStats,
    entity_from_dict,
    entity_to_dict,
)
from unimem.core.storage import StorageAdapter, apply_changes
from unimem.core.sync_log import EntitySyncStatus, SyncLogRecord, SyncMetadata


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS entities (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        memory_layer TEXT NOT NULL,
        data TEXT NOT NULL,
        has_embedding INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        sync_status TEXT NOT NULL DEFAULT 'pending',
        sync_version INTEGER,
        synced_at TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_entities_layer_type
    ON entities(memory_layer, type)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_entities_sync_status
    ON entities(sync_status)
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        entity_id TEXT NOT NULL,
        operation TEXT NOT NULL,
        payload TEXT,
        timestamp TEXT NOT NULL,
        client_id TEXT NOT NULL,
        resolved TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_sync_log_unresolved
    ON sync_log(resolved, entity_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS meta (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
)


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteStorage(StorageAdapter):
    """SQLite-backed entity store. Use ``":memory:"`` for a throwaway database."""

    backend_name = "sqlite"

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    # ---- Connection management ---- #

    async def initialize(self) -> None:
        if self._conn is not None:
            return
        await run_in_thread(self._open)
        logger.info(f"[sqlite] Opened entity store at {self.db_path}")

    def _open(self) -> None:
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            with conn:
                for statement in _SCHEMA:
                    conn.execute(statement)
        except sqlite3.Error as exc:
            raise wrap_storage_exception(self.backend_name, "initialize", exc) from exc
        self._conn = conn

    async def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        await run_in_thread(conn.close)

    def _run(self, operation: str, fn, *args):
        """Run ``fn(conn, *args)`` in one transaction, wrapping driver errors."""
        if self._conn is None:
            raise StorageError(f"[sqlite] {operation} failed: storage not initialized", {"operation": operation})
        with self._lock:
            try:
                with self._conn:
                    return fn(self._conn, *args)
            except sqlite3.Error as exc:
                raise wrap_storage_exception(self.backend_name, operation, exc) from exc

    async def _call(self, operation: str, fn, *args):
        return await run_in_thread(self._run, operation, fn, *args)

    # ---- Row helpers ---- #

    @staticmethod
    def _entity_row(entity: BaseEntity) -> Tuple:
        return (
            entity.id,
            entity.type.value,
            entity.memory_layer.value,
            json.dumps(entity_to_dict(entity)),
            1 if entity.embedding else 0,
            entity.created_at.isoformat(),
            entity.updated_at.isoformat(),
        )

    @staticmethod
    def _load(row: sqlite3.Row) -> BaseEntity:
        return entity_from_dict(json.loads(row["data"]))

    @staticmethod
    def _record(row: sqlite3.Row) -> SyncLogRecord:
        return SyncLogRecord(
            id=row["id"],
            entity_id=row["entity_id"],
            operation=row["operation"],
            payload=json.loads(row["payload"]) if row["payload"] else None,
            timestamp=_dt(row["timestamp"]),
            client_id=row["client_id"],
            resolved=_dt(row["resolved"]),
        )

    # ---- Entities ---- #

    async def create(self, entity: BaseEntity) -> BaseEntity:
        def _insert(conn, row):
            try:
                conn.execute(
                    """
                    INSERT INTO entities
                    (id, type, memory_layer, data, has_embedding, created_at, updated_at, sync_status)
                    VALUES (?, ?, ?, ?, ?, ?, ?, 'pending')
                    """,
                    row,
                )
            except sqlite3.IntegrityError as exc:
                raise StorageError(
                    f"[sqlite] create failed: entity '{row[0]}' already exists",
                    {"entity_id": row[0]},
                ) from exc

        await self._call("create", _insert, self._entity_row(entity))
        return entity

    async def bulk_create(self, entities: Iterable[BaseEntity]) -> List[BaseEntity]:
        entities = list(entities)
        rows = [self._entity_row(e) for e in entities]

        def _insert_many(conn, rows):
            conn.executemany(
                """
                INSERT INTO entities
                (id, type, memory_layer, data, has_embedding, created_at, updated_at, sync_status)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'pending')
                """,
                rows,
            )

        await self._call("bulk_create", _insert_many, rows)
        return entities

    async def read(self, entity_id: str) -> Optional[BaseEntity]:
        def _select(conn, entity_id):
            return conn.execute("SELECT data FROM entities WHERE id = ?", (entity_id,)).fetchone()

        row = await self._call("read", _select, entity_id)
        return self._load(row) if row else None

    async def update(self, entity_id: str, changes: Dict[str, Any]) -> Optional[BaseEntity]:
        def _update(conn, entity_id, changes):
            row = conn.execute("SELECT data FROM entities WHERE id = ?", (entity_id,)).fetchone()
            if row is None:
                return None
            updated = apply_changes(self._load(row), changes)
            _, etype, layer, data, has_emb, _, updated_at = self._entity_row(updated)
            conn.execute(
                """
                UPDATE entities
                SET memory_layer = ?, data = ?, has_embedding = ?, updated_at = ?, sync_status = 'pending'
                WHERE id = ?
                """,
                (layer, data, has_emb, updated_at, entity_id),
            )
            return updated

        return await self._call("update", _update, entity_id, changes)

    async def delete(self, entity_id: str) -> bool:
        def _delete(conn, entity_id):
            return conn.execute("DELETE FROM entities WHERE id = ?", (entity_id,)).rowcount > 0

        return await self._call("delete", _delete, entity_id)

    async def bulk_delete(self, entity_ids: Iterable[str]) -> int:
        ids = [(eid,) for eid in entity_ids]

        def _delete_many(conn, ids):
            removed = 0
            for params in ids:
                removed += conn.execute("DELETE FROM entities WHERE id = ?", params).rowcount
            return removed

        return await self._call("bulk_delete", _delete_many, ids)

    async def query(self, entity_filter: Optional[EntityFilter] = None, limit: Optional[int] = None) -> List[BaseEntity]:
        clauses, params = [], []
        if entity_filter is not None:
            if entity_filter.types:
                clauses.append(f"type IN ({','.join('?' * len(entity_filter.types))})")
                params.extend(t.value for t in entity_filter.types)
            if entity_filter.memory_layers:
                clauses.append(f"memory_layer IN ({','.join('?' * len(entity_filter.memory_layers))})")
                params.extend(m.value for m in entity_filter.memory_layers)
        sql = "SELECT data FROM entities"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at"

        def _select(conn, sql, params):
            return conn.execute(sql, params).fetchall()

        rows = await self._call("query", _select, sql, params)
        # Tags, date range and predicate are evaluated on the decoded entity
        entities = [self._load(row) for row in rows]
        if entity_filter is not None:
            entities = [e for e in entities if entity_filter.matches(e)]
        if limit is not None:
            entities = entities[:limit]
        return entities

    async def get_stats(self) -> MemoryStats:
        def _counts(conn):
            by_layer = conn.execute("SELECT memory_layer, COUNT(*) FROM entities GROUP BY memory_layer").fetchall()
            by_type = conn.execute("SELECT type, COUNT(*) FROM entities GROUP BY type").fetchall()
            vectors = conn.execute("SELECT COUNT(*) FROM entities WHERE has_embedding = 1").fetchone()[0]
            size = conn.execute("SELECT COALESCE(SUM(LENGTH(data)), 0) FROM entities").fetchone()[0]
            return by_layer, by_type, vectors, size

        by_layer, by_type, vectors, size = await self._call("get_stats", _counts)
        stats = MemoryStats.from_entities([], storage_size=size)
        for layer, count in by_layer:
            stats.by_layer[layer] = count
        for etype, count in by_type:
            stats.by_type[etype] = count
        stats.total_entities = sum(stats.by_type.values())
        stats.vector_count = vectors
        return stats

    # ---- Sync bookkeeping ---- #

    async def get_sync_metadata(self, entity_id: str) -> Optional[SyncMetadata]:
        def _select(conn, entity_id):
            return conn.execute(
                "SELECT sync_status, sync_version, synced_at FROM entities WHERE id = ?",
                (entity_id,),
            ).fetchone()

        row = await self._call("get_sync_metadata", _select, entity_id)
        if row is None:
            return None
        return SyncMetadata(
            status=EntitySyncStatus(row["sync_status"]),
            version=row["sync_version"],
            synced_at=_dt(row["synced_at"]),
        )

    async def get_pending_entities(self) -> List[BaseEntity]:
        def _select(conn):
            return conn.execute(
                "SELECT data FROM entities WHERE sync_status = 'pending' ORDER BY updated_at"
            ).fetchall()

        return [self._load(row) for row in await self._call("get_pending_entities", _select)]

    async def mark_synced(self, entity_id: str, version: Optional[int], synced_at: datetime) -> None:
        def _mark(conn):
            conn.execute(
                "UPDATE entities SET sync_status = 'synced', sync_version = ?, synced_at = ? WHERE id = ?",
                (version, synced_at.isoformat(), entity_id),
            )

        await self._call("mark_synced", _mark)

    async def mark_pending(self, entity_id: str, version: Optional[int] = None) -> None:
        def _mark(conn):
            if version is None:
                conn.execute("UPDATE entities SET sync_status = 'pending' WHERE id = ?", (entity_id,))
            else:
                conn.execute(
                    "UPDATE entities SET sync_status = 'pending', sync_version = ? WHERE id = ?",
                    (version, entity_id),
                )

        await self._call("mark_pending", _mark)

    async def apply_remote(self, entity: BaseEntity, version: Optional[int], synced_at: datetime) -> BaseEntity:
        row = self._entity_row(entity)

        def _upsert(conn):
            conn.execute(
                """
                INSERT INTO entities
                (id, type, memory_layer, data, has_embedding, created_at, updated_at,
                 sync_status, sync_version, synced_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'synced', ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    type = excluded.type,
                    memory_layer = excluded.memory_layer,
                    data = excluded.data,
                    has_embedding = excluded.has_embedding,
                    updated_at = excluded.updated_at,
                    sync_status = 'synced',
                    sync_version = excluded.sync_version,
                    synced_at = excluded.synced_at
                """,
                row + (version, synced_at.isoformat()),
            )

        await self._call("apply_remote", _upsert)
        logger.debug(f"[sqlite] Applied remote version {version} of {entity.id}")
        return entity

    async def append_sync_log(self, record: SyncLogRecord) -> SyncLogRecord:
        def _insert(conn):
            cursor = conn.execute(
                """
                INSERT INTO sync_log (entity_id, operation, payload, timestamp, client_id, resolved)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.entity_id,
                    record.operation.value,
                    json.dumps(record.payload) if record.payload is not None else None,
                    record.timestamp.isoformat(),
                    record.client_id,
                    record.resolved.isoformat() if record.resolved else None,
                ),
            )
            return cursor.lastrowid

        record_id = await self._call("append_sync_log", _insert)
        return SyncLogRecord(
            id=record_id,
            entity_id=record.entity_id,
            operation=record.operation,
            payload=record.payload,
            timestamp=record.timestamp,
            client_id=record.client_id,
            resolved=record.resolved,
        )

    async def get_sync_log(
        self,
        unresolved_only: bool = False,
        entity_id: Optional[str] = None,
    ) -> List[SyncLogRecord]:
        clauses, params = [], []
        if unresolved_only:
            clauses.append("resolved IS NULL")
        if entity_id is not None:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        sql = "SELECT * FROM sync_log"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id"

        def _select(conn):
            return conn.execute(sql, params).fetchall()

        return [self._record(row) for row in await self._call("get_sync_log", _select)]

    async def resolve_sync_log(self, record_ids: Iterable[int], resolved_at: datetime) -> int:
        ids = [(resolved_at.isoformat(), rid) for rid in record_ids]

        def _resolve(conn):
            changed = 0
            for params in ids:
                changed += conn.execute(
                    "UPDATE sync_log SET resolved = ? WHERE id = ? AND resolved IS NULL", params
                ).rowcount
            return changed

        return await self._call("resolve_sync_log", _resolve)

    async def get_meta(self, key: str, default: Optional[str] = None) -> Optional[str]:
        def _select(conn):
            return conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()

        row = await self._call("get_meta", _select)
        return row["value"] if row else default

    async def set_meta(self, key: str, value: str) -> None:
        def _upsert(conn):
            conn.execute("INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, value))

        await self._call("set_meta", _upsert)
