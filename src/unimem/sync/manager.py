"""
Sync Manager
============
Reconciles local changes with a remote SyncPeer and keeps the conflict log.

A sync pass:
    1. publishes sync:started
    2. gathers entities flagged ``pending`` plus unpushed local deletions
       (entities with an open conflict are held back until it is resolved)
    3. pushes them (skipped when there is nothing to push); accepted changes
       are marked synced and their log records resolved, rejected ones are
       recorded as conflicts
    4. pulls remote changes page by page; a remote change hitting a locally
       pending entity becomes a conflict instead of overwriting it
    5. recomputes the counters and publishes sync:completed

Any failure turns the status into ``error`` and leaves pending flags as they
were; the counters are recounted from storage. The periodic loop keeps running.

Local entity:* events on the shared bus move the state to ``pending``
between passes.

Conflicts are unresolved sync-log records written on behalf of the peer
(client id ``remote``); their payload holds the server's version.

State machine: synced | pending | conflict | error.
"""

import asyncio
import dataclasses
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from loguru import logger

from unimem.core._utils import log_task_exception
from unimem.core.config import ReplicationConfig
from unimem.core.embedding import EmbeddingProvider
from unimem.core.engine import next_timestamp
from unimem.core.exceptions import InvalidResolutionError, NotFoundError, SyncError
from unimem.core.memory_model import (
    BaseEntity,
    entity_from_dict,
    entity_to_dict,
    parse_datetime,
    utc_now,
)
from unimem.core.storage import StorageAdapter, apply_changes, ensure_client_id
from unimem.core.sync_log import EntitySyncStatus, SyncLogRecord, SyncOperation
from unimem.events.event_bus import EventBus, EventHandler, EventType
from unimem.sync.models import (
    ConflictPolicy,
    ConflictResolution,
    SyncConflict,
    SyncResult,
    SyncState,
    SyncStatus,
)
from unimem.sync.peer import SyncPeer
from unimem.sync.protocol import PullRequest, PushRequest

REMOTE_CLIENT_ID = "remote"
LAST_SYNC_VERSION_KEY = "last_sync_version"

_CHANGE_OPERATIONS = (SyncOperation.CREATE, SyncOperation.UPDATE)
_ALL_OPERATIONS = (SyncOperation.CREATE, SyncOperation.UPDATE, SyncOperation.DELETE)
_MERGEABLE_FIELDS = ("title", "content", "tags")


class SyncManager:
    """
    Args:
        storage: Local storage backend.
        peer: Remote endpoint; sync passes fail with SyncError without one.
        config: Replication settings (interval, conflict policy, page size).
        event_bus: Bus receiving sync:* and remote entity:* events; local
            entity:* events on it mark the state pending.
        client_id: Overrides ``config.client_id``; otherwise resolved from storage.
        embedding_provider: Used to refresh embeddings of entities whose text
            is rewritten by the peer.
    """

    def __init__(
        self,
        storage: StorageAdapter,
        peer: Optional[SyncPeer] = None,
        config: Optional[ReplicationConfig] = None,
        event_bus: Optional[EventBus] = None,
        client_id: Optional[str] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
    ):
        self.storage = storage
        self.peer = peer
        self.config = config or ReplicationConfig()
        self.event_bus = event_bus or EventBus()
        self.client_id = client_id or self.config.client_id
        self.embedding_provider = embedding_provider
        self.policy = ConflictPolicy(self.config.conflict_resolution)

        self._state = SyncState()
        # Bumped whenever a pass or resolution rewrites the state
        self._state_epoch = 0
        self._last_sync_version: Optional[int] = None
        self.last_result: Optional[SyncResult] = None

        self._inflight: Optional[asyncio.Task] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._initialized = False

        self.event_bus.subscribe(
            "entity:*", self._on_local_change, lambda event: event.source == "local"
        )

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self.storage.initialize()
        self.client_id = await ensure_client_id(self.storage, self.client_id)
        stored = await self.storage.get_meta(LAST_SYNC_VERSION_KEY)
        self._last_sync_version = int(stored) if stored else None

        pending, conflicts = await self._counts()
        self._state = SyncState(
            status=SyncStatus.CONFLICT if conflicts else SyncStatus.SYNCED,
            pending_changes=pending,
            conflict_count=conflicts,
            last_sync_version=self._last_sync_version,
        )
        self._state_epoch += 1
        self._initialized = True

    @property
    def state(self) -> SyncState:
        return dataclasses.replace(self._state)

    @property
    def running(self) -> bool:
        return self._running

    # ---- Periodic sync ---------------------------------------------- #

    async def start(self) -> None:
        """Run an initial pass and schedule one every ``sync_interval_seconds``."""
        if not self.config.enabled or not self.config.server_url:
            logger.info("Sync disabled or no server URL configured")
            return
        if self.peer is None:
            logger.warning("Sync enabled but no peer was provided; not starting")
            return
        if self._running:
            return

        await self.initialize()
        self._running = True
        await self.sync()
        self._task = asyncio.create_task(self._sync_loop(), name="sync_loop")
        self._task.add_done_callback(log_task_exception)
        logger.info(f"SyncManager started, interval {self.config.sync_interval_seconds}s")

    async def stop(self) -> None:
        """Cancel the periodic timer. Safe to call more than once."""
        self._running = False
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("SyncManager stopped.")

    async def _sync_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.config.sync_interval_seconds)
                if self._running:
                    await self.sync()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.exception(f"Sync loop error: {exc}")

    # ---- Sync pass -------------------------------------------------- #

    async def sync(self) -> SyncState:
        """
        Run one sync pass and return the resulting state.

        Single-flight: a call made while a pass is running waits for that
        pass and returns its state instead of starting another one.
        """
        await self.initialize()
        if self._inflight is None:
            self._inflight = asyncio.create_task(self._sync_pass(), name="sync_pass")
            self._inflight.add_done_callback(self._clear_inflight)
        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _sync_pass(self) -> SyncState:
        self.event_bus.publish(EventType.SYNC_STARTED, {"clientId": self.client_id})
        result = SyncResult()
        try:
            if self.peer is None:
                raise SyncError("sync", "no sync peer configured")

            await self._push(result)
            await self._pull(result)

            pending, conflicts = await self._counts()
            self._state = SyncState(
                status=SyncStatus.CONFLICT if conflicts else SyncStatus.SYNCED,
                pending_changes=pending,
                conflict_count=conflicts,
                last_synced_at=utc_now(),
                last_sync_version=self._last_sync_version,
            )
            self._state_epoch += 1
            self.last_result = result
            logger.info(
                f"Sync complete: pushed={result.pushed} deletions={result.deletions_pushed} "
                f"pulled={result.pulled} removed={result.deleted_locally} "
                f"conflicts={conflicts} pending={pending}"
            )
            self.event_bus.publish(EventType.SYNC_COMPLETED, self._state.to_dict())
        except Exception as e:
            logger.exception(f"Sync error: {e}")
            error_state = dataclasses.replace(self._state, status=SyncStatus.ERROR, last_error=str(e))
            try:
                error_state.pending_changes, error_state.conflict_count = await self._counts()
            except Exception as count_error:
                logger.error(f"Could not refresh sync counters: {count_error}")
            self._state = error_state
            self._state_epoch += 1
        return self.state

    async def _on_local_change(self, event) -> None:
        """Track local writes between passes: refresh counters and flag ``pending``."""
        if not self._initialized or self._inflight is not None:
            return
        epoch = self._state_epoch
        pending, conflicts = await self._counts()
        # A pass or resolution finished meanwhile and already counted this write
        if epoch != self._state_epoch or self._inflight is not None:
            return
        if conflicts:
            status = SyncStatus.CONFLICT
        elif pending:
            status = SyncStatus.PENDING
        else:
            status = self._state.status
        self._state = dataclasses.replace(
            self._state, status=status, pending_changes=pending, conflict_count=conflicts
        )

    async def _push(self, result: SyncResult) -> None:
        open_conflicts = {r.entity_id for r in await self._remote_records()}
        local_records = await self._local_records()

        pending = [e for e in await self.storage.get_pending_entities() if e.id not in open_conflicts]
        deletions: Dict[str, SyncLogRecord] = {}
        for record in local_records:
            if record.operation == SyncOperation.DELETE and record.entity_id not in open_conflicts:
                deletions[record.entity_id] = record

        if not pending and not deletions:
            return

        # One unresolved log record per pending change; retries reuse it
        recorded = {r.entity_id for r in local_records if r.operation in _CHANGE_OPERATIONS}
        base_versions: Dict[str, Optional[int]] = {}
        now = utc_now()
        for entity in pending:
            meta = await self.storage.get_sync_metadata(entity.id)
            base = meta.version if meta else None
            base_versions[entity.id] = base
            if entity.id not in recorded:
                await self.storage.append_sync_log(
                    SyncLogRecord(
                        entity_id=entity.id,
                        operation=SyncOperation.CREATE if base is None else SyncOperation.UPDATE,
                        payload=entity_to_dict(entity, include_embedding=False),
                        timestamp=now,
                        client_id=self.client_id,
                    )
                )
        for entity_id, record in deletions.items():
            base_versions[entity_id] = (record.payload or {}).get("syncVersion")

        response = await self.peer.push(
            PushRequest(
                client_id=self.client_id,
                entities=[entity_to_dict(e) for e in pending],
                deletions=list(deletions),
                last_sync_version=self._last_sync_version,
                base_versions=base_versions,
            )
        )
        if not response.success:
            raise SyncError("push", "peer rejected the push")

        conflicted = {c.entity_id for c in response.conflicts}
        now = utc_now()
        for entity in pending:
            if entity.id in conflicted:
                continue
            version = response.accepted.get(entity.id, response.sync_version)
            current = await self.storage.read(entity.id)
            # Edited again while the push was in flight: stays pending
            if current is not None and current.updated_at == entity.updated_at:
                await self.storage.mark_synced(entity.id, version, now)
            await self._resolve_local(entity.id, now, _CHANGE_OPERATIONS)
            result.pushed += 1

        for entity_id in deletions:
            if entity_id in conflicted:
                continue
            await self._resolve_local(entity_id, now, (SyncOperation.DELETE,))
            result.deletions_pushed += 1

        for conflict in response.conflicts:
            await self._record_conflict(conflict.entity_id, conflict.server_version, conflict.server_sync_version, result)

    async def _pull(self, result: SyncResult) -> None:
        while True:
            response = await self.peer.pull(
                PullRequest(
                    client_id=self.client_id,
                    last_sync_version=self._last_sync_version,
                    limit=self.config.pull_limit,
                )
            )
            now = utc_now()
            for data in response.entities:
                version = response.entity_versions.get(data.get("id"), response.sync_version)
                await self._apply_pulled(data, version, now, result)
            for entity_id in response.deleted:
                version = response.entity_versions.get(entity_id, response.sync_version)
                await self._apply_pulled_deletion(entity_id, version, result)

            previous = self._last_sync_version
            self._last_sync_version = response.sync_version
            await self.storage.set_meta(LAST_SYNC_VERSION_KEY, str(response.sync_version))

            if not response.has_more:
                break
            if response.sync_version == previous:
                logger.warning(f"Peer reported more changes without advancing past version {previous}; stopping pull")
                break

    async def _apply_pulled(self, data: Dict[str, Any], version: int, now: datetime, result: SyncResult) -> None:
        entity = entity_from_dict(data)
        meta = await self.storage.get_sync_metadata(entity.id)

        if meta is not None and meta.status == EntitySyncStatus.PENDING:
            local = await self.storage.read(entity.id)
            if local is not None and _same_content(local, entity):
                await self.storage.mark_synced(entity.id, version, now)
                await self._resolve_local(entity.id, now, _CHANGE_OPERATIONS)
                return
            await self._record_conflict(entity.id, data, version, result)
            return

        if meta is None and await self._local_records(entity.id, (SyncOperation.DELETE,)):
            # Deleted here, changed there
            await self._record_conflict(entity.id, data, version, result)
            return

        entity = await self._with_embedding(entity)
        await self.storage.apply_remote(entity, version, now)
        result.pulled += 1
        event = EventType.ENTITY_UPDATED if meta is not None else EventType.ENTITY_CREATED
        self.event_bus.publish(event, entity, source="remote")

    async def _apply_pulled_deletion(self, entity_id: str, version: int, result: SyncResult) -> None:
        meta = await self.storage.get_sync_metadata(entity_id)
        if meta is None:
            return
        if meta.status == EntitySyncStatus.PENDING:
            await self._record_conflict(entity_id, None, version, result)
            return

        existing = await self.storage.read(entity_id)
        if await self.storage.delete(entity_id):
            result.deleted_locally += 1
            self.event_bus.publish(
                EventType.ENTITY_DELETED,
                {"id": entity_id, "type": existing.type.value if existing else None},
                source="remote",
            )

    async def _record_conflict(
        self,
        entity_id: str,
        server_version: Optional[Dict[str, Any]],
        server_sync_version: Optional[int],
        result: SyncResult,
    ) -> None:
        await self.storage.append_sync_log(
            SyncLogRecord(
                entity_id=entity_id,
                operation=SyncOperation.UPDATE if server_version is not None else SyncOperation.DELETE,
                payload={"entity": server_version, "syncVersion": server_sync_version},
                timestamp=utc_now(),
                client_id=REMOTE_CLIENT_ID,
            )
        )
        result.conflicts_detected += 1
        logger.warning(f"Sync conflict on {entity_id} (server version {server_sync_version})")
        self.event_bus.publish(
            EventType.SYNC_CONFLICT,
            {"entityId": entity_id, "serverVersion": server_version, "serverSyncVersion": server_sync_version},
        )

        if self.policy == ConflictPolicy.LOCAL_WINS:
            await self.resolve_conflict(entity_id, ConflictResolution.LOCAL)
            result.conflicts_auto_resolved += 1
        elif self.policy == ConflictPolicy.REMOTE_WINS:
            await self.resolve_conflict(entity_id, ConflictResolution.REMOTE)
            result.conflicts_auto_resolved += 1

    # ---- Conflicts -------------------------------------------------- #

    async def get_conflicts(self) -> List[SyncConflict]:
        """Open conflicts, one per entity (latest server version wins)."""
        grouped: Dict[str, SyncConflict] = {}
        for record in await self._remote_records():
            local = await self.storage.read(record.entity_id)
            conflict = SyncConflict.from_record(record, entity_to_dict(local, include_embedding=False) if local else None)
            previous = grouped.get(record.entity_id)
            if previous is not None:
                conflict.record_ids = previous.record_ids + conflict.record_ids
                conflict.detected_at = previous.detected_at
            grouped[record.entity_id] = conflict
        return list(grouped.values())

    async def resolve_conflict(
        self,
        entity_id: str,
        resolution: ConflictResolution,
        merged_payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Close the open conflict on ``entity_id``.

        - ``local``: keep the local entity; it is rebased onto the server
          version and pushed again on the next pass.
        - ``remote``: overwrite title, content and updatedAt (or the whole
          entity / its deletion) with the recorded server version.
        - ``merged``: apply ``merged_payload`` (title, content, tags) and push it.

        Raises:
            NotFoundError: no open conflict exists for ``entity_id``.
            InvalidResolutionError: unknown resolution, or ``merged`` without a payload.
        """
        try:
            resolution = ConflictResolution(resolution)
        except ValueError as exc:
            raise InvalidResolutionError(entity_id, str(resolution), "unknown resolution") from exc

        records = await self._remote_records(entity_id)
        if not records:
            raise NotFoundError("Conflict", entity_id)
        if resolution == ConflictResolution.MERGED and not merged_payload:
            raise InvalidResolutionError(entity_id, resolution.value, "a merged payload is required")

        payload = records[-1].payload or {}
        remote = payload.get("entity")
        remote_version = payload.get("syncVersion")
        local = await self.storage.read(entity_id)
        now = utc_now()

        if resolution == ConflictResolution.LOCAL:
            await self._keep_local(entity_id, local, remote_version, now)
        elif resolution == ConflictResolution.REMOTE:
            await self._take_remote(entity_id, local, remote, remote_version, now)
        else:
            await self._apply_merged(entity_id, local, remote, remote_version, merged_payload, now)

        await self.storage.resolve_sync_log([r.id for r in records], now)

        pending, conflicts = await self._counts()
        self._state.pending_changes = pending
        self._state.conflict_count = conflicts
        if self._state.status == SyncStatus.CONFLICT and conflicts == 0:
            self._state.status = SyncStatus.PENDING if pending else SyncStatus.SYNCED
        self._state_epoch += 1
        logger.info(f"Resolved conflict on {entity_id} with '{resolution.value}'")

    async def _keep_local(
        self,
        entity_id: str,
        local: Optional[BaseEntity],
        remote_version: Optional[int],
        now: datetime,
    ) -> None:
        if local is not None:
            await self.storage.mark_pending(entity_id, remote_version)
            return
        # The local deletion wins: re-issue it against the server version
        await self._resolve_local(entity_id, now, (SyncOperation.DELETE,))
        await self.storage.append_sync_log(
            SyncLogRecord(
                entity_id=entity_id,
                operation=SyncOperation.DELETE,
                payload={"id": entity_id, "syncVersion": remote_version},
                timestamp=now,
                client_id=self.client_id,
            )
        )

    async def _take_remote(
        self,
        entity_id: str,
        local: Optional[BaseEntity],
        remote: Optional[Dict[str, Any]],
        remote_version: Optional[int],
        now: datetime,
    ) -> None:
        if remote is None:
            if local is not None and await self.storage.delete(entity_id):
                self.event_bus.publish(
                    EventType.ENTITY_DELETED, {"id": entity_id, "type": local.type.value}, source="remote"
                )
        elif local is None:
            entity = await self._with_embedding(entity_from_dict(remote))
            await self.storage.apply_remote(entity, remote_version, now)
            self.event_bus.publish(EventType.ENTITY_CREATED, entity, source="remote")
        else:
            changes: Dict[str, Any] = {
                "title": remote.get("title", local.title),
                "content": remote.get("content", local.content),
            }
            if remote.get("updatedAt"):
                changes["updated_at"] = parse_datetime(remote["updatedAt"])
            changes.update(await self._refreshed_embedding(local, changes))
            updated = await self.storage.update(entity_id, changes)
            await self.storage.mark_synced(entity_id, remote_version, now)
            self.event_bus.publish(EventType.ENTITY_UPDATED, updated, source="remote")

        # Local edits are discarded
        await self._resolve_local(entity_id, now, _ALL_OPERATIONS)

    async def _apply_merged(
        self,
        entity_id: str,
        local: Optional[BaseEntity],
        remote: Optional[Dict[str, Any]],
        remote_version: Optional[int],
        merged_payload: Dict[str, Any],
        now: datetime,
    ) -> None:
        base = local if local is not None else (entity_from_dict(remote) if remote else None)
        if base is None:
            raise InvalidResolutionError(entity_id, "merged", "neither a local nor a remote version exists")

        changes: Dict[str, Any] = {k: merged_payload[k] for k in _MERGEABLE_FIELDS if k in merged_payload}
        if "tags" in changes:
            changes["tags"] = list(changes["tags"])
        remote_updated = parse_datetime(remote.get("updatedAt")) if remote else None
        latest = max(base.updated_at, remote_updated) if remote_updated else base.updated_at
        changes["updated_at"] = next_timestamp(latest)
        changes.update(await self._refreshed_embedding(base, changes))

        if local is None:
            merged = apply_changes(base, changes)
            await self.storage.apply_remote(merged, remote_version, now)
            await self._resolve_local(entity_id, now, (SyncOperation.DELETE,))
        else:
            merged = await self.storage.update(entity_id, changes)
        await self.storage.mark_pending(entity_id, remote_version)
        self.event_bus.publish(EventType.ENTITY_UPDATED, merged)

    # ---- Helpers ---------------------------------------------------- #

    async def _local_records(
        self,
        entity_id: Optional[str] = None,
        operations: Iterable[SyncOperation] = _ALL_OPERATIONS,
    ) -> List[SyncLogRecord]:
        wanted = set(operations)
        return [
            r for r in await self.storage.get_sync_log(unresolved_only=True, entity_id=entity_id)
            if r.client_id != REMOTE_CLIENT_ID and r.operation in wanted
        ]

    async def _remote_records(self, entity_id: Optional[str] = None) -> List[SyncLogRecord]:
        return [
            r for r in await self.storage.get_sync_log(unresolved_only=True, entity_id=entity_id)
            if r.client_id == REMOTE_CLIENT_ID
        ]

    async def _resolve_local(self, entity_id: str, when: datetime, operations: Iterable[SyncOperation]) -> None:
        records = await self._local_records(entity_id, operations)
        if records:
            await self.storage.resolve_sync_log([r.id for r in records], when)

    async def _counts(self):
        """(pending changes, entities in conflict) from storage and the sync log."""
        pending = len(await self.storage.get_pending_entities())
        unresolved = await self.storage.get_sync_log(unresolved_only=True)
        pending += len({
            r.entity_id for r in unresolved
            if r.client_id != REMOTE_CLIENT_ID and r.operation == SyncOperation.DELETE
        })
        conflicts = len({r.entity_id for r in unresolved if r.client_id == REMOTE_CLIENT_ID})
        return pending, conflicts

    async def _with_embedding(self, entity: BaseEntity) -> BaseEntity:
        """Recompute the embedding when it is missing or from a different provider."""
        provider = self.embedding_provider
        if provider is None:
            return entity
        if entity.embedding and len(entity.embedding) == provider.dimensions():
            return entity
        entity.embedding = await provider.embed(entity.embedding_text)
        return entity

    async def _refreshed_embedding(self, entity: BaseEntity, changes: Dict[str, Any]) -> Dict[str, Any]:
        title = changes.get("title", entity.title)
        content = changes.get("content", entity.content)
        if title == entity.title and content == entity.content:
            return {}
        if self.embedding_provider is None:
            return {"embedding": None}
        return {"embedding": await self.embedding_provider.embed(f"{title} {content}")}

    def on(self, handler: EventHandler, event_pattern: str = "sync:*") -> Callable[[], bool]:
        """Subscribe to sync events; returns a callable that unsubscribes."""
        subscription_id = self.event_bus.subscribe(event_pattern, handler)
        return lambda: self.event_bus.unsubscribe(subscription_id)


def _same_content(local: BaseEntity, remote: BaseEntity) -> bool:
    a = entity_to_dict(local, include_embedding=False)
    b = entity_to_dict(remote, include_embedding=False)
    return a == b
