"""
Memory Engine
=============
Entity lifecycle orchestrator: the only sanctioned write path for entities.

Responsibilities:
    - assign ids and timestamps on creation
    - attach embeddings (title + " " + content) when a provider is configured
      and refresh them when title or content change
    - keep ``updated_at`` strictly increasing across mutations
    - record a ``delete`` entry in the sync log for every actual removal
    - publish entity:created / entity:updated / entity:deleted events

The engine does not serialize concurrent calls; two updates racing on the
same id resolve as last write wins at the storage layer.
"""

import dataclasses
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from loguru import logger

from unimem.core._utils import new_entity_id
from unimem.core.embedding import EmbeddingProvider
from unimem.core.exceptions import (
    EmbeddingUnavailableError,
    EntityNotFoundError,
    ValidationError,
)
from unimem.core.memory_model import (
    DEFAULT_MEMORY_LAYERS,
    BaseEntity,
    EntityDraft,
    EntityFilter,
    EntityLink,
    EntityType,
    MemoryLayer,
    MemoryLayerType,
    MemoryStats,
    SearchResult,
    build_entity,
    default_layer_for_type,
    utc_now,
)
from unimem.core.storage import StorageAdapter, ensure_client_id
from unimem.core.sync_log import SyncLogRecord, SyncOperation
from unimem.events.event_bus import EventBus, EventHandler, EventType

# Fields that only the engine itself may set
_IMMUTABLE_FIELDS = frozenset({"id", "type", "created_at", "updated_at", "embedding"})


def next_timestamp(previous: Optional[datetime] = None) -> datetime:
    """Current UTC time, nudged forward so it is strictly after ``previous``."""
    now = utc_now()
    if previous is not None and now <= previous:
        now = previous + timedelta(microseconds=1)
    return now


class MemoryEngine:
    """
    Creates, updates, deletes and looks up entities.

    Args:
        storage: Storage backend (must be initialized via initialize()).
        embedding_provider: Optional text embedding capability.
        event_bus: Bus receiving lifecycle events; a private one is created if omitted.
        layers: Memory layer descriptors; defaults to the four built-in layers.
        client_id: Sync identity stamped on delete records. Resolved from
            storage metadata during initialize() when not given.
    """

    def __init__(
        self,
        storage: StorageAdapter,
        embedding_provider: Optional[EmbeddingProvider] = None,
        event_bus: Optional[EventBus] = None,
        layers: Optional[Sequence[MemoryLayer]] = None,
        client_id: Optional[str] = None,
    ):
        self.storage = storage
        self.embedding_provider = embedding_provider
        self.event_bus = event_bus or EventBus()
        self._layers: Dict[MemoryLayerType, MemoryLayer] = {
            layer.type: layer for layer in (layers or DEFAULT_MEMORY_LAYERS)
        }
        self.client_id = client_id
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self.storage.initialize()
        self.client_id = await ensure_client_id(self.storage, self.client_id)
        self._initialized = True
        logger.info(
            f"MemoryEngine ready (storage={self.storage.backend_name}, "
            f"embedding={self.embedding_provider.name if self.embedding_provider else 'none'}, "
            f"client={self.client_id})"
        )

    async def close(self) -> None:
        if self.embedding_provider is not None:
            await self.embedding_provider.close()
        await self.storage.close()
        self._initialized = False

    # ---- Layers ---- #

    @property
    def layers(self) -> List[MemoryLayer]:
        return list(self._layers.values())

    def get_layer(self, layer_type: MemoryLayerType) -> Optional[MemoryLayer]:
        return self._layers.get(MemoryLayerType(layer_type))

    @staticmethod
    def get_layer_for_type(entity_type: EntityType) -> MemoryLayerType:
        """Default layer for newly created entities of ``entity_type``."""
        return default_layer_for_type(entity_type)

    # ---- Embedding ---- #

    @property
    def has_embeddings(self) -> bool:
        return self.embedding_provider is not None

    async def _embed(self, text: str, operation: str, required: bool = False) -> Optional[List[float]]:
        if self.embedding_provider is None:
            if required:
                raise EmbeddingUnavailableError(operation)
            return None
        return await self.embedding_provider.embed(text)

    # ---- Lifecycle ---- #

    def _build(self, draft: EntityDraft, embedding: Optional[List[float]]) -> BaseEntity:
        now = utc_now()
        return build_entity(
            draft.type,
            id=new_entity_id(),
            title=draft.title,
            content=draft.content,
            memory_layer=draft.memory_layer or self.get_layer_for_type(draft.type),
            created_at=now,
            updated_at=now,
            embedding=embedding,
            links=list(draft.links),
            tags=list(draft.tags),
            **draft.fields,
        )

    async def create_entity(self, draft: EntityDraft, require_embedding: bool = False) -> BaseEntity:
        """
        Create and persist a new entity.

        The embedding (if a provider is configured) is computed before the
        first write. ``require_embedding=True`` turns a missing provider into
        EmbeddingUnavailableError instead of storing the entity unembedded.
        """
        embedding = await self._embed(f"{draft.title} {draft.content}", "create_entity", require_embedding)
        entity = await self.storage.create(self._build(draft, embedding))
        logger.debug(f"Created {entity.type.value} {entity.id} in {entity.memory_layer.value}")
        self.event_bus.publish(EventType.ENTITY_CREATED, entity)
        return entity

    async def create_entities(
        self,
        drafts: Iterable[EntityDraft],
        require_embedding: bool = False,
    ) -> List[BaseEntity]:
        """Bulk create; embeddings are requested in a single batch."""
        drafts = list(drafts)
        if not drafts:
            return []

        if self.embedding_provider is not None:
            embeddings = await self.embedding_provider.embed_batch(
                [f"{d.title} {d.content}" for d in drafts]
            )
        elif require_embedding:
            raise EmbeddingUnavailableError("create_entities")
        else:
            embeddings = [None] * len(drafts)

        entities = await self.storage.bulk_create(
            [self._build(draft, emb) for draft, emb in zip(drafts, embeddings)]
        )
        logger.debug(f"Created {len(entities)} entities in bulk")
        for entity in entities:
            self.event_bus.publish(EventType.ENTITY_CREATED, entity)
        return entities

    async def get_entity(self, entity_id: str) -> Optional[BaseEntity]:
        return await self.storage.read(entity_id)

    def _normalize_changes(self, entity: BaseEntity, changes: Dict[str, Any]) -> Dict[str, Any]:
        forbidden = _IMMUTABLE_FIELDS.intersection(changes)
        if forbidden:
            raise ValidationError("changes", f"fields cannot be updated: {sorted(forbidden)}")

        allowed = {f.name for f in dataclasses.fields(entity)}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError("changes", f"unknown fields for {entity.type.value}: {sorted(unknown)}")

        normalized = dict(changes)
        if "links" in normalized:
            normalized["links"] = [
                link if isinstance(link, EntityLink) else EntityLink.from_dict(link)
                for link in normalized["links"]
            ]
        if "tags" in normalized:
            normalized["tags"] = list(normalized["tags"])
        return normalized

    async def update_entity(self, entity_id: str, changes: Dict[str, Any]) -> BaseEntity:
        """
        Apply a partial update.

        Re-embeds only when ``title`` or ``content`` is part of the partial;
        otherwise the stored embedding is carried forward untouched.

        Raises:
            EntityNotFoundError: ``entity_id`` does not exist.
            ValidationError: the partial names immutable or unknown fields.
        """
        current = await self.storage.read(entity_id)
        if current is None:
            raise EntityNotFoundError(entity_id)

        normalized = self._normalize_changes(current, changes)

        if "title" in normalized or "content" in normalized:
            title = normalized.get("title", current.title)
            content = normalized.get("content", current.content)
            # Without a provider a stale vector would misrepresent the new text
            normalized["embedding"] = await self._embed(f"{title} {content}", "update_entity")

        normalized["updated_at"] = next_timestamp(current.updated_at)

        updated = await self.storage.update(entity_id, normalized)
        if updated is None:
            # Removed between read and write
            raise EntityNotFoundError(entity_id)

        logger.debug(f"Updated {updated.type.value} {entity_id}: {sorted(changes)}")
        self.event_bus.publish(EventType.ENTITY_UPDATED, updated)
        return updated

    async def delete_entity(self, entity_id: str) -> bool:
        """
        Delete an entity. Deleting an absent id is a no-op returning False;
        entity:deleted is only published when something was removed.
        """
        existing = await self.storage.read(entity_id)
        if existing is None:
            return False
        sync_meta = await self.storage.get_sync_metadata(entity_id)
        if not await self.storage.delete(entity_id):
            return False
        if self.client_id is None:
            self.client_id = await ensure_client_id(self.storage)

        await self.storage.append_sync_log(
            SyncLogRecord(
                entity_id=entity_id,
                operation=SyncOperation.DELETE,
                payload={
                    "id": entity_id,
                    "type": existing.type.value,
                    "syncVersion": sync_meta.version if sync_meta else None,
                },
                timestamp=utc_now(),
                client_id=self.client_id,
            )
        )
        logger.debug(f"Deleted {existing.type.value} {entity_id}")
        self.event_bus.publish(EventType.ENTITY_DELETED, {"id": entity_id, "type": existing.type.value})
        return True

    # ---- Queries ---- #

    async def query_entities(
        self,
        entity_filter: Optional[EntityFilter] = None,
        limit: Optional[int] = None,
    ) -> List[BaseEntity]:
        return await self.storage.query(entity_filter, limit)

    async def search_by_vector(
        self,
        vector: Sequence[float],
        limit: int = 10,
        threshold: float = 0.7,
        entity_filter: Optional[EntityFilter] = None,
    ) -> List[SearchResult]:
        return await self.storage.similarity_search(vector, limit, threshold, entity_filter)

    async def search_similar(
        self,
        query: str,
        limit: int = 10,
        threshold: float = 0.7,
        entity_filter: Optional[EntityFilter] = None,
    ) -> List[SearchResult]:
        """Similarity search seeded by free text. Requires an embedding provider."""
        vector = await self._embed(query, "search_similar", required=True)
        return await self.search_by_vector(vector, limit, threshold, entity_filter)

    async def get_stats(self) -> MemoryStats:
        return await self.storage.get_stats()

    # ---- Events ---- #

    def on(self, event_type: str, handler: EventHandler) -> Callable[[], bool]:
        """Subscribe to engine events; returns a callable that unsubscribes."""
        subscription_id = self.event_bus.subscribe(event_type, handler)
        return lambda: self.event_bus.unsubscribe(subscription_id)
