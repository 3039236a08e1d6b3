"""
Retrieval Engine
================
Turns a free-text query plus situational context into a ranked entity list.

Pipeline:
    1. filter by requested entity types / memory layers
    2. similarity search for 2 x max_results candidates above the threshold
    3. re-rank: raw similarity multiplied by
         - the layer weight (working 1.5, episodic 1.0, semantic 1.2, procedural 0.8)
         - recency  1 + 0.5 * exp(-decay * days_since_update)
         - link density  1 + min(link_count * link_boost, 0.5)
         - 1.3 when the active entity links to the candidate
         - 1.2 when the candidate is among the recent entities
    4. sort by adjusted score, keep max_results
"""

import dataclasses
import math
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Union

from loguru import logger

from unimem.core.config import RetrievalConfig
from unimem.core.engine import MemoryEngine
from unimem.core.memory_model import (
    BaseEntity,
    EntityFilter,
    EntityType,
    MemoryLayerType,
    SearchResult,
    utc_now,
)

ACTIVE_LINK_BOOST = 1.3
RECENT_BOOST = 1.2
MAX_LINK_FACTOR = 0.5
RECENCY_WEIGHT = 0.5

_SECONDS_PER_DAY = 86400.0


@dataclass
class RetrievalContext:
    query: str
    active_entity: Optional[BaseEntity] = None
    recent_entities: List[Union[BaseEntity, str]] = field(default_factory=list)
    entity_types: Optional[List[EntityType]] = None
    memory_layers: Optional[List[MemoryLayerType]] = None

    def recent_ids(self) -> set:
        return {e if isinstance(e, str) else e.id for e in self.recent_entities}


class RetrievalEngine:
    """Context-aware ranking on top of the engine's similarity search."""

    def __init__(
        self,
        engine: MemoryEngine,
        config: Optional[RetrievalConfig] = None,
        clock: Callable = utc_now,
    ):
        self.engine = engine
        self.config = config or RetrievalConfig()
        self._clock = clock

    def layer_weight(self, layer: MemoryLayerType) -> float:
        return self.config.layer_weights.get(MemoryLayerType(layer).value, 1.0)

    async def retrieve(self, context: RetrievalContext) -> List[SearchResult]:
        entity_filter = None
        if context.entity_types or context.memory_layers:
            entity_filter = EntityFilter(types=context.entity_types, memory_layers=context.memory_layers)

        candidates = await self.engine.search_similar(
            context.query,
            limit=self.config.max_results * 2,
            threshold=self.config.similarity_threshold,
            entity_filter=entity_filter,
        )
        ranked = self.rerank(candidates, context)
        logger.debug(f"[Retrieval] '{context.query[:40]}': {len(candidates)} candidates, returning {min(len(ranked), self.config.max_results)}")
        return ranked[: self.config.max_results]

    def rerank(self, results: Sequence[SearchResult], context: RetrievalContext) -> List[SearchResult]:
        """Adjusted copies of ``results``, best first; ``raw_score`` keeps the similarity."""
        now = self._clock()
        active_targets = {link.target_id for link in context.active_entity.links} if context.active_entity else set()
        recent = context.recent_ids()

        reranked = [
            dataclasses.replace(
                result,
                score=self.compute_score(result, now, active_targets, recent),
                raw_score=result.raw_score if result.raw_score is not None else result.score,
            )
            for result in results
        ]
        reranked.sort(key=lambda r: r.score, reverse=True)
        return reranked

    def compute_score(self, result: SearchResult, now, active_targets: set, recent: set) -> float:
        entity = result.entity
        base = result.raw_score if result.raw_score is not None else result.score
        score = base * self.layer_weight(entity.memory_layer)

        days = max(0.0, (now - entity.updated_at).total_seconds() / _SECONDS_PER_DAY)
        score *= 1 + math.exp(-self.config.recency_decay * days) * RECENCY_WEIGHT

        score *= 1 + min(len(entity.links) * self.config.link_boost, MAX_LINK_FACTOR)

        if entity.id in active_targets:
            score *= ACTIVE_LINK_BOOST
        if entity.id in recent:
            score *= RECENT_BOOST
        return score

    async def get_related(self, entity: BaseEntity, limit: int = 5) -> List[SearchResult]:
        """
        Entities similar to ``entity`` (excluding itself), raw similarity order.

        The stored embedding is reused when present; otherwise title and
        content are embedded.
        """
        if entity.embedding:
            results = await self.engine.search_by_vector(
                entity.embedding, limit=limit + 1, threshold=self.config.similarity_threshold
            )
        else:
            results = await self.engine.search_similar(
                entity.embedding_text, limit=limit + 1, threshold=self.config.similarity_threshold
            )
        return [r for r in results if r.entity.id != entity.id][:limit]

    async def get_context_window(self, entity: BaseEntity, window_size: int = 10) -> List[BaseEntity]:
        """
        Linked entities first (missing targets skipped), then related ones,
        de-duplicated by id and truncated to ``window_size``.
        """
        linked: List[BaseEntity] = []
        for link in entity.links:
            target = await self.engine.get_entity(link.target_id)
            if target is not None:
                linked.append(target)

        related: List[BaseEntity] = []
        if self.engine.has_embeddings or entity.embedding:
            related = [r.entity for r in await self.get_related(entity, window_size)]

        window: Dict[str, BaseEntity] = {}
        for candidate in linked + related:
            if candidate.id != entity.id and candidate.id not in window:
                window[candidate.id] = candidate
        return list(window.values())[:window_size]
