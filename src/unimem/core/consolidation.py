"""
Memory Consolidation
====================
Moves entities between memory layers, or archives (deletes) them, according
to an ordered list of strategies.

For every scanned entity the FIRST strategy whose should_consolidate()
holds decides its fate; strategies are never combined for one entity in a
pass. get_target_layer() returning None means archive.

Built-in strategies:
    - WorkingMemoryAging: working-layer entities older than N days (from
      created_at). Daily notes move to episodic when they carry more than
      500 characters of content or at least one link, otherwise they are
      archived; any other type moves to episodic.
    - CompletedTaskAging: done/cancelled tasks untouched for N days (from
      updated_at) are archived.

Passes are not transactional. Re-running a pass is safe: moved entities no
longer satisfy the working-layer check and archived ones are gone.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from loguru import logger

from unimem.core.engine import MemoryEngine
from unimem.core.memory_model import (
    BaseEntity,
    EntityFilter,
    EntityType,
    MemoryLayerType,
    Task,
    utc_now,
)
from unimem.events.event_bus import EventType

Clock = Callable[[], datetime]


class ConsolidationStrategy(ABC):
    """Policy deciding whether and where an entity moves."""

    name: str = "strategy"

    @abstractmethod
    def should_consolidate(self, entity: BaseEntity) -> bool:
        ...

    async def transform(self, entity: BaseEntity) -> Dict[str, Any]:
        """Extra field changes applied together with the layer move."""
        return {}

    @abstractmethod
    def get_target_layer(self, entity: BaseEntity) -> Optional[MemoryLayerType]:
        """Destination layer, or None to archive the entity."""


class WorkingMemoryAging(ConsolidationStrategy):
    name = "working-memory-aging"

    SIGNIFICANT_CONTENT_LENGTH = 500

    def __init__(self, max_age_days: float = 7, clock: Clock = utc_now):
        self.max_age = timedelta(days=max_age_days)
        self._clock = clock

    def should_consolidate(self, entity: BaseEntity) -> bool:
        if entity.memory_layer != MemoryLayerType.WORKING:
            return False
        return self._clock() - entity.created_at > self.max_age

    def get_target_layer(self, entity: BaseEntity) -> Optional[MemoryLayerType]:
        if entity.type == EntityType.DAILY_NOTE:
            significant = len(entity.content) > self.SIGNIFICANT_CONTENT_LENGTH
            if significant or entity.links:
                return MemoryLayerType.EPISODIC
            return None
        return MemoryLayerType.EPISODIC


class CompletedTaskAging(ConsolidationStrategy):
    name = "completed-task-aging"

    def __init__(self, max_age_days: float = 30, clock: Clock = utc_now):
        self.max_age = timedelta(days=max_age_days)
        self._clock = clock

    def should_consolidate(self, entity: BaseEntity) -> bool:
        if not isinstance(entity, Task) or not entity.is_closed:
            return False
        return self._clock() - entity.updated_at > self.max_age

    def get_target_layer(self, entity: BaseEntity) -> Optional[MemoryLayerType]:
        return None


@dataclass
class ConsolidationResult:
    processed_count: int = 0
    consolidated_count: int = 0
    archived_count: int = 0
    failed_count: int = 0
    duration_seconds: float = 0.0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed_count,
            "consolidated": self.consolidated_count,
            "archived": self.archived_count,
            "failed": self.failed_count,
            "duration_seconds": round(self.duration_seconds, 4),
            "errors": list(self.errors),
        }


class ConsolidationEngine:
    """
    Applies consolidation strategies through the MemoryEngine write path.

    Args:
        engine: MemoryEngine used for queries, moves and deletions.
        strategies: Ordered strategies; defaults to working-memory aging
            followed by completed-task aging.
        fault_isolation: When True a failing entity is logged, counted and
            skipped; when False the first failure aborts the pass.
    """

    def __init__(
        self,
        engine: MemoryEngine,
        strategies: Optional[Sequence[ConsolidationStrategy]] = None,
        fault_isolation: bool = True,
    ):
        self.engine = engine
        if strategies is None:
            strategies = [WorkingMemoryAging(), CompletedTaskAging()]
        self._strategies: List[ConsolidationStrategy] = list(strategies)
        self.fault_isolation = fault_isolation

    @property
    def strategies(self) -> List[ConsolidationStrategy]:
        return list(self._strategies)

    def add_strategy(self, strategy: ConsolidationStrategy) -> None:
        """Append a strategy; it is consulted after the existing ones."""
        self._strategies.append(strategy)

    def _select(self, entity: BaseEntity) -> Optional[ConsolidationStrategy]:
        for strategy in self._strategies:
            if strategy.should_consolidate(entity):
                return strategy
        return None

    async def _apply(self, entity: BaseEntity, result: ConsolidationResult) -> None:
        strategy = self._select(entity)
        if strategy is None:
            return

        target = strategy.get_target_layer(entity)
        if target is None:
            if await self.engine.delete_entity(entity.id):
                result.archived_count += 1
                logger.debug(f"[Consolidation] {strategy.name} archived {entity.id}")
            return

        if target == entity.memory_layer:
            return

        changes = dict(await strategy.transform(entity))
        changes["memory_layer"] = target
        await self.engine.update_entity(entity.id, changes)
        result.consolidated_count += 1
        logger.debug(
            f"[Consolidation] {strategy.name} moved {entity.id} "
            f"{entity.memory_layer.value} -> {MemoryLayerType(target).value}"
        )

    async def consolidate(self, entity_filter: Optional[EntityFilter] = None) -> ConsolidationResult:
        """Run one pass over the entities matching ``entity_filter`` (all by default)."""
        start = time.monotonic()
        result = ConsolidationResult()
        self.engine.event_bus.publish(EventType.CONSOLIDATION_STARTED, {"strategies": [s.name for s in self._strategies]})

        entities = await self.engine.query_entities(entity_filter)
        for entity in entities:
            result.processed_count += 1
            try:
                await self._apply(entity, result)
            except Exception as e:
                if not self.fault_isolation:
                    raise
                result.failed_count += 1
                result.errors.append({"entity_id": entity.id, "error": str(e)})
                logger.exception(f"[Consolidation] Failed on {entity.id}: {e}")

        result.duration_seconds = time.monotonic() - start
        logger.info(
            f"[Consolidation] Pass complete: processed={result.processed_count} "
            f"consolidated={result.consolidated_count} archived={result.archived_count} "
            f"failed={result.failed_count} ({result.duration_seconds:.3f}s)"
        )
        self.engine.event_bus.publish(EventType.CONSOLIDATION_COMPLETED, result.to_dict())
        return result
