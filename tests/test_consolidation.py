"""
Tests for the consolidation engine and its built-in strategies.
"""

import pytest

from unimem.core.consolidation import (
    CompletedTaskAging,
    ConsolidationEngine,
    ConsolidationResult,
    ConsolidationStrategy,
    WorkingMemoryAging,
)
from unimem.core.memory_model import EntityFilter, EntityLink, EntityType, MemoryLayerType
from unimem.core.sync_log import SyncOperation

from helpers import draft, make_entity


def aged_engine(engine, clock, fault_isolation=True):
    return ConsolidationEngine(
        engine,
        [WorkingMemoryAging(7, clock=clock), CompletedTaskAging(30, clock=clock)],
        fault_isolation=fault_isolation,
    )


class TestWorkingMemoryAging:

    def test_only_working_layer_and_old_enough(self, future_clock):
        strategy = WorkingMemoryAging(7, clock=future_clock(8))
        assert strategy.should_consolidate(make_entity("n", EntityType.DAILY_NOTE, layer=MemoryLayerType.WORKING))
        assert not strategy.should_consolidate(make_entity("p", EntityType.PERSON, layer=MemoryLayerType.EPISODIC))

        fresh = WorkingMemoryAging(7, clock=future_clock(6))
        assert not fresh.should_consolidate(make_entity("n", EntityType.DAILY_NOTE, layer=MemoryLayerType.WORKING))

    def test_note_targets(self):
        strategy = WorkingMemoryAging()
        long_note = make_entity("a", EntityType.DAILY_NOTE, layer=MemoryLayerType.WORKING, content="x" * 501)
        boundary = make_entity("b", EntityType.DAILY_NOTE, layer=MemoryLayerType.WORKING, content="x" * 500)
        linked = make_entity("c", EntityType.DAILY_NOTE, layer=MemoryLayerType.WORKING)
        linked.links.append(EntityLink("p1", EntityType.PERSON))

        assert strategy.get_target_layer(long_note) == MemoryLayerType.EPISODIC
        assert strategy.get_target_layer(boundary) is None
        assert strategy.get_target_layer(linked) == MemoryLayerType.EPISODIC

    def test_other_types_move_to_episodic(self):
        task = make_entity("t", EntityType.TASK, layer=MemoryLayerType.WORKING)
        assert WorkingMemoryAging().get_target_layer(task) == MemoryLayerType.EPISODIC


class TestCompletedTaskAging:

    @pytest.mark.parametrize("status,expected", [
        ("done", True),
        ("cancelled", True),
        ("todo", False),
        ("in-progress", False),
    ])
    def test_status(self, future_clock, status, expected):
        strategy = CompletedTaskAging(30, clock=future_clock(31))
        task = make_entity("t", EntityType.TASK, layer=MemoryLayerType.PROCEDURAL, status=status)
        assert strategy.should_consolidate(task) is expected

    def test_only_tasks(self, future_clock):
        strategy = CompletedTaskAging(30, clock=future_clock(31))
        project = make_entity("p", EntityType.PROJECT, status="completed")
        assert not strategy.should_consolidate(project)

    def test_age_from_updated_at(self, future_clock):
        strategy = CompletedTaskAging(30, clock=future_clock(29))
        recently_closed = make_entity("t", EntityType.TASK, status="done")
        assert not strategy.should_consolidate(recently_closed)

    def test_archives(self):
        assert CompletedTaskAging().get_target_layer(make_entity("t", EntityType.TASK, status="done")) is None


class TestConsolidationPass:

    async def test_notes_moved_or_archived(self, engine, future_clock):
        long_note = await engine.create_entity(draft(title="Long", content="x" * 600))
        short_note = await engine.create_entity(draft(title="Short", content="x" * 10))

        result = await aged_engine(engine, future_clock(8)).consolidate()

        assert result.processed_count == 2
        assert result.consolidated_count == 1
        assert result.archived_count == 1
        assert result.failed_count == 0
        assert (await engine.get_entity(long_note.id)).memory_layer == MemoryLayerType.EPISODIC
        assert await engine.get_entity(short_note.id) is None

        log = await engine.storage.get_sync_log(entity_id=short_note.id)
        assert [r.operation for r in log] == [SyncOperation.DELETE]

    async def test_move_preserves_embedding_and_bumps_updated_at(self, engine, future_clock):
        note = await engine.create_entity(draft(title="Long", content="y" * 600))
        await aged_engine(engine, future_clock(8)).consolidate()
        moved = await engine.get_entity(note.id)
        assert moved.embedding == note.embedding
        assert moved.updated_at > note.updated_at

    async def test_idempotent(self, engine, future_clock):
        await engine.create_entity(draft(title="Long", content="x" * 600))
        await engine.create_entity(draft(title="Short"))
        consolidation = aged_engine(engine, future_clock(8))

        await consolidation.consolidate()
        second = await consolidation.consolidate()

        assert second.processed_count == 1
        assert second.consolidated_count == 0
        assert second.archived_count == 0

    async def test_fresh_entities_untouched(self, engine, future_clock):
        note = await engine.create_entity(draft(title="Today"))
        result = await aged_engine(engine, future_clock(1)).consolidate()
        assert result.consolidated_count == result.archived_count == 0
        assert (await engine.get_entity(note.id)).memory_layer == MemoryLayerType.WORKING

    async def test_completed_task_archived(self, engine, future_clock):
        done = await engine.create_entity(draft(EntityType.TASK, "Done", fields={"status": "done"}))
        open_task = await engine.create_entity(draft(EntityType.TASK, "Open"))

        result = await aged_engine(engine, future_clock(31)).consolidate()

        assert result.archived_count == 1
        assert await engine.get_entity(done.id) is None
        assert await engine.get_entity(open_task.id) is not None

    async def test_filter_limits_scan(self, engine, future_clock):
        note = await engine.create_entity(draft(title="Short"))
        await engine.create_entity(draft(EntityType.TASK, "Done", fields={"status": "done"}))

        result = await aged_engine(engine, future_clock(40)).consolidate(EntityFilter(types=[EntityType.TASK]))

        assert result.processed_count == 1
        assert result.archived_count == 1
        assert await engine.get_entity(note.id) is not None

    async def test_first_matching_strategy_wins(self, engine, future_clock):
        class MoveToSemantic(ConsolidationStrategy):
            name = "to-semantic"

            def should_consolidate(self, entity):
                return entity.memory_layer == MemoryLayerType.WORKING

            async def transform(self, entity):
                return {"tags": ["promoted"]}

            def get_target_layer(self, entity):
                return MemoryLayerType.SEMANTIC

        note = await engine.create_entity(draft(title="Short"))
        consolidation = ConsolidationEngine(engine, [MoveToSemantic(), WorkingMemoryAging(7, clock=future_clock(8))])

        await consolidation.consolidate()

        moved = await engine.get_entity(note.id)
        assert moved.memory_layer == MemoryLayerType.SEMANTIC
        assert moved.tags == ["promoted"]

    async def test_same_layer_target_is_noop(self, engine):
        class Stay(ConsolidationStrategy):
            def should_consolidate(self, entity):
                return True

            def get_target_layer(self, entity):
                return entity.memory_layer

        note = await engine.create_entity(draft(title="Stay"))
        result = await ConsolidationEngine(engine, [Stay()]).consolidate()
        assert result.consolidated_count == 0
        assert (await engine.get_entity(note.id)).updated_at == note.updated_at

    async def test_add_strategy(self, engine, future_clock):
        consolidation = ConsolidationEngine(engine, [])
        consolidation.add_strategy(WorkingMemoryAging(7, clock=future_clock(8)))
        assert [s.name for s in consolidation.strategies] == ["working-memory-aging"]
        await engine.create_entity(draft(title="Short"))
        assert (await consolidation.consolidate()).archived_count == 1

    async def test_events(self, engine, event_bus, future_clock):
        seen = []
        event_bus.subscribe("consolidation:*", seen.append)
        await aged_engine(engine, future_clock(8)).consolidate()
        assert [e.type for e in seen] == ["consolidation:started", "consolidation:completed"]
        assert seen[1].payload["processed"] == 0


class TestFaultIsolation:

    class Exploding(ConsolidationStrategy):
        name = "exploding"

        def should_consolidate(self, entity):
            return True

        async def transform(self, entity):
            if entity.title == "bad":
                raise RuntimeError("cannot transform")
            return {}

        def get_target_layer(self, entity):
            return MemoryLayerType.SEMANTIC

    async def test_failure_is_counted_and_skipped(self, engine):
        bad = await engine.create_entity(draft(title="bad"))
        good = await engine.create_entity(draft(title="good"))

        result = await ConsolidationEngine(engine, [self.Exploding()]).consolidate()

        assert result.failed_count == 1
        assert result.consolidated_count == 1
        assert result.errors == [{"entity_id": bad.id, "error": "cannot transform"}]
        assert (await engine.get_entity(good.id)).memory_layer == MemoryLayerType.SEMANTIC

    async def test_failure_aborts_without_isolation(self, engine):
        await engine.create_entity(draft(title="bad"))
        consolidation = ConsolidationEngine(engine, [self.Exploding()], fault_isolation=False)
        with pytest.raises(RuntimeError):
            await consolidation.consolidate()


def test_result_to_dict():
    result = ConsolidationResult(processed_count=3, archived_count=1, duration_seconds=0.123456)
    assert result.to_dict() == {
        "processed": 3,
        "consolidated": 0,
        "archived": 1,
        "failed": 0,
        "duration_seconds": 0.1235,
        "errors": [],
    }
