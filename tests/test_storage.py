"""
Tests for the storage backends.

Every test runs against both InMemoryStorage and SQLiteStorage through the
parametrized ``storage`` fixture.
"""

from datetime import timedelta

import pytest

from unimem.core.exceptions import StorageError, ValidationError
from unimem.core.memory_model import EntityFilter, EntityLink, EntityType, MemoryLayerType, utc_now
from unimem.core.sqlite_storage import SQLiteStorage
from unimem.core.storage import ensure_client_id
from unimem.core.sync_log import EntitySyncStatus, SyncLogRecord, SyncOperation

from helpers import make_entity


class TestCrud:

    async def test_create_and_read(self, storage):
        entity = make_entity("p1", EntityType.PERSON, title="Ada", email="ada@example.com")
        entity.links.append(EntityLink("c1", EntityType.COMPANY, "works-at", 0.9))
        await storage.create(entity)

        loaded = await storage.read("p1")
        assert loaded == entity
        assert loaded is not entity

    async def test_read_missing(self, storage):
        assert await storage.read("nope") is None

    async def test_duplicate_create(self, storage):
        await storage.create(make_entity("p1"))
        with pytest.raises(StorageError):
            await storage.create(make_entity("p1"))

    async def test_returned_entity_is_detached(self, storage):
        await storage.create(make_entity("p1", title="Original"))
        loaded = await storage.read("p1")
        loaded.title = "Mutated"
        assert (await storage.read("p1")).title == "Original"

    async def test_update(self, storage):
        await storage.create(make_entity("t1", EntityType.TASK, layer=MemoryLayerType.PROCEDURAL))
        updated = await storage.update("t1", {"status": "done", "memory_layer": MemoryLayerType.SEMANTIC})
        assert updated.status == "done"
        loaded = await storage.read("t1")
        assert loaded.memory_layer == MemoryLayerType.SEMANTIC
        assert loaded.status == "done"

    async def test_update_missing(self, storage):
        assert await storage.update("nope", {"title": "x"}) is None

    async def test_update_rejects_invalid_variant_value(self, storage):
        await storage.create(make_entity("t1", EntityType.TASK))
        with pytest.raises(ValidationError):
            await storage.update("t1", {"status": "blocked"})
        assert (await storage.read("t1")).status == "todo"

    async def test_delete(self, storage):
        await storage.create(make_entity("p1"))
        assert await storage.delete("p1") is True
        assert await storage.delete("p1") is False
        assert await storage.read("p1") is None

    async def test_bulk_operations(self, storage):
        created = await storage.bulk_create([make_entity(f"p{i}") for i in range(4)])
        assert len(created) == 4
        assert await storage.bulk_delete(["p0", "p1", "missing"]) == 2
        assert {e.id for e in await storage.query()} == {"p2", "p3"}


class TestQuery:

    async def test_oldest_first_with_limit(self, storage):
        await storage.create(make_entity("new", age_days=1))
        await storage.create(make_entity("old", age_days=5))
        await storage.create(make_entity("mid", age_days=3))

        assert [e.id for e in await storage.query()] == ["old", "mid", "new"]
        assert [e.id for e in await storage.query(limit=2)] == ["old", "mid"]

    async def test_filter(self, storage):
        task = make_entity("t1", EntityType.TASK, layer=MemoryLayerType.PROCEDURAL)
        task.tags = ["work", "urgent"]
        await storage.create(task)
        await storage.create(make_entity("p1", EntityType.PERSON))
        await storage.create(make_entity("n1", EntityType.DAILY_NOTE, layer=MemoryLayerType.WORKING))

        by_type = await storage.query(EntityFilter(types=[EntityType.TASK, EntityType.PERSON]))
        assert {e.id for e in by_type} == {"t1", "p1"}

        by_layer = await storage.query(EntityFilter(memory_layers=[MemoryLayerType.WORKING]))
        assert [e.id for e in by_layer] == ["n1"]

        by_tags = await storage.query(EntityFilter(tags=["urgent"]))
        assert [e.id for e in by_tags] == ["t1"]

        by_predicate = await storage.query(EntityFilter(predicate=lambda e: e.id.startswith("p")))
        assert [e.id for e in by_predicate] == ["p1"]


class TestSimilaritySearch:

    async def test_threshold_and_order(self, storage):
        close = make_entity("close")
        close.embedding = [1.0, 0.1, 0.0]
        closest = make_entity("closest")
        closest.embedding = [1.0, 0.0, 0.0]
        far = make_entity("far")
        far.embedding = [0.0, 1.0, 0.0]
        plain = make_entity("plain")
        for entity in (close, closest, far, plain):
            await storage.create(entity)

        results = await storage.similarity_search([1.0, 0.0, 0.0], limit=10, threshold=0.5)

        assert [r.entity.id for r in results] == ["closest", "close"]
        assert results[0].score == pytest.approx(1.0)
        assert results[0].raw_score == results[0].score

    async def test_limit_and_filter(self, storage):
        for i, etype in enumerate([EntityType.PERSON, EntityType.COMPANY, EntityType.PERSON]):
            entity = make_entity(f"e{i}", etype)
            entity.embedding = [1.0, float(i)]
            await storage.create(entity)

        results = await storage.similarity_search(
            [1.0, 0.0], limit=1, threshold=0.0, entity_filter=EntityFilter(types=[EntityType.PERSON])
        )
        assert [r.entity.id for r in results] == ["e0"]


class TestSyncBookkeeping:

    async def test_new_entity_is_pending(self, storage):
        await storage.create(make_entity("p1"))
        meta = await storage.get_sync_metadata("p1")
        assert meta.status == EntitySyncStatus.PENDING
        assert meta.version is None
        assert [e.id for e in await storage.get_pending_entities()] == ["p1"]

    async def test_mark_synced_then_update_is_pending(self, storage):
        await storage.create(make_entity("p1"))
        now = utc_now()
        await storage.mark_synced("p1", 4, now)

        meta = await storage.get_sync_metadata("p1")
        assert meta.status == EntitySyncStatus.SYNCED
        assert meta.version == 4
        assert meta.synced_at == now
        assert await storage.get_pending_entities() == []

        await storage.update("p1", {"title": "Changed"})
        meta = await storage.get_sync_metadata("p1")
        assert meta.status == EntitySyncStatus.PENDING
        assert meta.version == 4

    async def test_mark_pending_rebases_version(self, storage):
        await storage.create(make_entity("p1"))
        await storage.mark_synced("p1", 2, utc_now())
        await storage.mark_pending("p1", version=7)
        meta = await storage.get_sync_metadata("p1")
        assert meta.status == EntitySyncStatus.PENDING
        assert meta.version == 7

    async def test_apply_remote_upserts_synced(self, storage):
        remote = make_entity("r1", EntityType.AREA, title="Remote")
        await storage.apply_remote(remote, 3, utc_now())
        assert (await storage.read("r1")).title == "Remote"
        assert (await storage.get_sync_metadata("r1")).status == EntitySyncStatus.SYNCED

        await storage.create(make_entity("p1"))
        changed = make_entity("p1", title="From peer")
        await storage.apply_remote(changed, 5, utc_now())
        assert (await storage.read("p1")).title == "From peer"
        assert (await storage.get_sync_metadata("p1")).version == 5

    async def test_metadata_of_missing_entity(self, storage):
        assert await storage.get_sync_metadata("nope") is None


class TestSyncLog:

    def record(self, entity_id="p1", operation=SyncOperation.UPDATE, client_id="client_a"):
        return SyncLogRecord(
            entity_id=entity_id,
            operation=operation,
            payload={"id": entity_id, "title": "T"},
            timestamp=utc_now(),
            client_id=client_id,
        )

    async def test_append_assigns_increasing_ids(self, storage):
        first = await storage.append_sync_log(self.record())
        second = await storage.append_sync_log(self.record("p2", SyncOperation.CREATE))
        assert first.id is not None
        assert second.id > first.id

        log = await storage.get_sync_log()
        assert [r.entity_id for r in log] == ["p1", "p2"]
        assert log[1].operation == SyncOperation.CREATE
        assert log[0].payload == {"id": "p1", "title": "T"}

    async def test_resolve_and_filters(self, storage):
        a = await storage.append_sync_log(self.record("p1"))
        await storage.append_sync_log(self.record("p2"))
        b = await storage.append_sync_log(self.record("p1", client_id="remote"))

        resolved_at = utc_now()
        assert await storage.resolve_sync_log([a.id], resolved_at) == 1
        assert await storage.resolve_sync_log([a.id], resolved_at) == 0

        unresolved = await storage.get_sync_log(unresolved_only=True)
        assert {r.id for r in unresolved} == {b.id, a.id + 1}

        for_p1 = await storage.get_sync_log(entity_id="p1")
        assert [r.id for r in for_p1] == [a.id, b.id]
        assert for_p1[0].resolved == resolved_at

    async def test_log_survives_entity_delete(self, storage):
        await storage.create(make_entity("p1"))
        await storage.append_sync_log(self.record("p1", SyncOperation.DELETE))
        await storage.delete("p1")
        assert len(await storage.get_sync_log(entity_id="p1")) == 1


class TestMetaAndStats:

    async def test_meta(self, storage):
        assert await storage.get_meta("k") is None
        assert await storage.get_meta("k", "fallback") == "fallback"
        await storage.set_meta("k", "1")
        await storage.set_meta("k", "2")
        assert await storage.get_meta("k") == "2"

    async def test_ensure_client_id(self, storage):
        generated = await ensure_client_id(storage)
        assert generated
        assert await ensure_client_id(storage) == generated
        assert await ensure_client_id(storage, "laptop") == "laptop"
        assert await ensure_client_id(storage) == "laptop"

    async def test_stats(self, storage):
        embedded = make_entity("t1", EntityType.TASK, layer=MemoryLayerType.PROCEDURAL)
        embedded.embedding = [0.1, 0.2]
        await storage.create(embedded)
        await storage.create(make_entity("p1"))

        stats = await storage.get_stats()
        assert stats.total_entities == 2
        assert stats.by_type["task"] == 1
        assert stats.by_layer["episodic"] == 1
        assert stats.by_layer["semantic"] == 0
        assert stats.vector_count == 1
        assert stats.storage_size > 0


class TestSQLiteSpecifics:

    async def test_persists_across_instances(self, tmp_path):
        path = str(tmp_path / "nested" / "store.db")
        first = SQLiteStorage(path)
        await first.initialize()
        await first.create(make_entity("p1", title="Durable"))
        await first.set_meta("last_sync_version", "9")
        await first.close()

        second = SQLiteStorage(path)
        await second.initialize()
        try:
            assert (await second.read("p1")).title == "Durable"
            assert await second.get_meta("last_sync_version") == "9"
        finally:
            await second.close()

    async def test_use_before_initialize(self, tmp_path):
        store = SQLiteStorage(str(tmp_path / "x.db"))
        with pytest.raises(StorageError):
            await store.read("p1")

    async def test_created_before_filter(self, tmp_path):
        store = SQLiteStorage(":memory:")
        await store.initialize()
        try:
            await store.create(make_entity("old", age_days=10))
            await store.create(make_entity("new"))
            cutoff = utc_now() - timedelta(days=5)
            assert [e.id for e in await store.query(EntityFilter(created_before=cutoff))] == ["old"]
        finally:
            await store.close()
