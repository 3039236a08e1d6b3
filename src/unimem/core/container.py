"""
Dependency Injection Container
==============================
Builds and wires all application dependencies from an UnimemConfig.
One storage backend, one event bus and one engine per container; nothing
is held in module-level state.
"""

from dataclasses import dataclass
from typing import Optional

from loguru import logger

from unimem.core.config import UnimemConfig
from unimem.core.consolidation import CompletedTaskAging, ConsolidationEngine, WorkingMemoryAging
from unimem.core.consolidation_worker import ConsolidationWorker
from unimem.core.embedding import EmbeddingProvider, create_embedding_provider
from unimem.core.engine import MemoryEngine
from unimem.core.exceptions import ConfigurationError
from unimem.core.http import RetryConfig
from unimem.core.retrieval import RetrievalEngine
from unimem.core.sqlite_storage import SQLiteStorage
from unimem.core.storage import InMemoryStorage, StorageAdapter
from unimem.events.event_bus import EventBus


@dataclass
class Container:
    """
    Container holding all wired application dependencies.
    """
    config: UnimemConfig
    storage: StorageAdapter
    event_bus: EventBus
    engine: MemoryEngine
    consolidation: ConsolidationEngine
    consolidation_worker: ConsolidationWorker
    retrieval: RetrievalEngine
    # Typed loosely: unimem.sync depends on unimem.core, not the reverse
    sync_manager: Optional[object] = None
    embedding_provider: Optional[EmbeddingProvider] = None

    async def initialize(self) -> None:
        await self.engine.initialize()
        if self.sync_manager is not None:
            self.sync_manager.client_id = self.engine.client_id
            await self.sync_manager.initialize()

    async def start_background(self) -> None:
        """Start periodic consolidation and sync (each honours its own enabled flag)."""
        await self.consolidation_worker.start()
        if self.sync_manager is not None:
            await self.sync_manager.start()

    async def close(self) -> None:
        await self.consolidation_worker.stop()
        if self.sync_manager is not None:
            await self.sync_manager.stop()
            if self.sync_manager.peer is not None:
                await self.sync_manager.peer.close()
        await self.event_bus.drain()
        await self.engine.close()


def build_storage(config: UnimemConfig) -> StorageAdapter:
    backend = config.storage.backend
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(config.storage.sqlite_path)
    raise ConfigurationError("storage.backend", f"unknown backend '{backend}'")


def build_container(config: UnimemConfig) -> Container:
    """
    Build and wire all application dependencies.

    Args:
        config: Validated UnimemConfig instance.

    Returns:
        Container; call ``await container.initialize()`` before use.
    """
    storage = build_storage(config)
    provider = create_embedding_provider(config.embedding)
    event_bus = EventBus()

    engine = MemoryEngine(
        storage,
        embedding_provider=provider,
        event_bus=event_bus,
        layers=config.memory_layers(),
        client_id=config.replication.client_id,
    )

    cons_cfg = config.consolidation
    consolidation = ConsolidationEngine(
        engine,
        strategies=[
            WorkingMemoryAging(max_age_days=cons_cfg.working_max_age_days),
            CompletedTaskAging(max_age_days=cons_cfg.completed_task_max_age_days),
        ],
        fault_isolation=cons_cfg.fault_isolation,
    )

    container = Container(
        config=config,
        storage=storage,
        event_bus=event_bus,
        engine=engine,
        consolidation=consolidation,
        consolidation_worker=ConsolidationWorker(consolidation, cons_cfg),
        retrieval=RetrievalEngine(engine, config.retrieval),
        embedding_provider=provider,
    )
    container.sync_manager = _build_sync_manager(config, storage, event_bus, provider)

    logger.debug(
        f"Container built: storage={storage.backend_name}, "
        f"embedding={config.embedding.provider}, replication={config.replication.enabled}"
    )
    return container


def _build_sync_manager(config, storage, event_bus, provider):
    from unimem.sync.manager import SyncManager
    from unimem.sync.peer import HttpSyncPeer

    rep = config.replication
    peer = None
    if rep.server_url:
        peer = HttpSyncPeer(
            rep.server_url,
            auth_token=rep.auth_token,
            retry=RetryConfig(max_attempts=rep.max_retries + 1, timeout_seconds=rep.timeout_seconds),
        )
    return SyncManager(
        storage,
        peer=peer,
        config=rep,
        event_bus=event_bus,
        client_id=rep.client_id,
        embedding_provider=provider,
    )
