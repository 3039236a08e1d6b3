"""
Unimem Core Module
==================
Entity model, storage, embeddings and the memory engine triad.

Model:
    - BaseEntity and its variants (DailyNote, Person, Company, Project,
      Task, Area, Resource), EntityLink, MemoryLayer
    - EntityDraft: input to MemoryEngine.create_entity

Storage:
    - StorageAdapter: async storage contract
    - InMemoryStorage / SQLiteStorage

Engines:
    - MemoryEngine: entity lifecycle orchestrator
    - ConsolidationEngine + strategies, ConsolidationWorker
    - RetrievalEngine: context-aware re-ranking

Wiring:
    - build_container: explicit dependency injection from UnimemConfig
"""

from .config import UnimemConfig, load_config
from .consolidation import (
    CompletedTaskAging,
    ConsolidationEngine,
    ConsolidationResult,
    ConsolidationStrategy,
    WorkingMemoryAging,
)
from .consolidation_worker import ConsolidationWorker
from .container import Container, build_container
from .embedding import (
    EmbeddingProvider,
    MockEmbeddingProvider,
    OpenAIEmbeddingProvider,
    create_embedding_provider,
)
from .engine import MemoryEngine
from .exceptions import (
    ConfigurationError,
    EmbeddingUnavailableError,
    EntityNotFoundError,
    InvalidResolutionError,
    NotFoundError,
    StorageError,
    SyncError,
    UnimemError,
    ValidationError,
)
from .memory_model import (
    Area,
    BaseEntity,
    Company,
    DailyNote,
    EntityDraft,
    EntityFilter,
    EntityLink,
    EntityType,
    MemoryLayer,
    MemoryLayerType,
    MemoryStats,
    Person,
    Project,
    Resource,
    SearchResult,
    Task,
)
from .retrieval import RetrievalContext, RetrievalEngine
from .similarity import cosine_similarity
from .sqlite_storage import SQLiteStorage
from .storage import InMemoryStorage, StorageAdapter

__all__ = [
    # Config
    "UnimemConfig",
    "load_config",
    # Model
    "BaseEntity",
    "DailyNote",
    "Person",
    "Company",
    "Project",
    "Task",
    "Area",
    "Resource",
    "EntityDraft",
    "EntityFilter",
    "EntityLink",
    "EntityType",
    "MemoryLayer",
    "MemoryLayerType",
    "MemoryStats",
    "SearchResult",
    # Storage
    "StorageAdapter",
    "InMemoryStorage",
    "SQLiteStorage",
    # Embedding
    "EmbeddingProvider",
    "MockEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "create_embedding_provider",
    "cosine_similarity",
    # Engines
    "MemoryEngine",
    "ConsolidationEngine",
    "ConsolidationStrategy",
    "ConsolidationResult",
    "WorkingMemoryAging",
    "CompletedTaskAging",
    "ConsolidationWorker",
    "RetrievalEngine",
    "RetrievalContext",
    # Wiring
    "Container",
    "build_container",
    # Errors
    "UnimemError",
    "NotFoundError",
    "EntityNotFoundError",
    "EmbeddingUnavailableError",
    "InvalidResolutionError",
    "StorageError",
    "SyncError",
    "ValidationError",
    "ConfigurationError",
]
