import sys
from datetime import timedelta
from pathlib import Path

import pytest


# Ensure local src/ package imports work without editable install.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from unimem.core.embedding import MockEmbeddingProvider  # noqa: E402
from unimem.core.engine import MemoryEngine  # noqa: E402
from unimem.core.memory_model import utc_now  # noqa: E402
from unimem.core.sqlite_storage import SQLiteStorage  # noqa: E402
from unimem.core.storage import InMemoryStorage  # noqa: E402
from unimem.events.event_bus import EventBus  # noqa: E402


# =============================================================================
# Storage & Engine Fixtures
# =============================================================================

@pytest.fixture(params=["memory", "sqlite"])
async def storage(request, tmp_path):
    """Every storage backend, initialized and closed around the test."""
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(str(tmp_path / "unimem.db"))
    await backend.initialize()
    yield backend
    await backend.close()


@pytest.fixture
def embedder():
    """Deterministic 64-dimensional embedding provider."""
    return MockEmbeddingProvider(dimensions=64)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
async def engine(embedder, event_bus):
    """MemoryEngine over in-memory storage with the mock embedder."""
    eng = MemoryEngine(InMemoryStorage(), embedding_provider=embedder, event_bus=event_bus, client_id="client_test")
    await eng.initialize()
    yield eng
    await eng.close()


@pytest.fixture
async def bare_engine(event_bus):
    """MemoryEngine without an embedding provider."""
    eng = MemoryEngine(InMemoryStorage(), event_bus=event_bus, client_id="client_test")
    await eng.initialize()
    yield eng
    await eng.close()


@pytest.fixture
def future_clock():
    """Clock returning 'now + days' for aging strategies."""
    def _make(days: float):
        return lambda: utc_now() + timedelta(days=days)
    return _make

