"""
Tests for the configuration loader.
"""

import os
from datetime import timedelta

import pytest
import yaml

from unimem.core.config import (
    DEFAULT_LAYER_WEIGHTS,
    StorageConfig,
    UnimemConfig,
    load_config,
)
from unimem.core.exceptions import ConfigurationError
from unimem.core.memory_model import DEFAULT_MEMORY_LAYERS, MemoryLayerType


@pytest.fixture(autouse=True)
def isolated(monkeypatch, tmp_path):
    """No stray config.yaml or UNIMEM_* variables leak into a test."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    for key in list(os.environ):
        if key.startswith("UNIMEM_"):
            monkeypatch.delenv(key)


def write_config(path, data):
    path.write_text(yaml.safe_dump({"unimem": data}))
    return path


class TestDefaults:

    def test_defaults_without_file(self):
        cfg = load_config()
        assert cfg.storage.backend == "memory"
        assert cfg.embedding.provider == "none"
        assert cfg.retrieval.max_results == 10
        assert cfg.retrieval.similarity_threshold == 0.7
        assert cfg.retrieval.layer_weights == DEFAULT_LAYER_WEIGHTS
        assert cfg.retrieval.recency_decay == 0.1
        assert cfg.retrieval.link_boost == 0.2
        assert cfg.consolidation.working_max_age_days == 7
        assert cfg.consolidation.completed_task_max_age_days == 30
        assert cfg.consolidation.fault_isolation is True
        assert cfg.replication.enabled is False
        assert cfg.replication.conflict_resolution == "manual"
        assert cfg.replication.sync_interval_seconds == 30

    def test_default_layers(self):
        assert UnimemConfig().memory_layers() == DEFAULT_MEMORY_LAYERS

    def test_config_is_frozen(self):
        cfg = UnimemConfig()
        with pytest.raises(Exception):
            cfg.storage = None


class TestYaml:

    def test_explicit_missing_path(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_config(tmp_path / "missing.yaml")

    def test_values_from_yaml(self, tmp_path):
        path = write_config(
            tmp_path / "custom.yaml",
            {
                "storage": {"backend": "sqlite", "sqlite_path": str(tmp_path / "db.sqlite")},
                "embedding": {"provider": "mock", "dimensions": 32},
                "retrieval": {"max_results": 5, "layer_weights": {"working": 2.0}},
                "replication": {"server_url": "http://sync.local", "conflict_resolution": "remote-wins"},
            },
        )
        cfg = load_config(path)
        assert cfg.storage.backend == "sqlite"
        assert cfg.embedding.dimensions == 32
        assert cfg.retrieval.max_results == 5
        assert cfg.retrieval.layer_weights["working"] == 2.0
        assert cfg.retrieval.layer_weights["procedural"] == 0.8
        assert cfg.replication.server_url == "http://sync.local"
        assert cfg.replication.conflict_resolution == "remote-wins"

    def test_search_path_finds_cwd_config(self, tmp_path):
        write_config(tmp_path / "config.yaml", {"retrieval": {"max_results": 3}})
        assert load_config().retrieval.max_results == 3

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(path).storage.backend == "memory"

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("unimem: [unclosed")
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_layer_override(self, tmp_path):
        path = write_config(
            tmp_path / "layers.yaml",
            {"layers": [{"type": "working", "name": "Scratch", "max_age_days": 3, "max_items": 50}]},
        )
        layers = load_config(path).memory_layers()
        assert len(layers) == 1
        assert layers[0].type == MemoryLayerType.WORKING
        assert layers[0].name == "Scratch"
        assert layers[0].retention_policy.max_age == timedelta(days=3)
        assert layers[0].retention_policy.max_items == 50


class TestStorageDefaults:

    def test_used_without_file(self, tmp_path):
        defaults = StorageConfig(backend="sqlite", sqlite_path=str(tmp_path / "home.db"))
        cfg = load_config(storage_defaults=defaults)
        assert cfg.storage == defaults

    def test_yaml_wins(self, tmp_path):
        path = write_config(tmp_path / "c.yaml", {"storage": {"backend": "memory"}})
        defaults = StorageConfig(backend="sqlite", sqlite_path=str(tmp_path / "home.db"))
        cfg = load_config(path, storage_defaults=defaults)
        assert cfg.storage.backend == "memory"
        assert cfg.storage.sqlite_path == str(tmp_path / "home.db")

    def test_env_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("UNIMEM_SQLITE_PATH", str(tmp_path / "env.db"))
        defaults = StorageConfig(backend="sqlite", sqlite_path=str(tmp_path / "home.db"))
        cfg = load_config(storage_defaults=defaults)
        assert cfg.storage.backend == "sqlite"
        assert cfg.storage.sqlite_path == str(tmp_path / "env.db")


class TestEnvOverrides:

    def test_env_beats_yaml(self, tmp_path, monkeypatch):
        path = write_config(tmp_path / "c.yaml", {"retrieval": {"max_results": 5}})
        monkeypatch.setenv("UNIMEM_RETRIEVAL_MAX_RESULTS", "7")
        monkeypatch.setenv("UNIMEM_SYNC_SERVER_URL", "http://env.local")
        monkeypatch.setenv("UNIMEM_REPLICATION_ENABLED", "yes")
        cfg = load_config(path)
        assert cfg.retrieval.max_results == 7
        assert cfg.replication.server_url == "http://env.local"
        assert cfg.replication.enabled is True

    def test_float_coercion(self, monkeypatch):
        monkeypatch.setenv("UNIMEM_RETRIEVAL_SIMILARITY_THRESHOLD", "0.55")
        assert load_config().retrieval.similarity_threshold == 0.55

    def test_bad_coercion(self, monkeypatch):
        monkeypatch.setenv("UNIMEM_RETRIEVAL_MAX_RESULTS", "many")
        with pytest.raises(ConfigurationError) as exc_info:
            load_config()
        assert exc_info.value.config_key == "UNIMEM_RETRIEVAL_MAX_RESULTS"


class TestValidation:

    @pytest.mark.parametrize(
        "data",
        [
            {"storage": {"backend": "postgres"}},
            {"embedding": {"provider": "cohere"}},
            {"retrieval": {"similarity_threshold": 1.5}},
            {"retrieval": {"max_results": 0}},
            {"retrieval": {"layer_weights": {"archive": 1.0}}},
            {"consolidation": {"interval_seconds": 0}},
            {"replication": {"conflict_resolution": "newest-wins"}},
            {"replication": {"sync_interval_seconds": -1}},
            {"layers": [{"type": "long-term"}]},
            {"layers": [{"type": "working"}, {"type": "working"}]},
        ],
    )
    def test_invalid_values(self, tmp_path, data):
        with pytest.raises(ConfigurationError):
            load_config(write_config(tmp_path / "c.yaml", data))

