"""
Unimem Configuration System
===========================
Centralized, validated configuration with environment variable overrides.
"""

import os
from datetime import timedelta
from pathlib import Path
from typing import Dict, Optional, Tuple
from dataclasses import dataclass, field

import yaml

from unimem.core.exceptions import ConfigurationError
from unimem.core.memory_model import (
    DEFAULT_MEMORY_LAYERS,
    MemoryLayer,
    MemoryLayerType,
    RetentionPolicy,
)


STORAGE_BACKENDS = ("memory", "sqlite")
EMBEDDING_PROVIDERS = ("none", "mock", "openai")
CONFLICT_POLICIES = ("local-wins", "remote-wins", "manual")

DEFAULT_LAYER_WEIGHTS = {
    "working": 1.5,
    "episodic": 1.0,
    "semantic": 1.2,
    "procedural": 0.8,
}


@dataclass(frozen=True)
class StorageConfig:
    backend: str = "memory"
    sqlite_path: str = "./data/unimem.db"


@dataclass(frozen=True)
class EmbeddingConfig:
    provider: str = "none"
    model: str = "text-embedding-3-small"
    api_key: Optional[str] = None
    base_url: str = "https://api.openai.com/v1"
    dimensions: Optional[int] = None
    timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0


@dataclass(frozen=True)
class LayerConfig:
    type: str
    name: str
    description: str = ""
    max_age_days: Optional[float] = None
    max_items: Optional[int] = None
    consolidation_interval_days: Optional[float] = None

    def to_memory_layer(self) -> MemoryLayer:
        return MemoryLayer(
            type=MemoryLayerType(self.type),
            name=self.name,
            description=self.description,
            retention_policy=RetentionPolicy(
                max_age=timedelta(days=self.max_age_days) if self.max_age_days is not None else None,
                max_items=self.max_items,
                consolidation_interval=(
                    timedelta(days=self.consolidation_interval_days)
                    if self.consolidation_interval_days is not None
                    else None
                ),
            ),
        )


@dataclass(frozen=True)
class ConsolidationConfig:
    enabled: bool = False
    interval_seconds: int = 86400
    working_max_age_days: float = 7.0
    completed_task_max_age_days: float = 30.0
    fault_isolation: bool = True


@dataclass(frozen=True)
class RetrievalConfig:
    max_results: int = 10
    similarity_threshold: float = 0.7
    layer_weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_LAYER_WEIGHTS))
    recency_decay: float = 0.1
    link_boost: float = 0.2


@dataclass(frozen=True)
class ReplicationConfig:
    enabled: bool = False
    server_url: Optional[str] = None
    auth_token: Optional[str] = None
    client_id: Optional[str] = None
    sync_interval_seconds: int = 30
    conflict_resolution: str = "manual"
    pull_limit: int = 100
    timeout_seconds: float = 30.0
    max_retries: int = 3


@dataclass(frozen=True)
class ObservabilityConfig:
    log_level: str = "INFO"
    json_logs: bool = False


@dataclass(frozen=True)
class UnimemConfig:
    """Root configuration for the Unimem memory engine."""
    version: str = "1.0"
    storage: StorageConfig = field(default_factory=StorageConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    layers: Optional[Tuple[LayerConfig, ...]] = None
    consolidation: ConsolidationConfig = field(default_factory=ConsolidationConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    replication: ReplicationConfig = field(default_factory=ReplicationConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def memory_layers(self) -> Tuple[MemoryLayer, ...]:
        """Layer descriptors: the override list if configured, else the defaults."""
        if not self.layers:
            return DEFAULT_MEMORY_LAYERS
        return tuple(layer.to_memory_layer() for layer in self.layers)


def _env_override(key: str, default):
    """Check for UNIMEM_<KEY> environment variable override."""
    env_key = f"UNIMEM_{key.upper()}"
    val = os.environ.get(env_key)
    if val is None:
        return default
    # Type coercion based on the default's type
    try:
        if isinstance(default, bool):
            return val.lower() in ("true", "1", "yes")
        if isinstance(default, int):
            return int(val)
        if isinstance(default, float):
            return float(val)
    except ValueError as exc:
        raise ConfigurationError(
            config_key=env_key,
            reason=f"Cannot coerce '{val}' to {type(default).__name__}",
        ) from exc
    return val


def _build_layers(layers_raw) -> Optional[Tuple[LayerConfig, ...]]:
    if not layers_raw:
        return None

    valid = {layer.value for layer in MemoryLayerType}
    layers = []
    seen = set()
    for entry in layers_raw:
        layer_type = entry.get("type")
        if layer_type not in valid:
            raise ConfigurationError(
                config_key="layers",
                reason=f"Unknown memory layer '{layer_type}'. Valid: {sorted(valid)}",
            )
        if layer_type in seen:
            raise ConfigurationError(
                config_key="layers",
                reason=f"Memory layer '{layer_type}' declared twice",
            )
        seen.add(layer_type)
        layers.append(
            LayerConfig(
                type=layer_type,
                name=entry.get("name", layer_type.capitalize()),
                description=entry.get("description", ""),
                max_age_days=entry.get("max_age_days"),
                max_items=entry.get("max_items"),
                consolidation_interval_days=entry.get("consolidation_interval_days"),
            )
        )
    return tuple(layers)


def _validate(config: UnimemConfig) -> None:
    if config.storage.backend not in STORAGE_BACKENDS:
        raise ConfigurationError(
            config_key="storage.backend",
            reason=f"Unknown backend '{config.storage.backend}'. Valid: {list(STORAGE_BACKENDS)}",
        )

    if config.embedding.provider not in EMBEDDING_PROVIDERS:
        raise ConfigurationError(
            config_key="embedding.provider",
            reason=f"Unknown provider '{config.embedding.provider}'. Valid: {list(EMBEDDING_PROVIDERS)}",
        )

    retrieval = config.retrieval
    if not 0.0 <= retrieval.similarity_threshold <= 1.0:
        raise ConfigurationError(
            config_key="retrieval.similarity_threshold",
            reason=f"Threshold must be within [0, 1], got {retrieval.similarity_threshold}",
        )
    if retrieval.max_results <= 0:
        raise ConfigurationError(
            config_key="retrieval.max_results",
            reason=f"max_results must be positive, got {retrieval.max_results}",
        )
    unknown = set(retrieval.layer_weights) - set(DEFAULT_LAYER_WEIGHTS)
    if unknown:
        raise ConfigurationError(
            config_key="retrieval.layer_weights",
            reason=f"Weights given for unknown layers: {sorted(unknown)}",
        )

    if config.consolidation.interval_seconds <= 0:
        raise ConfigurationError(
            config_key="consolidation.interval_seconds",
            reason="Interval must be positive",
        )
    if config.consolidation.working_max_age_days < 0 or config.consolidation.completed_task_max_age_days < 0:
        raise ConfigurationError(
            config_key="consolidation",
            reason="Age thresholds cannot be negative",
        )

    replication = config.replication
    if replication.conflict_resolution not in CONFLICT_POLICIES:
        raise ConfigurationError(
            config_key="replication.conflict_resolution",
            reason=f"Unknown policy '{replication.conflict_resolution}'. Valid: {list(CONFLICT_POLICIES)}",
        )
    if replication.sync_interval_seconds <= 0:
        raise ConfigurationError(
            config_key="replication.sync_interval_seconds",
            reason="Interval must be positive",
        )
    if replication.pull_limit <= 0:
        raise ConfigurationError(
            config_key="replication.pull_limit",
            reason="pull_limit must be positive",
        )


def load_config(
    path: Optional[Path] = None,
    storage_defaults: Optional[StorageConfig] = None,
) -> UnimemConfig:
    """
    Load configuration from YAML file with environment variable overrides.

    Priority: ENV > YAML > defaults.

    Args:
        path: Path to config.yaml. If None, searches ./config.yaml and ~/.unimem/config.yaml.
        storage_defaults: Storage used when neither YAML nor environment
            chooses one (the CLI passes a durable sqlite default).

    Returns:
        Validated UnimemConfig instance.

    Raises:
        ConfigurationError: If an explicit path does not exist or a value is invalid.
    """
    if path is None:
        # Search common locations
        candidates = [
            Path("config.yaml"),
            Path.home() / ".unimem" / "config.yaml",
        ]
        for candidate in candidates:
            if candidate.exists():
                path = candidate
                break
    else:
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(
                config_key="path",
                reason=f"Config file not found: {path}",
            )

    raw = {}
    if path is not None and path.exists():
        try:
            with open(path) as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(config_key="path", reason=f"Invalid YAML in {path}: {exc}") from exc
        raw = loaded.get("unimem") or {}

    # Build storage config
    storage_raw = raw.get("storage") or {}
    storage_base = storage_defaults or StorageConfig()
    storage = StorageConfig(
        backend=_env_override("STORAGE_BACKEND", storage_raw.get("backend", storage_base.backend)),
        sqlite_path=_env_override("SQLITE_PATH", storage_raw.get("sqlite_path", storage_base.sqlite_path)),
    )

    # Build embedding config
    emb_raw = raw.get("embedding") or {}
    embedding = EmbeddingConfig(
        provider=_env_override("EMBEDDING_PROVIDER", emb_raw.get("provider", "none")),
        model=_env_override("EMBEDDING_MODEL", emb_raw.get("model", "text-embedding-3-small")),
        api_key=_env_override("EMBEDDING_API_KEY", emb_raw.get("api_key")),
        base_url=_env_override("EMBEDDING_BASE_URL", emb_raw.get("base_url", "https://api.openai.com/v1")),
        dimensions=emb_raw.get("dimensions"),
        timeout_seconds=_env_override("EMBEDDING_TIMEOUT_SECONDS", float(emb_raw.get("timeout_seconds", 30.0))),
        max_retries=_env_override("EMBEDDING_MAX_RETRIES", emb_raw.get("max_retries", 3)),
        retry_base_delay_seconds=float(emb_raw.get("retry_base_delay_seconds", 1.0)),
        retry_max_delay_seconds=float(emb_raw.get("retry_max_delay_seconds", 30.0)),
    )

    # Build consolidation config
    cons_raw = raw.get("consolidation") or {}
    consolidation = ConsolidationConfig(
        enabled=_env_override("CONSOLIDATION_ENABLED", cons_raw.get("enabled", False)),
        interval_seconds=_env_override("CONSOLIDATION_INTERVAL_SECONDS", cons_raw.get("interval_seconds", 86400)),
        working_max_age_days=float(cons_raw.get("working_max_age_days", 7.0)),
        completed_task_max_age_days=float(cons_raw.get("completed_task_max_age_days", 30.0)),
        fault_isolation=cons_raw.get("fault_isolation", True),
    )

    # Build retrieval config
    ret_raw = raw.get("retrieval") or {}
    weights = dict(DEFAULT_LAYER_WEIGHTS)
    weights.update(ret_raw.get("layer_weights") or {})
    retrieval = RetrievalConfig(
        max_results=_env_override("RETRIEVAL_MAX_RESULTS", ret_raw.get("max_results", 10)),
        similarity_threshold=_env_override(
            "RETRIEVAL_SIMILARITY_THRESHOLD", float(ret_raw.get("similarity_threshold", 0.7))
        ),
        layer_weights=weights,
        recency_decay=float(ret_raw.get("recency_decay", 0.1)),
        link_boost=float(ret_raw.get("link_boost", 0.2)),
    )

    # Build replication config
    rep_raw = raw.get("replication") or {}
    replication = ReplicationConfig(
        enabled=_env_override("REPLICATION_ENABLED", rep_raw.get("enabled", False)),
        server_url=_env_override("SYNC_SERVER_URL", rep_raw.get("server_url")),
        auth_token=_env_override("SYNC_AUTH_TOKEN", rep_raw.get("auth_token")),
        client_id=_env_override("SYNC_CLIENT_ID", rep_raw.get("client_id")),
        sync_interval_seconds=_env_override("SYNC_INTERVAL_SECONDS", rep_raw.get("sync_interval_seconds", 30)),
        conflict_resolution=_env_override(
            "SYNC_CONFLICT_RESOLUTION", rep_raw.get("conflict_resolution", "manual")
        ),
        pull_limit=rep_raw.get("pull_limit", 100),
        timeout_seconds=float(rep_raw.get("timeout_seconds", 30.0)),
        max_retries=rep_raw.get("max_retries", 3),
    )

    # Build observability config
    obs_raw = raw.get("observability") or {}
    observability = ObservabilityConfig(
        log_level=_env_override("LOG_LEVEL", obs_raw.get("log_level", "INFO")),
        json_logs=_env_override("JSON_LOGS", obs_raw.get("json_logs", False)),
    )

    config = UnimemConfig(
        version=str(raw.get("version", "1.0")),
        storage=storage,
        embedding=embedding,
        layers=_build_layers(raw.get("layers")),
        consolidation=consolidation,
        retrieval=retrieval,
        replication=replication,
        observability=observability,
    )
    _validate(config)
    return config

