"""
Memory Models
=============
Data classes for the cognitive memory architecture: the four memory layers
(working, episodic, semantic, procedural) and the seven entity variants
that live in them.

Every variant shares the BaseEntity fields; type-specific fields (task
status, person email, ...) are plain dataclass attributes on the variant.
The ``entity_type`` class attribute is the discriminant, so an entity's
type is fixed by its class and can never change after creation.

Serialization uses the camelCase JSON layout shared by the storage
backends and the sync peer protocol.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, Iterable, List, Mapping, Optional, Type, Union

from loguru import logger

from unimem.core.exceptions import ValidationError


# --- Enumerations ---

class EntityType(str, Enum):
    """Discriminant of an entity variant."""
    DAILY_NOTE = "daily-note"
    PERSON = "person"
    COMPANY = "company"
    PROJECT = "project"
    TASK = "task"
    AREA = "area"
    RESOURCE = "resource"


class MemoryLayerType(str, Enum):
    """The four retention/processing tiers."""
    WORKING = "working"
    EPISODIC = "episodic"
    SEMANTIC = "semantic"
    PROCEDURAL = "procedural"


TASK_STATUSES = frozenset({"todo", "in-progress", "done", "cancelled"})
TASK_PRIORITIES = frozenset({"low", "medium", "high", "urgent"})
PROJECT_STATUSES = frozenset({"active", "paused", "completed", "archived"})
RESOURCE_TYPES = frozenset({"article", "book", "video", "tool", "reference"})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# --- Memory layers ---

@dataclass(frozen=True)
class RetentionPolicy:
    max_age: Optional[timedelta] = None
    max_items: Optional[int] = None
    consolidation_interval: Optional[timedelta] = None


@dataclass(frozen=True)
class MemoryLayer:
    """Static descriptor of a memory layer. Never mutated at runtime."""
    type: MemoryLayerType
    name: str
    description: str
    retention_policy: RetentionPolicy = field(default_factory=RetentionPolicy)


DEFAULT_MEMORY_LAYERS: tuple = (
    MemoryLayer(
        type=MemoryLayerType.WORKING,
        name="Working Memory",
        description="Short-term context: daily notes, current tasks",
        retention_policy=RetentionPolicy(
            max_age=timedelta(days=7),
            consolidation_interval=timedelta(days=1),
        ),
    ),
    MemoryLayer(
        type=MemoryLayerType.EPISODIC,
        name="Episodic Memory",
        description="Events and entities: people, companies, projects",
        retention_policy=RetentionPolicy(consolidation_interval=timedelta(days=7)),
    ),
    MemoryLayer(
        type=MemoryLayerType.SEMANTIC,
        name="Semantic Memory",
        description="Knowledge and concepts: areas, resources",
        retention_policy=RetentionPolicy(consolidation_interval=timedelta(days=30)),
    ),
    MemoryLayer(
        type=MemoryLayerType.PROCEDURAL,
        name="Procedural Memory",
        description="Actions and workflows: tasks, habits",
        retention_policy=RetentionPolicy(
            max_age=timedelta(days=90),  # completed tasks
            consolidation_interval=timedelta(days=7),
        ),
    ),
)

# Creation-time default only; existing entities are never validated against it.
DEFAULT_LAYER_FOR_TYPE: Dict[EntityType, MemoryLayerType] = {
    EntityType.DAILY_NOTE: MemoryLayerType.WORKING,
    EntityType.PERSON: MemoryLayerType.EPISODIC,
    EntityType.COMPANY: MemoryLayerType.EPISODIC,
    EntityType.PROJECT: MemoryLayerType.EPISODIC,
    EntityType.TASK: MemoryLayerType.PROCEDURAL,
    EntityType.AREA: MemoryLayerType.SEMANTIC,
    EntityType.RESOURCE: MemoryLayerType.SEMANTIC,
}


def default_layer_for_type(entity_type: Union[EntityType, str]) -> MemoryLayerType:
    return DEFAULT_LAYER_FOR_TYPE[EntityType(entity_type)]


# --- Entities ---

@dataclass
class EntityLink:
    """Directed, weighted edge to another entity. Duplicates are allowed."""
    target_id: str
    target_type: EntityType
    relationship: str = "related"
    strength: float = 1.0

    def __post_init__(self):
        self.target_type = EntityType(self.target_type)
        if not 0.0 <= self.strength <= 1.0:
            raise ValidationError("strength", "link strength must be within [0, 1]", self.strength)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "targetId": self.target_id,
            "targetType": self.target_type.value,
            "relationship": self.relationship,
            "strength": self.strength,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EntityLink":
        return cls(
            target_id=data.get("targetId", data.get("target_id")),
            target_type=data.get("targetType", data.get("target_type")),
            relationship=data.get("relationship", "related"),
            strength=float(data.get("strength", 1.0)),
        )


@dataclass
class BaseEntity:
    id: str
    title: str
    content: str
    memory_layer: MemoryLayerType
    created_at: datetime
    updated_at: datetime
    embedding: Optional[List[float]] = None
    links: List[EntityLink] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)

    entity_type: ClassVar[EntityType]

    def __post_init__(self):
        self.memory_layer = MemoryLayerType(self.memory_layer)

    @property
    def type(self) -> EntityType:
        return self.entity_type

    @property
    def embedding_text(self) -> str:
        """Text fed to the embedding provider."""
        return f"{self.title} {self.content}"

    def variant_fields(self) -> Dict[str, Any]:
        """Type-specific fields as an opaque metadata mapping."""
        return {
            f.name: getattr(self, f.name)
            for f in dataclasses.fields(self)
            if f.name not in BASE_FIELDS
        }


BASE_FIELDS = frozenset(f.name for f in dataclasses.fields(BaseEntity))


@dataclass
class DailyNote(BaseEntity):
    entity_type: ClassVar[EntityType] = EntityType.DAILY_NOTE
    date: str = field(default_factory=lambda: date.today().isoformat())
    summary: Optional[str] = None


@dataclass
class Person(BaseEntity):
    entity_type: ClassVar[EntityType] = EntityType.PERSON
    email: Optional[str] = None
    company: Optional[str] = None
    role: Optional[str] = None
    last_contact: Optional[datetime] = None


@dataclass
class Company(BaseEntity):
    entity_type: ClassVar[EntityType] = EntityType.COMPANY
    industry: Optional[str] = None
    website: Optional[str] = None
    employees: List[str] = field(default_factory=list)


@dataclass
class Project(BaseEntity):
    entity_type: ClassVar[EntityType] = EntityType.PROJECT
    status: str = "active"
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    participants: List[str] = field(default_factory=list)

    def __post_init__(self):
        super().__post_init__()
        if self.status not in PROJECT_STATUSES:
            raise ValidationError("status", f"must be one of {sorted(PROJECT_STATUSES)}", self.status)


@dataclass
class Task(BaseEntity):
    entity_type: ClassVar[EntityType] = EntityType.TASK
    status: str = "todo"
    priority: str = "medium"
    due_date: Optional[datetime] = None
    project_id: Optional[str] = None

    def __post_init__(self):
        super().__post_init__()
        if self.status not in TASK_STATUSES:
            raise ValidationError("status", f"must be one of {sorted(TASK_STATUSES)}", self.status)
        if self.priority not in TASK_PRIORITIES:
            raise ValidationError("priority", f"must be one of {sorted(TASK_PRIORITIES)}", self.priority)

    @property
    def is_closed(self) -> bool:
        return self.status in ("done", "cancelled")


@dataclass
class Area(BaseEntity):
    entity_type: ClassVar[EntityType] = EntityType.AREA
    scope: str = ""


@dataclass
class Resource(BaseEntity):
    entity_type: ClassVar[EntityType] = EntityType.RESOURCE
    source_url: Optional[str] = None
    resource_type: str = "reference"

    def __post_init__(self):
        super().__post_init__()
        if self.resource_type not in RESOURCE_TYPES:
            raise ValidationError("resource_type", f"must be one of {sorted(RESOURCE_TYPES)}", self.resource_type)


Entity = Union[DailyNote, Person, Company, Project, Task, Area, Resource]

ENTITY_CLASSES: Dict[EntityType, Type[BaseEntity]] = {
    cls.entity_type: cls
    for cls in (DailyNote, Person, Company, Project, Task, Area, Resource)
}

# Variant fields holding datetimes (serialized as ISO-8601)
DATETIME_FIELDS = frozenset({"created_at", "updated_at", "last_contact", "start_date", "end_date", "due_date"})


def variant_field_names(entity_type: Union[EntityType, str]) -> frozenset:
    cls = ENTITY_CLASSES[EntityType(entity_type)]
    return frozenset(f.name for f in dataclasses.fields(cls) if f.name not in BASE_FIELDS)


@dataclass
class EntityDraft:
    """
    Input to entity creation: everything except id, timestamps and embedding.

    ``memory_layer`` defaults to the type's creation layer; ``fields`` holds
    the variant-specific values (e.g. ``{"status": "todo"}`` for a task).
    """
    type: EntityType
    title: str
    content: str = ""
    memory_layer: Optional[MemoryLayerType] = None
    links: List[EntityLink] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    fields: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.type = EntityType(self.type)
        if self.memory_layer is not None:
            self.memory_layer = MemoryLayerType(self.memory_layer)
        unknown = set(self.fields) - variant_field_names(self.type)
        if unknown:
            raise ValidationError(
                "fields", f"unknown fields for {self.type.value}: {sorted(unknown)}"
            )


def build_entity(
    entity_type: Union[EntityType, str],
    **values: Any,
) -> BaseEntity:
    """Instantiate the variant class for ``entity_type``."""
    cls = ENTITY_CLASSES[EntityType(entity_type)]
    allowed = {f.name for f in dataclasses.fields(cls)}
    unknown = set(values) - allowed
    if unknown:
        raise ValidationError("fields", f"unknown fields for {cls.entity_type.value}: {sorted(unknown)}")
    return cls(**values)


# --- Serialization ---

def _to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _to_snake(name: str) -> str:
    out = []
    for ch in name:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)


def _serialize_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt is not None and dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def entity_to_dict(entity: BaseEntity, include_embedding: bool = True) -> Dict[str, Any]:
    """Serialize an entity into the camelCase JSON layout."""
    data: Dict[str, Any] = {
        "id": entity.id,
        "type": entity.type.value,
        "memoryLayer": entity.memory_layer.value,
        "title": entity.title,
        "content": entity.content,
        "links": [link.to_dict() for link in entity.links],
        "tags": list(entity.tags),
        "createdAt": entity.created_at.isoformat(),
        "updatedAt": entity.updated_at.isoformat(),
    }
    if include_embedding:
        data["embedding"] = list(entity.embedding) if entity.embedding is not None else None
    for name, value in entity.variant_fields().items():
        data[_to_camel(name)] = _serialize_value(value)
    return data


def entity_from_dict(data: Mapping[str, Any]) -> BaseEntity:
    """Rebuild an entity from its camelCase (or snake_case) JSON layout."""
    try:
        entity_type = EntityType(data["type"])
    except (KeyError, ValueError) as exc:
        raise ValidationError("type", "missing or unknown entity type", data.get("type")) from exc

    cls = ENTITY_CLASSES[entity_type]
    allowed = {f.name for f in dataclasses.fields(cls)}
    values: Dict[str, Any] = {}
    for key, value in data.items():
        if key == "type":
            continue
        name = _to_snake(key)
        if name not in allowed:
            logger.debug(f"Ignoring unknown field '{key}' for {entity_type.value}")
            continue
        if name in DATETIME_FIELDS:
            value = parse_datetime(value)
        elif name == "links":
            value = [EntityLink.from_dict(link) for link in (value or [])]
        elif name == "embedding" and value is not None:
            value = [float(v) for v in value]
        elif name == "tags":
            value = list(value or [])
        values[name] = value

    missing = {"id", "title", "memory_layer", "created_at", "updated_at"} - set(values)
    if missing:
        raise ValidationError("entity", f"missing required fields: {sorted(missing)}")
    values.setdefault("content", "")
    return cls(**values)


# --- Queries & results ---

@dataclass
class EntityFilter:
    """
    Predicate over entities. Every populated criterion must hold; ``tags``
    requires all listed tags to be present.
    """
    types: Optional[List[EntityType]] = None
    memory_layers: Optional[List[MemoryLayerType]] = None
    tags: Optional[List[str]] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    predicate: Optional[Callable[[BaseEntity], bool]] = None

    def __post_init__(self):
        if self.types is not None:
            self.types = [EntityType(t) for t in self.types]
        if self.memory_layers is not None:
            self.memory_layers = [MemoryLayerType(m) for m in self.memory_layers]

    def matches(self, entity: BaseEntity) -> bool:
        if self.types and entity.type not in self.types:
            return False
        if self.memory_layers and entity.memory_layer not in self.memory_layers:
            return False
        if self.tags and not set(self.tags).issubset(entity.tags):
            return False
        if self.created_after and entity.created_at < self.created_after:
            return False
        if self.created_before and entity.created_at > self.created_before:
            return False
        if self.predicate is not None and not self.predicate(entity):
            return False
        return True


@dataclass
class SearchResult:
    entity: BaseEntity
    score: float
    raw_score: Optional[float] = None
    highlights: List[str] = field(default_factory=list)


@dataclass
class MemoryStats:
    total_entities: int
    by_layer: Dict[str, int]
    by_type: Dict[str, int]
    vector_count: int
    storage_size: int = 0

    @classmethod
    def from_entities(cls, entities: Iterable[BaseEntity], storage_size: int = 0) -> "MemoryStats":
        by_layer = {layer.value: 0 for layer in MemoryLayerType}
        by_type = {etype.value: 0 for etype in EntityType}
        total = 0
        vectors = 0
        for entity in entities:
            total += 1
            by_layer[entity.memory_layer.value] += 1
            by_type[entity.type.value] += 1
            if entity.embedding:
                vectors += 1
        return cls(
            total_entities=total,
            by_layer=by_layer,
            by_type=by_type,
            vector_count=vectors,
            storage_size=storage_size,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalEntities": self.total_entities,
            "byLayer": dict(self.by_layer),
            "byType": dict(self.by_type),
            "vectorCount": self.vector_count,
            "storageSize": self.storage_size,
        }
