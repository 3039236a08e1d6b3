"""
Sync Peer Wire Models
=====================
Pydantic models for the push/pull protocol. Field names are snake_case in
Python and camelCase on the wire.

    POST {server}/api/sync/push   PushRequest  -> PushResponse
    GET  {server}/api/sync/pull   PullRequest (query string) -> PullResponse

Entities travel in the camelCase layout of entity_to_dict(). Sync versions
are integers issued by the peer; a higher value is a newer state.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PushRequest(WireModel):
    client_id: str = Field(..., min_length=1)
    entities: List[Dict[str, Any]] = Field(default_factory=list)
    deletions: List[str] = Field(default_factory=list)
    last_sync_version: Optional[int] = None
    # entity id -> version the client last reconciled against (None = new)
    base_versions: Dict[str, Optional[int]] = Field(default_factory=dict)

    @field_validator("entities")
    @classmethod
    def entities_have_ids(cls, v: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        for entity in v:
            if not entity.get("id") or not entity.get("type"):
                raise ValueError("every pushed entity needs an id and a type")
        return v


class PushConflict(WireModel):
    entity_id: str
    # None when the peer holds a deletion
    server_version: Optional[Dict[str, Any]] = None
    server_sync_version: Optional[int] = None


class PushResponse(WireModel):
    success: bool
    sync_version: int
    conflicts: List[PushConflict] = Field(default_factory=list)
    # entity id -> version assigned to each accepted change
    accepted: Dict[str, int] = Field(default_factory=dict)


class PullRequest(WireModel):
    client_id: str = Field(..., min_length=1)
    last_sync_version: Optional[int] = None
    limit: int = Field(default=100, ge=1, le=10_000)

    def to_query(self) -> Dict[str, str]:
        return {k: str(v) for k, v in self.to_wire().items()}


class PullResponse(WireModel):
    entities: List[Dict[str, Any]] = Field(default_factory=list)
    deleted: List[str] = Field(default_factory=list)
    sync_version: int
    has_more: bool = False
    # entity id -> version of the pulled state
    entity_versions: Dict[str, int] = Field(default_factory=dict)
