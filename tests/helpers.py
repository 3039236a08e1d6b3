"""Shared builders for the test modules."""

from datetime import timedelta
from typing import Optional

from unimem.core.memory_model import EntityDraft, EntityType, MemoryLayerType, build_entity, utc_now


def draft(entity_type=EntityType.DAILY_NOTE, title="Note", content="", **kwargs) -> EntityDraft:
    return EntityDraft(type=entity_type, title=title, content=content, **kwargs)


def make_entity(
    entity_id: str,
    entity_type=EntityType.PERSON,
    layer: Optional[MemoryLayerType] = None,
    title: str = "Entity",
    content: str = "",
    age_days: float = 0,
    **fields,
):
    """Entity built directly (bypassing the engine), for storage and ranking tests."""
    when = utc_now() - timedelta(days=age_days)
    return build_entity(
        entity_type,
        id=entity_id,
        title=title,
        content=content,
        memory_layer=layer or MemoryLayerType.EPISODIC,
        created_at=when,
        updated_at=when,
        **fields,
    )


class FakeResponse:
    """Stand-in for an aiohttp response used as an async context manager."""

    def __init__(self, status=200, payload=None):
        self.status = status
        self.payload = payload

    async def json(self, content_type=None):
        return self.payload

    async def text(self):
        return str(self.payload)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """
    Replays queued responses (or raises queued exceptions) in order and
    records every request as ``(method, url, kwargs)``.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        self.closed = True
