"""
Unimem Events
=============
In-process publish/subscribe.

Event Types:
    - entity:created / entity:updated / entity:deleted
    - consolidation:started / consolidation:completed
    - sync:started / sync:completed / sync:conflict

Patterns are fnmatch globs, so ``entity:*`` receives every lifecycle event.
"""

from .event_bus import Event, EventBus, EventType

__all__ = ["Event", "EventBus", "EventType"]
