"""
EventBus - In-Process Publish-Subscribe for Memory Events
=========================================================

Synchronous event bus used by the memory engine, the consolidation engine
and the sync manager to announce lifecycle changes.

Features:
    - Wildcard pattern matching for event types (fnmatch)
    - Event filtering with custom predicates
    - Per-handler error isolation: a failing handler is logged and counted,
      it never aborts the publisher or starves the other handlers
    - Coroutine handlers are scheduled on the running loop
    - Bounded history and delivery metrics

Event Types:
    entity:*
        - entity:created
        - entity:updated
        - entity:deleted
    sync:*
        - sync:started
        - sync:completed
        - sync:conflict
    consolidation:*
        - consolidation:started
        - consolidation:completed

Example:
    ```python
    bus = EventBus()

    def on_created(event):
        print(f"New entity: {event.payload['id']}")

    sub_id = bus.subscribe("entity:created", on_created)
    bus.subscribe("sync:*", on_sync_event)

    bus.publish("entity:created", {"id": "abc123"})
    bus.unsubscribe(sub_id)
    ```
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from fnmatch import fnmatch
from typing import Any, Callable, Dict, List, Optional, Set, Union

from loguru import logger


class EventType(str, Enum):
    ENTITY_CREATED = "entity:created"
    ENTITY_UPDATED = "entity:updated"
    ENTITY_DELETED = "entity:deleted"
    SYNC_STARTED = "sync:started"
    SYNC_COMPLETED = "sync:completed"
    SYNC_CONFLICT = "sync:conflict"
    CONSOLIDATION_STARTED = "consolidation:started"
    CONSOLIDATION_COMPLETED = "consolidation:completed"


# =============================================================================
# Event Data Structure
# =============================================================================

@dataclass
class Event:
    """
    A single published event.

    Attributes:
        type: Event type (e.g., "entity:created")
        payload: Event-specific data
        timestamp: When the event was published
        source: Origin of the event ("local" for in-process changes)
        id: Unique event identifier
    """
    type: str
    payload: Any = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = "local"
    id: str = field(default_factory=lambda: f"evt_{uuid.uuid4().hex}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
        }


EventHandler = Callable[[Event], Any]
EventFilter = Callable[[Event], bool]


@dataclass
class Subscription:
    """Represents a single event subscription."""
    id: str
    event_pattern: str
    handler: EventHandler
    filter: Optional[EventFilter] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    delivery_count: int = 0
    error_count: int = 0
    last_delivery_at: Optional[datetime] = None


# =============================================================================
# EventBus Implementation
# =============================================================================

class EventBus:
    """
    Synchronous publish-subscribe event bus.

    publish() calls every matching handler in subscription order before it
    returns. Handler exceptions are caught and logged per handler. A handler
    returning an awaitable has it scheduled as a task on the running event
    loop; failures of that task are logged when it finishes.
    """

    def __init__(self, history_size: int = 1000):
        # {subscription_id: Subscription}, in subscription order
        self._subscriptions: Dict[str, Subscription] = {}
        self._history: deque = deque(maxlen=history_size)
        self._pending_tasks: Set[asyncio.Task] = set()

        self._events_published = 0
        self._handler_errors = 0

    # ---- Subscription management ----------------------------------- #

    def subscribe(
        self,
        event_pattern: Union[str, EventType],
        handler: EventHandler,
        event_filter: Optional[EventFilter] = None,
    ) -> str:
        """
        Subscribe to events matching a pattern.

        Args:
            event_pattern: Event type or wildcard pattern ("entity:*", "*")
            handler: Callable invoked with the Event; may be a coroutine function
            event_filter: Optional predicate evaluated before the handler

        Returns:
            Subscription ID for unsubscribe()
        """
        pattern = event_pattern.value if isinstance(event_pattern, EventType) else event_pattern
        subscription_id = f"sub_{uuid.uuid4().hex[:12]}"
        self._subscriptions[subscription_id] = Subscription(
            id=subscription_id,
            event_pattern=pattern,
            handler=handler,
            filter=event_filter,
        )
        logger.debug(f"[EventBus] Subscribed {subscription_id} to '{pattern}'")
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. Returns True if it existed."""
        subscription = self._subscriptions.pop(subscription_id, None)
        if subscription is None:
            return False
        logger.debug(f"[EventBus] Unsubscribed {subscription_id} from '{subscription.event_pattern}'")
        return True

    def clear(self) -> None:
        self._subscriptions.clear()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    # ---- Publishing ------------------------------------------------- #

    def publish(
        self,
        event_type: Union[str, EventType],
        payload: Any = None,
        source: str = "local",
    ) -> Event:
        """Deliver an event to every matching subscriber and return it."""
        name = event_type.value if isinstance(event_type, EventType) else event_type
        event = Event(type=name, payload=payload, source=source)
        self._events_published += 1
        self._history.append(event)

        for sub in self._find_matching_subscriptions(event):
            self._deliver(event, sub)

        return event

    def _find_matching_subscriptions(self, event: Event) -> List[Subscription]:
        matches = []
        # Snapshot: handlers may (un)subscribe while we deliver
        for sub in list(self._subscriptions.values()):
            if not fnmatch(event.type, sub.event_pattern):
                continue
            if sub.filter is not None:
                try:
                    if not sub.filter(event):
                        continue
                except Exception as e:
                    logger.error(f"[EventBus] Filter of {sub.id} failed for {event.type}: {e}")
                    sub.error_count += 1
                    self._handler_errors += 1
                    continue
            matches.append(sub)
        return matches

    def _deliver(self, event: Event, subscription: Subscription) -> None:
        try:
            result = subscription.handler(event)
        except Exception as e:
            logger.exception(f"[EventBus] Handler {subscription.id} error for {event.type}: {e}")
            subscription.error_count += 1
            self._handler_errors += 1
            return

        subscription.delivery_count += 1
        subscription.last_delivery_at = datetime.now(timezone.utc)

        if inspect.isawaitable(result):
            self._schedule(result, event, subscription)

    def _schedule(self, awaitable, event: Event, subscription: Subscription) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                f"[EventBus] Handler {subscription.id} returned an awaitable outside "
                f"an event loop; dropped for {event.type}"
            )
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = loop.create_task(awaitable)
        self._pending_tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._pending_tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(f"[EventBus] Async handler {subscription.id} failed for {event.type}: {exc}")
                subscription.error_count += 1
                self._handler_errors += 1

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for coroutine handlers scheduled by publish() to finish."""
        while self._pending_tasks:
            await asyncio.gather(*list(self._pending_tasks), return_exceptions=True)

    # ---- History & metrics ------------------------------------------ #

    def get_history(self, event_type: Optional[str] = None, limit: int = 100) -> List[Event]:
        history = list(self._history)
        if event_type:
            history = [e for e in history if fnmatch(e.type, event_type)]
        return history[-limit:]

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "events_published": self._events_published,
            "handler_errors": self._handler_errors,
            "subscription_count": self.subscription_count,
            "pending_tasks": len(self._pending_tasks),
            "history_size": len(self._history),
        }
