"""
Tests for the EventBus
======================
Subscription, wildcard matching, filtering, handler error isolation,
coroutine handlers and metrics.
"""

import asyncio

from unimem.events import Event, EventBus, EventType


class TestEventBus:

    def test_subscribe_and_publish(self, event_bus):
        received = []
        event_bus.subscribe("entity:created", received.append)

        event = event_bus.publish("entity:created", {"id": "e1"})

        assert received == [event]
        assert isinstance(event, Event)
        assert event.payload["id"] == "e1"
        assert event.source == "local"

    def test_enum_event_type(self, event_bus):
        received = []
        event_bus.subscribe(EventType.SYNC_COMPLETED, received.append)
        event_bus.publish(EventType.SYNC_COMPLETED, {})
        assert received[0].type == "sync:completed"

    def test_wildcard_subscription(self, event_bus):
        received = []
        event_bus.subscribe("entity:*", lambda e: received.append(e.type))

        event_bus.publish("entity:created", {})
        event_bus.publish("entity:deleted", {})
        event_bus.publish("sync:started", {})

        assert received == ["entity:created", "entity:deleted"]

    def test_delivery_in_subscription_order(self, event_bus):
        order = []
        event_bus.subscribe("*", lambda e: order.append("first"))
        event_bus.subscribe("*", lambda e: order.append("second"))
        event_bus.publish("consolidation:started")
        assert order == ["first", "second"]

    def test_order_spans_patterns(self, event_bus):
        order = []
        event_bus.subscribe("*", lambda e: order.append("wildcard"))
        event_bus.subscribe("entity:created", lambda e: order.append("exact"))
        event_bus.subscribe("entity:*", lambda e: order.append("prefix"))
        event_bus.publish("entity:created")
        assert order == ["wildcard", "exact", "prefix"]

    def test_filter(self, event_bus):
        received = []
        event_bus.subscribe(
            "entity:*",
            received.append,
            event_filter=lambda e: e.payload.get("type") == "task",
        )
        event_bus.publish("entity:created", {"type": "person"})
        event_bus.publish("entity:created", {"type": "task"})
        assert len(received) == 1

    def test_unsubscribe(self, event_bus):
        received = []
        sub_id = event_bus.subscribe("entity:created", received.append)
        assert event_bus.unsubscribe(sub_id) is True
        assert event_bus.unsubscribe(sub_id) is False
        event_bus.publish("entity:created", {})
        assert received == []

    def test_clear(self, event_bus):
        event_bus.subscribe("*", lambda e: None)
        event_bus.subscribe("sync:*", lambda e: None)
        assert event_bus.subscription_count == 2
        event_bus.clear()
        assert event_bus.subscription_count == 0


class TestErrorIsolation:

    def test_failing_handler_does_not_block_others(self, event_bus):
        received = []

        def broken(event):
            raise RuntimeError("handler exploded {with braces}")

        event_bus.subscribe("entity:created", broken)
        event_bus.subscribe("entity:created", received.append)

        event_bus.publish("entity:created", {"id": "e1"})

        assert len(received) == 1
        assert event_bus.get_metrics()["handler_errors"] == 1

    def test_failing_filter_skips_handler(self, event_bus):
        received = []

        def bad_filter(event):
            raise KeyError("missing")

        event_bus.subscribe("entity:created", received.append, event_filter=bad_filter)
        event_bus.publish("entity:created", {})

        assert received == []
        assert event_bus.get_metrics()["handler_errors"] == 1


class TestAsyncHandlers:

    async def test_coroutine_handler_runs_on_loop(self, event_bus):
        received = []

        async def handler(event):
            await asyncio.sleep(0)
            received.append(event.payload)

        event_bus.subscribe("sync:completed", handler)
        event_bus.publish("sync:completed", {"pushed": 1})

        assert event_bus.get_metrics()["pending_tasks"] == 1
        await event_bus.drain()
        assert received == [{"pushed": 1}]
        assert event_bus.get_metrics()["pending_tasks"] == 0

    async def test_coroutine_failure_is_counted(self, event_bus):
        async def handler(event):
            raise ValueError("late failure")

        event_bus.subscribe("sync:started", handler)
        event_bus.publish("sync:started")
        await event_bus.drain()
        await asyncio.sleep(0)

        assert event_bus.get_metrics()["handler_errors"] == 1

    def test_coroutine_outside_loop_is_dropped(self, event_bus):
        async def handler(event):
            raise AssertionError("must not run")

        event_bus.subscribe("sync:started", handler)
        event_bus.publish("sync:started")
        assert event_bus.get_metrics()["pending_tasks"] == 0


class TestHistoryAndMetrics:

    def test_history_pattern_and_limit(self):
        bus = EventBus(history_size=3)
        for i in range(5):
            bus.publish("entity:created", {"i": i})
        bus.publish("sync:started")

        history = bus.get_history()
        assert len(history) == 3
        assert history[-1].type == "sync:started"
        assert [e.payload["i"] for e in bus.get_history("entity:*")] == [3, 4]
        assert len(bus.get_history(limit=1)) == 1

    def test_metrics(self, event_bus):
        event_bus.subscribe("*", lambda e: None)
        event_bus.publish("entity:created")
        event_bus.publish("entity:updated")
        metrics = event_bus.get_metrics()
        assert metrics["events_published"] == 2
        assert metrics["subscription_count"] == 1
        assert metrics["history_size"] == 2

    def test_event_to_dict(self):
        event = Event(type="entity:deleted", payload={"id": "x"})
        data = event.to_dict()
        assert data["type"] == "entity:deleted"
        assert data["id"].startswith("evt_")
        assert data["timestamp"].endswith("+00:00")
