"""Tests for the typed event bus."""

import pytest
from structlog.testing import capture_logs

from core.events import EventBus, ExecutionFinished, NodeTypeRegistered


@pytest.mark.unit
class TestEventBus:
    """Subscription and delivery."""

    async def test_publish_to_sync_and_async_handlers(self):
        bus = EventBus()
        seen = []

        async def async_handler(event):
            seen.append(("async", event.node_type))

        bus.subscribe(NodeTypeRegistered, lambda e: seen.append(("sync", e.node_type)))
        bus.subscribe(NodeTypeRegistered, async_handler)

        await bus.publish(NodeTypeRegistered(node_type="data.filter"))
        assert seen == [("sync", "data.filter"), ("async", "data.filter")]

    async def test_dispatch_by_exact_type(self):
        bus = EventBus()
        seen = []
        bus.subscribe(ExecutionFinished, seen.append)
        await bus.publish(NodeTypeRegistered(node_type="x"))
        assert seen == []

    async def test_failing_handler_does_not_break_publisher(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("observer bug")

        bus.subscribe(NodeTypeRegistered, broken)
        bus.subscribe(NodeTypeRegistered, seen.append)

        with capture_logs() as logs:
            await bus.publish(NodeTypeRegistered(node_type="x"))
            bus.publish_nowait(NodeTypeRegistered(node_type="y"))

        assert [e.node_type for e in seen] == ["x", "y"]
        failures = [log for log in logs if log["event"] == "Event handler failed"]
        assert len(failures) == 2
        assert failures[0]["event_type"] == "NodeTypeRegistered"
        assert failures[0]["error"] == "observer bug"

    async def test_async_handlers_from_sync_publisher(self):
        bus = EventBus()
        seen = []

        async def handler(event):
            seen.append(event.node_type)

        async def broken(event):
            raise RuntimeError("late bug")

        bus.subscribe(NodeTypeRegistered, handler)
        bus.subscribe(NodeTypeRegistered, broken)

        with capture_logs() as logs:
            bus.publish_nowait(NodeTypeRegistered(node_type="x"))
            assert bus.pending_count == 2
            await bus.drain()

        assert seen == ["x"]
        assert bus.pending_count == 0
        assert [log["error"] for log in logs if log["event"] == "Event handler failed"] == ["late bug"]

    def test_async_handler_without_loop_is_dropped(self):
        bus = EventBus()

        async def handler(event):
            raise AssertionError("should not run")

        bus.subscribe(NodeTypeRegistered, handler)
        bus.publish_nowait(NodeTypeRegistered(node_type="x"))
        assert bus.pending_count == 0

    def test_unsubscribe(self):
        bus = EventBus()
        handler = lambda e: None  # noqa: E731
        bus.subscribe(NodeTypeRegistered, handler)
        assert bus.subscriber_count(NodeTypeRegistered) == 1
        assert bus.unsubscribe(NodeTypeRegistered, handler) is True
        assert bus.unsubscribe(NodeTypeRegistered, handler) is False
        assert bus.subscriber_count(NodeTypeRegistered) == 0

    def test_events_are_immutable(self):
        event = NodeTypeRegistered(node_type="x")
        with pytest.raises(Exception):
            event.node_type = "y"
        assert event.occurred_at is not None
