"""Typed in-process event channel.

Observers (node palette, status streams, metrics) subscribe to a concrete
event class and receive every published instance of it. Publishing never
fails because of a subscriber: handler errors are logged and swallowed at
this boundary only.

Usage:
    bus = EventBus()
    bus.subscribe(NodeTypeRegistered, lambda e: print(e.node_type))
    await bus.publish(NodeTypeRegistered(node_type="data.filter"))
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Type, TypeVar

import structlog

logger = structlog.get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Event:
    """Base class for all events."""

    occurred_at: datetime = field(default_factory=_now, kw_only=True)


@dataclass(frozen=True)
class NodeTypeRegistered(Event):
    node_type: str
    replaced: bool = False


@dataclass(frozen=True)
class NodeTypeUnregistered(Event):
    node_type: str


@dataclass(frozen=True)
class ExecutionStarted(Event):
    execution_id: str
    workflow_name: str
    node_count: int


@dataclass(frozen=True)
class NodeExecuted(Event):
    execution_id: str
    node_id: str
    node_type: str
    duration_ms: float
    ports: tuple = ()


@dataclass(frozen=True)
class NodeFailed(Event):
    execution_id: str
    node_id: str
    node_type: str
    error: str
    duration_ms: float = 0


@dataclass(frozen=True)
class ExecutionFinished(Event):
    execution_id: str
    status: str
    duration_ms: Optional[float] = None
    error: Optional[str] = None


E = TypeVar("E", bound=Event)
Handler = Callable[[Any], Any]


class EventBus:
    """Dispatches events to handlers registered for their exact class."""

    def __init__(self):
        self._handlers: Dict[Type[Event], List[Handler]] = {}
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, event_type: Type[E], handler: Callable[[E], Any]) -> None:
        """Register a sync or async handler for an event class."""
        self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: Type[Event], handler: Handler) -> bool:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def subscriber_count(self, event_type: Type[Event]) -> int:
        return len(self._handlers.get(event_type, []))

    @property
    def pending_count(self) -> int:
        """Async handlers scheduled by publish_nowait that have not finished."""
        return len(self._pending)

    async def publish(self, event: Event) -> None:
        """Deliver an event to every subscriber, in subscription order."""
        for handler in list(self._handlers.get(type(event), [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._log_failure(event, handler, e)

    def publish_nowait(self, event: Event) -> None:
        """Publish from synchronous code.

        Sync handlers run immediately; async handlers are scheduled on the
        running loop when there is one and dropped otherwise.
        """
        for handler in list(self._handlers.get(type(event), [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    self._schedule(event, handler, result)
            except Exception as e:
                self._log_failure(event, handler, e)

    async def drain(self) -> None:
        """Wait for async handlers scheduled by publish_nowait."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, event: Event, handler: Handler, awaitable: Any) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.debug("No running loop for async handler", event_type=type(event).__name__)
            return

        task = asyncio.ensure_future(awaitable)
        self._pending.add(task)

        def _done(t: asyncio.Task) -> None:
            self._pending.discard(t)
            if not t.cancelled() and t.exception() is not None:
                self._log_failure(event, handler, t.exception())

        task.add_done_callback(_done)

    @staticmethod
    def _log_failure(event: Event, handler: Handler, error: BaseException) -> None:
        logger.warning(
            "Event handler failed",
            event_type=type(event).__name__,
            handler=getattr(handler, "__qualname__", repr(handler)),
            error=str(error),
        )
