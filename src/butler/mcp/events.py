"""Event bus infrastructure for registry status, tool and resource notifications.

Listeners subscribe by event name (or event class) and are invoked
synchronously in registration order. A failing listener is logged and
never prevents delivery to the remaining listeners. Consumers that want to
process events on their own schedule open an :class:`EventChannel`, which
queues immutable event records instead of running code at emit time.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Mapping
from weakref import WeakMethod, ref

from .models import Resource, ServerConfig, ServerStatus, Tool

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Event:
    """Base class for all registry events.

    Subclasses set ``name`` to the string listeners subscribe with.
    """

    name: ClassVar[str] = "event"


Handler = Callable[[Event], None]


@dataclass(frozen=True, slots=True)
class ServerStatusChanged(Event):
    """Emitted on every lifecycle status transition."""

    name: ClassVar[str] = "server_status_changed"

    server_name: str
    status: ServerStatus
    error: str | None = None


@dataclass(frozen=True, slots=True)
class ServerStarted(Event):
    """Emitted once a server is running with its resolved capabilities."""

    name: ClassVar[str] = "server_started"

    server_name: str
    tools: tuple[Tool, ...] = ()
    resources: tuple[Resource, ...] = ()


@dataclass(frozen=True, slots=True)
class ServerStopped(Event):
    name: ClassVar[str] = "server_stopped"

    server_name: str


@dataclass(frozen=True, slots=True)
class ServerAdded(Event):
    name: ClassVar[str] = "server_added"

    server_name: str
    config: ServerConfig


@dataclass(frozen=True, slots=True)
class ServerRemoved(Event):
    name: ClassVar[str] = "server_removed"

    server_name: str


@dataclass(frozen=True, slots=True)
class ServerConfigUpdated(Event):
    name: ClassVar[str] = "server_config_updated"

    server_name: str
    config: ServerConfig


@dataclass(frozen=True, slots=True)
class ToolCalled(Event):
    """Emitted after the transport resolved a tool call."""

    name: ClassVar[str] = "tool_called"

    server_name: str
    tool_name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)
    result: Any = None


@dataclass(frozen=True, slots=True)
class ToolFailed(Event):
    """Emitted after the transport rejected a tool call."""

    name: ClassVar[str] = "tool_error"

    server_name: str
    tool_name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)
    error: str = ""


@dataclass(frozen=True, slots=True)
class ResourceRead(Event):
    name: ClassVar[str] = "resource_read"

    server_name: str
    uri: str
    result: Any = None


@dataclass(frozen=True, slots=True)
class ResourceFailed(Event):
    name: ClassVar[str] = "resource_error"

    server_name: str
    uri: str
    error: str = ""


EVENT_TYPES: tuple[type[Event], ...] = (
    ServerStatusChanged,
    ServerStarted,
    ServerStopped,
    ServerAdded,
    ServerRemoved,
    ServerConfigUpdated,
    ToolCalled,
    ToolFailed,
    ResourceRead,
    ResourceFailed,
)
EVENT_NAMES: tuple[str, ...] = tuple(event_type.name for event_type in EVENT_TYPES)


def _event_key(event: str | type[Event]) -> str:
    if isinstance(event, str):
        key = event
    else:
        key = event.name
    if key not in EVENT_NAMES:
        raise ValueError(f"Unknown event name '{key}'")
    return key


class EventBus:
    """A name-keyed publish-subscribe bus for registry notifications.

    Example::

        bus = EventBus()

        def on_started(event: ServerStarted) -> None:
            print(f"{event.server_name}: {len(event.tools)} tools")

        bus.add_event_listener("server_started", on_started)
        bus.publish(ServerStarted(server_name="git"))
        bus.remove_event_listener("server_started", on_started)

    Thread Safety:
        Not thread-safe. Use from the event loop thread only.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[str, list[_HandlerRef]] = defaultdict(list)

    def add_event_listener(self, event: str | type[Event], handler: Handler) -> None:
        """Register ``handler`` for ``event``.

        Subscribing the same handler twice results in two invocations.
        Bound methods are held weakly and dropped once their owner is collected.
        """
        key = _event_key(event)
        self._handlers[key].append(_HandlerRef.create(handler))
        logger.debug("Subscribed handler %s to %s", _handler_name(handler), key)

    def remove_event_listener(self, event: str | type[Event], handler: Handler) -> None:
        """Remove the first registration of ``handler``. Unknown handlers are ignored."""
        key = _event_key(event)
        handlers = self._handlers.get(key)
        if handlers is None:
            return

        for i, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(i)
                logger.debug("Unsubscribed handler %s from %s", _handler_name(handler), key)
                return

    def publish(self, event: Event) -> None:
        """Deliver ``event`` to every handler registered for its name.

        Handlers run synchronously in registration order; an exception is
        logged and the remaining handlers still run.
        """
        handlers = self._handlers.get(event.name)
        if not handlers:
            return

        logger.debug("Publishing %s to %d handler(s)", event.name, len(handlers))

        dead: list[_HandlerRef] = []
        # Snapshot so handlers may (un)subscribe while we iterate.
        for handler_ref in list(handlers):
            handler = handler_ref.resolve()
            if handler is None:
                dead.append(handler_ref)
                continue

            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s raised exception for event %s",
                    _handler_name(handler),
                    event.name,
                )

        for handler_ref in dead:
            if handler_ref in handlers:
                handlers.remove(handler_ref)

    def channel(self, *events: str | type[Event], maxsize: int = 0) -> "EventChannel":
        """Open a queue-backed channel receiving ``events`` (all events when empty)."""

        keys = tuple(_event_key(event) for event in events) or EVENT_NAMES
        return EventChannel(self, keys, maxsize=maxsize)

    def clear(self) -> None:
        """Remove all registered handlers."""
        self._handlers.clear()
        logger.debug("Cleared all event handlers")

    def handler_count(self, event: str | type[Event] | None = None) -> int:
        """Return the number of handlers for ``event`` (or across all events)."""
        if event is not None:
            return len(self._handlers.get(_event_key(event), []))
        return sum(len(handlers) for handlers in self._handlers.values())


class EventChannel:
    """Buffers published events so a consumer can drain them later.

    When the buffer is bounded and full, the oldest event is discarded.
    """

    def __init__(self, bus: EventBus, names: tuple[str, ...], *, maxsize: int = 0) -> None:
        self._bus = bus
        self._names = names
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        for name in names:
            bus.add_event_listener(name, self._enqueue)

    @property
    def names(self) -> tuple[str, ...]:
        return self._names

    @property
    def closed(self) -> bool:
        return self._closed

    def _enqueue(self, event: Event) -> None:
        if self._queue.full():
            dropped = self._queue.get_nowait()
            logger.warning("Event channel full; dropping %s", dropped.name)
        self._queue.put_nowait(event)

    async def get(self) -> Event:
        """Wait for the next event."""
        return await self._queue.get()

    def drain(self) -> list[Event]:
        """Return every buffered event without waiting."""
        events: list[Event] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Stop receiving events. Buffered events stay drainable."""
        if self._closed:
            return
        self._closed = True
        for name in self._names:
            self._bus.remove_event_listener(name, self._enqueue)

    def __enter__(self) -> "EventChannel":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class _HandlerRef:
    """Handler reference: weak for bound methods, strong for plain callables."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: WeakMethod | ref | Handler, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref  # type: ignore[return-value]
        return self._ref()  # type: ignore[operator]

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        if resolved is None:
            return False
        return resolved == handler


def _handler_name(handler: Handler) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        cls_name = type(handler.__self__).__name__
        return f"{cls_name}.{handler.__func__.__name__}"
    if hasattr(handler, "__name__"):
        return handler.__name__
    return repr(handler)


__all__ = [
    "Event",
    "EventBus",
    "EventChannel",
    "Handler",
    "EVENT_NAMES",
    "EVENT_TYPES",
    "ServerStatusChanged",
    "ServerStarted",
    "ServerStopped",
    "ServerAdded",
    "ServerRemoved",
    "ServerConfigUpdated",
    "ToolCalled",
    "ToolFailed",
    "ResourceRead",
    "ResourceFailed",
]
