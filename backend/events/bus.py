"""Typed publish/subscribe event bus.

This module provides the EventBus class that decouples the workspace, the
sandbox runner, task memory and the orchestrator from each other and from
any consumer (WebSocket clients, tests).

The event bus supports:
- Per-type handler registration with unsubscribe callables
- A middleware chain that can inspect, transform or drop events
- Synchronous delivery in registration order with error isolation
- A bounded, replayable history
- Awaiting the next event of a type with a deadline
"""

import asyncio
import threading
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

import structlog

from events.types import Event, EventPayload, EventType

logger = structlog.get_logger()

Handler = Callable[[EventPayload], None]
Next = Callable[[], None]
Middleware = Callable[[Event, Next], None]
Listener = Callable[[Event], None]


@dataclass
class HistoryFilter:
    """Selects events from the bus history.

    Attributes:
        types: Only events of these types (all types when empty)
        since: Only events with a timestamp at or after this value
        limit: Only the most recent N matching events
    """

    types: set[EventType] = field(default_factory=set)
    since: float | None = None
    limit: int | None = None

    def matches(self, event: Event) -> bool:
        if self.types and event.type not in self.types:
            return False
        return self.since is None or event.timestamp >= self.since


class EventBus:
    """Synchronous pub/sub bus with middleware and replayable history.

    Handlers are plain callables invoked on the publisher's stack, so every
    subscriber has observed an event before ``publish`` returns. Handlers
    that need to do async work should schedule it themselves.

    Thread Safety:
        Registry mutations are guarded by a threading.Lock. Delivery happens
        on a snapshot of the registry taken under the lock, so handlers may
        subscribe or unsubscribe while an event is being delivered.

    Usage:
        >>> bus = EventBus()
        >>> unsubscribe = bus.subscribe(EventType.WORKSPACE_SAVED, print)
        >>> bus.publish(make_event(EventType.WORKSPACE_SAVED, workspace_id="ws_1"))
        >>> unsubscribe()

    Attributes:
        history_limit: Maximum number of events retained in history
    """

    def __init__(self, history_limit: int = 1000) -> None:
        """Initialize an empty event bus.

        Args:
            history_limit: Capacity of the history ring buffer.
        """
        self.history_limit = history_limit
        self._handlers: dict[EventType, list[Handler]] = {}
        self._middleware: list[Middleware] = []
        self._listeners: list[Listener] = []
        self._history: deque[Event] = deque(maxlen=history_limit)
        self._paused = False
        self._lock = threading.Lock()
        logger.info("event_bus_initialized", history_limit=history_limit)

    # -----------------------------------------------------------------
    # Subscription
    # -----------------------------------------------------------------

    def subscribe(self, event_type: EventType, handler: Handler) -> Callable[[], None]:
        """Register a handler for one event type.

        Args:
            event_type: The exact event type to receive
            handler: Called with the event payload

        Returns:
            A callable that removes this registration. Calling it more than
            once is harmless.
        """
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            handler_count = len(self._handlers[event_type])

        logger.debug(
            "handler_subscribed",
            event_type=event_type.value,
            handler_count=handler_count,
        )

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(event_type)
                if not handlers or handler not in handlers:
                    return
                handlers.remove(handler)
                if not handlers:
                    del self._handlers[event_type]

        return unsubscribe

    def subscribe_once(self, event_type: EventType, handler: Handler) -> Callable[[], None]:
        """Register a handler that is removed after its first delivery."""
        fired = False

        def once(payload: EventPayload) -> None:
            nonlocal fired
            if fired:
                return
            fired = True
            unsubscribe()
            handler(payload)

        unsubscribe = self.subscribe(event_type, once)
        return unsubscribe

    def subscribe_all(self, listener: Listener) -> Callable[[], None]:
        """Register a listener for every event type.

        Listeners get the whole Event (type and timestamp included) after the
        per-type handlers have run. Used to stream the bus to WebSocket clients.
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def handler_count(self, event_type: EventType) -> int:
        """Number of handlers currently registered for a type."""
        with self._lock:
            return len(self._handlers.get(event_type, []))

    # -----------------------------------------------------------------
    # Middleware
    # -----------------------------------------------------------------

    def use(self, middleware: Middleware) -> Callable[[], None]:
        """Append a middleware to the publish chain.

        A middleware is called as ``middleware(event, next)``. Delivery only
        proceeds if it calls ``next()``.

        Returns:
            A callable that removes the middleware.
        """
        with self._lock:
            self._middleware.append(middleware)

        def remove() -> None:
            with self._lock:
                if middleware in self._middleware:
                    self._middleware.remove(middleware)

        return remove

    # -----------------------------------------------------------------
    # Publishing
    # -----------------------------------------------------------------

    def publish(self, event: Event) -> None:
        """Publish an event through the middleware chain to its handlers.

        While the bus is paused this is a no-op: the event is neither
        delivered nor recorded.

        Args:
            event: The event to publish
        """
        if self._paused:
            logger.debug("event_dropped_paused", event_type=event.type.value)
            return

        with self._lock:
            chain = list(self._middleware)

        def run(index: int) -> None:
            if index == len(chain):
                self._history.append(event)
                self._deliver(event)
                return

            called = False

            def next_() -> None:
                nonlocal called
                if called:
                    return
                called = True
                run(index + 1)

            chain[index](event, next_)

        run(0)

    def publish_many(self, events: Iterable[Event]) -> None:
        """Publish several events in order."""
        for event in events:
            self.publish(event)

    def _deliver(self, event: Event) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event.type, []))
            listeners = list(self._listeners)

        for handler in handlers:
            try:
                handler(event.payload)
            except Exception:
                logger.exception(
                    "event_handler_failed",
                    event_type=event.type.value,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                )

        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "event_listener_failed",
                    event_type=event.type.value,
                    listener=getattr(listener, "__qualname__", repr(listener)),
                )

        logger.debug(
            "event_published",
            event_type=event.type.value,
            handler_count=len(handlers),
        )

    # -----------------------------------------------------------------
    # Waiting
    # -----------------------------------------------------------------

    async def wait_for(self, event_type: EventType, timeout: float) -> EventPayload:
        """Wait for the next event of a type.

        Args:
            event_type: The event type to wait for
            timeout: Deadline in seconds

        Returns:
            The payload of the first matching event

        Raises:
            TimeoutError: If no matching event arrives before the deadline
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[EventPayload] = loop.create_future()

        def resolve(payload: EventPayload) -> None:
            if not future.done():
                future.set_result(payload)

        unsubscribe = self.subscribe_once(event_type, resolve)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError as e:
            raise TimeoutError(
                f"Timed out after {timeout}s waiting for {event_type.value}"
            ) from e
        finally:
            unsubscribe()

    # -----------------------------------------------------------------
    # History
    # -----------------------------------------------------------------

    def get_history(self, history_filter: HistoryFilter | None = None) -> list[Event]:
        """Return recorded events in chronological order.

        Args:
            history_filter: Optional selection; all history when omitted.
        """
        with self._lock:
            events = list(self._history)

        if history_filter is None:
            return events

        matched = [event for event in events if history_filter.matches(event)]
        if history_filter.limit is not None:
            matched = matched[-history_filter.limit:] if history_filter.limit > 0 else []
        return matched

    def replay(self, history_filter: HistoryFilter | None = None) -> int:
        """Re-deliver historical events to the currently registered handlers.

        Replayed events skip the middleware chain and are not recorded again.

        Returns:
            Number of events replayed.
        """
        events = self.get_history(history_filter)
        for event in events:
            self._deliver(event)
        logger.info("events_replayed", count=len(events))
        return len(events)

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()

    # -----------------------------------------------------------------
    # Pause / resume
    # -----------------------------------------------------------------

    def pause(self) -> None:
        """Stop delivering and recording events until ``resume``."""
        self._paused = True
        logger.info("event_bus_paused")

    def resume(self) -> None:
        self._paused = False
        logger.info("event_bus_resumed")

    @property
    def paused(self) -> bool:
        return self._paused

    def __repr__(self) -> str:
        kinds: dict[str, Any] = {t.value: len(h) for t, h in self._handlers.items()}
        return f"EventBus(handlers={kinds}, history={len(self._history)})"
