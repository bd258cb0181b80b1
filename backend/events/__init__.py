"""Event system for decoupled notification between services.

This package provides the typed pub/sub infrastructure used by the workspace
model, the sandbox runner, task memory and the orchestrator. Publishing is
synchronous: every handler has run before ``publish`` returns.

Key Components:
    - EventType: Closed enum of every event kind in the system
    - Event: Immutable event with a payload model matching its type
    - EventBus: Pub/sub hub with middleware, history, replay and wait_for
    - HistoryFilter: Selection criteria for history queries and replay

Usage:
    >>> from events import EventBus, EventType, make_event
    >>>
    >>> bus = EventBus()
    >>> unsubscribe = bus.subscribe(
    ...     EventType.TASK_UPDATED,
    ...     lambda payload: print(payload.task_id, payload.status),
    ... )
    >>> bus.publish(make_event(EventType.TASK_UPDATED, task_id="t1", status="running"))
    t1 running
    >>> unsubscribe()
"""

from events.bus import EventBus, HistoryFilter
from events.types import (
    PAYLOAD_TYPES,
    Event,
    EventPayload,
    EventType,
    LLMCallComplete,
    MemoryUpdated,
    Notification,
    RunnerError,
    RunnerExited,
    RunnerOutput,
    RunnerStarted,
    TaskUpdated,
    WorkspaceChanged,
    WorkspaceSaved,
    make_event,
)

__all__ = [
    # Event types
    "EventType",
    "Event",
    "EventPayload",
    "PAYLOAD_TYPES",
    "make_event",
    "WorkspaceChanged",
    "WorkspaceSaved",
    "RunnerStarted",
    "RunnerOutput",
    "RunnerExited",
    "RunnerError",
    "TaskUpdated",
    "Notification",
    "LLMCallComplete",
    "MemoryUpdated",
    # Event bus
    "EventBus",
    "HistoryFilter",
]
