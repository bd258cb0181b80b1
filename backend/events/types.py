"""Event type definitions for the orchestration event system.

Every event kind is a member of the closed ``EventType`` enum and carries its
own payload model. ``Event`` refuses payloads that do not belong to its type,
so subscribers can rely on the payload shape without defensive checks.
"""

import time
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class EventType(StrEnum):
    """All event types in the system.

    Events are categorized by:
    - Workspace: snapshot mutations and durable writes
    - Runner: sandboxed execution lifecycle and output
    - Agents: orchestrator task state changes
    - UI: user-facing notifications
    - Observability: LLM call metrics and memory changes
    """

    # Workspace
    WORKSPACE_CHANGED = "workspace:changed"
    WORKSPACE_SAVED = "workspace:saved"

    # Runner
    RUNNER_STARTED = "runner:started"
    RUNNER_OUTPUT = "runner:output"
    RUNNER_EXITED = "runner:exited"
    RUNNER_ERROR = "runner:error"

    # Agents
    TASK_UPDATED = "agents:taskUpdated"

    # UI
    NOTIFICATION = "ui:toast"

    # Observability
    LLM_CALL_COMPLETE = "llm:callComplete"
    MEMORY_UPDATED = "memory:updated"


class EventPayload(BaseModel):
    """Base class for all event payloads."""

    model_config = ConfigDict(frozen=True)


class WorkspaceChanged(EventPayload):
    workspace_id: str
    paths: list[str]


class WorkspaceSaved(EventPayload):
    workspace_id: str


class RunnerStarted(EventPayload):
    run_id: str
    workspace_id: str
    entry_file: str


class RunnerOutput(EventPayload):
    run_id: str
    kind: Literal["stdout", "stderr"]
    text: str


class RunnerExited(EventPayload):
    run_id: str
    code: int


class RunnerError(EventPayload):
    run_id: str
    error: str


class TaskUpdated(EventPayload):
    task_id: str
    status: str


class Notification(EventPayload):
    kind: Literal["info", "error"]
    text: str


class LLMCallComplete(EventPayload):
    model: str
    input_tokens: int
    output_tokens: int
    latency_ms: int
    task_id: str | None = None
    agent: str | None = None


class MemoryUpdated(EventPayload):
    action: Literal["added", "updated", "deleted", "imported", "cleared"]
    item_id: str | None = None


PAYLOAD_TYPES: dict[EventType, type[EventPayload]] = {
    EventType.WORKSPACE_CHANGED: WorkspaceChanged,
    EventType.WORKSPACE_SAVED: WorkspaceSaved,
    EventType.RUNNER_STARTED: RunnerStarted,
    EventType.RUNNER_OUTPUT: RunnerOutput,
    EventType.RUNNER_EXITED: RunnerExited,
    EventType.RUNNER_ERROR: RunnerError,
    EventType.TASK_UPDATED: TaskUpdated,
    EventType.NOTIFICATION: Notification,
    EventType.LLM_CALL_COMPLETE: LLMCallComplete,
    EventType.MEMORY_UPDATED: MemoryUpdated,
}


class Event(BaseModel):
    """An immutable event flowing through the bus.

    Attributes:
        type: The category of event (from EventType enum)
        payload: Type-specific payload model
        timestamp: Unix timestamp when the event was created
    """

    model_config = ConfigDict(frozen=True)

    type: EventType
    payload: EventPayload
    timestamp: float = Field(default_factory=time.time)

    @model_validator(mode="before")
    @classmethod
    def _coerce_payload(cls, data: Any) -> Any:
        """Build the payload model from a plain dict when needed."""
        if isinstance(data, dict) and isinstance(data.get("payload"), dict):
            payload_type = PAYLOAD_TYPES[EventType(data["type"])]
            data = {**data, "payload": payload_type(**data["payload"])}
        return data

    @model_validator(mode="after")
    def _check_payload_type(self) -> "Event":
        expected = PAYLOAD_TYPES[self.type]
        if not isinstance(self.payload, expected):
            raise ValueError(
                f"{self.type.value} expects {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )
        return self

    def to_json(self) -> dict[str, Any]:
        """Serialize with the concrete payload fields included."""
        return {
            "type": self.type.value,
            "timestamp": self.timestamp,
            "payload": self.payload.model_dump(mode="json"),
        }


def make_event(event_type: EventType, **payload: Any) -> Event:
    """Create an event, building the payload model for ``event_type``."""
    return Event(type=event_type, payload=PAYLOAD_TYPES[event_type](**payload))
