"""Shared test fixtures for backend tests.

Provides an EventBus, an in-memory workspace store, scripted execution
contexts, mock LLM response factories and settings overrides, so tests
never touch real Docker daemons or LLM APIs.
"""

import json
import sys
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from sandbox.security import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from agents.llm import LLMMetrics, LLMResponse, MockLLMClient  # noqa: E402
from config import Settings  # noqa: E402
from events.bus import EventBus  # noqa: E402
from events.types import Event, EventType  # noqa: E402
from sandbox.contexts import ExecutionContext, RunMessage  # noqa: E402
from sandbox.runner import RunResult, SandboxRunner  # noqa: E402
from workspace.models import WorkspaceSnapshot, WorkspaceSummary  # noqa: E402

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    return EventBus(history_limit=100)


def recorded(event_bus: EventBus, event_type: EventType) -> list[Event]:
    """Events of one type from the bus history, oldest first."""
    return [event for event in event_bus.get_history() if event.type == event_type]


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path: Any) -> Settings:
    """Settings pointing at a temporary database with fast timings."""
    return Settings(
        database_path=str(tmp_path / "test.db"),
        workspace_save_debounce_seconds=0.05,
        runner_timeout_ms=5000,
        default_model="mock/model",
        log_format="text",
    )


# ---------------------------------------------------------------------------
# Workspace store
# ---------------------------------------------------------------------------


class InMemoryWorkspaceStore:
    """Workspace persistence double that counts writes."""

    def __init__(self) -> None:
        self.snapshots: dict[str, WorkspaceSnapshot] = {}
        self.set_calls: list[str] = []
        self.fail_writes = False

    async def get(self, workspace_id: str) -> WorkspaceSnapshot | None:
        return self.snapshots.get(workspace_id)

    async def set(self, workspace_id: str, snapshot: WorkspaceSnapshot) -> None:
        self.set_calls.append(workspace_id)
        if self.fail_writes:
            raise OSError("disk full")
        self.snapshots[workspace_id] = snapshot

    async def remove(self, workspace_id: str) -> bool:
        return self.snapshots.pop(workspace_id, None) is not None

    async def list_summaries(self, limit: int = 100) -> list[WorkspaceSummary]:
        summaries = [snapshot.summary() for snapshot in self.snapshots.values()]
        summaries.sort(key=lambda s: s.updated_at, reverse=True)
        return summaries[:limit]


@pytest.fixture()
def workspace_store() -> InMemoryWorkspaceStore:
    return InMemoryWorkspaceStore()


# ---------------------------------------------------------------------------
# Scripted execution contexts
# ---------------------------------------------------------------------------


class ScriptedContext(ExecutionContext):
    """Execution context that emits a fixed list of messages on start.

    Each script entry is ``(type, value)``: text for stdout/stderr, an int
    code for exit, an error string for error. An empty script never
    finishes, which exercises the timeout path.
    """

    def __init__(self, run_id: str, script: list[tuple[str, Any]]) -> None:
        super().__init__(run_id)
        self.script = script
        self.program: str | None = None
        self.terminate_calls = 0

    async def start(self, program: str) -> None:
        self.program = program
        for kind, value in self.script:
            if kind in ("stdout", "stderr"):
                self._emit(RunMessage(type=kind, run_id=self.run_id, text=value))
            elif kind == "exit":
                self._emit(RunMessage(type="exit", run_id=self.run_id, code=value))
            else:
                self._emit(RunMessage(type="error", run_id=self.run_id, error=value))

    async def terminate(self) -> None:
        self.terminate_calls += 1


class ScriptedContextFactory:
    """Hands out one ScriptedContext per run, in order."""

    def __init__(self, *scripts: list[tuple[str, Any]]) -> None:
        self.scripts = list(scripts)
        self.contexts: list[ScriptedContext] = []

    def __call__(self, run_id: str) -> ScriptedContext:
        script = self.scripts.pop(0) if self.scripts else [("exit", 0)]
        context = ScriptedContext(run_id, script)
        self.contexts.append(context)
        return context


def make_mock_runner(*results: RunResult) -> MagicMock:
    """A SandboxRunner double whose captured runs return ``results`` in order."""
    runner = MagicMock(spec=SandboxRunner)
    runner.run_project_and_capture = AsyncMock(side_effect=list(results))
    return runner


# ---------------------------------------------------------------------------
# Response Factories
# ---------------------------------------------------------------------------


def make_llm_response(
    content: str = "",
    finish_reason: str = "stop",
    input_tokens: int = 10,
    output_tokens: int = 20,
) -> LLMResponse:
    """Create an LLMResponse with sensible defaults."""
    return LLMResponse(
        content=content,
        finish_reason=finish_reason,
        metrics=LLMMetrics(
            model="mock",
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            latency_ms=100,
        ),
    )


def edits_response(notes: str = "", edits: dict[str, str] | None = None) -> LLMResponse:
    """A coder/reviewer response proposing full-file ``edits`` (path -> content)."""
    payload = {
        "notes": notes,
        "edits": [
            {"path": path, "language": "python", "newContent": content}
            for path, content in (edits or {}).items()
        ],
    }
    return make_llm_response(json.dumps(payload))


def plan_response(focus_paths: list[str], notes: str = "plan") -> LLMResponse:
    return make_llm_response(json.dumps({"notes": notes, "focusPaths": focus_paths}))


def summary_response(summary: str = "Fixed it.", outcome: str = "success") -> LLMResponse:
    return make_llm_response(json.dumps({"summary": summary, "outcome": outcome}))


def make_mock_llm(*responses: LLMResponse, event_bus: EventBus | None = None) -> MockLLMClient:
    return MockLLMClient(responses=list(responses), event_bus=event_bus)
