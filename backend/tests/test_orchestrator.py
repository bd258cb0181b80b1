"""Tests for orchestrator/orchestrator.py and orchestrator/graph.py.

The LLM is a MockLLMClient with scripted role responses and the sandbox is a
mocked SandboxRunner, so every test drives the real task pipelines and the
real LangGraph fix loop without network or subprocesses.

Covers:
- Focus containment of edits and proposals
- The approval gate (apply, partial apply, reject, invalid states)
- Agent protocol errors surfacing as task errors
- Fix loop stop rules: no edits, repeated error, clean run, iteration cap
- Test-file discovery and test runs after a clean entry run
- Task memory summaries, including the summarizer fallback
"""

import asyncio
from collections.abc import AsyncGenerator, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from agents.llm import LLMResponse
from agents.roles import Agents
from config import Settings
from events.bus import EventBus
from events.types import EventType
from memory.task_memory import TaskMemory
from orchestrator.graph import discover_test_files, run_record
from orchestrator.models import TaskStatus
from orchestrator.orchestrator import Orchestrator
from sandbox.runner import RunResult
from tests.conftest import (
    InMemoryWorkspaceStore,
    edits_response,
    make_llm_response,
    make_mock_llm,
    make_mock_runner,
    plan_response,
    recorded,
    summary_response,
)
from workspace.manager import WorkspaceManager

MAIN = "from util import add\nprint(add(1, 2))\n"
UTIL = "def add(a, b):\n    return a - b\n"
UTIL_FIXED = "def add(a, b):\n    return a + b\n"
OTHER = "VALUE = 1\n"

TYPE_ERROR = (
    "Traceback (most recent call last):\n"
    '  File "main.py", line 2, in <module>\n'
    "TypeError: x is undefined"
)


def _failed(error: str = TYPE_ERROR) -> RunResult:
    return RunResult(run_id="run_fail", stderr="", error=error)


def _clean(stdout: str = "3\n") -> RunResult:
    return RunResult(run_id="run_ok", stdout=stdout, exit_code=0)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
async def workspace(
    event_bus: EventBus, workspace_store: InMemoryWorkspaceStore
) -> AsyncGenerator[WorkspaceManager, None]:
    manager = WorkspaceManager(event_bus, workspace_store, debounce_seconds=0.01)
    await manager.create("default", "Calc")
    manager.upsert_file("main.py", None, MAIN)
    manager.upsert_file("util.py", None, UTIL)
    manager.upsert_file("other.py", None, OTHER)
    yield manager
    await manager.close()


@pytest.fixture()
def memory(event_bus: EventBus) -> TaskMemory:
    return TaskMemory(event_bus)


@pytest.fixture()
def build(
    event_bus: EventBus,
    workspace: WorkspaceManager,
    memory: TaskMemory,
    test_settings: Settings,
) -> Callable[..., Orchestrator]:
    """Factory: an Orchestrator over scripted LLM responses and run results."""

    def _build(*responses: LLMResponse, runs: list[RunResult] | None = None) -> Orchestrator:
        llm = make_mock_llm(*responses, event_bus=event_bus)
        runner = make_mock_runner(*(runs or []))
        orchestrator = Orchestrator(
            event_bus, workspace, runner, memory, Agents(llm, test_settings), test_settings
        )
        orchestrator.llm = llm  # exposed for call_history assertions
        return orchestrator

    return _build


def _toasts(event_bus: EventBus) -> list[tuple[str, str]]:
    return [(e.payload.kind, e.payload.text) for e in recorded(event_bus, EventType.NOTIFICATION)]


# =========================================================================
# Single-shot edit tasks
# =========================================================================


class TestEditTask:
    async def test_edits_outside_focus_are_dropped(
        self, build, workspace: WorkspaceManager, event_bus: EventBus
    ) -> None:
        orchestrator = build(
            edits_response("fix add", {"util.py": UTIL_FIXED, "other.py": "VALUE = 2\n"}),
            edits_response("looks good", {"util.py": UTIL_FIXED, "other.py": "VALUE = 3\n"}),
        )

        task = await orchestrator.run_edit_task("Fix add", ["util.py"])

        assert task.status == TaskStatus.PENDING_APPROVAL
        assert [c.path for c in task.proposed] == ["util.py"]
        assert task.proposed[0].old_content == UTIL
        assert task.proposed[0].new_content == UTIL_FIXED
        assert "-    return a - b" in task.proposed[0].diff
        assert task.notes == "fix add"
        assert task.review_notes == "looks good"
        assert task.tokens_used == 60

        reviewer_input = orchestrator.llm.call_history[1]["messages"][1]["content"]
        assert "VALUE = 2" not in reviewer_input
        # Nothing reaches the workspace before approval
        assert workspace.get_file("util.py").content == UTIL
        assert workspace.get_file("other.py").content == OTHER
        assert ("info", "AI task ready: review diffs and approve.") in _toasts(event_bus)

    async def test_unchanged_edit_gives_empty_proposal(self, build) -> None:
        orchestrator = build(
            edits_response("", {"util.py": UTIL}),
            edits_response("", {"util.py": UTIL}),
        )
        task = await orchestrator.run_edit_task("Nothing to do", ["util.py"])
        assert task.status == TaskStatus.PENDING_APPROVAL
        assert task.proposed == []
        assert task.notes == "No notes from the coding agent."

    async def test_new_file_in_focus(self, build) -> None:
        orchestrator = build(
            edits_response("add helper", {"helpers.py": "X = 1\n"}),
            edits_response("ok", {"helpers.py": "X = 1\n"}),
        )
        task = await orchestrator.run_edit_task("Add helpers", ["helpers.py"])
        change = task.proposed[0]
        assert change.old_content == ""
        assert change.language == "python"

    async def test_protocol_error_marks_task_error(self, build, event_bus: EventBus) -> None:
        orchestrator = build(make_llm_response("Sorry, I can't help with that."))
        task = await orchestrator.run_edit_task("Fix add", ["util.py"])

        assert task.status == TaskStatus.ERROR
        assert "coder agent returned an invalid response" in task.error
        assert task.proposed == []
        assert ("error", "AI task failed. Check settings/API key.") in _toasts(event_bus)

    async def test_object_without_edits_marks_task_error(self, build) -> None:
        orchestrator = build(
            make_llm_response('{"error": "rate limited, try later"}'),
            make_llm_response('{"status": "ok"}'),
        )
        task = await orchestrator.run_edit_task("Fix add", ["util.py"])

        assert task.status == TaskStatus.ERROR
        assert "coder agent returned an invalid response" in task.error
        assert task.proposed == []

    async def test_reviewer_without_edits_marks_task_error(self, build) -> None:
        orchestrator = build(
            edits_response("fix", {"util.py": UTIL_FIXED}),
            make_llm_response('{"status": "ok"}'),
        )
        task = await orchestrator.run_edit_task("Fix add", ["util.py"])

        assert task.status == TaskStatus.ERROR
        assert "reviewer agent returned an invalid response" in task.error

    async def test_no_workspace(self, event_bus: EventBus, test_settings: Settings) -> None:
        empty = WorkspaceManager(event_bus, InMemoryWorkspaceStore())
        orchestrator = Orchestrator(
            event_bus,
            empty,
            make_mock_runner(),
            TaskMemory(event_bus),
            Agents(make_mock_llm(), test_settings),
            test_settings,
        )
        assert await orchestrator.run_edit_task("x", ["main.py"]) is None
        assert orchestrator.submit_auto_fix("x", ["main.py"]) is None
        assert await orchestrator.plan_focus("x") is None
        assert orchestrator.list_tasks() == []
        assert ("error", "No workspace loaded") in _toasts(event_bus)

    async def test_submit_returns_idle_task(self, build, event_bus: EventBus) -> None:
        orchestrator = build(
            edits_response("n", {"util.py": UTIL_FIXED}),
            edits_response("r", {"util.py": UTIL_FIXED}),
        )
        task = orchestrator.submit_edit_task("Fix add", ["util.py", "util.py"])
        assert task.status == TaskStatus.IDLE
        assert task.focus_paths == ["util.py"]

        await orchestrator.wait_idle()

        assert orchestrator.get(task.id).status == TaskStatus.PENDING_APPROVAL
        statuses = [
            e.payload.status
            for e in recorded(event_bus, EventType.TASK_UPDATED)
            if e.payload.task_id == task.id
        ]
        assert statuses == ["idle", "running", "pending_approval"]


# =========================================================================
# Approval gate
# =========================================================================


class TestApprovalGate:
    async def _pending(self, build) -> tuple[Orchestrator, str]:
        orchestrator = build(
            edits_response("n", {"util.py": UTIL_FIXED, "main.py": "print(add(2, 2))\n"}),
            edits_response("r", {"util.py": UTIL_FIXED, "main.py": "print(add(2, 2))\n"}),
        )
        task = await orchestrator.run_edit_task("Fix", ["util.py", "main.py"])
        assert task.status == TaskStatus.PENDING_APPROVAL
        return orchestrator, task.id

    async def test_apply_writes_workspace(
        self, build, workspace: WorkspaceManager, event_bus: EventBus
    ) -> None:
        orchestrator, task_id = await self._pending(build)

        assert orchestrator.apply_changes(task_id) is True

        assert orchestrator.get(task_id).status == TaskStatus.DONE
        assert workspace.get_file("util.py").content == UTIL_FIXED
        assert workspace.get_file("main.py").content == "print(add(2, 2))\n"
        assert ("info", "Changes applied.") in _toasts(event_bus)

    async def test_apply_subset(self, build, workspace: WorkspaceManager) -> None:
        orchestrator, task_id = await self._pending(build)
        assert orchestrator.apply_changes(task_id, paths=["util.py"]) is True
        assert workspace.get_file("util.py").content == UTIL_FIXED
        assert workspace.get_file("main.py").content == MAIN

    async def test_apply_twice_is_noop(self, build, workspace: WorkspaceManager) -> None:
        orchestrator, task_id = await self._pending(build)
        orchestrator.apply_changes(task_id)
        workspace.upsert_file("util.py", None, "edited by hand\n")

        assert orchestrator.apply_changes(task_id) is False
        assert workspace.get_file("util.py").content == "edited by hand\n"

    async def test_reject_then_apply_changes_nothing(
        self, build, workspace: WorkspaceManager
    ) -> None:
        orchestrator, task_id = await self._pending(build)

        assert orchestrator.reject_changes(task_id) is True
        task = orchestrator.get(task_id)
        assert task.status == TaskStatus.DONE
        assert task.proposed == []

        assert orchestrator.apply_changes(task_id) is False
        assert workspace.get_file("util.py").content == UTIL

    async def test_gate_rejects_other_states(self, build) -> None:
        orchestrator = build(make_llm_response("garbage"))
        task = await orchestrator.run_edit_task("Fix", ["util.py"])
        assert task.status == TaskStatus.ERROR
        assert orchestrator.apply_changes(task.id) is False
        assert orchestrator.reject_changes(task.id) is False
        assert orchestrator.apply_changes("task_unknown") is False


# =========================================================================
# Planning
# =========================================================================


class TestPlanFocus:
    async def test_keeps_existing_unique_paths(self, build) -> None:
        orchestrator = build(plan_response(["util.py", "ghost.py", "util.py", "main.py"]))
        plan = await orchestrator.plan_focus("Fix add")
        assert plan.focus_paths == ["util.py", "main.py"]
        assert plan.notes == "plan"

        planner_input = orchestrator.llm.call_history[0]["messages"][1]["content"]
        assert '"main.py": ["util.py"]' in planner_input

    async def test_falls_back_to_entry(self, build) -> None:
        orchestrator = build(plan_response(["ghost.py"]))
        plan = await orchestrator.plan_focus("Fix add")
        assert plan.focus_paths == ["main.py"]

    async def test_caps_focus(self, build, test_settings: Settings) -> None:
        test_settings.planner_max_focus = 1
        orchestrator = build(plan_response(["util.py", "main.py"]))
        plan = await orchestrator.plan_focus("Fix add")
        assert plan.focus_paths == ["util.py"]


# =========================================================================
# Auto-fix loop
# =========================================================================


class TestAutoFix:
    async def test_no_edits_after_failure_stops_loop(
        self, build, memory: TaskMemory
    ) -> None:
        orchestrator = build(
            edits_response("try 1", {"util.py": UTIL_FIXED}),
            edits_response("ok 1", {"util.py": UTIL_FIXED}),
            edits_response("out of ideas"),
            summary_response("Could not fix.", "fail"),
            runs=[_failed()],
        )

        task = await orchestrator.run_auto_fix("Fix add", ["util.py"], max_iters=4)

        assert orchestrator.runner.run_project_and_capture.await_count == 1
        assert task.status == TaskStatus.PENDING_APPROVAL
        assert len(task.iterations) == 1
        assert task.iterations[0].coder_notes == "try 1"
        assert task.iterations[0].run.error == TYPE_ERROR
        assert task.iterations[0].run.parsed_error["line"] == 2
        assert task.notes == "Auto-fix loop completed. Review final diffs."
        assert task.review_notes == "Still failing: TypeError: x is undefined"
        assert [c.path for c in task.proposed] == ["util.py"]

        item = memory.list_items()[0]
        assert item.outcome == "fail"
        assert item.summary == "Could not fix."
        assert item.metadata["stop_reason"] == "no_edits"
        assert item.files_modified == ["util.py"]

    async def test_repeated_error_stops_after_second_pass(
        self, build, memory: TaskMemory
    ) -> None:
        orchestrator = build(
            edits_response("try 1", {"util.py": "def add(a, b):\n    return x\n"}),
            edits_response("r1", {"util.py": "def add(a, b):\n    return x\n"}),
            edits_response("try 2", {"util.py": "def add(a, b):\n    return x + 0\n"}),
            edits_response("r2", {"util.py": "def add(a, b):\n    return x + 0\n"}),
            summary_response("Stuck on x.", "partial"),
            runs=[_failed(), _failed(TYPE_ERROR.replace("line 2", "line 5"))],
        )

        task = await orchestrator.run_auto_fix("Fix add", ["util.py"], max_iters=4)

        assert orchestrator.runner.run_project_and_capture.await_count == 2
        assert [it.i for it in task.iterations] == [1, 2]
        assert memory.list_items()[0].metadata["stop_reason"] == "repeated_error"
        assert task.status == TaskStatus.PENDING_APPROVAL

    async def test_repeat_error_limit_two_allows_third_pass(
        self, build, memory: TaskMemory, test_settings: Settings
    ) -> None:
        test_settings.autofix_repeat_error_limit = 2
        responses = []
        for i in range(3):
            body = f"def add(a, b):\n    return x + {i}\n"
            responses += [
                edits_response(f"try {i}", {"util.py": body}),
                edits_response(f"r{i}", {"util.py": body}),
            ]
        orchestrator = build(
            *responses,
            summary_response("Stuck on x.", "partial"),
            runs=[_failed(), _failed(), _failed()],
        )

        task = await orchestrator.run_auto_fix("Fix add", ["util.py"], max_iters=5)

        assert orchestrator.runner.run_project_and_capture.await_count == 3
        assert [it.i for it in task.iterations] == [1, 2, 3]
        assert memory.list_items()[0].metadata["stop_reason"] == "repeated_error"

    async def test_repeat_error_limit_zero_disables_rule(
        self, build, memory: TaskMemory, test_settings: Settings
    ) -> None:
        test_settings.autofix_repeat_error_limit = 0
        responses = []
        for i in range(3):
            body = f"def add(a, b):\n    return y + {i}\n"
            responses += [
                edits_response(f"try {i}", {"util.py": body}),
                edits_response(f"r{i}", {"util.py": body}),
            ]
        orchestrator = build(
            *responses,
            summary_response("Capped.", "partial"),
            runs=[_failed(), _failed(), _failed()],
        )

        task = await orchestrator.run_auto_fix("Fix add", ["util.py"], max_iters=3)

        assert len(task.iterations) == 3
        assert memory.list_items()[0].metadata["stop_reason"] == "max_iterations"

    async def test_clean_run_executes_tests(
        self, build, workspace: WorkspaceManager, memory: TaskMemory
    ) -> None:
        workspace.upsert_file(
            "tests/test_util.py",
            None,
            "from util import add\n\ndef test_add():\n    assert add(1, 2) == 3\n",
        )
        orchestrator = build(
            edits_response("fix", {"util.py": UTIL_FIXED}),
            edits_response("ok", {"util.py": UTIL_FIXED}),
            summary_response("Fixed add.", "success"),
            runs=[_clean(), _clean("PASSED tests/test_util.py::test_add\n1 passed\n")],
        )

        task = await orchestrator.run_auto_fix("Fix add", ["util.py"])

        calls = orchestrator.runner.run_project_and_capture.await_args_list
        assert len(calls) == 2
        assert calls[0].args[1] == "main.py"
        assert calls[0].args[0]["util.py"] == UTIL_FIXED
        assert calls[1].kwargs["test_files"] == ["tests/test_util.py"]
        assert "[test] tests/test_util.py" in task.iterations[0].run.stdout
        assert task.review_notes == "No runtime error detected."
        assert memory.list_items()[0].metadata["stop_reason"] == "clean"
        # The loop never writes the workspace
        assert workspace.get_file("util.py").content == UTIL

    async def test_failing_test_keeps_loop_going(self, build, workspace: WorkspaceManager) -> None:
        workspace.upsert_file("test_util.py", None, "def test_x():\n    assert False\n")
        orchestrator = build(
            edits_response("fix", {"util.py": UTIL_FIXED}),
            edits_response("ok", {"util.py": UTIL_FIXED}),
            summary_response("Tests still fail.", "partial"),
            runs=[_clean(), _failed("Traceback...\nAssertionError")],
        )

        task = await orchestrator.run_auto_fix("Fix add", ["util.py"], max_iters=1)

        assert task.iterations[0].run.error == "Traceback...\nAssertionError"
        assert task.review_notes == "Still failing: AssertionError"

    async def test_test_runs_can_be_disabled(self, build, workspace: WorkspaceManager) -> None:
        workspace.upsert_file("test_util.py", None, "def test_x():\n    pass\n")
        orchestrator = build(
            edits_response("fix", {"util.py": UTIL_FIXED}),
            edits_response("ok", {"util.py": UTIL_FIXED}),
            summary_response(),
            runs=[_clean()],
        )
        await orchestrator.run_auto_fix("Fix add", ["util.py"], test_also=False)
        assert orchestrator.runner.run_project_and_capture.await_count == 1

    async def test_iteration_cap(self, build, memory: TaskMemory) -> None:
        orchestrator = build(
            edits_response("try", {"util.py": UTIL_FIXED}),
            edits_response("ok", {"util.py": UTIL_FIXED}),
            summary_response("Capped.", "partial"),
            runs=[_failed()],
        )
        task = await orchestrator.run_auto_fix("Fix add", ["util.py"], max_iters=1)
        assert len(task.iterations) == 1
        assert memory.list_items()[0].metadata["stop_reason"] == "max_iterations"

    async def test_nonzero_exit_counts_as_failure(self, build) -> None:
        orchestrator = build(
            edits_response("try", {"util.py": UTIL_FIXED}),
            edits_response("ok", {"util.py": UTIL_FIXED}),
            summary_response(),
            runs=[RunResult(run_id="r", exit_code=2)],
        )
        task = await orchestrator.run_auto_fix("Fix add", ["util.py"], max_iters=1)
        assert task.iterations[0].run.error == "Process exited with code 2"

    async def test_foreign_edits_never_enter_working_copy(self, build) -> None:
        orchestrator = build(
            edits_response("try", {"util.py": UTIL_FIXED, "other.py": "VALUE = 99\n"}),
            edits_response("ok", {"util.py": UTIL_FIXED, "other.py": "VALUE = 99\n"}),
            summary_response(),
            runs=[_clean()],
        )
        task = await orchestrator.run_auto_fix("Fix add", ["util.py"], test_also=False)
        working = orchestrator.runner.run_project_and_capture.await_args.args[0]
        assert working["other.py"] == OTHER
        assert [c.path for c in task.proposed] == ["util.py"]

    async def test_summarizer_failure_falls_back(self, build, memory: TaskMemory) -> None:
        orchestrator = build(
            edits_response("fix", {"util.py": UTIL_FIXED}),
            edits_response("ok", {"util.py": UTIL_FIXED}),
            make_llm_response("no json"),
            runs=[_clean()],
        )
        task = await orchestrator.run_auto_fix("Fix add", ["util.py"], test_also=False)

        assert task.status == TaskStatus.PENDING_APPROVAL
        item = memory.list_items()[0]
        assert item.summary == "No runtime error detected."
        assert item.outcome == "success"
        assert item.metadata["task_id"] == task.id

    async def test_fixer_failure_marks_error(self, build, event_bus: EventBus) -> None:
        orchestrator = build(make_llm_response("not json"))
        task = await orchestrator.run_auto_fix("Fix add", ["util.py"])
        assert task.status == TaskStatus.ERROR
        assert "fixer agent returned an invalid response" in task.error
        assert ("error", "Auto-fix failed. Check settings/API key.") in _toasts(event_bus)

    async def test_iterations_are_published(self, build, event_bus: EventBus) -> None:
        orchestrator = build(
            edits_response("fix", {"util.py": UTIL_FIXED}),
            edits_response("ok", {"util.py": UTIL_FIXED}),
            summary_response(),
            runs=[_clean()],
        )
        task = orchestrator.submit_auto_fix("Fix add", ["util.py"], test_also=False)
        await orchestrator.wait_idle()
        statuses = [
            e.payload.status
            for e in recorded(event_bus, EventType.TASK_UPDATED)
            if e.payload.task_id == task.id
        ]
        assert statuses == ["idle", "running", "running", "pending_approval"]


# =========================================================================
# Shutdown
# =========================================================================


class TestShutdown:
    async def test_shutdown_cancels_running_pipelines(
        self,
        event_bus: EventBus,
        workspace: WorkspaceManager,
        memory: TaskMemory,
        test_settings: Settings,
    ) -> None:
        async def hang(*args, **kwargs):
            await asyncio.sleep(30)

        agents = MagicMock(spec=Agents)
        agents.code = AsyncMock(side_effect=hang)
        orchestrator = Orchestrator(
            event_bus, workspace, make_mock_runner(), memory, agents, test_settings
        )
        task = orchestrator.submit_edit_task("Fix", ["util.py"])
        await asyncio.sleep(0.01)

        await asyncio.wait_for(orchestrator.shutdown(), timeout=1)

        cancelled = orchestrator.get(task.id)
        assert cancelled.status == TaskStatus.ERROR
        assert cancelled.error == "cancelled"
        statuses = [
            e.payload.status
            for e in recorded(event_bus, EventType.TASK_UPDATED)
            if e.payload.task_id == task.id
        ]
        assert statuses[-1] == "error"
        await orchestrator.wait_idle()

    async def test_shutdown_cancels_auto_fix(
        self,
        event_bus: EventBus,
        workspace: WorkspaceManager,
        memory: TaskMemory,
        test_settings: Settings,
    ) -> None:
        async def hang(*args, **kwargs):
            await asyncio.sleep(30)

        runner = make_mock_runner()
        runner.run_project_and_capture = AsyncMock(side_effect=hang)
        llm = make_mock_llm(
            edits_response("fix", {"util.py": UTIL_FIXED}),
            edits_response("ok", {"util.py": UTIL_FIXED}),
        )
        orchestrator = Orchestrator(
            event_bus, workspace, runner, memory, Agents(llm, test_settings), test_settings
        )
        task = orchestrator.submit_auto_fix("Fix add", ["util.py"])
        await asyncio.sleep(0.05)

        await asyncio.wait_for(orchestrator.shutdown(), timeout=1)

        assert orchestrator.get(task.id).status == TaskStatus.ERROR
        assert orchestrator.get(task.id).error == "cancelled"
        assert memory.list_items() == []


# =========================================================================
# Helpers
# =========================================================================


class TestLoopHelpers:
    def test_discover_test_files(self) -> None:
        paths = [
            "main.py",
            "tests/__init__.py",
            "tests/helpers.py",
            "test_a.py",
            "pkg/b_test.py",
            "pkg/util.py",
            "tests/data.json",
        ]
        assert discover_test_files(paths, "main.py", limit=6) == [
            "pkg/b_test.py",
            "test_a.py",
            "tests/helpers.py",
        ]
        assert discover_test_files(paths, "main.py", limit=1) == ["pkg/b_test.py"]

    def test_run_record_keeps_clean_exit(self) -> None:
        record = run_record(RunResult(run_id="r", stdout="ok", exit_code=0))
        assert record.error is None
        assert record.parsed_error is None

    def test_run_record_parses_error(self) -> None:
        record = run_record(_failed())
        assert record.parsed_error == {
            "message": "TypeError: x is undefined",
            "file": "main.py",
            "line": 2,
            "column": None,
        }
