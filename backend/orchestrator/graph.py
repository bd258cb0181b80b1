"""Auto-fix loop as a LangGraph state machine.

    START -> code -> [stop -> END | review] -> review -> execute -> record
          -> [continue -> code | stop -> END]

Each pass:
1. CODE: the fix agent proposes edits from the focused files and the last run
2. Critic A: no focused edits while the last run still failed ends the loop
3. REVIEW: the reviewer sanitizes the edits, which are merged into the
   private working copy
4. EXECUTE: the entry file runs in the sandbox, then (when clean and
   requested) each discovered test file
5. RECORD: a FixIteration is appended; Critic B stops on a repeated
   normalized error, the loop also stops on a clean run or the iteration cap

The working copy never touches the workspace; the orchestrator diffs it
against the original snapshot afterwards.
"""

import re
from collections.abc import Callable
from dataclasses import asdict, dataclass
from enum import StrEnum
from pathlib import PurePosixPath
from typing import Any, Literal, TypedDict

import structlog
from langgraph.graph import END, START, StateGraph

from agents.prompts import (
    build_fix_message,
    build_reviewer_message,
    format_file_context,
    format_run_context,
)
from agents.roles import AgentResult, Agents, EditInstruction
from orchestrator.models import FixIteration, RunRecord
from sandbox.runner import RunResult, SandboxRunner
from sandbox.stack_trace import normalize_error_message, parse_error
from workspace.models import guess_language

logger = structlog.get_logger()

_TEST_DIR = re.compile(r"(^|/)tests?/")


class StopReason(StrEnum):
    NO_EDITS = "no_edits"
    REPEATED_ERROR = "repeated_error"
    CLEAN = "clean"
    MAX_ITERATIONS = "max_iterations"


class FixLoopState(TypedDict):
    """State flowing through the fix-loop graph.

    Attributes:
        task_id: Owning task, attached to agent calls and iteration records
        goal: The task goal
        focus_paths: Files the agents may edit
        entry_file: File executed each pass
        working: Private working copy, path to content
        languages: Language tag per working-copy path
        max_iters: Iteration cap
        test_also: Run discovered test files after a clean entry run
        iteration: Index of the current pass (1-based once started)
        last: Result of the most recent run
        last_message: Normalized error of the previous recorded pass
        same_error_count: Consecutive repeats of ``last_message``
        made_change: Whether any merged edit changed content
        coder: The fix agent's current response
        coder_edits: Its edits filtered to the focus set
        reviewer_notes: Reviewer notes of the current pass
        tokens_used: Tokens spent by agents in the loop
        stop_reason: Set once the loop decides to stop
    """

    task_id: str
    goal: str
    focus_paths: list[str]
    entry_file: str
    working: dict[str, str]
    languages: dict[str, str]
    max_iters: int
    test_also: bool
    iteration: int
    last: RunRecord
    last_message: str
    same_error_count: int
    made_change: bool
    coder: AgentResult | None
    coder_edits: list[EditInstruction]
    reviewer_notes: str
    tokens_used: int
    stop_reason: StopReason | None


@dataclass
class FixLoopResult:
    working: dict[str, str]
    languages: dict[str, str]
    last: RunRecord
    made_change: bool
    iterations: int
    tokens_used: int
    stop_reason: StopReason | None


def discover_test_files(paths: list[str], entry_file: str, limit: int) -> list[str]:
    """Python test files of a working set, sorted and capped at ``limit``."""
    found = []
    for path in sorted(paths):
        name = PurePosixPath(path).name
        if not name.endswith(".py") or path == entry_file or name == "__init__.py":
            continue
        if _TEST_DIR.search(path) or name.startswith("test_") or name.endswith("_test.py"):
            found.append(path)
    return found[:limit]


def parsed_error_dict(error: str | None) -> dict[str, Any] | None:
    if not error:
        return None
    parsed = asdict(parse_error(error))
    parsed.pop("raw", None)
    return parsed


def run_record(run: RunResult) -> RunRecord:
    """Fold a RunResult into a RunRecord; a non-zero exit counts as an error."""
    error = run.error
    if error is None and run.failed:
        error = f"Process exited with code {run.exit_code}"
    return RunRecord(
        stdout=run.stdout,
        stderr=run.stderr,
        error=error,
        parsed_error=parsed_error_dict(error),
    )


class FixLoop:
    """The auto-fix graph.

    Attributes:
        agents: Fix and reviewer roles
        runner: Sandbox used to execute the working copy
        timeout_ms: Budget for every run
        repeat_error_limit: Consecutive repeats of one normalized error that
            stop the loop (values below 1 disable the rule)
        max_test_files: Cap on test files run per pass
        on_iteration: Called with (task_id, iteration) after each pass
    """

    def __init__(
        self,
        agents: Agents,
        runner: SandboxRunner,
        timeout_ms: int = 2500,
        repeat_error_limit: int = 1,
        max_test_files: int = 6,
        on_iteration: Callable[[str, FixIteration], None] | None = None,
    ) -> None:
        self.agents = agents
        self.runner = runner
        self.timeout_ms = timeout_ms
        self.repeat_error_limit = repeat_error_limit
        self.max_test_files = max_test_files
        self.on_iteration = on_iteration
        self._compiled_graph = self._build_graph()

    def _build_graph(self) -> Any:
        graph = StateGraph(FixLoopState)

        graph.add_node("code", self._code)
        graph.add_node("review", self._review)
        graph.add_node("execute", self._execute)
        graph.add_node("record", self._record)

        graph.add_edge(START, "code")
        graph.add_conditional_edges(
            "code",
            self._after_code,
            {"review": "review", "stop": END},
        )
        graph.add_edge("review", "execute")
        graph.add_edge("execute", "record")
        graph.add_conditional_edges(
            "record",
            self._after_record,
            {"continue": "code", "stop": END},
        )

        return graph.compile()

    async def run(
        self,
        task_id: str,
        goal: str,
        focus_paths: list[str],
        entry_file: str,
        working: dict[str, str],
        languages: dict[str, str],
        max_iters: int,
        test_also: bool,
    ) -> FixLoopResult:
        """Run the loop to completion over a copy of ``working``."""
        max_iters = max(1, max_iters)
        initial_state = FixLoopState(
            task_id=task_id,
            goal=goal,
            focus_paths=list(focus_paths),
            entry_file=entry_file,
            working=dict(working),
            languages=dict(languages),
            max_iters=max_iters,
            test_also=test_also,
            iteration=0,
            last=RunRecord(),
            last_message="",
            same_error_count=0,
            made_change=False,
            coder=None,
            coder_edits=[],
            reviewer_notes="",
            tokens_used=0,
            stop_reason=None,
        )

        # Four nodes per pass plus headroom
        final_state = await self._compiled_graph.ainvoke(
            initial_state,
            config={"recursion_limit": max_iters * 4 + 5},
        )

        logger.info(
            "fix_loop_finished",
            task_id=task_id,
            iterations=final_state["iteration"],
            stop_reason=final_state["stop_reason"],
            made_change=final_state["made_change"],
        )
        return FixLoopResult(
            working=final_state["working"],
            languages=final_state["languages"],
            last=final_state["last"],
            made_change=final_state["made_change"],
            iterations=final_state["iteration"],
            tokens_used=final_state["tokens_used"],
            stop_reason=final_state["stop_reason"],
        )

    # -----------------------------------------------------------------
    # Nodes
    # -----------------------------------------------------------------

    async def _code(self, state: FixLoopState) -> dict[str, Any]:
        iteration = state["iteration"] + 1
        focus_paths = state["focus_paths"]
        last = state["last"]

        message = build_fix_message(
            state["goal"],
            focus_paths,
            format_file_context(focus_paths, state["working"]),
            format_run_context(last.stdout, last.stderr, last.error, last.parsed_error),
        )
        reply = await self.agents.fix(message, task_id=state["task_id"])
        edits = reply.result.for_paths(focus_paths)
        if len(edits) != len(reply.result.edits):
            logger.info(
                "fix_loop_edits_dropped",
                task_id=state["task_id"],
                iteration=iteration,
                dropped=len(reply.result.edits) - len(edits),
            )

        update: dict[str, Any] = {
            "iteration": iteration,
            "coder": reply.result,
            "coder_edits": edits,
            "tokens_used": state["tokens_used"] + reply.tokens,
        }
        if not edits and last.error:
            logger.info("fix_loop_stalled", task_id=state["task_id"], iteration=iteration)
            update["stop_reason"] = StopReason.NO_EDITS
        return update

    async def _review(self, state: FixLoopState) -> dict[str, Any]:
        coder = state["coder"]
        if coder is None:
            raise RuntimeError("Review reached without a fix agent response")
        focus_paths = state["focus_paths"]

        message = build_reviewer_message(
            state["goal"],
            focus_paths,
            format_file_context(focus_paths, state["working"]),
            coder.proposal(state["coder_edits"]),
        )
        reply = await self.agents.review(message, task_id=state["task_id"])

        working = dict(state["working"])
        languages = dict(state["languages"])
        made_change = state["made_change"]
        for edit in reply.result.for_paths(focus_paths):
            if edit.new_content != working.get(edit.path, ""):
                made_change = True
            working[edit.path] = edit.new_content
            languages[edit.path] = (
                edit.language or languages.get(edit.path) or guess_language(edit.path)
            )

        return {
            "working": working,
            "languages": languages,
            "made_change": made_change,
            "reviewer_notes": reply.result.notes,
            "tokens_used": state["tokens_used"] + reply.tokens,
        }

    async def _execute(self, state: FixLoopState) -> dict[str, Any]:
        working = state["working"]
        entry_file = state["entry_file"]

        run = await self.runner.run_project_and_capture(working, entry_file, self.timeout_ms)
        record = run_record(run)
        if record.error is None and state["test_also"]:
            record = await self._run_tests(working, entry_file, record)
        return {"last": record}

    async def _run_tests(
        self,
        working: dict[str, str],
        entry_file: str,
        entry_record: RunRecord,
    ) -> RunRecord:
        output = ""
        for test_file in discover_test_files(list(working), entry_file, self.max_test_files):
            run = await self.runner.run_project_and_capture(
                working, entry_file, self.timeout_ms, test_files=[test_file]
            )
            output += f"\n[test] {test_file}\n{run.stdout}{run.stderr}"
            record = run_record(run)
            if record.error is not None:
                return RunRecord(
                    stdout=entry_record.stdout + output,
                    stderr=entry_record.stderr,
                    error=record.error,
                    parsed_error=record.parsed_error,
                )
        return entry_record.model_copy(update={"stdout": entry_record.stdout + output})

    async def _record(self, state: FixLoopState) -> dict[str, Any]:
        last = state["last"]
        coder = state["coder"]
        iteration = FixIteration(
            i=state["iteration"],
            coder_notes=coder.notes if coder else "",
            reviewer_notes=state["reviewer_notes"],
            run=last,
        )
        if self.on_iteration is not None:
            self.on_iteration(state["task_id"], iteration)

        message = normalize_error_message(last.error)
        if message and message == state["last_message"]:
            same_error_count = state["same_error_count"] + 1
        else:
            same_error_count = 0

        stop_reason: StopReason | None = None
        if self.repeat_error_limit >= 1 and same_error_count >= self.repeat_error_limit:
            stop_reason = StopReason.REPEATED_ERROR
        elif last.error is None:
            stop_reason = StopReason.CLEAN
        elif state["iteration"] >= state["max_iters"]:
            stop_reason = StopReason.MAX_ITERATIONS

        logger.info(
            "fix_loop_iteration",
            task_id=state["task_id"],
            iteration=state["iteration"],
            error=message or None,
            same_error_count=same_error_count,
            stop_reason=stop_reason,
        )
        return {
            "last_message": message,
            "same_error_count": same_error_count,
            "stop_reason": stop_reason,
        }

    # -----------------------------------------------------------------
    # Routing
    # -----------------------------------------------------------------

    def _after_code(self, state: FixLoopState) -> Literal["review", "stop"]:
        return "stop" if state["stop_reason"] else "review"

    def _after_record(self, state: FixLoopState) -> Literal["continue", "stop"]:
        return "stop" if state["stop_reason"] else "continue"
