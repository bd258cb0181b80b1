"""Task orchestration: plan, edit, auto-fix and the approval gate.

The Orchestrator turns a goal into staged ``ProposedChange`` entries. It
never writes to the workspace on its own; proposals only reach the
workspace through ``apply_changes``.

Task lifecycle:

    idle -> running -> pending_approval -> done
                   \\-> error

Every pipeline catches exceptions at the task boundary, stores the message
on the task, moves it to ``error`` and publishes a notification. Nothing is
re-raised into the caller's event loop or into other tasks. A cancelled
pipeline leaves its task in ``error`` with the message ``cancelled``.
"""

import asyncio
import contextlib
import time
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any

import structlog

from agents.prompts import (
    build_coder_message,
    build_planner_message,
    build_reviewer_message,
    build_summarizer_message,
    format_file_context,
)
from agents.roles import Agents, EditInstruction
from config import Settings
from events.bus import EventBus
from events.types import EventType, make_event
from memory.task_memory import TaskMemory, TaskMemoryItem
from orchestrator.graph import FixLoop, FixLoopResult
from orchestrator.models import FixIteration, ProposedChange, Task, TaskStatus
from sandbox.runner import SandboxRunner
from sandbox.stack_trace import parse_error
from workspace.deps import build_dependency_graph
from workspace.manager import WorkspaceManager
from workspace.models import WorkspaceSnapshot, guess_language

logger = structlog.get_logger()

DEFAULT_ENTRY_FILE = "main.py"


@dataclass
class FocusPlan:
    notes: str
    focus_paths: list[str]


class Orchestrator:
    """Runs agent tasks against the current workspace.

    Attributes:
        event_bus: Receives task updates and notifications
        workspace: Source snapshot and, on approval, the write target
        runner: Sandbox used by the auto-fix loop
        memory: Receives one summary item per auto-fix task
        agents: LLM-backed roles
        settings: Loop limits and timeouts
    """

    def __init__(
        self,
        event_bus: EventBus,
        workspace: WorkspaceManager,
        runner: SandboxRunner,
        memory: TaskMemory,
        agents: Agents,
        settings: Settings,
    ) -> None:
        self.event_bus = event_bus
        self.workspace = workspace
        self.runner = runner
        self.memory = memory
        self.agents = agents
        self.settings = settings
        self.fix_loop = FixLoop(
            agents,
            runner,
            timeout_ms=settings.runner_timeout_ms,
            repeat_error_limit=settings.autofix_repeat_error_limit,
            max_test_files=settings.autofix_max_test_files,
            on_iteration=self._on_iteration,
        )
        self._tasks: dict[str, Task] = {}
        self._background: dict[str, asyncio.Task[None]] = {}
        logger.info("orchestrator_initialized")

    # -----------------------------------------------------------------
    # Task registry
    # -----------------------------------------------------------------

    def list_tasks(self) -> list[Task]:
        """All tasks, newest first."""
        return list(reversed(self._tasks.values()))

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def _new_task(self, goal: str, focus_paths: list[str], kind: str) -> Task:
        task = Task(goal=goal, focus_paths=list(dict.fromkeys(focus_paths)), kind=kind)
        self._tasks[task.id] = task
        self._publish_task(task)
        logger.info("task_created", task_id=task.id, kind=kind, focus_paths=task.focus_paths)
        return task

    def _update(self, task: Task, **changes: Any) -> None:
        for name, value in changes.items():
            setattr(task, name, value)
        task.touch()
        self._publish_task(task)

    def _publish_task(self, task: Task) -> None:
        self.event_bus.publish(
            make_event(EventType.TASK_UPDATED, task_id=task.id, status=task.status.value)
        )

    def _notify(self, kind: str, text: str) -> None:
        self.event_bus.publish(make_event(EventType.NOTIFICATION, kind=kind, text=text))

    def _fail(self, task: Task, error: BaseException, notification: str) -> None:
        message = str(error) or type(error).__name__
        logger.error(
            "task_failed",
            task_id=task.id,
            error_type=type(error).__name__,
            error=message,
        )
        self._update(task, status=TaskStatus.ERROR, error=message)
        self._notify("error", notification)

    def _cancel(self, task: Task) -> None:
        logger.info("task_cancelled", task_id=task.id)
        self._update(task, status=TaskStatus.ERROR, error="cancelled")

    def _on_iteration(self, task_id: str, iteration: FixIteration) -> None:
        task = self._tasks.get(task_id)
        if task is None:
            return
        task.iterations.append(iteration)
        task.touch()
        self._publish_task(task)

    def _snapshot_or_notify(self) -> WorkspaceSnapshot | None:
        snapshot = self.workspace.get_current()
        if snapshot is None:
            logger.warning("task_rejected_no_workspace")
            self._notify("error", "No workspace loaded")
        return snapshot

    # -----------------------------------------------------------------
    # Planning
    # -----------------------------------------------------------------

    async def plan_focus(self, goal: str) -> FocusPlan | None:
        """Pick the focus set for ``goal``.

        Returns None when no workspace is loaded. The planner's selection is
        reduced to existing paths and capped; when nothing survives, the
        entry file is used.

        Raises:
            AgentProtocolError: If the planner response is malformed.
        """
        snapshot = self.workspace.get_current()
        if snapshot is None:
            return None

        contents = snapshot.contents()
        entry_file = snapshot.entry_file or DEFAULT_ENTRY_FILE
        graph = build_dependency_graph(contents)
        message = build_planner_message(goal, entry_file, sorted(contents), graph.adjacency)
        reply = await self.agents.plan(message)

        focus = [
            path
            for path in dict.fromkeys(reply.result.focus_paths)
            if path in contents
        ][: self.settings.planner_max_focus]
        if not focus:
            focus = [entry_file] if entry_file in contents else []

        logger.info(
            "focus_planned",
            goal=goal[:100],
            requested=len(reply.result.focus_paths),
            focus_paths=focus,
        )
        return FocusPlan(notes=reply.result.notes, focus_paths=focus)

    # -----------------------------------------------------------------
    # Single-shot edit
    # -----------------------------------------------------------------

    async def run_edit_task(self, goal: str, focus_paths: list[str]) -> Task | None:
        """Run a coder + reviewer pass and stage the result.

        Returns:
            The task (``pending_approval`` or ``error``), or None when no
            workspace is loaded.
        """
        snapshot = self._snapshot_or_notify()
        if snapshot is None:
            return None
        task = self._new_task(goal, focus_paths, "edit")
        await self._edit_pipeline(task, snapshot)
        return task

    def submit_edit_task(self, goal: str, focus_paths: list[str]) -> Task | None:
        """Like ``run_edit_task`` but returns the idle task immediately."""
        snapshot = self._snapshot_or_notify()
        if snapshot is None:
            return None
        task = self._new_task(goal, focus_paths, "edit")
        self._schedule(task.id, self._edit_pipeline(task, snapshot))
        return task

    async def _edit_pipeline(self, task: Task, snapshot: WorkspaceSnapshot) -> None:
        self._update(task, status=TaskStatus.RUNNING)
        originals = snapshot.contents()
        focus_paths = task.focus_paths

        try:
            file_context = format_file_context(focus_paths, originals)
            coder = await self.agents.code(
                build_coder_message(task.goal, focus_paths, file_context), task_id=task.id
            )
            coder_edits = coder.result.for_paths(focus_paths)

            reviewer = await self.agents.review(
                build_reviewer_message(
                    task.goal, focus_paths, file_context, coder.result.proposal(coder_edits)
                ),
                task_id=task.id,
            )
            reviewed = reviewer.result.for_paths(focus_paths)

            proposed = self._proposals_from_edits(snapshot, reviewed)
            self._update(
                task,
                status=TaskStatus.PENDING_APPROVAL,
                notes=coder.result.notes or "No notes from the coding agent.",
                review_notes=reviewer.result.notes,
                raw_coder=coder.raw,
                raw_reviewer=reviewer.raw,
                proposed=proposed,
                tokens_used=coder.tokens + reviewer.tokens,
            )
            logger.info(
                "edit_task_ready",
                task_id=task.id,
                proposed=[change.path for change in proposed],
                dropped=len(coder.result.edits) - len(coder_edits),
            )
            self._notify("info", "AI task ready: review diffs and approve.")
        except asyncio.CancelledError:
            self._cancel(task)
            raise
        except Exception as e:
            self._fail(task, e, "AI task failed. Check settings/API key.")

    def _proposals_from_edits(
        self,
        snapshot: WorkspaceSnapshot,
        edits: list[EditInstruction],
    ) -> list[ProposedChange]:
        # Last edit per path wins
        latest = {edit.path: edit for edit in edits}
        proposed = []
        for path, edit in latest.items():
            current = snapshot.files.get(path)
            old = current.content if current else ""
            if edit.new_content == old:
                continue
            language = edit.language or (current.language if current else guess_language(path))
            proposed.append(ProposedChange.between(path, language, old, edit.new_content))
        return proposed

    # -----------------------------------------------------------------
    # Auto-fix
    # -----------------------------------------------------------------

    async def run_auto_fix(
        self,
        goal: str,
        focus_paths: list[str],
        max_iters: int | None = None,
        test_also: bool = True,
    ) -> Task | None:
        """Run the auto-fix loop and stage its final diff.

        Returns:
            The task (``pending_approval`` or ``error``), or None when no
            workspace is loaded.
        """
        snapshot = self._snapshot_or_notify()
        if snapshot is None:
            return None
        task = self._new_task(goal, focus_paths, "auto_fix")
        await self._auto_fix_pipeline(task, snapshot, max_iters, test_also)
        return task

    def submit_auto_fix(
        self,
        goal: str,
        focus_paths: list[str],
        max_iters: int | None = None,
        test_also: bool = True,
    ) -> Task | None:
        """Like ``run_auto_fix`` but returns the idle task immediately."""
        snapshot = self._snapshot_or_notify()
        if snapshot is None:
            return None
        task = self._new_task(goal, focus_paths, "auto_fix")
        self._schedule(
            task.id, self._auto_fix_pipeline(task, snapshot, max_iters, test_also)
        )
        return task

    async def _auto_fix_pipeline(
        self,
        task: Task,
        snapshot: WorkspaceSnapshot,
        max_iters: int | None,
        test_also: bool,
    ) -> None:
        self._update(task, status=TaskStatus.RUNNING)
        started = time.monotonic()

        try:
            result = await self.fix_loop.run(
                task_id=task.id,
                goal=task.goal,
                focus_paths=task.focus_paths,
                entry_file=snapshot.entry_file or DEFAULT_ENTRY_FILE,
                working=snapshot.contents(),
                languages={path: f.language for path, f in snapshot.files.items()},
                max_iters=max_iters or self.settings.autofix_max_iterations,
                test_also=test_also,
            )

            proposed = self._proposals_from_working_copy(task, snapshot, result)
            outcome_note = _outcome_note(result)
            tokens_used = result.tokens_used
            tokens_used += await self._summarize_and_store(
                task, result, proposed, outcome_note, int((time.monotonic() - started) * 1000)
            )

            self._update(
                task,
                status=TaskStatus.PENDING_APPROVAL,
                notes="Auto-fix loop completed. Review final diffs.",
                review_notes=outcome_note,
                proposed=proposed,
                tokens_used=tokens_used,
            )
            logger.info(
                "auto_fix_ready",
                task_id=task.id,
                iterations=len(task.iterations),
                stop_reason=result.stop_reason,
                proposed=[change.path for change in proposed],
            )
            self._notify("info", "Auto-fix finished: review diffs and approve.")
        except asyncio.CancelledError:
            self._cancel(task)
            raise
        except Exception as e:
            self._fail(task, e, "Auto-fix failed. Check settings/API key.")

    def _proposals_from_working_copy(
        self,
        task: Task,
        snapshot: WorkspaceSnapshot,
        result: FixLoopResult,
    ) -> list[ProposedChange]:
        proposed = []
        for path in task.focus_paths:
            original = snapshot.files.get(path)
            old = original.content if original else ""
            new = result.working.get(path, old)
            if new == old:
                continue
            language = (
                result.languages.get(path)
                or (original.language if original else None)
                or guess_language(path)
            )
            proposed.append(ProposedChange.between(path, language, old, new))
        return proposed

    async def _summarize_and_store(
        self,
        task: Task,
        result: FixLoopResult,
        proposed: list[ProposedChange],
        outcome_note: str,
        duration_ms: int,
    ) -> int:
        """Write the task memory item. Returns the summarizer's token count."""
        last_error = result.last.error
        last = task.iterations[-1] if task.iterations else None
        last_notes = f"{last.coder_notes} / {last.reviewer_notes}" if last else ""
        message = build_summarizer_message(
            task.goal, task.focus_paths, len(task.iterations), last_error, last_notes
        )

        tokens = 0
        try:
            reply = await self.agents.summarize(message, task_id=task.id)
            summary, outcome = reply.result.summary, reply.result.outcome
            tokens = reply.tokens
        except Exception as e:
            logger.warning(
                "task_summary_failed",
                task_id=task.id,
                error_type=type(e).__name__,
                error=str(e),
            )
            summary, outcome = outcome_note, _fallback_outcome(result)

        self.memory.add(
            TaskMemoryItem(
                goal=task.goal,
                focus_paths=task.focus_paths,
                outcome=outcome,
                last_error=last_error,
                summary=summary[:400],
                duration_ms=duration_ms,
                iterations=max(1, len(task.iterations)),
                tokens_used=result.tokens_used + tokens,
                files_modified=[change.path for change in proposed],
                metadata={"task_id": task.id, "stop_reason": result.stop_reason},
            )
        )
        return tokens

    # -----------------------------------------------------------------
    # Approval gate
    # -----------------------------------------------------------------

    def apply_changes(self, task_id: str, paths: list[str] | None = None) -> bool:
        """Write a task's proposals into the workspace.

        Only valid from ``pending_approval``; any other state is a no-op.

        Args:
            task_id: Task to apply
            paths: Optional subset of proposal paths to write

        Returns:
            True if the task was applied.
        """
        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.PENDING_APPROVAL:
            logger.info(
                "apply_ignored",
                task_id=task_id,
                status=task.status if task else None,
            )
            return False

        allow = set(paths) if paths else None
        applied = []
        for change in task.proposed:
            if allow is not None and change.path not in allow:
                continue
            self.workspace.upsert_file(change.path, change.language, change.new_content)
            applied.append(change.path)

        self._update(task, status=TaskStatus.DONE)
        logger.info("changes_applied", task_id=task_id, paths=applied)
        self._notify("info", "Changes applied.")
        return True

    def reject_changes(self, task_id: str) -> bool:
        """Discard a task's proposals without touching the workspace.

        Only valid from ``pending_approval``; any other state is a no-op.
        """
        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.PENDING_APPROVAL:
            logger.info(
                "reject_ignored",
                task_id=task_id,
                status=task.status if task else None,
            )
            return False

        self._update(task, status=TaskStatus.DONE, proposed=[])
        logger.info("changes_rejected", task_id=task_id)
        self._notify("info", "Changes rejected.")
        return True

    # -----------------------------------------------------------------
    # Background tasks
    # -----------------------------------------------------------------

    def _schedule(self, task_id: str, coro: Coroutine[Any, Any, None]) -> None:
        background_task = asyncio.create_task(coro, name=f"orchestrator:{task_id}")
        self._background[task_id] = background_task

        def _remove_task(t: asyncio.Task[None], tid: str = task_id) -> None:
            self._background.pop(tid, None)

        background_task.add_done_callback(_remove_task)

    async def wait_idle(self) -> None:
        """Wait for every submitted pipeline to finish."""
        while self._background:
            await asyncio.gather(*list(self._background.values()))

    async def shutdown(self) -> None:
        """Cancel pipelines still running."""
        pending = list(self._background.items())
        self._background.clear()
        for task_id, background_task in pending:
            if background_task.done():
                continue
            background_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await background_task
            logger.info("task_cancelled_on_shutdown", task_id=task_id)


def _outcome_note(result: FixLoopResult) -> str:
    if not result.made_change:
        return "No changes made."
    if result.last.error:
        return f"Still failing: {parse_error(result.last.error).message}"
    return "No runtime error detected."


def _fallback_outcome(result: FixLoopResult) -> str:
    if result.last.error is None:
        return "success"
    return "partial" if result.made_change else "fail"
