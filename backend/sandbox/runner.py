"""Sandboxed runner: drives execution contexts and collects their output.

Two entry points share one driver loop:

- ``run(entry_file)`` runs the current workspace in the background and
  reports progress on the event bus (``runner:started``, ``runner:output``
  and exactly one of ``runner:exited`` / ``runner:error``). It returns a
  ``RunHandle`` immediately.
- ``run_project_and_capture(files, entry_file, timeout_ms)`` runs an
  arbitrary working set and returns the buffered ``RunResult``. The
  orchestrator's fix loop uses this one.

The driver resolves each run exactly once: the first terminal message or
the wall-clock timeout wins and anything arriving later is ignored. The
context is always torn down, including on timeout and cancellation.
"""

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from events.bus import EventBus
from events.types import EventType, make_event
from sandbox.bundler import bundle_program
from sandbox.contexts import ContextFactory, ExecutionContext, RunMessage
from sandbox.security import sanitize_output

if TYPE_CHECKING:
    from workspace.manager import WorkspaceManager

logger = structlog.get_logger()


class RunNotFoundError(KeyError):
    """Raised when stopping a run id that is not active."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


@dataclass
class RunResult:
    """Terminal record of one sandboxed execution.

    Attributes:
        run_id: Identifier of the run
        stdout: Captured standard output
        stderr: Captured standard error
        exit_code: Process exit status, when the program exited
        error: Uncaught exception traceback, timeout or launch failure
    """

    run_id: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None or (self.exit_code is not None and self.exit_code != 0)


@dataclass
class RunHandle:
    """Handle returned by ``SandboxRunner.run``."""

    run_id: str
    entry_file: str
    task: asyncio.Task[RunResult] = field(repr=False)

    async def result(self) -> RunResult:
        return await asyncio.shield(self.task)

    @property
    def done(self) -> bool:
        return self.task.done()


class SandboxRunner:
    """Runs bundled working sets in fresh execution contexts.

    Attributes:
        default_timeout_ms: Wall-clock budget when a call does not pass one
        max_output_chars: Cap applied to captured stdout and stderr
    """

    def __init__(
        self,
        event_bus: EventBus,
        context_factory: ContextFactory,
        workspace: "WorkspaceManager | None" = None,
        default_timeout_ms: int = 2500,
        max_output_chars: int = 50000,
    ) -> None:
        self.event_bus = event_bus
        self.context_factory = context_factory
        self.workspace = workspace
        self.default_timeout_ms = default_timeout_ms
        self.max_output_chars = max_output_chars
        self._contexts: dict[str, ExecutionContext] = {}
        self._handles: dict[str, RunHandle] = {}

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    def run(self, entry_file: str | None = None, *, timeout_ms: int | None = None) -> RunHandle:
        """Run the current workspace in the background.

        Args:
            entry_file: File to execute; defaults to the workspace entry point
            timeout_ms: Wall-clock budget; defaults to ``default_timeout_ms``

        Returns:
            A handle whose ``result()`` awaits the final RunResult.

        Raises:
            RuntimeError: If the runner has no workspace manager.
            WorkspaceNotLoadedError: If no workspace is loaded.
            ValueError: If no entry file is given and none is flagged.
        """
        if self.workspace is None:
            raise RuntimeError("Runner has no workspace attached")
        snapshot = self.workspace.require_current()
        entry = entry_file or snapshot.entry_file
        if not entry:
            raise ValueError("Workspace has no entry file")

        run_id = f"run_{uuid.uuid4().hex[:12]}"
        self.event_bus.publish(
            make_event(
                EventType.RUNNER_STARTED,
                run_id=run_id,
                workspace_id=snapshot.id,
                entry_file=entry,
            )
        )
        logger.info("run_started", run_id=run_id, entry_file=entry)

        task = asyncio.create_task(
            self._run_with_events(run_id, snapshot.contents(), entry, timeout_ms),
            name=run_id,
        )
        handle = RunHandle(run_id=run_id, entry_file=entry, task=task)
        self._handles[run_id] = handle

        def _remove_handle(t: asyncio.Task[RunResult], rid: str = run_id) -> None:
            self._handles.pop(rid, None)

        task.add_done_callback(_remove_handle)
        return handle

    async def run_project_and_capture(
        self,
        files: dict[str, str],
        entry_file: str,
        timeout_ms: int | None = None,
        test_files: list[str] | None = None,
    ) -> RunResult:
        """Run a working set and return its buffered result.

        Args:
            files: Path to content for every file of the working set
            entry_file: File executed as ``__main__``
            timeout_ms: Wall-clock budget; defaults to ``default_timeout_ms``
            test_files: When given, their ``test_*`` functions run after the
                entry file

        Returns:
            The RunResult. Runtime errors, timeouts and launch failures are
            reported in ``error`` rather than raised.
        """
        run_id = f"run_{uuid.uuid4().hex[:12]}"
        return await self._execute(run_id, files, entry_file, timeout_ms, test_files)

    async def run_code(self, code: str, timeout_ms: int | None = None) -> RunResult:
        """Run a single snippet as ``main.py``."""
        return await self.run_project_and_capture({"main.py": code}, "main.py", timeout_ms)

    async def stop(self, run_id: str) -> None:
        """Stop an active run; it resolves with ``error="Run stopped"``.

        Raises:
            RunNotFoundError: If the run is not active.
        """
        context = self._contexts.get(run_id)
        if context is None:
            raise RunNotFoundError(run_id)
        logger.info("run_stop_requested", run_id=run_id)
        await context.stop()

    async def stop_all(self) -> int:
        """Stop every active run. Returns how many were stopped."""
        run_ids = list(self._contexts)
        for run_id in run_ids:
            try:
                await self.stop(run_id)
            except RunNotFoundError:
                continue
        if run_ids:
            logger.info("runs_stopped", count=len(run_ids))
        return len(run_ids)

    @property
    def active_run_ids(self) -> list[str]:
        return list(self._contexts)

    def get_handle(self, run_id: str) -> RunHandle | None:
        return self._handles.get(run_id)

    # -----------------------------------------------------------------
    # Driver
    # -----------------------------------------------------------------

    async def _run_with_events(
        self,
        run_id: str,
        files: dict[str, str],
        entry_file: str,
        timeout_ms: int | None,
    ) -> RunResult:
        def on_output(message: RunMessage) -> None:
            self.event_bus.publish(
                make_event(
                    EventType.RUNNER_OUTPUT,
                    run_id=run_id,
                    kind=message.type,
                    text=message.text,
                )
            )

        try:
            result = await self._execute(run_id, files, entry_file, timeout_ms, on_output=on_output)
        except Exception as e:
            logger.exception("run_failed", run_id=run_id)
            result = RunResult(run_id=run_id, error=str(e) or type(e).__name__)

        if result.error is not None:
            self.event_bus.publish(make_event(EventType.RUNNER_ERROR, run_id=run_id, error=result.error))
        else:
            self.event_bus.publish(
                make_event(EventType.RUNNER_EXITED, run_id=run_id, code=result.exit_code or 0)
            )
        logger.info(
            "run_finished",
            run_id=run_id,
            exit_code=result.exit_code,
            has_error=result.error is not None,
        )
        return result

    async def _execute(
        self,
        run_id: str,
        files: dict[str, str],
        entry_file: str,
        timeout_ms: int | None,
        test_files: list[str] | None = None,
        on_output: Callable[[RunMessage], None] | None = None,
    ) -> RunResult:
        timeout_ms = timeout_ms if timeout_ms is not None else self.default_timeout_ms

        try:
            program = bundle_program(files, entry_file, test_files)
        except ValueError as e:
            return RunResult(run_id=run_id, error=str(e))

        stdout: list[str] = []
        stderr: list[str] = []
        result: RunResult | None = None

        def finish(exit_code: int | None = None, error: str | None = None) -> None:
            nonlocal result
            if result is not None:
                return
            result = RunResult(
                run_id=run_id,
                stdout=sanitize_output("".join(stdout), self.max_output_chars),
                stderr=sanitize_output("".join(stderr), self.max_output_chars),
                exit_code=exit_code,
                error=error,
            )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        context: ExecutionContext | None = None

        try:
            # The budget covers context creation and start as well as output
            async with asyncio.timeout_at(deadline):
                try:
                    context = self.context_factory(run_id)
                    self._contexts[run_id] = context
                    await context.start(program)
                except (OSError, RuntimeError) as e:
                    logger.error("run_context_start_failed", run_id=run_id, error=str(e))
                    finish(error=f"Failed to start execution context: {e}")

                while context is not None and result is None:
                    message = await context.messages.get()
                    if message.type == "stdout":
                        stdout.append(message.text)
                    elif message.type == "stderr":
                        stderr.append(message.text)
                    elif message.type == "exit":
                        finish(exit_code=message.code)
                    else:
                        finish(error=message.error or "Unknown error")

                    if on_output is not None and not message.is_terminal:
                        on_output(message)
        except TimeoutError:
            logger.warning("run_timed_out", run_id=run_id, timeout_ms=timeout_ms)
            finish(error=f"Timeout after {timeout_ms}ms")
        finally:
            self._contexts.pop(run_id, None)
            if context is not None:
                try:
                    await context.terminate()
                except Exception:
                    logger.exception("run_teardown_failed", run_id=run_id)

        if result is None:
            raise RuntimeError(f"Run {run_id} ended without a result")
        return result
