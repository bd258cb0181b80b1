"""Task records owned by the orchestrator."""

import difflib
import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from workspace.models import new_id


class TaskStatus(StrEnum):
    """Task lifecycle.

    ``idle -> running -> (pending_approval | error)``, then
    ``pending_approval -> done`` through apply or reject.
    """

    IDLE = "idle"
    RUNNING = "running"
    PENDING_APPROVAL = "pending_approval"
    DONE = "done"
    ERROR = "error"


class RunRecord(BaseModel):
    """What one fix-loop iteration observed when running the working copy."""

    stdout: str = ""
    stderr: str = ""
    error: str | None = None
    parsed_error: dict[str, Any] | None = None


class FixIteration(BaseModel):
    i: int
    coder_notes: str = ""
    reviewer_notes: str = ""
    run: RunRecord = Field(default_factory=RunRecord)


def unified_diff(path: str, old: str, new: str) -> str:
    return "".join(
        difflib.unified_diff(
            old.splitlines(keepends=True),
            new.splitlines(keepends=True),
            fromfile=f"a/{path}",
            tofile=f"b/{path}",
        )
    )


class ProposedChange(BaseModel):
    """A staged full-file replacement awaiting approval."""

    path: str
    language: str
    old_content: str
    new_content: str
    diff: str = ""

    @classmethod
    def between(cls, path: str, language: str, old: str, new: str) -> "ProposedChange":
        return cls(
            path=path,
            language=language,
            old_content=old,
            new_content=new,
            diff=unified_diff(path, old, new),
        )


class Task(BaseModel):
    """The orchestrator's unit of work.

    Attributes:
        id: Task identifier
        status: Lifecycle state (see ``TaskStatus``)
        kind: ``edit`` for single-shot tasks, ``auto_fix`` for the fix loop
        goal: Natural-language goal
        focus_paths: Files the task may touch, fixed at creation
        notes: Coder notes, or the loop's completion note
        review_notes: Reviewer notes, or the loop's outcome note
        error: Failure message when status is ``error``
        raw_coder: Raw coder response of single-shot tasks
        raw_reviewer: Raw reviewer response of single-shot tasks
        proposed: Staged changes, all within ``focus_paths``
        iterations: Fix-loop passes, append-only
        tokens_used: Tokens spent on every agent call of the task
    """

    id: str = Field(default_factory=lambda: new_id("task"))
    status: TaskStatus = TaskStatus.IDLE
    kind: str = "edit"
    goal: str
    focus_paths: list[str] = Field(default_factory=list)
    notes: str | None = None
    review_notes: str | None = None
    error: str | None = None
    raw_coder: str | None = None
    raw_reviewer: str | None = None
    proposed: list[ProposedChange] = Field(default_factory=list)
    iterations: list[FixIteration] = Field(default_factory=list)
    tokens_used: int = 0
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    def touch(self) -> None:
        self.updated_at = time.time()
