"""Task orchestration: focus planning, edit tasks, the auto-fix loop and approval."""

from orchestrator.graph import FixLoop, FixLoopResult, StopReason, discover_test_files
from orchestrator.models import FixIteration, ProposedChange, RunRecord, Task, TaskStatus
from orchestrator.orchestrator import FocusPlan, Orchestrator

__all__ = [
    "FixLoop",
    "FixLoopResult",
    "StopReason",
    "discover_test_files",
    "FixIteration",
    "ProposedChange",
    "RunRecord",
    "Task",
    "TaskStatus",
    "FocusPlan",
    "Orchestrator",
]
