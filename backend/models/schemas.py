"""Pydantic schemas for API request/response models.

This module defines the data models used by the HTTP API that are not domain
records themselves. Workspaces, files, tasks and memory items are returned
as their domain models directly.
All models use Pydantic v2 with strict type validation.
"""

from typing import Literal

from pydantic import BaseModel, Field


class CreateWorkspaceRequest(BaseModel):
    """Request body for creating a workspace from a template."""

    template_id: str = Field(
        default="default",
        description="Template to start from",
        examples=["default", "python-basic", "python-package"],
    )
    name: str = Field(
        min_length=1,
        max_length=200,
        description="Human-readable workspace name",
        examples=["scratch"],
    )


class UpsertFileRequest(BaseModel):
    """Request body for creating or replacing a workspace file."""

    path: str = Field(
        min_length=1,
        description="Workspace-relative path",
        examples=["app/util.py"],
    )
    language: str | None = Field(
        default=None,
        description="Language tag; guessed from the extension when omitted",
        examples=["python"],
    )
    content: str = Field(
        default="",
        description="Full file content",
    )


class RenameFileRequest(BaseModel):
    old_path: str = Field(min_length=1, description="Current path")
    new_path: str = Field(min_length=1, description="New path")


class SetEntryRequest(BaseModel):
    path: str = Field(min_length=1, description="File to mark as the entry point")


class RunRequest(BaseModel):
    """Request body for starting a run of the current workspace."""

    entry_file: str | None = Field(
        default=None,
        description="File to execute; defaults to the workspace entry point",
    )
    timeout_ms: int | None = Field(
        default=None,
        ge=100,
        le=60000,
        description="Wall-clock budget in milliseconds",
    )


class RunResponse(BaseModel):
    run_id: str = Field(description="Identifier of the started run")
    entry_file: str = Field(description="File being executed")


class StopAllResponse(BaseModel):
    stopped: int = Field(ge=0, description="Number of runs stopped")


class PlanRequest(BaseModel):
    goal: str = Field(
        min_length=1,
        max_length=10000,
        description="Natural-language goal",
        examples=["Add a --verbose flag to main.py"],
    )


class PlanResponse(BaseModel):
    notes: str = Field(default="", description="Planner notes")
    focus_paths: list[str] = Field(description="Files the task may touch")


class EditTaskRequest(BaseModel):
    """Request body for a single-shot edit task."""

    goal: str = Field(
        min_length=1,
        max_length=10000,
        description="Natural-language goal",
        examples=["Log the greeting before printing it"],
    )
    focus_paths: list[str] = Field(
        default_factory=list,
        description="Files the task may touch; planned from the goal when empty",
    )


class AutoFixRequest(EditTaskRequest):
    """Request body for an auto-fix task."""

    max_iterations: int | None = Field(
        default=None,
        ge=1,
        le=20,
        description="Iteration cap; defaults to the configured value",
    )
    test_also: bool = Field(
        default=True,
        description="Run discovered test files after a clean entry run",
    )


class TaskSubmittedResponse(BaseModel):
    task_id: str = Field(description="Identifier of the submitted task")
    status: str = Field(description="Task status at submission")
    focus_paths: list[str] = Field(description="Focus set the task was created with")


class ApplyChangesRequest(BaseModel):
    paths: list[str] | None = Field(
        default=None,
        description="Subset of proposal paths to apply; all when omitted",
    )


class TaskActionResponse(BaseModel):
    """Result of an apply or reject call."""

    task_id: str
    status: str
    changed: bool = Field(
        description="False when the call was a no-op because the task was not pending approval",
    )


class MemoryImportRequest(BaseModel):
    data: str = Field(description="JSON array of task memory items")


class HealthResponse(BaseModel):
    """Health check response with service status."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    sandbox_backend: str = Field(
        description="Execution context used by the runner",
    )
    workspace_loaded: bool = Field(
        default=False,
        description="Whether a workspace is currently loaded",
    )
    active_runs: int = Field(
        default=0,
        description="Number of runs currently executing",
    )
