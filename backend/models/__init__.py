"""Models module for Pydantic schemas and SQLite stores.

This module exposes the request/response models used by the API and the
persistence stores used by the workspace manager and task memory.
"""

from models.database import TaskMemoryStore, WorkspaceStore
from models.schemas import (
    ApplyChangesRequest,
    AutoFixRequest,
    CreateWorkspaceRequest,
    EditTaskRequest,
    HealthResponse,
    MemoryImportRequest,
    PlanRequest,
    PlanResponse,
    RenameFileRequest,
    RunRequest,
    RunResponse,
    SetEntryRequest,
    StopAllResponse,
    TaskActionResponse,
    TaskSubmittedResponse,
    UpsertFileRequest,
)

__all__ = [
    "TaskMemoryStore",
    "WorkspaceStore",
    "ApplyChangesRequest",
    "AutoFixRequest",
    "CreateWorkspaceRequest",
    "EditTaskRequest",
    "HealthResponse",
    "MemoryImportRequest",
    "PlanRequest",
    "PlanResponse",
    "RenameFileRequest",
    "RunRequest",
    "RunResponse",
    "SetEntryRequest",
    "StopAllResponse",
    "TaskActionResponse",
    "TaskSubmittedResponse",
    "UpsertFileRequest",
]
