"""HTTP API routes for the orchestration backend.

This module defines the HTTP endpoints for workspaces, sandbox runs, agent
tasks, task memory and health checks. Real-time events are handled via
WebSocket in websocket.py.

Services are constructed once in the application lifespan and read from
``request.app.state`` through the ``get_*`` dependencies below.
"""

import time
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, status
from fastapi.responses import PlainTextResponse

from agents.roles import AgentProtocolError
from memory.task_memory import (
    ImportResult,
    MemorySearchFilter,
    MemoryStatistics,
    TaskMemory,
    TaskMemoryItem,
)
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
from orchestrator.models import Task
from orchestrator.orchestrator import Orchestrator
from sandbox.runner import RunNotFoundError, SandboxRunner
from workspace.manager import WorkspaceManager, WorkspaceNotFoundError, WorkspaceNotLoadedError
from workspace.models import WorkspaceFile, WorkspaceSnapshot, WorkspaceSummary

logger = structlog.get_logger(__name__)

router = APIRouter()

# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------


def get_workspace(request: Request) -> WorkspaceManager:
    return request.app.state.workspace


def get_runner(request: Request) -> SandboxRunner:
    return request.app.state.runner


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def get_memory(request: Request) -> TaskMemory:
    return request.app.state.memory


WorkspaceDep = Annotated[WorkspaceManager, Depends(get_workspace)]
RunnerDep = Annotated[SandboxRunner, Depends(get_runner)]
OrchestratorDep = Annotated[Orchestrator, Depends(get_orchestrator)]
MemoryDep = Annotated[TaskMemory, Depends(get_memory)]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _not_loaded(e: WorkspaceNotLoadedError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


def _require_task(orchestrator: Orchestrator, task_id: str) -> Task:
    task = orchestrator.get(task_id)
    if task is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Task {task_id} not found",
        )
    return task


async def _resolve_focus(orchestrator: Orchestrator, goal: str, focus_paths: list[str]) -> list[str]:
    """Use the given focus set, or plan one when it is empty."""
    if focus_paths:
        return focus_paths
    try:
        plan = await orchestrator.plan_focus(goal)
    except AgentProtocolError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e
    if plan is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No workspace loaded")
    return plan.focus_paths


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get(
    "/api/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health_check(request: Request) -> HealthResponse:
    """Report service status; unhealthy when the lifespan has not finished."""
    state = request.app.state
    if not hasattr(state, "orchestrator"):
        return HealthResponse(
            status="unhealthy",
            timestamp=time.time(),
            sandbox_backend="unknown",
        )
    return HealthResponse(
        status="healthy",
        timestamp=time.time(),
        sandbox_backend=state.settings.sandbox_backend,
        workspace_loaded=state.workspace.get_current() is not None,
        active_runs=len(state.runner.active_run_ids),
    )


# -----------------------------------------------------------------------------
# Workspaces
# -----------------------------------------------------------------------------


@router.get(
    "/api/workspaces",
    response_model=list[WorkspaceSummary],
    summary="List workspaces",
)
async def list_workspaces(workspace: WorkspaceDep) -> list[WorkspaceSummary]:
    return await workspace.list_workspaces()


@router.post(
    "/api/workspaces",
    response_model=WorkspaceSnapshot,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workspace from a template and make it current",
)
async def create_workspace(
    request: CreateWorkspaceRequest,
    workspace: WorkspaceDep,
) -> WorkspaceSnapshot:
    snapshot = await workspace.create(request.template_id, request.name)
    logger.info("workspace_created_via_api", workspace_id=snapshot.id)
    return snapshot


@router.post(
    "/api/workspaces/{workspace_id}/load",
    response_model=WorkspaceSnapshot,
    summary="Load a stored workspace and make it current",
)
async def load_workspace(
    workspace_id: Annotated[str, Path(description="The workspace ID")],
    workspace: WorkspaceDep,
) -> WorkspaceSnapshot:
    try:
        return await workspace.load(workspace_id)
    except WorkspaceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e


@router.delete(
    "/api/workspaces/{workspace_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a stored workspace",
)
async def delete_workspace(
    workspace_id: Annotated[str, Path(description="The workspace ID")],
    workspace: WorkspaceDep,
) -> None:
    if not await workspace.remove(workspace_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Workspace {workspace_id} not found",
        )


@router.get(
    "/api/workspace",
    response_model=WorkspaceSnapshot,
    summary="Get the current workspace",
)
async def get_current_workspace(workspace: WorkspaceDep) -> WorkspaceSnapshot:
    try:
        return workspace.require_current()
    except WorkspaceNotLoadedError as e:
        raise _not_loaded(e) from e


@router.put(
    "/api/workspace/files",
    response_model=WorkspaceFile,
    summary="Create or replace a file in the current workspace",
)
async def upsert_file(request: UpsertFileRequest, workspace: WorkspaceDep) -> WorkspaceFile:
    try:
        return workspace.upsert_file(request.path, request.language, request.content)
    except WorkspaceNotLoadedError as e:
        raise _not_loaded(e) from e
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e


@router.post(
    "/api/workspace/files/rename",
    response_model=WorkspaceFile,
    summary="Rename a file in the current workspace",
)
async def rename_file(request: RenameFileRequest, workspace: WorkspaceDep) -> WorkspaceFile:
    try:
        return workspace.rename_file(request.old_path, request.new_path)
    except WorkspaceNotLoadedError as e:
        raise _not_loaded(e) from e
    except FileNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except FileExistsError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e


@router.delete(
    "/api/workspace/files/{path:path}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a file from the current workspace",
)
async def delete_file(
    path: Annotated[str, Path(description="Workspace-relative path")],
    workspace: WorkspaceDep,
) -> None:
    try:
        workspace.delete_file(path)
    except WorkspaceNotLoadedError as e:
        raise _not_loaded(e) from e
    except FileNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e


@router.post(
    "/api/workspace/entry",
    response_model=WorkspaceSnapshot,
    summary="Mark a file as the workspace entry point",
)
async def set_entry(request: SetEntryRequest, workspace: WorkspaceDep) -> WorkspaceSnapshot:
    try:
        workspace.set_entry(request.path)
        return workspace.require_current()
    except WorkspaceNotLoadedError as e:
        raise _not_loaded(e) from e
    except FileNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e


# -----------------------------------------------------------------------------
# Runs
# -----------------------------------------------------------------------------


@router.post(
    "/api/runs",
    response_model=RunResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Run the current workspace",
    description="Starts a background run; output arrives as runner:* events on the WebSocket.",
)
async def start_run(request: RunRequest, runner: RunnerDep) -> RunResponse:
    try:
        handle = runner.run(request.entry_file, timeout_ms=request.timeout_ms)
    except WorkspaceNotLoadedError as e:
        raise _not_loaded(e) from e
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return RunResponse(run_id=handle.run_id, entry_file=handle.entry_file)


@router.post(
    "/api/runs/stop",
    response_model=StopAllResponse,
    summary="Stop every active run",
)
async def stop_all_runs(runner: RunnerDep) -> StopAllResponse:
    return StopAllResponse(stopped=await runner.stop_all())


@router.post(
    "/api/runs/{run_id}/stop",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Stop an active run",
)
async def stop_run(
    run_id: Annotated[str, Path(description="The run ID")],
    runner: RunnerDep,
) -> None:
    try:
        await runner.stop(run_id)
    except RunNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run {run_id} not found",
        ) from e


# -----------------------------------------------------------------------------
# Tasks
# -----------------------------------------------------------------------------


@router.post(
    "/api/tasks/plan",
    response_model=PlanResponse,
    summary="Plan a focus set for a goal",
)
async def plan_focus(request: PlanRequest, orchestrator: OrchestratorDep) -> PlanResponse:
    try:
        plan = await orchestrator.plan_focus(request.goal)
    except AgentProtocolError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e
    if plan is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No workspace loaded")
    return PlanResponse(notes=plan.notes, focus_paths=plan.focus_paths)


@router.post(
    "/api/tasks/edit",
    response_model=TaskSubmittedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a single-shot edit task",
)
async def submit_edit_task(
    request: EditTaskRequest,
    orchestrator: OrchestratorDep,
) -> TaskSubmittedResponse:
    focus_paths = await _resolve_focus(orchestrator, request.goal, request.focus_paths)
    task = orchestrator.submit_edit_task(request.goal, focus_paths)
    if task is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No workspace loaded")
    logger.info("edit_task_submitted", task_id=task.id, goal_length=len(request.goal))
    return TaskSubmittedResponse(
        task_id=task.id, status=task.status.value, focus_paths=task.focus_paths
    )


@router.post(
    "/api/tasks/auto-fix",
    response_model=TaskSubmittedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit an auto-fix task",
)
async def submit_auto_fix(
    request: AutoFixRequest,
    orchestrator: OrchestratorDep,
) -> TaskSubmittedResponse:
    focus_paths = await _resolve_focus(orchestrator, request.goal, request.focus_paths)
    task = orchestrator.submit_auto_fix(
        request.goal,
        focus_paths,
        max_iters=request.max_iterations,
        test_also=request.test_also,
    )
    if task is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No workspace loaded")
    logger.info("auto_fix_submitted", task_id=task.id, goal_length=len(request.goal))
    return TaskSubmittedResponse(
        task_id=task.id, status=task.status.value, focus_paths=task.focus_paths
    )


@router.get(
    "/api/tasks",
    response_model=list[Task],
    summary="List tasks, newest first",
)
async def list_tasks(orchestrator: OrchestratorDep) -> list[Task]:
    return orchestrator.list_tasks()


@router.get(
    "/api/tasks/{task_id}",
    response_model=Task,
    summary="Get a task with its proposals and iterations",
)
async def get_task(
    task_id: Annotated[str, Path(description="The task ID")],
    orchestrator: OrchestratorDep,
) -> Task:
    return _require_task(orchestrator, task_id)


@router.post(
    "/api/tasks/{task_id}/apply",
    response_model=TaskActionResponse,
    summary="Apply a task's proposed changes to the workspace",
)
async def apply_changes(
    task_id: Annotated[str, Path(description="The task ID")],
    orchestrator: OrchestratorDep,
    request: ApplyChangesRequest | None = None,
) -> TaskActionResponse:
    task = _require_task(orchestrator, task_id)
    try:
        changed = orchestrator.apply_changes(task_id, request.paths if request else None)
    except WorkspaceNotLoadedError as e:
        raise _not_loaded(e) from e
    return TaskActionResponse(task_id=task_id, status=task.status.value, changed=changed)


@router.post(
    "/api/tasks/{task_id}/reject",
    response_model=TaskActionResponse,
    summary="Discard a task's proposed changes",
)
async def reject_changes(
    task_id: Annotated[str, Path(description="The task ID")],
    orchestrator: OrchestratorDep,
) -> TaskActionResponse:
    task = _require_task(orchestrator, task_id)
    changed = orchestrator.reject_changes(task_id)
    return TaskActionResponse(task_id=task_id, status=task.status.value, changed=changed)


# -----------------------------------------------------------------------------
# Task memory
# -----------------------------------------------------------------------------


@router.get(
    "/api/memory",
    response_model=list[TaskMemoryItem],
    summary="List task memory items, newest first",
)
async def list_memory(
    memory: MemoryDep,
    limit: Annotated[int, Query(description="Maximum items to return", ge=1, le=500)] = 50,
) -> list[TaskMemoryItem]:
    return memory.list_items(limit)


@router.post(
    "/api/memory/search",
    response_model=list[TaskMemoryItem],
    summary="Search task memory",
)
async def search_memory(search_filter: MemorySearchFilter, memory: MemoryDep) -> list[TaskMemoryItem]:
    return memory.search(search_filter)


@router.get(
    "/api/memory/statistics",
    response_model=MemoryStatistics,
    summary="Aggregate task memory statistics",
)
async def memory_statistics(memory: MemoryDep) -> MemoryStatistics:
    return memory.get_statistics()


@router.get(
    "/api/memory/export",
    response_class=PlainTextResponse,
    summary="Export task memory as a JSON array",
)
async def export_memory(memory: MemoryDep) -> PlainTextResponse:
    return PlainTextResponse(memory.export_json(), media_type="application/json")


@router.post(
    "/api/memory/import",
    response_model=ImportResult,
    summary="Import task memory from a JSON array",
)
async def import_memory(request: MemoryImportRequest, memory: MemoryDep) -> ImportResult:
    result = memory.import_json(request.data)
    if not result.success:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.error)
    return result


@router.get(
    "/api/memory/{item_id}/related",
    response_model=list[TaskMemoryItem],
    summary="Items related to a task memory item",
)
async def related_memory(
    item_id: Annotated[str, Path(description="The memory item ID")],
    memory: MemoryDep,
    limit: Annotated[int, Query(ge=1, le=50)] = 5,
) -> list[TaskMemoryItem]:
    if memory.get(item_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Memory item {item_id} not found",
        )
    return memory.get_related(item_id, limit)


@router.delete(
    "/api/memory/{item_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a task memory item",
)
async def delete_memory(
    item_id: Annotated[str, Path(description="The memory item ID")],
    memory: MemoryDep,
) -> None:
    if not memory.delete(item_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Memory item {item_id} not found",
        )
