"""FastAPI application entry point for the orchestration backend.

This module initializes the FastAPI application with all middleware,
routers, and service wiring configured. Every service is constructed once
in the lifespan and stored on ``app.state``.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agents.llm import LLMClient
from agents.roles import Agents
from api.routes import router
from api.websocket import websocket_router
from config import Settings, configure_logging, settings
from events.bus import EventBus
from memory.task_memory import TaskMemory
from models.database import TaskMemoryStore, WorkspaceStore
from orchestrator.orchestrator import Orchestrator
from sandbox.contexts import ContextFactory, make_context_factory
from sandbox.runner import SandboxRunner
from workspace.manager import WorkspaceManager

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


async def init_services(
    app: FastAPI,
    app_settings: Settings,
    llm_client: LLMClient | None = None,
    context_factory: ContextFactory | None = None,
) -> None:
    """Construct every service and store it on ``app.state``.

    Args:
        app: The FastAPI application instance.
        app_settings: Settings to build from.
        llm_client: Client override (tests pass a MockLLMClient).
        context_factory: Execution context override; defaults to the
            configured sandbox backend.
    """
    event_bus = EventBus(history_limit=app_settings.event_history_limit)

    workspace_store = WorkspaceStore(app_settings.database_path)
    await workspace_store.init()
    memory_store = TaskMemoryStore(app_settings.database_path)
    await memory_store.init()

    workspace = WorkspaceManager(
        event_bus,
        workspace_store,
        debounce_seconds=app_settings.workspace_save_debounce_seconds,
    )
    workspace.start()

    runner = SandboxRunner(
        event_bus,
        context_factory or make_context_factory(app_settings),
        workspace=workspace,
        default_timeout_ms=app_settings.runner_timeout_ms,
        max_output_chars=app_settings.sandbox_max_output_chars,
    )

    memory = TaskMemory(
        event_bus,
        max_items=app_settings.task_memory_max_items,
        store=memory_store,
    )
    await memory.load()

    llm_client = llm_client or LLMClient(
        event_bus=event_bus,
        default_model=app_settings.default_model,
        fallback_model=app_settings.llm_fallback_model,
        retry_attempts=app_settings.llm_max_retries,
        request_timeout=app_settings.llm_request_timeout_seconds,
    )
    orchestrator = Orchestrator(
        event_bus,
        workspace,
        runner,
        memory,
        Agents(llm_client, app_settings),
        app_settings,
    )

    app.state.settings = app_settings
    app.state.event_bus = event_bus
    app.state.workspace = workspace
    app.state.runner = runner
    app.state.memory = memory
    app.state.orchestrator = orchestrator
    logger.info("resources_initialized", sandbox_backend=app_settings.sandbox_backend)


async def shutdown_services(app: FastAPI) -> None:
    """Stop runs, cancel pipelines and flush pending writes."""
    stopped = await app.state.runner.stop_all()
    await app.state.orchestrator.shutdown()
    await app.state.workspace.close()
    await app.state.memory.wait_persisted()
    logger.info("resources_released", runs_stopped=stopped)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    # Startup
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        default_model=settings.default_model,
    )
    await init_services(app, settings)
    logger.info("application_started")

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await shutdown_services(app)
    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Agentic Edit/Fix Orchestrator",
    description="Backend API that turns goals into reviewed, staged code changes "
    "for an in-memory Python workspace, with a sandboxed auto-fix loop.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include HTTP routes
app.include_router(router, tags=["orchestrator"])

# Include WebSocket routes
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint pointing at the API documentation."""
    return {
        "message": "Agentic Edit/Fix Orchestrator API",
        "docs": "/docs",
        "health": "/api/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
