"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the orchestration
backend. All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
import sys
from typing import Any, Literal

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        default_model: Model used by the coder and fix agents.
        planner_model: Model used to pick a task's focus set.
        reviewer_model: Model used to sanitize proposed edits.
        summarizer_model: Model used to write task memory summaries.
        llm_temperature: Sampling temperature for agent calls.
        llm_request_timeout_seconds: Timeout for a single provider request.
        llm_max_retries: Retries on transient provider failures.
        llm_fallback_model: Model tried once after the primary exhausts retries.
        event_history_limit: Size of the event bus history ring buffer.
        workspace_save_debounce_seconds: Quiet window before a workspace write.
        database_path: SQLite file for workspaces and task memory.
        sandbox_backend: Execution context used by the runner.
        sandbox_python: Interpreter for subprocess contexts (defaults to ours).
        sandbox_image: Docker image for container contexts.
        sandbox_mem_limit: Memory limit for container contexts.
        sandbox_cpu_quota: CPU quota (per 100000 period) for container contexts.
        sandbox_max_output_chars: Cap on captured stdout/stderr per run.
        runner_timeout_ms: Wall-clock budget for one captured run.
        autofix_max_iterations: Default iteration cap of the auto-fix loop.
        autofix_repeat_error_limit: Consecutive repeats of one normalized error
            tolerated before the loop gives up.
        autofix_max_test_files: Maximum test files executed per iteration.
        planner_max_focus: Maximum number of files in a focus set.
        task_memory_max_items: Retention cap of the task memory.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # LLM Configuration
    # Model names must include provider prefix for LiteLLM (e.g., openai/, gemini/, xai/)
    default_model: str = "openai/gpt-4o-mini"
    planner_model: str | None = None
    reviewer_model: str | None = None
    summarizer_model: str | None = None
    llm_temperature: float = 0.2
    llm_request_timeout_seconds: int = 120
    llm_max_retries: int = 3
    llm_fallback_model: str | None = None

    # Event bus
    event_history_limit: int = 1000

    # Workspace persistence
    workspace_save_debounce_seconds: float = 0.9
    database_path: str = "./data/workspaces.db"

    # Sandbox Configuration
    sandbox_backend: Literal["subprocess", "docker"] = "subprocess"
    sandbox_python: str = sys.executable
    sandbox_image: str = "python:3.12-slim"
    sandbox_mem_limit: str = "256m"
    sandbox_cpu_quota: int = 50000  # 50% of one CPU core
    sandbox_max_output_chars: int = 50000
    runner_timeout_ms: int = 2500

    # Auto-fix loop
    autofix_max_iterations: int = 4
    autofix_repeat_error_limit: int = 1
    autofix_max_test_files: int = 6
    planner_max_focus: int = 12

    # Task memory
    task_memory_max_items: int = 500

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts:
        - JSON array: '["http://localhost:3000"]'
        - Comma-separated: 'http://localhost:3000,http://localhost:8080'
        - Single value: 'http://localhost:3000'
        - Already a list: ["http://localhost:3000"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def model_for(self, role: str) -> str:
        """Return the model configured for an agent role.

        Roles without a dedicated override use ``default_model``.
        """
        overrides = {
            "planner": self.planner_model,
            "reviewer": self.reviewer_model,
            "summarizer": self.summarizer_model,
        }
        return overrides.get(role) or self.default_model


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
