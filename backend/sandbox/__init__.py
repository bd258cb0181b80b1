"""Sandboxed execution of generated Python code.

This module provides the SandboxRunner, which bundles a working set into one
self-contained program and runs it in a fresh subprocess or Docker container.
"""

from sandbox.bundler import bundle_program
from sandbox.contexts import (
    DockerContext,
    ExecutionContext,
    RunMessage,
    SubprocessContext,
    make_context_factory,
)
from sandbox.runner import RunHandle, RunNotFoundError, RunResult, SandboxRunner
from sandbox.security import sanitize_output, validate_workspace_path
from sandbox.stack_trace import ParsedError, normalize_error_message, parse_error

__all__ = [
    "bundle_program",
    "DockerContext",
    "ExecutionContext",
    "RunMessage",
    "SubprocessContext",
    "make_context_factory",
    "RunHandle",
    "RunNotFoundError",
    "RunResult",
    "SandboxRunner",
    "sanitize_output",
    "validate_workspace_path",
    "ParsedError",
    "normalize_error_message",
    "parse_error",
]
