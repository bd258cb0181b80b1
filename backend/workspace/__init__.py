"""In-memory workspace model: snapshots, templates, import graph and the manager."""

from workspace.deps import DepEdge, DepGraph, build_dependency_graph
from workspace.manager import (
    WorkspaceManager,
    WorkspaceNotFoundError,
    WorkspaceNotLoadedError,
    WorkspacePersistence,
    normalize_path,
)
from workspace.models import (
    Language,
    WorkspaceFile,
    WorkspaceSnapshot,
    WorkspaceSummary,
    guess_language,
)
from workspace.templates import TEMPLATE_IDS, make_template

__all__ = [
    "DepEdge",
    "DepGraph",
    "build_dependency_graph",
    "WorkspaceManager",
    "WorkspaceNotFoundError",
    "WorkspaceNotLoadedError",
    "WorkspacePersistence",
    "normalize_path",
    "Language",
    "WorkspaceFile",
    "WorkspaceSnapshot",
    "WorkspaceSummary",
    "guess_language",
    "TEMPLATE_IDS",
    "make_template",
]
