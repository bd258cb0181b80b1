"""Immutable records describing a workspace and its files.

Every mutation of a workspace produces new ``WorkspaceFile`` and
``WorkspaceSnapshot`` instances through ``model_copy``; nothing is edited in
place. That lets the orchestrator hold on to a snapshot taken at task start
and diff against it later.
"""

import time
import uuid
from enum import StrEnum
from pathlib import PurePosixPath
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Language(StrEnum):
    """Language tags attached to workspace files."""

    PYTHON = "python"
    MARKDOWN = "markdown"
    JSON = "json"
    TOML = "toml"
    YAML = "yaml"
    JAVASCRIPT = "javascript"
    TYPESCRIPT = "typescript"
    HTML = "html"
    CSS = "css"
    TEXT = "text"


_EXTENSION_LANGUAGES: dict[str, Language] = {
    ".py": Language.PYTHON,
    ".pyi": Language.PYTHON,
    ".md": Language.MARKDOWN,
    ".mdx": Language.MARKDOWN,
    ".json": Language.JSON,
    ".toml": Language.TOML,
    ".yaml": Language.YAML,
    ".yml": Language.YAML,
    ".js": Language.JAVASCRIPT,
    ".jsx": Language.JAVASCRIPT,
    ".ts": Language.TYPESCRIPT,
    ".tsx": Language.TYPESCRIPT,
    ".html": Language.HTML,
    ".css": Language.CSS,
}


def guess_language(path: str) -> str:
    """Guess a language tag from a file extension (``text`` when unknown)."""
    suffix = PurePosixPath(path).suffix.lower()
    return _EXTENSION_LANGUAGES.get(suffix, Language.TEXT).value


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class FileMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_entry_point: bool = False


class WorkspaceFile(BaseModel):
    """One file of a workspace.

    Attributes:
        id: Stable identifier, kept across renames and content edits
        path: Normalized workspace-relative path, unique within a workspace
        language: Language tag (see ``Language``)
        content: Full file text
        created_at: Unix timestamp of creation
        updated_at: Unix timestamp of the last change
        metadata: Flags such as the entry point marker
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("file"))
    path: str
    language: str
    content: str = ""
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    metadata: FileMetadata = Field(default_factory=FileMetadata)

    @property
    def is_entry_point(self) -> bool:
        return self.metadata.is_entry_point

    def with_changes(self, **changes: Any) -> "WorkspaceFile":
        """Return a copy with ``changes`` applied and ``updated_at`` refreshed."""
        return self.model_copy(update={**changes, "updated_at": time.time()})

    def with_entry_flag(self, is_entry_point: bool) -> "WorkspaceFile":
        return self.with_changes(metadata=FileMetadata(is_entry_point=is_entry_point))


class WorkspaceSnapshot(BaseModel):
    """A complete workspace at one point in time.

    Attributes:
        id: Workspace identifier (persistence key)
        name: Human-readable name
        files: Files keyed by path
        created_at: Unix timestamp of creation
        updated_at: Unix timestamp of the last mutation
        template_id: Template the workspace was created from
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("ws"))
    name: str
    files: dict[str, WorkspaceFile] = Field(default_factory=dict)
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    template_id: str = "default"

    @property
    def entry_file(self) -> str | None:
        """Path of the entry point file, if one is flagged."""
        for path, file in self.files.items():
            if file.is_entry_point:
                return path
        return None

    def contents(self) -> dict[str, str]:
        """Map of path to content, the shape the runner consumes."""
        return {path: file.content for path, file in self.files.items()}

    def with_files(self, files: dict[str, WorkspaceFile]) -> "WorkspaceSnapshot":
        return self.model_copy(update={"files": files, "updated_at": time.time()})

    def summary(self) -> "WorkspaceSummary":
        return WorkspaceSummary(
            id=self.id,
            name=self.name,
            template_id=self.template_id,
            file_count=len(self.files),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class WorkspaceSummary(BaseModel):
    """Index entry used for listing workspaces without loading them."""

    id: str
    name: str
    template_id: str
    file_count: int = 0
    created_at: float
    updated_at: float
