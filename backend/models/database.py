"""SQLite-based persistence using aiosqlite.

This module provides the stores behind the workspace model and task memory.
All operations are async and designed to fail gracefully -- a database error
should never crash a running task. Reads return ``None``/empty results on
failure and writes log the error and carry on.

Tables:
    workspaces: One JSON document per workspace snapshot plus the summary
        columns used for listing.
    task_memory: One JSON document per task memory item, ordered by
        position (0 = newest).

Usage:
    >>> from models.database import WorkspaceStore
    >>> store = WorkspaceStore("./data/workspaces.db")
    >>> await store.init()
    >>> await store.set(snapshot.id, snapshot)
    >>> summaries = await store.list_summaries()
"""

import json
from pathlib import Path
from typing import Any

import aiosqlite
import structlog
from pydantic import ValidationError

from workspace.models import WorkspaceSnapshot, WorkspaceSummary

logger = structlog.get_logger(__name__)


def _ensure_parent(db_path: str) -> None:
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)


class WorkspaceStore:
    """Async SQLite key-value store for workspace snapshots.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the workspace store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
        """
        self.db_path = db_path

    async def init(self) -> None:
        """Create the table and index if they do not exist."""
        _ensure_parent(self.db_path)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS workspaces (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        template_id TEXT NOT NULL,
                        file_count INTEGER NOT NULL DEFAULT 0,
                        document TEXT NOT NULL,
                        created_at REAL NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_workspaces_updated_at
                    ON workspaces(updated_at DESC)
                """)
                await db.commit()
            logger.info("workspace_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error(
                "workspace_store_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    async def get(self, workspace_id: str) -> WorkspaceSnapshot | None:
        """Load a snapshot by id.

        Returns:
            The snapshot, or None if missing or unreadable.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "SELECT document FROM workspaces WHERE id = ?",
                    (workspace_id,),
                )
                row = await cursor.fetchone()
            if row is None:
                return None
            return WorkspaceSnapshot.model_validate_json(row[0])
        except ValidationError as e:
            logger.error(
                "workspace_document_invalid",
                workspace_id=workspace_id,
                error=str(e),
            )
            return None
        except Exception as e:
            logger.error(
                "workspace_get_failed",
                workspace_id=workspace_id,
                error=str(e),
            )
            return None

    async def set(self, workspace_id: str, snapshot: WorkspaceSnapshot) -> None:
        """Insert or replace a snapshot.

        Args:
            workspace_id: Persistence key (normally ``snapshot.id``).
            snapshot: The snapshot to store.

        Raises:
            Exception: Any database error, after logging it; the caller
                keeps the snapshot pending.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO workspaces
                        (id, name, template_id, file_count, document,
                         created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        workspace_id,
                        snapshot.name,
                        snapshot.template_id,
                        len(snapshot.files),
                        snapshot.model_dump_json(),
                        snapshot.created_at,
                        snapshot.updated_at,
                    ),
                )
                await db.commit()
            logger.debug(
                "workspace_saved",
                workspace_id=workspace_id,
                file_count=len(snapshot.files),
            )
        except Exception as e:
            logger.error(
                "workspace_save_failed",
                workspace_id=workspace_id,
                error=str(e),
            )
            raise

    async def remove(self, workspace_id: str) -> bool:
        """Delete a snapshot.

        Returns:
            True if a row was removed.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "DELETE FROM workspaces WHERE id = ?",
                    (workspace_id,),
                )
                await db.commit()
                removed = cursor.rowcount > 0
            logger.debug("workspace_removed", workspace_id=workspace_id, removed=removed)
            return removed
        except Exception as e:
            logger.error(
                "workspace_remove_failed",
                workspace_id=workspace_id,
                error=str(e),
            )
            return False

    async def list_summaries(self, limit: int = 100) -> list[WorkspaceSummary]:
        """List workspace summaries, most recently updated first."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    """
                    SELECT id, name, template_id, file_count, created_at, updated_at
                    FROM workspaces
                    ORDER BY updated_at DESC
                    LIMIT ?
                    """,
                    (limit,),
                )
                rows = await cursor.fetchall()
            return [WorkspaceSummary(**dict(row)) for row in rows]
        except Exception as e:
            logger.error("workspace_list_failed", error=str(e))
            return []


class TaskMemoryStore:
    """Async SQLite store holding the task memory as an ordered list.

    Task memory is small (it is capped in memory) so it is persisted by
    replacing the whole table in one transaction.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def init(self) -> None:
        _ensure_parent(self.db_path)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS task_memory (
                        id TEXT PRIMARY KEY,
                        position INTEGER NOT NULL,
                        document TEXT NOT NULL
                    )
                """)
                await db.commit()
            logger.info("task_memory_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error(
                "task_memory_store_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    async def load_all(self) -> list[dict[str, Any]]:
        """Return stored items newest first; unreadable rows are skipped."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "SELECT id, document FROM task_memory ORDER BY position ASC"
                )
                rows = await cursor.fetchall()
        except Exception as e:
            logger.error("task_memory_load_failed", error=str(e))
            return []

        items: list[dict[str, Any]] = []
        for item_id, document in rows:
            try:
                items.append(json.loads(document))
            except json.JSONDecodeError:
                logger.warning("task_memory_row_invalid", item_id=item_id)
        return items

    async def replace_all(self, items: list[dict[str, Any]]) -> None:
        """Replace the stored items with ``items`` (newest first)."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("DELETE FROM task_memory")
                await db.executemany(
                    "INSERT INTO task_memory (id, position, document) VALUES (?, ?, ?)",
                    [
                        (item["id"], position, json.dumps(item))
                        for position, item in enumerate(items)
                    ],
                )
                await db.commit()
            logger.debug("task_memory_persisted", count=len(items))
        except Exception as e:
            logger.error("task_memory_persist_failed", error=str(e))
