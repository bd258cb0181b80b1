"""The workspace model: one current in-memory snapshot plus durable storage.

All mutations go through ``WorkspaceManager``. Each one swaps in a new
immutable snapshot, publishes ``workspace:changed`` and signals a single
background writer. The writer coalesces bursts of signals and writes the
latest snapshot once the workspace has been quiet for the debounce window.

Usage:
    >>> manager = WorkspaceManager(event_bus, WorkspaceStore(path))
    >>> manager.start()
    >>> await manager.create("python-basic", "Scratch")
    >>> manager.upsert_file("util.py", "python", "def f(): ...")
    >>> await manager.flush()
"""

import asyncio
import contextlib
from typing import Protocol

import structlog

from events.bus import EventBus
from events.types import EventType, make_event
from sandbox.security import validate_workspace_path
from workspace.models import (
    WorkspaceFile,
    WorkspaceSnapshot,
    WorkspaceSummary,
    guess_language,
)
from workspace.templates import make_template

logger = structlog.get_logger()


class WorkspaceNotLoadedError(RuntimeError):
    """Raised when an operation needs a current workspace and none is loaded."""

    def __init__(self) -> None:
        super().__init__("No workspace is loaded")


class WorkspaceNotFoundError(LookupError):
    """Raised when a workspace id is not present in the store."""

    def __init__(self, workspace_id: str) -> None:
        self.workspace_id = workspace_id
        super().__init__(f"Workspace not found: {workspace_id}")


class WorkspacePersistence(Protocol):
    """Durable key-value storage for snapshots."""

    async def get(self, workspace_id: str) -> WorkspaceSnapshot | None: ...

    async def set(self, workspace_id: str, snapshot: WorkspaceSnapshot) -> None: ...

    async def remove(self, workspace_id: str) -> bool: ...

    async def list_summaries(self, limit: int = 100) -> list[WorkspaceSummary]: ...


def normalize_path(path: str) -> str:
    """Validate a workspace path and return its normalized form.

    Raises:
        ValueError: If the path is empty, absolute or escapes the workspace.
    """
    is_valid, error, normalized = validate_workspace_path(path)
    if not is_valid:
        raise ValueError(f"{error}: {path!r}")
    return normalized


class WorkspaceManager:
    """Owns the current workspace snapshot and its debounced persistence.

    Attributes:
        debounce_seconds: Quiet window before a pending change is written.
    """

    def __init__(
        self,
        event_bus: EventBus,
        store: WorkspacePersistence,
        debounce_seconds: float = 0.9,
    ) -> None:
        self.event_bus = event_bus
        self.store = store
        self.debounce_seconds = debounce_seconds
        self._current: WorkspaceSnapshot | None = None
        self._pending: WorkspaceSnapshot | None = None
        self._signals: asyncio.Queue[None] = asyncio.Queue()
        self._writer: asyncio.Task[None] | None = None
        self._write_lock = asyncio.Lock()

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    def start(self) -> None:
        """Start the background writer (idempotent; needs a running loop)."""
        if self._writer is None or self._writer.done():
            self._writer = asyncio.create_task(self._write_loop(), name="workspace_writer")
            logger.debug("workspace_writer_started")

    async def close(self) -> None:
        """Stop the writer and write any pending change.

        Raises:
            Exception: Whatever the store raised for the final write; the
                change stays pending.
        """
        if self._writer is not None:
            self._writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._writer
            self._writer = None
        await self.flush()

    async def flush(self) -> None:
        """Write the pending snapshot now, if there is one.

        ``workspace:saved`` is published only after the store accepted the
        write. On failure the snapshot is pending again unless a newer
        change replaced it meanwhile.
        """
        async with self._write_lock:
            snapshot, self._pending = self._pending, None
            if snapshot is None:
                return
            saved = False
            try:
                await self.store.set(snapshot.id, snapshot)
                saved = True
            finally:
                if not saved and self._pending is None:
                    self._pending = snapshot
        logger.info("workspace_persisted", workspace_id=snapshot.id)
        self.event_bus.publish(
            make_event(EventType.WORKSPACE_SAVED, workspace_id=snapshot.id)
        )

    async def _write_loop(self) -> None:
        while True:
            await self._signals.get()
            # Each signal inside the window restarts it
            while True:
                try:
                    async with asyncio.timeout(self.debounce_seconds):
                        await self._signals.get()
                except TimeoutError:
                    break
            try:
                await self.flush()
            except Exception:
                logger.exception("workspace_write_failed")
                # Retry after another quiet window
                self._signals.put_nowait(None)

    def _mark_dirty(self, snapshot: WorkspaceSnapshot, paths: list[str]) -> None:
        self._current = snapshot
        self._pending = snapshot
        self.event_bus.publish(
            make_event(EventType.WORKSPACE_CHANGED, workspace_id=snapshot.id, paths=paths)
        )
        self._signals.put_nowait(None)
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No running loop: the change is written by the next flush()
            logger.debug("workspace_writer_deferred", workspace_id=snapshot.id)
            return
        self.start()

    # -----------------------------------------------------------------
    # Workspace selection
    # -----------------------------------------------------------------

    async def list_workspaces(self) -> list[WorkspaceSummary]:
        return await self.store.list_summaries()

    def get_current(self) -> WorkspaceSnapshot | None:
        return self._current

    def require_current(self) -> WorkspaceSnapshot:
        if self._current is None:
            raise WorkspaceNotLoadedError()
        return self._current

    async def load(self, workspace_id: str) -> WorkspaceSnapshot:
        """Make a stored workspace current.

        Raises:
            WorkspaceNotFoundError: If the store has no such workspace.
        """
        await self.flush()
        snapshot = await self.store.get(workspace_id)
        if snapshot is None:
            raise WorkspaceNotFoundError(workspace_id)
        self._current = snapshot
        logger.info(
            "workspace_loaded",
            workspace_id=workspace_id,
            file_count=len(snapshot.files),
        )
        self.event_bus.publish(
            make_event(
                EventType.WORKSPACE_CHANGED,
                workspace_id=snapshot.id,
                paths=sorted(snapshot.files),
            )
        )
        return snapshot

    async def create(self, template_id: str, name: str) -> WorkspaceSnapshot:
        """Create a workspace from a template, make it current and save it."""
        await self.flush()
        snapshot = make_template(template_id, name)
        await self.store.set(snapshot.id, snapshot)
        self._current = snapshot
        logger.info(
            "workspace_created",
            workspace_id=snapshot.id,
            template_id=snapshot.template_id,
        )
        self.event_bus.publish(
            make_event(
                EventType.WORKSPACE_CHANGED,
                workspace_id=snapshot.id,
                paths=sorted(snapshot.files),
            )
        )
        self.event_bus.publish(make_event(EventType.WORKSPACE_SAVED, workspace_id=snapshot.id))
        return snapshot

    async def remove(self, workspace_id: str) -> bool:
        """Delete a stored workspace, unloading it first if it is current."""
        if self._current is not None and self._current.id == workspace_id:
            self._current = None
            if self._pending is not None and self._pending.id == workspace_id:
                self._pending = None
        removed = await self.store.remove(workspace_id)
        logger.info("workspace_removed", workspace_id=workspace_id, removed=removed)
        return removed

    # -----------------------------------------------------------------
    # File access
    # -----------------------------------------------------------------

    def get_file(self, path: str) -> WorkspaceFile | None:
        return self.require_current().files.get(normalize_path(path))

    def list_files(self) -> list[WorkspaceFile]:
        snapshot = self.require_current()
        return [snapshot.files[path] for path in sorted(snapshot.files)]

    @property
    def entry_file(self) -> str | None:
        return self._current.entry_file if self._current is not None else None

    # -----------------------------------------------------------------
    # Mutations
    # -----------------------------------------------------------------

    def upsert_file(self, path: str, language: str | None, content: str) -> WorkspaceFile:
        """Create a file or replace its content and language.

        Args:
            path: Workspace-relative path
            language: Language tag, guessed from the extension when None
            content: Full new content

        Returns:
            The new file record.
        """
        snapshot = self.require_current()
        path = normalize_path(path)
        language = language or guess_language(path)

        existing = snapshot.files.get(path)
        if existing is None:
            record = WorkspaceFile(path=path, language=language, content=content)
        else:
            record = existing.with_changes(language=language, content=content)

        self._mark_dirty(snapshot.with_files({**snapshot.files, path: record}), [path])
        logger.debug("workspace_file_upserted", path=path, created=existing is None)
        return record

    def rename_file(self, old_path: str, new_path: str) -> WorkspaceFile:
        """Move a file to a new path, keeping its id and entry flag.

        Raises:
            FileNotFoundError: If ``old_path`` does not exist.
            FileExistsError: If ``new_path`` is already taken.
        """
        snapshot = self.require_current()
        old_path = normalize_path(old_path)
        new_path = normalize_path(new_path)

        existing = snapshot.files.get(old_path)
        if existing is None:
            raise FileNotFoundError(old_path)
        if old_path == new_path:
            return existing
        if new_path in snapshot.files:
            raise FileExistsError(new_path)

        record = existing.with_changes(path=new_path, language=guess_language(new_path))
        files = {p: f for p, f in snapshot.files.items() if p != old_path}
        files[new_path] = record
        self._mark_dirty(snapshot.with_files(files), [old_path, new_path])
        logger.debug("workspace_file_renamed", old_path=old_path, new_path=new_path)
        return record

    def delete_file(self, path: str) -> None:
        """Remove a file.

        Raises:
            FileNotFoundError: If the file does not exist.
        """
        snapshot = self.require_current()
        path = normalize_path(path)
        if path not in snapshot.files:
            raise FileNotFoundError(path)

        files = {p: f for p, f in snapshot.files.items() if p != path}
        self._mark_dirty(snapshot.with_files(files), [path])
        logger.debug("workspace_file_deleted", path=path)

    def set_entry(self, path: str) -> None:
        """Flag ``path`` as the single entry point.

        Raises:
            FileNotFoundError: If the file does not exist.
        """
        snapshot = self.require_current()
        path = normalize_path(path)
        if path not in snapshot.files:
            raise FileNotFoundError(path)

        files: dict[str, WorkspaceFile] = {}
        changed: list[str] = []
        for file_path, record in snapshot.files.items():
            wanted = file_path == path
            if record.is_entry_point != wanted:
                record = record.with_entry_flag(wanted)
                changed.append(file_path)
            files[file_path] = record

        self._mark_dirty(snapshot.with_files(files), sorted(changed))
        logger.info("workspace_entry_set", path=path)
