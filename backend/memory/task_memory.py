"""Task memory: a bounded log of finished tasks.

Items are kept newest first and capped at ``max_items``; adding past the cap
drops the oldest. Items without a category or tags get them inferred from
the goal, summary and focus paths. The log supports free-text search with
exact filters, related-item lookup, derived statistics and JSON
export/import. Every mutation publishes ``memory:updated`` and, when a store
is attached, schedules a background persist.
"""

import asyncio
import json
import time
import uuid
from collections import Counter
from typing import Any, Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from events.bus import EventBus
from events.types import EventType, make_event
from models.database import TaskMemoryStore

logger = structlog.get_logger()

Outcome = Literal["success", "fail", "partial", "cancelled"]

# Ordered: the first category with a matching keyword wins
CATEGORIZATION_KEYWORDS: dict[str, list[str]] = {
    "bug-fix": ["fix", "bug", "error", "crash", "issue"],
    "feature": ["add", "new", "create", "implement", "feature"],
    "refactor": ["refactor", "restructure", "reorganize", "cleanup"],
    "optimization": ["optimize", "performance", "faster", "improve"],
    "documentation": ["doc", "comment", "readme", "guide"],
    "testing": ["test", "spec", "coverage"],
    "ui": ["ui", "design", "style", "layout", "component"],
}

EXTENSION_TAGS: dict[str, str] = {
    "py": "python",
    "pyi": "python",
    "ts": "typescript",
    "tsx": "typescript",
    "js": "typescript",
    "jsx": "typescript",
    "css": "styling",
    "scss": "styling",
    "sass": "styling",
    "json": "config",
    "yaml": "config",
    "yml": "config",
    "toml": "config",
    "md": "documentation",
    "mdx": "documentation",
}

KEYWORD_TAGS: list[tuple[tuple[str, ...], str]] = [
    (("api",), "api"),
    (("database", "db"), "database"),
    (("auth",), "authentication"),
    (("deploy",), "deployment"),
]


def categorize(goal: str, summary: str) -> str:
    """Infer a category from goal and summary text (``other`` if nothing matches)."""
    text = f"{goal} {summary}".lower()
    for category, keywords in CATEGORIZATION_KEYWORDS.items():
        if any(keyword in text for keyword in keywords):
            return category
    return "other"


def extract_tags(goal: str, summary: str, focus_paths: list[str]) -> list[str]:
    """Infer tags from file extensions and keywords, in discovery order."""
    tags: dict[str, None] = {}
    for path in focus_paths:
        name = path.rsplit("/", 1)[-1]
        if "." in name:
            tag = EXTENSION_TAGS.get(name.rsplit(".", 1)[-1].lower())
            if tag:
                tags[tag] = None

    text = f"{goal} {summary}".lower()
    for keywords, tag in KEYWORD_TAGS:
        if any(keyword in text for keyword in keywords):
            tags[tag] = None
    return list(tags)


def similarity(text: str, query: str) -> float:
    """Fraction of whitespace-separated query terms contained in ``text``."""
    terms = query.lower().split()
    if not terms:
        return 0.0
    haystack = text.lower()
    return sum(1 for term in terms if term in haystack) / len(terms)


class TaskMemoryItem(BaseModel):
    """Record of one finished task.

    Accepts camelCase keys as well, so exports from other tools import cleanly.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=lambda: f"mem_{uuid.uuid4().hex[:12]}")
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    goal: str
    focus_paths: list[str] = Field(default_factory=list)
    outcome: Outcome = "success"
    last_error: str | None = None
    summary: str = ""
    tags: list[str] = Field(default_factory=list)
    category: str | None = None
    duration_ms: int = 0
    iterations: int = 1
    tokens_used: int = 0
    files_modified: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class MemorySearchFilter(BaseModel):
    """Search criteria; every unset field is ignored."""

    query: str | None = None
    outcome: Outcome | None = None
    tags: list[str] | None = None
    category: str | None = None
    since: float | None = None
    until: float | None = None
    min_duration: int | None = None
    max_duration: int | None = None


class FileCount(BaseModel):
    path: str
    count: int


class TagCount(BaseModel):
    tag: str
    count: int


class MemoryStatistics(BaseModel):
    total: int = 0
    by_outcome: dict[str, int] = Field(default_factory=dict)
    by_category: dict[str, int] = Field(default_factory=dict)
    avg_duration: float = 0.0
    total_tokens: int = 0
    most_modified_files: list[FileCount] = Field(default_factory=list)
    common_tags: list[TagCount] = Field(default_factory=list)
    success_rate: float = 0.0


class ImportResult(BaseModel):
    success: bool
    imported: int = 0
    error: str | None = None


class TaskMemory:
    """In-memory task log with optional SQLite persistence.

    Attributes:
        max_items: Retention cap; the oldest items are dropped beyond it
    """

    def __init__(
        self,
        event_bus: EventBus,
        max_items: int = 500,
        store: TaskMemoryStore | None = None,
    ) -> None:
        self.event_bus = event_bus
        self.max_items = max_items
        self.store = store
        self._items: list[TaskMemoryItem] = []
        self._persist_tasks: set[asyncio.Task[None]] = set()

    def __len__(self) -> int:
        return len(self._items)

    # -----------------------------------------------------------------
    # Persistence
    # -----------------------------------------------------------------

    async def load(self) -> int:
        """Replace in-memory items with the stored ones. Returns the count."""
        if self.store is None:
            return 0
        items: list[TaskMemoryItem] = []
        for raw in await self.store.load_all():
            try:
                items.append(TaskMemoryItem.model_validate(raw))
            except ValidationError as e:
                logger.warning("task_memory_item_invalid", item_id=raw.get("id"), error=str(e))
        self._items = items[: self.max_items]
        logger.info("task_memory_loaded", count=len(self._items))
        return len(self._items)

    async def persist(self) -> None:
        if self.store is None:
            return
        await self.store.replace_all([item.model_dump(mode="json") for item in self._items])

    async def wait_persisted(self) -> None:
        """Wait for background persists scheduled so far."""
        if self._persist_tasks:
            await asyncio.gather(*list(self._persist_tasks))

    def _changed(self, action: str, item_id: str | None = None) -> None:
        self.event_bus.publish(make_event(EventType.MEMORY_UPDATED, action=action, item_id=item_id))
        if self.store is None:
            return
        try:
            task = asyncio.get_running_loop().create_task(self.persist())
        except RuntimeError:
            logger.debug("task_memory_persist_deferred", action=action)
            return
        self._persist_tasks.add(task)
        task.add_done_callback(self._persist_tasks.discard)

    # -----------------------------------------------------------------
    # CRUD
    # -----------------------------------------------------------------

    def add(self, item: TaskMemoryItem) -> TaskMemoryItem:
        """Add an item, or merge it into the stored item with the same id.

        A missing category or empty tag list is inferred before storing.

        Returns:
            The stored item.
        """
        updates = item.model_dump(exclude_unset=True)
        if not item.category:
            updates["category"] = categorize(item.goal, item.summary)
        if not item.tags:
            updates["tags"] = extract_tags(item.goal, item.summary, item.focus_paths)

        for index, existing in enumerate(self._items):
            if existing.id == item.id:
                updates.pop("created_at", None)
                merged = existing.model_copy(update={**updates, "updated_at": time.time()})
                self._items[index] = merged
                logger.info("task_memory_merged", item_id=item.id)
                self._changed("updated", item.id)
                return merged

        stored = item.model_copy(update=updates)
        self._items.insert(0, stored)
        dropped = len(self._items) - self.max_items
        if dropped > 0:
            del self._items[self.max_items:]
            logger.info("task_memory_trimmed", dropped=dropped)
        logger.info(
            "task_memory_added",
            item_id=stored.id,
            category=stored.category,
            outcome=stored.outcome,
        )
        self._changed("added", stored.id)
        return stored

    def update(self, item_id: str, **changes: Any) -> TaskMemoryItem | None:
        """Apply field changes to an item. Returns None for unknown ids."""
        for index, existing in enumerate(self._items):
            if existing.id == item_id:
                changes.pop("id", None)
                updated = TaskMemoryItem.model_validate(
                    {**existing.model_dump(), **changes, "updated_at": time.time()}
                )
                self._items[index] = updated
                self._changed("updated", item_id)
                return updated
        return None

    def delete(self, item_id: str) -> bool:
        before = len(self._items)
        self._items = [item for item in self._items if item.id != item_id]
        if len(self._items) == before:
            return False
        self._changed("deleted", item_id)
        return True

    def get(self, item_id: str) -> TaskMemoryItem | None:
        return next((item for item in self._items if item.id == item_id), None)

    def list_items(self, limit: int | None = None) -> list[TaskMemoryItem]:
        """Items newest first."""
        return list(self._items if limit is None else self._items[:limit])

    def clear(self) -> None:
        self._items = []
        logger.info("task_memory_cleared")
        self._changed("cleared")

    # -----------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------

    def search(self, search_filter: MemorySearchFilter) -> list[TaskMemoryItem]:
        """Rank by query relevance, then apply each exact filter in turn."""
        items = list(self._items)

        if search_filter.query:
            scored = [
                (similarity(f"{item.goal} {item.summary}", search_filter.query), item)
                for item in items
            ]
            scored = [pair for pair in scored if pair[0] > 0]
            scored.sort(key=lambda pair: pair[0], reverse=True)
            items = [item for _, item in scored]

        if search_filter.outcome:
            items = [i for i in items if i.outcome == search_filter.outcome]
        if search_filter.tags:
            wanted = set(search_filter.tags)
            items = [i for i in items if wanted.intersection(i.tags)]
        if search_filter.category:
            items = [i for i in items if i.category == search_filter.category]
        if search_filter.since is not None:
            items = [i for i in items if i.created_at >= search_filter.since]
        if search_filter.until is not None:
            items = [i for i in items if i.created_at <= search_filter.until]
        if search_filter.min_duration is not None:
            items = [i for i in items if i.duration_ms >= search_filter.min_duration]
        if search_filter.max_duration is not None:
            items = [i for i in items if i.duration_ms <= search_filter.max_duration]

        return items

    def get_related(self, item_id: str, limit: int = 5) -> list[TaskMemoryItem]:
        """Items sharing category, tags or modified files with ``item_id``.

        Scoring: +2 same category, +1 per shared tag, +1.5 per shared
        modified file. Zero scores are excluded; ties keep log order.
        """
        target = self.get(item_id)
        if target is None:
            return []

        scored: list[tuple[float, TaskMemoryItem]] = []
        for item in self._items:
            if item.id == item_id:
                continue
            score = 0.0
            if item.category == target.category:
                score += 2
            score += sum(1 for tag in item.tags if tag in target.tags)
            score += 1.5 * sum(1 for path in item.files_modified if path in target.files_modified)
            if score > 0:
                scored.append((score, item))

        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [item for _, item in scored[:limit]]

    def get_statistics(self) -> MemoryStatistics:
        items = self._items
        if not items:
            return MemoryStatistics()

        by_outcome = Counter(item.outcome for item in items)
        by_category = Counter(item.category for item in items if item.category)
        files = Counter(path for item in items for path in item.files_modified)
        tags = Counter(tag for item in items for tag in item.tags)

        return MemoryStatistics(
            total=len(items),
            by_outcome=dict(by_outcome),
            by_category=dict(by_category),
            avg_duration=sum(item.duration_ms for item in items) / len(items),
            total_tokens=sum(item.tokens_used for item in items),
            most_modified_files=[FileCount(path=p, count=c) for p, c in files.most_common(10)],
            common_tags=[TagCount(tag=t, count=c) for t, c in tags.most_common(10)],
            success_rate=by_outcome.get("success", 0) / len(items),
        )

    # -----------------------------------------------------------------
    # Export / import
    # -----------------------------------------------------------------

    def export_json(self) -> str:
        return json.dumps([item.model_dump(mode="json") for item in self._items], indent=2)

    def import_json(self, text: str) -> ImportResult:
        """Merge items from a JSON array; imported items win on id collisions."""
        try:
            raw = json.loads(text)
        except json.JSONDecodeError:
            return ImportResult(success=False, error="Invalid JSON format")
        if not isinstance(raw, list):
            return ImportResult(success=False, error="Invalid format: expected array")

        try:
            imported = [TaskMemoryItem.model_validate(entry) for entry in raw]
        except ValidationError as e:
            return ImportResult(success=False, error=f"Invalid item: {e.errors()[0]['msg']}")

        seen: set[str] = set()
        merged: list[TaskMemoryItem] = []
        for item in [*imported, *self._items]:
            if item.id not in seen:
                seen.add(item.id)
                merged.append(item)
        self._items = merged[: self.max_items]

        logger.info("task_memory_imported", imported=len(imported), total=len(self._items))
        self._changed("imported")
        return ImportResult(success=True, imported=len(imported))
