"""Task memory: bounded, searchable log of finished tasks."""

from memory.task_memory import (
    ImportResult,
    MemorySearchFilter,
    MemoryStatistics,
    TaskMemory,
    TaskMemoryItem,
    categorize,
    extract_tags,
)

__all__ = [
    "ImportResult",
    "MemorySearchFilter",
    "MemoryStatistics",
    "TaskMemory",
    "TaskMemoryItem",
    "categorize",
    "extract_tags",
]
