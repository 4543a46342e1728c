"""
Data model shared by the services, the storage backends and the front end.

Records are immutable dataclasses; backends produce fresh instances on every
read, mutation goes through :class:`~dz_memory.storage.base.StoragePort`.
The ``to_dict`` helpers render the camelCase JSON shape used on the wire.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

#: Priority assigned when the caller does not supply one.
DEFAULT_PRIORITY: int = 5
MIN_PRIORITY: int = 1
MAX_PRIORITY: int = 10

#: Page size used by backends when a search does not set ``limit``.
DEFAULT_SEARCH_LIMIT: int = 50

SORT_FIELDS = ("relevance", "date", "access", "priority")
SORT_ORDERS = ("asc", "desc")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: datetime) -> float:
    """Epoch seconds for *value*; naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def from_timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def normalize_tags(tags) -> tuple[str, ...]:
    """Lowercase, strip and de-duplicate *tags*, keeping first-seen order."""
    cleaned = (str(t).strip().lower() for t in tags or ())
    return tuple(dict.fromkeys(t for t in cleaned if t))


@dataclass(frozen=True)
class MemoryMetadata:
    tags: tuple[str, ...] = ()
    context: str | None = None
    source: str | None = None
    priority: int = DEFAULT_PRIORITY
    category: str | None = None
    related_ids: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "tags": list(self.tags),
            "context": self.context,
            "source": self.source,
            "priority": self.priority,
            "category": self.category,
            "relatedIds": list(self.related_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryMetadata:
        return cls(
            tags=tuple(data.get("tags") or ()),
            context=data.get("context"),
            source=data.get("source"),
            priority=int(data.get("priority", DEFAULT_PRIORITY)),
            category=data.get("category"),
            related_ids=tuple(data.get("relatedIds") or ()),
        )


@dataclass(frozen=True)
class MemoryChunk:
    """One stored unit of memorized text."""

    id: str
    text: str
    metadata: MemoryMetadata
    created_at: datetime
    updated_at: datetime
    access_count: int = 0
    last_accessed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        last = self.last_accessed_at or self.created_at
        return {
            "id": self.id,
            "text": self.text,
            "metadata": self.metadata.to_dict(),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "accessCount": self.access_count,
            "lastAccessedAt": last.isoformat(),
        }


@dataclass(frozen=True)
class MemorizeParams:
    text: str
    tags: tuple[str, ...] = ()
    context: str | None = None
    source: str | None = None
    priority: int | None = None
    category: str | None = None


@dataclass(frozen=True)
class MemorizeResult:
    memory_ids: list[str]
    chunks_created: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "memoryIds": list(self.memory_ids),
            "chunksCreated": self.chunks_created,
        }


@dataclass(frozen=True)
class SearchParams:
    query: str | None = None
    tags: tuple[str, ...] = ()
    category: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    limit: int = DEFAULT_SEARCH_LIMIT
    offset: int = 0
    sort_by: str = "date"
    sort_order: str = "desc"


@dataclass(frozen=True)
class SearchResult:
    memories: list[MemoryChunk]
    total: int
    has_more: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "memories": [m.to_dict() for m in self.memories],
            "total": self.total,
            "hasMore": self.has_more,
        }


@dataclass(frozen=True)
class MemoryStats:
    total_memories: int
    total_tags: int
    total_categories: int
    oldest_memory: datetime | None = None
    newest_memory: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalMemories": self.total_memories,
            "totalTags": self.total_tags,
            "totalCategories": self.total_categories,
            "oldestMemory": self.oldest_memory.isoformat() if self.oldest_memory else None,
            "newestMemory": self.newest_memory.isoformat() if self.newest_memory else None,
        }


@dataclass(frozen=True)
class ReorganizeParams:
    merge_similar_tags: bool = False
    cleanup_old_memories: bool = False
    optimize_storage: bool = False
    max_memories: int | None = None


@dataclass
class ReorganizeResult:
    status: str = "ok"
    tags_merged: int = 0
    memories_cleaned: int = 0
    storage_optimized: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.status,
            "tagsMerged": self.tags_merged,
            "memoriesCleaned": self.memories_cleaned,
            "storageOptimized": self.storage_optimized,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class ReorganizationStats:
    total_tags: int
    total_memories: int
    potential_merges: int
    old_memories: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalTags": self.total_tags,
            "totalMemories": self.total_memories,
            "potentialMerges": self.potential_merges,
            "oldMemories": self.old_memories,
        }
