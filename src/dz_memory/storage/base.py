"""
The Storage Port: the persistence contract every backend satisfies.

Search contract (all backends)
------------------------------
* Every supplied filter applies, combined with AND:
    - ``query``: case-insensitive substring of the text, of any tag, or of
      the context (backends may rank with a full-text or vector index, but
      the filter semantics stay the same)
    - ``tags``: the record carries at least one of the requested tags
    - ``category``: exact match
    - ``date_from`` / ``date_to``: inclusive bounds on ``created_at``
* Sort by ``date``, ``access``, ``priority`` or ``relevance`` (backend
  defined, ``access_count`` when there is nothing better), ``asc``/``desc``.
  Ties keep insertion order.
* ``total`` counts the filtered set before pagination, then the result is
  sliced by ``offset``/``limit`` and ``has_more`` is
  ``offset + len(memories) < total``.

Backends own their connection, locking and id assignment; nothing is shared
between implementations besides the pure helpers at the bottom of this module.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Iterable, Sequence

from ..models import (
    MemoryChunk,
    MemoryMetadata,
    MemoryStats,
    SearchParams,
    SearchResult,
    to_timestamp,
)


class StoragePort(ABC):
    """Abstract persistence contract consumed by the services."""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @abstractmethod
    def initialize(self) -> None:
        """Open connections and create schema.  Must be called before use."""

    @abstractmethod
    def close(self) -> None:
        """Release connections.  Safe to call more than once."""

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    @abstractmethod
    def store_memory(self, text: str, metadata: MemoryMetadata) -> MemoryChunk:
        """Persist a new record; the backend assigns id and timestamps."""

    @abstractmethod
    def update_memory(
        self,
        memory_id: str,
        text: str | None = None,
        metadata: MemoryMetadata | None = None,
    ) -> MemoryChunk | None:
        """Patch text and/or metadata and bump ``updated_at``.

        Access statistics are left untouched.  Returns ``None`` for an
        unknown id.
        """

    @abstractmethod
    def delete_memory(self, memory_id: str) -> bool:
        """Delete one record; ``False`` when the id is unknown."""

    @abstractmethod
    def cleanup(self, max_memories: int) -> int:
        """Delete the least valuable records until at most *max_memories* remain.

        Victims are taken in ascending ``(access_count, created_at)`` order,
        insertion order breaking any remaining tie.  Returns the number removed.
        """

    @abstractmethod
    def optimize(self) -> bool:
        """Backend maintenance (index rebuild, compaction).  Returns success."""

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    @abstractmethod
    def get_memory(self, memory_id: str) -> MemoryChunk | None:
        """Fetch one record, atomically incrementing ``access_count``.

        The returned chunk already reflects the increment.
        """

    @abstractmethod
    def search_memories(self, params: SearchParams) -> SearchResult:
        """Filter, sort and paginate; see the module docstring."""

    @abstractmethod
    def get_all_tags(self) -> list[str]:
        """Distinct tags across all records, sorted."""

    @abstractmethod
    def get_all_categories(self) -> list[str]:
        """Distinct non-empty categories across all records, sorted."""

    @abstractmethod
    def get_stats(self) -> MemoryStats:
        """Counts plus the oldest and newest ``created_at``."""


# ---------------------------------------------------------------------------
# Helpers for backends that filter in process
# ---------------------------------------------------------------------------


def matches_filters(memory: MemoryChunk, params: SearchParams) -> bool:
    meta = memory.metadata
    if params.tags and not set(params.tags) & set(meta.tags):
        return False
    if params.category and meta.category != params.category:
        return False
    if params.date_from and to_timestamp(memory.created_at) < to_timestamp(params.date_from):
        return False
    if params.date_to and to_timestamp(memory.created_at) > to_timestamp(params.date_to):
        return False
    if params.query:
        needle = params.query.lower()
        haystacks = [memory.text, meta.context or "", *meta.tags]
        if not any(needle in h.lower() for h in haystacks):
            return False
    return True


def sort_memories(
    memories: Sequence[MemoryChunk],
    params: SearchParams,
    relevance: Callable[[MemoryChunk], float] | None = None,
) -> list[MemoryChunk]:
    """Sort *memories* for *params*; *relevance* overrides the access-count proxy."""
    if params.sort_by == "access":
        key = _access_key
    elif params.sort_by == "priority":
        key = _priority_key
    elif params.sort_by == "relevance":
        key = relevance or _access_key
    else:
        key = _date_key
    return sorted(memories, key=key, reverse=params.sort_order == "desc")


def paginate(memories: Sequence[MemoryChunk], params: SearchParams) -> SearchResult:
    total = len(memories)
    page = list(memories[params.offset : params.offset + params.limit])
    return SearchResult(
        memories=page,
        total=total,
        has_more=params.offset + len(page) < total,
    )


def build_stats(memories: Iterable[MemoryChunk]) -> MemoryStats:
    records = list(memories)
    tags = {tag for m in records for tag in m.metadata.tags}
    categories = {m.metadata.category for m in records if m.metadata.category}
    created = [m.created_at for m in records]
    return MemoryStats(
        total_memories=len(records),
        total_tags=len(tags),
        total_categories=len(categories),
        oldest_memory=min(created) if created else None,
        newest_memory=max(created) if created else None,
    )


def _date_key(memory: MemoryChunk) -> float:
    return to_timestamp(memory.created_at)


def _access_key(memory: MemoryChunk) -> int:
    return memory.access_count


def _priority_key(memory: MemoryChunk) -> int:
    return memory.metadata.priority
