"""
In-process backend: a dict of records behind a lock.

Useful for development and tests.  Search is plain substring matching and
``relevance`` ranks by access count.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace

from ..models import (
    MemoryChunk,
    MemoryMetadata,
    MemoryStats,
    SearchParams,
    SearchResult,
    normalize_tags,
    utcnow,
)
from .base import StoragePort, build_stats, matches_filters, paginate, sort_memories

logger = logging.getLogger(__name__)


class InMemoryStorage(StoragePort):
    """Non-persistent backend; ids are ``mem-<n>`` from a monotonic counter."""

    def __init__(self) -> None:
        self._memories: dict[str, MemoryChunk] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def initialize(self) -> None:
        logger.info("Initializing in-memory storage")
        with self._lock:
            self._memories.clear()
            self._next_id = 1

    def close(self) -> None:
        logger.info("Closing in-memory storage")
        with self._lock:
            self._memories.clear()

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def store_memory(self, text: str, metadata: MemoryMetadata) -> MemoryChunk:
        now = utcnow()
        with self._lock:
            memory_id = f"mem-{self._next_id}"
            self._next_id += 1
            memory = MemoryChunk(
                id=memory_id,
                text=text,
                metadata=replace(metadata, tags=normalize_tags(metadata.tags)),
                created_at=now,
                updated_at=now,
                access_count=0,
                last_accessed_at=now,
            )
            self._memories[memory_id] = memory
        logger.debug("Stored memory %s (%d chars)", memory_id, len(text))
        return memory

    def update_memory(
        self,
        memory_id: str,
        text: str | None = None,
        metadata: MemoryMetadata | None = None,
    ) -> MemoryChunk | None:
        with self._lock:
            current = self._memories.get(memory_id)
            if current is None:
                return None
            updated = replace(
                current,
                text=text if text is not None else current.text,
                metadata=(
                    replace(metadata, tags=normalize_tags(metadata.tags))
                    if metadata is not None
                    else current.metadata
                ),
                updated_at=utcnow(),
            )
            self._memories[memory_id] = updated
        return updated

    def delete_memory(self, memory_id: str) -> bool:
        with self._lock:
            return self._memories.pop(memory_id, None) is not None

    def cleanup(self, max_memories: int) -> int:
        with self._lock:
            excess = len(self._memories) - max_memories
            if excess <= 0:
                return 0
            # dict order is insertion order, and sorted() is stable
            victims = sorted(
                self._memories.values(),
                key=lambda m: (m.access_count, m.created_at),
            )[:excess]
            for memory in victims:
                del self._memories[memory.id]
            remaining = len(self._memories)
        logger.info("Cleaned up %d memories, %d remaining", len(victims), remaining)
        return len(victims)

    def optimize(self) -> bool:
        return True

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def get_memory(self, memory_id: str) -> MemoryChunk | None:
        with self._lock:
            current = self._memories.get(memory_id)
            if current is None:
                return None
            now = utcnow()
            touched = replace(
                current,
                access_count=current.access_count + 1,
                last_accessed_at=now,
            )
            self._memories[memory_id] = touched
        return touched

    def search_memories(self, params: SearchParams) -> SearchResult:
        with self._lock:
            snapshot = list(self._memories.values())
        filtered = [m for m in snapshot if matches_filters(m, params)]
        return paginate(sort_memories(filtered, params), params)

    def get_all_tags(self) -> list[str]:
        with self._lock:
            return sorted({tag for m in self._memories.values() for tag in m.metadata.tags})

    def get_all_categories(self) -> list[str]:
        with self._lock:
            return sorted(
                {m.metadata.category for m in self._memories.values() if m.metadata.category}
            )

    def get_stats(self) -> MemoryStats:
        with self._lock:
            snapshot = list(self._memories.values())
        return build_stats(snapshot)
