"""
MemoryService: high-level API for memorizing and recalling text.

This is the main entry-point for applications that want to persist
context across LLM sessions.

Usage example::

    from dz_memory import MemorizeParams, MemoryService
    from dz_memory.storage import InMemoryStorage

    storage = InMemoryStorage()
    storage.initialize()
    memory = MemoryService(storage)

    result = memory.memorize(MemorizeParams(text="Bug in API. Fixed with a patch."))
    chunk = memory.get_memory(result.memory_ids[0])
    print(chunk.metadata.category)   # "troubleshooting"
"""

from __future__ import annotations

import logging

from .errors import NotFoundError, ValidationError
from .intelligence import DEFAULT_CHUNK_SIZE, chunk_text, detect_metadata
from .models import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    MemorizeParams,
    MemorizeResult,
    MemoryChunk,
    MemoryStats,
    SearchParams,
    SearchResult,
)
from .storage.base import StoragePort

logger = logging.getLogger(__name__)


class MemoryService:
    """
    Orchestrates chunking, metadata detection and storage.

    Responsibilities
    ----------------
    * **Memorize** – Validates the text, splits it into chunks, detects tags
      and category for each chunk and stores them one by one.  There is no
      rollback: if storing chunk 3 of 5 fails, chunks 1 and 2 stay stored
      and the storage error propagates.
    * **Recall** – Fetches single records (bumping their access count) and
      delegates searches to the storage backend.
    * **Inspect** – Lists tags and categories, reports store statistics.

    The service keeps no record state of its own; every call goes through
    the storage port.

    Parameters
    ----------
    storage:
        An initialized :class:`~dz_memory.storage.base.StoragePort`.
    chunk_size:
        Maximum characters per chunk.  Defaults to 500.
    """

    def __init__(self, storage: StoragePort, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self._storage = storage
        self.chunk_size = chunk_size

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def memorize(self, params: MemorizeParams) -> MemorizeResult:
        """
        Split ``params.text`` into chunks and store each with its metadata.

        Raises
        ------
        ValidationError
            When the text is empty or whitespace-only, or the priority is
            outside 1–10.  Nothing is stored in that case.
        """
        if not params.text or not params.text.strip():
            raise ValidationError("Text cannot be empty", field="text")
        if params.priority is not None and not MIN_PRIORITY <= params.priority <= MAX_PRIORITY:
            raise ValidationError(
                f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}",
                field="priority",
            )

        chunks = chunk_text(params.text, self.chunk_size)
        logger.info(
            "Split text into chunks (original_length=%d, chunks=%d)",
            len(params.text),
            len(chunks),
        )

        memory_ids: list[str] = []
        for chunk in chunks:
            metadata = detect_metadata(chunk, params)
            memory = self._storage.store_memory(chunk, metadata)
            memory_ids.append(memory.id)

        return MemorizeResult(memory_ids=memory_ids, chunks_created=len(chunks))

    def get_memory(self, memory_id: str) -> MemoryChunk:
        """Fetch one memory; the backend counts the access."""
        memory = self._storage.get_memory(memory_id)
        if memory is None:
            raise NotFoundError("Memory", memory_id)
        return memory

    def delete_memory(self, memory_id: str) -> bool:
        if not self._storage.delete_memory(memory_id):
            raise NotFoundError("Memory", memory_id)
        logger.info("Deleted memory %s", memory_id)
        return True

    def search_memories(self, params: SearchParams) -> SearchResult:
        return self._storage.search_memories(params)

    def get_all_tags(self) -> list[str]:
        return self._storage.get_all_tags()

    def get_all_categories(self) -> list[str]:
        return self._storage.get_all_categories()

    def get_stats(self) -> MemoryStats:
        return self._storage.get_stats()
