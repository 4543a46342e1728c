"""
Storage backends behind the :class:`StoragePort` contract.

``create_storage`` picks one from configuration; the ChromaDB backend is
imported lazily so the other two work without loading it.
"""

from __future__ import annotations

from ..config import StorageConfig
from .base import StoragePort
from .memory import InMemoryStorage
from .sqlite import SqliteStorage


def create_storage(config: StorageConfig) -> StoragePort:
    """Build (but do not initialize) the backend named by ``config.backend``."""
    if config.backend == "memory":
        return InMemoryStorage()
    if config.backend == "sqlite":
        return SqliteStorage(path=config.path)
    if config.backend == "chroma":
        from .chroma import ChromaStorage

        return ChromaStorage(
            path=config.path,
            collection_name=config.collection,
            embedding_model=config.embedding_model,
        )
    raise ValueError(f"Unsupported storage backend: {config.backend}")


__all__ = ["InMemoryStorage", "SqliteStorage", "StoragePort", "create_storage"]
