"""
Shared pytest fixtures for dz-memory tests.

The ChromaDB backend runs on an ephemeral (in-memory) client with a
deterministic fake embedding function so that tests run fast without
downloading any ML models.  The ``storage`` fixture runs a test once per
backend.
"""

from __future__ import annotations

import hashlib
import uuid

import chromadb
import pytest

from dz_memory.app import MemoryApp, build_app
from dz_memory.config import MemoryConfig
from dz_memory.memory import MemoryService
from dz_memory.models import MemoryMetadata
from dz_memory.reorganizer import ReorganizerService
from dz_memory.storage import InMemoryStorage, SqliteStorage, StoragePort
from dz_memory.storage.chroma import ChromaStorage


class FakeEmbeddingFunction:
    """
    Deterministic embedding function that maps text to a unit vector
    derived from its MD5 hash.  Fast and reproducible – no model download.
    """

    def name(self) -> str:  # required by ChromaDB >= 0.5
        return "fake-md5-embedding"

    def _embed(self, texts: list[str]) -> list[list[float]]:
        embeddings = []
        for text in texts:
            digest = hashlib.md5(text.encode()).digest()
            # 16-byte digest → 16-dim float vector in [-1, 1]
            vec = [(b - 128) / 128.0 for b in digest]
            norm = sum(x * x for x in vec) ** 0.5 or 1.0
            embeddings.append([x / norm for x in vec])
        return embeddings

    def __call__(self, input: list[str]) -> list[list[float]]:  # noqa: A002
        return self._embed(input)

    def embed_documents(self, input: list[str]) -> list[list[float]]:  # noqa: A002
        return self._embed(input)

    def embed_query(self, input: list[str]) -> list[list[float]]:  # noqa: A002
        return self._embed(input)


# A single shared EphemeralClient instance for the test session.
# Each fixture call creates a uniquely named collection so tests are isolated.
_EPHEMERAL_CLIENT = chromadb.EphemeralClient()


def make_chroma_storage() -> ChromaStorage:
    storage = ChromaStorage(
        collection_name=f"test_{uuid.uuid4().hex}",
        _client=_EPHEMERAL_CLIENT,
        _embedding_function=FakeEmbeddingFunction(),
    )
    storage.initialize()
    return storage


def meta(*tags: str, category: str | None = None, priority: int = 5, context=None) -> MemoryMetadata:
    """Shorthand for building metadata in tests."""
    return MemoryMetadata(tags=tags, category=category, priority=priority, context=context)


@pytest.fixture()
def memory_storage() -> StoragePort:
    storage = InMemoryStorage()
    storage.initialize()
    yield storage
    storage.close()


@pytest.fixture()
def sqlite_storage(tmp_path) -> StoragePort:
    storage = SqliteStorage(path=str(tmp_path / "memory.db"))
    storage.initialize()
    yield storage
    storage.close()


@pytest.fixture()
def chroma_storage() -> StoragePort:
    storage = make_chroma_storage()
    yield storage
    storage.close()


@pytest.fixture(params=["memory", "sqlite", "chroma"])
def storage(request) -> StoragePort:
    """Each test using this fixture runs against all three backends."""
    return request.getfixturevalue(f"{request.param}_storage")


@pytest.fixture()
def memory_service(memory_storage: StoragePort) -> MemoryService:
    return MemoryService(memory_storage)


@pytest.fixture()
def reorganizer(memory_storage: StoragePort) -> ReorganizerService:
    return ReorganizerService(memory_storage)


@pytest.fixture()
def app(memory_storage: StoragePort) -> MemoryApp:
    """Fully wired services on the in-memory backend."""
    return build_app(MemoryConfig(), storage=memory_storage)
