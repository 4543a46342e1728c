"""
Vector-indexed backend on ChromaDB.

Each chunk is one document in a cosine-space collection; the metadata lives in
the Chroma metadata dict (lists are JSON-encoded, missing optional strings are
stored as ``""`` because Chroma rejects ``None`` values).  Category and date
filters are pushed down into the ``where`` clause; the ``relevance`` sort ranks
by cosine similarity between the query and each document:

    distance = 1 - cosine_similarity   →   similarity = 1 - distance
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
import uuid
from typing import Any

import chromadb
from chromadb.utils import embedding_functions

from ..models import (
    MemoryChunk,
    MemoryMetadata,
    MemoryStats,
    SearchParams,
    SearchResult,
    from_timestamp,
    normalize_tags,
    to_timestamp,
    utcnow,
)
from .base import StoragePort, build_stats, matches_filters, paginate, sort_memories

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------


class HashEmbeddingFunction:
    """
    Deterministic bag-of-characters embedding: each character of each word
    bumps one bucket, then the vector is L2-normalised.

    A stand-in for a real model: texts that share words land close together,
    nothing is downloaded, and results are reproducible.
    """

    def __init__(self, dimensions: int = 256) -> None:
        self.dimensions = dimensions

    def name(self) -> str:  # required by ChromaDB >= 0.5
        return "dz-memory-hash"

    def _embed(self, texts: list[str]) -> list[list[float]]:
        embeddings = []
        for text in texts:
            vec = [0.0] * self.dimensions
            for i, word in enumerate(re.findall(r"\w+", text.lower())):
                digest = hashlib.md5(word.encode()).digest()
                vec[int.from_bytes(digest[:4], "big") % self.dimensions] += 1.0
                for j, char in enumerate(word):
                    vec[(ord(char) + i + j) % self.dimensions] += 0.1
            if not any(vec):
                vec[0] = 1.0  # cosine distance is undefined for a zero vector
            norm = sum(x * x for x in vec) ** 0.5 or 1.0
            embeddings.append([x / norm for x in vec])
        return embeddings

    def __call__(self, input: list[str]) -> list[list[float]]:  # noqa: A002
        return self._embed(input)

    def embed_documents(self, input: list[str]) -> list[list[float]]:  # noqa: A002
        return self._embed(input)

    def embed_query(self, input: list[str]) -> list[list[float]]:  # noqa: A002
        return self._embed(input)


def get_embedding_function(model_name: str = "") -> Any:
    """Sentence-transformer embedding for *model_name*, hashing when empty."""
    if not model_name:
        return HashEmbeddingFunction()
    return embedding_functions.SentenceTransformerEmbeddingFunction(model_name=model_name)


def generate_id() -> str:
    """Return a new unique memory ID."""
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class ChromaStorage(StoragePort):
    """
    Persistent vector store backed by ChromaDB.

    Parameters
    ----------
    path:
        Directory of the ChromaDB persistent store.
    collection_name:
        Name of the collection holding the memories.
    embedding_model:
        sentence-transformers model id; empty selects
        :class:`HashEmbeddingFunction`.
    _client, _embedding_function:
        Injection points for tests (e.g. an ``EphemeralClient``).
    """

    def __init__(
        self,
        path: str = "./chroma_db",
        collection_name: str = "memories",
        embedding_model: str = "",
        _client: Any | None = None,
        _embedding_function: Any | None = None,
    ) -> None:
        self.path = path
        self.collection_name = collection_name
        self.embedding_model = embedding_model
        self._client = _client
        self._embedding_function = _embedding_function
        self.collection: Any | None = None
        self._next_seq = 1
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        logger.info(
            "Initializing ChromaDB storage (collection=%s, path=%s)",
            self.collection_name,
            self.path,
        )
        client = self._client or chromadb.PersistentClient(path=self.path)
        ef = self._embedding_function or get_embedding_function(self.embedding_model)
        self.collection = client.get_or_create_collection(
            name=self.collection_name,
            embedding_function=ef,
            metadata={"hnsw:space": "cosine"},
        )
        seqs = [int(meta.get("seq", 0)) for meta in self._get()["metadatas"]]
        self._next_seq = max(seqs, default=0) + 1

    def close(self) -> None:
        if self.collection is not None:
            logger.info("ChromaDB storage closed")
        self.collection = None

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def store_memory(self, text: str, metadata: MemoryMetadata) -> MemoryChunk:
        now = to_timestamp(utcnow())
        memory_id = generate_id()
        with self._lock:
            record = _encode_metadata(metadata)
            record.update(
                created_at=now,
                updated_at=now,
                access_count=0,
                last_accessed_at=now,
                seq=self._next_seq,
            )
            self._next_seq += 1
            self._collection.add(ids=[memory_id], documents=[text], metadatas=[record])
        logger.debug("Stored memory %s (%d chars)", memory_id, len(text))
        return _to_chunk(memory_id, text, record)

    def update_memory(
        self,
        memory_id: str,
        text: str | None = None,
        metadata: MemoryMetadata | None = None,
    ) -> MemoryChunk | None:
        with self._lock:
            found = self._get_one(memory_id)
            if found is None:
                return None
            document, record = found
            if metadata is not None:
                record.update(_encode_metadata(metadata))
            record["updated_at"] = to_timestamp(utcnow())
            if text is not None:
                document = text
                self._collection.update(ids=[memory_id], documents=[text], metadatas=[record])
            else:
                self._collection.update(ids=[memory_id], metadatas=[record])
        return _to_chunk(memory_id, document, record)

    def delete_memory(self, memory_id: str) -> bool:
        with self._lock:
            if self._get_one(memory_id) is None:
                return False
            self._collection.delete(ids=[memory_id])
        return True

    def cleanup(self, max_memories: int) -> int:
        with self._lock:
            result = self._get()
            excess = len(result["ids"]) - max_memories
            if excess <= 0:
                return 0
            ranked = sorted(
                zip(result["ids"], result["metadatas"]),
                key=lambda pair: (
                    int(pair[1].get("access_count", 0)),
                    float(pair[1].get("created_at", 0.0)),
                    int(pair[1].get("seq", 0)),
                ),
            )
            victims = [memory_id for memory_id, _ in ranked[:excess]]
            self._collection.delete(ids=victims)
        logger.info("Cleaned up %d memories (cap %d)", len(victims), max_memories)
        return len(victims)

    def optimize(self) -> bool:
        # Chroma maintains its HNSW index itself; nothing to compact.
        return True

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def get_memory(self, memory_id: str) -> MemoryChunk | None:
        with self._lock:
            found = self._get_one(memory_id)
            if found is None:
                return None
            document, record = found
            record["access_count"] = int(record.get("access_count", 0)) + 1
            record["last_accessed_at"] = to_timestamp(utcnow())
            self._collection.update(ids=[memory_id], metadatas=[record])
        return _to_chunk(memory_id, document, record)

    def search_memories(self, params: SearchParams) -> SearchResult:
        where = _build_where(params)
        result = self._get(where)
        rows = sorted(
            zip(result["ids"], result["documents"], result["metadatas"]),
            key=lambda row: int(row[2].get("seq", 0)),
        )
        memories = [_to_chunk(i, doc, meta) for i, doc, meta in rows]
        filtered = [m for m in memories if matches_filters(m, params)]

        relevance = None
        if params.sort_by == "relevance" and params.query and filtered:
            scores = self._similarities(params.query, where, len(memories))
            relevance = lambda m: scores.get(m.id, -1.0)  # noqa: E731

        return paginate(sort_memories(filtered, params, relevance), params)

    def get_all_tags(self) -> list[str]:
        tags: set[str] = set()
        for meta in self._get()["metadatas"]:
            tags.update(json.loads(meta.get("tags") or "[]"))
        return sorted(tags)

    def get_all_categories(self) -> list[str]:
        return sorted({meta["category"] for meta in self._get()["metadatas"] if meta.get("category")})

    def get_stats(self) -> MemoryStats:
        result = self._get()
        return build_stats(
            _to_chunk(i, doc, meta)
            for i, doc, meta in zip(result["ids"], result["documents"], result["metadatas"])
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @property
    def _collection(self) -> Any:
        if self.collection is None:
            raise RuntimeError("ChromaDB storage is not initialized")
        return self.collection

    def _get(self, where: dict | None = None) -> dict[str, list]:
        result = self._collection.get(where=where) if where else self._collection.get()
        ids = result.get("ids") or []
        return {
            "ids": ids,
            "documents": result.get("documents") or [""] * len(ids),
            "metadatas": [dict(m or {}) for m in (result.get("metadatas") or [None] * len(ids))],
        }

    def _get_one(self, memory_id: str) -> tuple[str, dict[str, Any]] | None:
        result = self._collection.get(ids=[memory_id])
        if not result.get("ids"):
            return None
        documents = result.get("documents") or [""]
        metadatas = result.get("metadatas") or [{}]
        return documents[0], dict(metadatas[0] or {})

    def _similarities(self, query: str, where: dict | None, n_results: int) -> dict[str, float]:
        if n_results == 0:
            return {}
        kwargs: dict[str, Any] = {"query_texts": [query], "n_results": n_results}
        if where:
            kwargs["where"] = where
        result = self._collection.query(**kwargs)
        ids = result["ids"][0]
        distances = result["distances"][0]
        return {memory_id: 1.0 - distance for memory_id, distance in zip(ids, distances)}


def _build_where(params: SearchParams) -> dict | None:
    clauses: list[dict] = []
    if params.category:
        clauses.append({"category": params.category})
    if params.date_from:
        clauses.append({"created_at": {"$gte": to_timestamp(params.date_from)}})
    if params.date_to:
        clauses.append({"created_at": {"$lte": to_timestamp(params.date_to)}})
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def _encode_metadata(metadata: MemoryMetadata) -> dict[str, Any]:
    return {
        "tags": json.dumps(list(normalize_tags(metadata.tags))),
        "context": metadata.context or "",
        "source": metadata.source or "",
        "priority": int(metadata.priority),
        "category": metadata.category or "",
        "related_ids": json.dumps(list(metadata.related_ids)),
    }


def _to_chunk(memory_id: str, document: str, record: dict[str, Any]) -> MemoryChunk:
    created = float(record.get("created_at", 0.0))
    return MemoryChunk(
        id=memory_id,
        text=document,
        metadata=MemoryMetadata(
            tags=tuple(json.loads(record.get("tags") or "[]")),
            context=record.get("context") or None,
            source=record.get("source") or None,
            priority=int(record.get("priority", 5)),
            category=record.get("category") or None,
            related_ids=tuple(json.loads(record.get("related_ids") or "[]")),
        ),
        created_at=from_timestamp(created),
        updated_at=from_timestamp(float(record.get("updated_at", created))),
        access_count=int(record.get("access_count", 0)),
        last_accessed_at=from_timestamp(float(record.get("last_accessed_at", created))),
    )
