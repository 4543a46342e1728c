"""
Relational backend on sqlite3 with an FTS5 text index.

Filters are evaluated in SQL (``instr`` over a Python-registered ``py_lower``
for the free-text query, so case folding matches the other backends beyond
ASCII, and ``json_each`` for tag membership).  When FTS5 is
available the ``relevance`` sort ranks by bm25 score of the query tokens.

Ids are ``mem-<seq>`` where ``seq`` is the AUTOINCREMENT row id, so they are
never reused, even after deletes and restarts.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
from pathlib import Path
from typing import Any

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
from .base import StoragePort

logger = logging.getLogger(__name__)

_ID_PREFIX = "mem-"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS memories (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    text TEXT NOT NULL,
    tags TEXT NOT NULL DEFAULT '[]',
    context TEXT,
    source TEXT,
    priority INTEGER NOT NULL DEFAULT 5,
    category TEXT,
    related_ids TEXT NOT NULL DEFAULT '[]',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    access_count INTEGER NOT NULL DEFAULT 0,
    last_accessed_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_memories_created_at ON memories (created_at);
CREATE INDEX IF NOT EXISTS idx_memories_category ON memories (category);
CREATE INDEX IF NOT EXISTS idx_memories_access ON memories (access_count, created_at);
"""

_FTS_SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts USING fts5(text, tags, context);
CREATE TRIGGER IF NOT EXISTS memories_fts_insert AFTER INSERT ON memories BEGIN
    INSERT INTO memories_fts(rowid, text, tags, context)
    VALUES (NEW.seq, NEW.text, NEW.tags, COALESCE(NEW.context, ''));
END;
CREATE TRIGGER IF NOT EXISTS memories_fts_delete AFTER DELETE ON memories BEGIN
    DELETE FROM memories_fts WHERE rowid = OLD.seq;
END;
CREATE TRIGGER IF NOT EXISTS memories_fts_update AFTER UPDATE OF text, tags, context ON memories BEGIN
    UPDATE memories_fts
    SET text = NEW.text, tags = NEW.tags, context = COALESCE(NEW.context, '')
    WHERE rowid = NEW.seq;
END;
"""

_COLUMNS = (
    "m.seq, m.text, m.tags, m.context, m.source, m.priority, m.category, "
    "m.related_ids, m.created_at, m.updated_at, m.access_count, m.last_accessed_at"
)

_SORT_COLUMNS = {
    "date": "m.created_at",
    "access": "m.access_count",
    "priority": "m.priority",
}


class SqliteStorage(StoragePort):
    """
    Persistent backend on a single sqlite3 connection.

    The connection is shared between threads and every statement runs under
    ``self._lock``; the access bump is a single ``UPDATE ... + 1`` so
    concurrent readers never lose an increment.

    Parameters
    ----------
    path:
        Database file, or ``":memory:"``.  A directory path gets a
        ``memory.db`` file inside it.
    """

    def __init__(self, path: str = "./memory.db") -> None:
        self.path = path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self.fts_enabled = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        db_path = self._resolve_path()
        logger.info("Initializing SQLite storage at %s", db_path)
        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.create_function("py_lower", 1, _lower, deterministic=True)
        conn.executescript(_SCHEMA)
        try:
            conn.executescript(_FTS_SCHEMA)
            self.fts_enabled = True
        except sqlite3.OperationalError as exc:
            logger.warning("FTS5 unavailable, relevance falls back to access count: %s", exc)
            self.fts_enabled = False
        conn.commit()
        self._conn = conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info("SQLite storage closed")

    def _resolve_path(self) -> str:
        if self.path == ":memory:":
            return self.path
        path = Path(self.path).expanduser()
        if path.is_dir() or not path.suffix:
            path.mkdir(parents=True, exist_ok=True)
            path = path / "memory.db"
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("SQLite storage is not initialized")
        return self._conn

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def store_memory(self, text: str, metadata: MemoryMetadata) -> MemoryChunk:
        now = to_timestamp(utcnow())
        with self._lock, self.conn:
            cur = self.conn.execute(
                """
                INSERT INTO memories (text, tags, context, source, priority, category,
                                      related_ids, created_at, updated_at, access_count,
                                      last_accessed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    text,
                    json.dumps(list(normalize_tags(metadata.tags))),
                    metadata.context,
                    metadata.source,
                    metadata.priority,
                    metadata.category,
                    json.dumps(list(metadata.related_ids)),
                    now,
                    now,
                    now,
                ),
            )
            seq = cur.lastrowid
            row = self._fetch_row(seq)
        logger.debug("Stored memory %s%d (%d chars)", _ID_PREFIX, seq, len(text))
        return _row_to_chunk(row)

    def update_memory(
        self,
        memory_id: str,
        text: str | None = None,
        metadata: MemoryMetadata | None = None,
    ) -> MemoryChunk | None:
        seq = _parse_id(memory_id)
        if seq is None:
            return None

        assignments = ["updated_at = ?"]
        values: list[Any] = [to_timestamp(utcnow())]
        if text is not None:
            assignments.append("text = ?")
            values.append(text)
        if metadata is not None:
            assignments.extend(
                [
                    "tags = ?",
                    "context = ?",
                    "source = ?",
                    "priority = ?",
                    "category = ?",
                    "related_ids = ?",
                ]
            )
            values.extend(
                [
                    json.dumps(list(normalize_tags(metadata.tags))),
                    metadata.context,
                    metadata.source,
                    metadata.priority,
                    metadata.category,
                    json.dumps(list(metadata.related_ids)),
                ]
            )
        values.append(seq)

        with self._lock, self.conn:
            cur = self.conn.execute(
                f"UPDATE memories SET {', '.join(assignments)} WHERE seq = ?", values
            )
            if cur.rowcount == 0:
                return None
            row = self._fetch_row(seq)
        return _row_to_chunk(row)

    def delete_memory(self, memory_id: str) -> bool:
        seq = _parse_id(memory_id)
        if seq is None:
            return False
        with self._lock, self.conn:
            cur = self.conn.execute("DELETE FROM memories WHERE seq = ?", (seq,))
        return cur.rowcount > 0

    def cleanup(self, max_memories: int) -> int:
        with self._lock, self.conn:
            total = self.conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
            excess = total - max_memories
            if excess <= 0:
                return 0
            cur = self.conn.execute(
                """
                DELETE FROM memories
                WHERE seq IN (
                    SELECT seq FROM memories
                    ORDER BY access_count ASC, created_at ASC, seq ASC
                    LIMIT ?
                )
                """,
                (excess,),
            )
            removed = cur.rowcount
        logger.info("Cleaned up %d memories (cap %d)", removed, max_memories)
        return removed

    def optimize(self) -> bool:
        with self._lock:
            if self.fts_enabled:
                with self.conn:
                    self.conn.execute("INSERT INTO memories_fts(memories_fts) VALUES ('optimize')")
            self.conn.execute("VACUUM")
        logger.info("SQLite storage optimized")
        return True

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def get_memory(self, memory_id: str) -> MemoryChunk | None:
        seq = _parse_id(memory_id)
        if seq is None:
            return None
        with self._lock, self.conn:
            cur = self.conn.execute(
                """
                UPDATE memories
                SET access_count = access_count + 1, last_accessed_at = ?
                WHERE seq = ?
                """,
                (to_timestamp(utcnow()), seq),
            )
            if cur.rowcount == 0:
                return None
            row = self._fetch_row(seq)
        return _row_to_chunk(row)

    def search_memories(self, params: SearchParams) -> SearchResult:
        conditions: list[str] = []
        values: list[Any] = []

        if params.query:
            needle = params.query.lower()
            conditions.append(
                "(instr(py_lower(m.text), ?) > 0 "
                "OR instr(py_lower(COALESCE(m.context, '')), ?) > 0 "
                "OR EXISTS (SELECT 1 FROM json_each(m.tags) t WHERE instr(py_lower(t.value), ?) > 0))"
            )
            values.extend([needle, needle, needle])
        if params.tags:
            placeholders = ", ".join("?" for _ in params.tags)
            conditions.append(
                f"EXISTS (SELECT 1 FROM json_each(m.tags) t WHERE t.value IN ({placeholders}))"
            )
            values.extend(params.tags)
        if params.category:
            conditions.append("m.category = ?")
            values.append(params.category)
        if params.date_from:
            conditions.append("m.created_at >= ?")
            values.append(to_timestamp(params.date_from))
        if params.date_to:
            conditions.append("m.created_at <= ?")
            values.append(to_timestamp(params.date_to))

        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        direction = "ASC" if params.sort_order == "asc" else "DESC"

        join = ""
        join_values: list[Any] = []
        match_query = _fts_match_query(params.query) if self.fts_enabled else None
        if params.sort_by == "relevance" and match_query:
            # bm25() is lower-is-better; negate so larger means more relevant
            join = (
                " LEFT JOIN (SELECT rowid AS seq, -bm25(memories_fts) AS score "
                "FROM memories_fts WHERE memories_fts MATCH ?) r ON r.seq = m.seq"
            )
            join_values.append(match_query)
            order = f"COALESCE(r.score, 0) {direction}, m.access_count {direction}"
        elif params.sort_by == "relevance":
            order = f"m.access_count {direction}"
        else:
            order = f"{_SORT_COLUMNS.get(params.sort_by, 'm.created_at')} {direction}"

        with self._lock:
            total = self.conn.execute(
                f"SELECT COUNT(*) FROM memories m{where}", values
            ).fetchone()[0]
            rows = self.conn.execute(
                f"SELECT {_COLUMNS} FROM memories m{join}{where} "
                f"ORDER BY {order}, m.seq ASC LIMIT ? OFFSET ?",
                [*join_values, *values, params.limit, params.offset],
            ).fetchall()

        memories = [_row_to_chunk(row) for row in rows]
        return SearchResult(
            memories=memories,
            total=total,
            has_more=params.offset + len(memories) < total,
        )

    def get_all_tags(self) -> list[str]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT DISTINCT t.value FROM memories m, json_each(m.tags) t ORDER BY t.value"
            ).fetchall()
        return [row[0] for row in rows]

    def get_all_categories(self) -> list[str]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT DISTINCT category FROM memories "
                "WHERE category IS NOT NULL AND category != '' ORDER BY category"
            ).fetchall()
        return [row[0] for row in rows]

    def get_stats(self) -> MemoryStats:
        with self._lock:
            total, oldest, newest = self.conn.execute(
                "SELECT COUNT(*), MIN(created_at), MAX(created_at) FROM memories"
            ).fetchone()
            tags = self.get_all_tags()
            categories = self.get_all_categories()
        return MemoryStats(
            total_memories=total,
            total_tags=len(tags),
            total_categories=len(categories),
            oldest_memory=from_timestamp(oldest) if oldest is not None else None,
            newest_memory=from_timestamp(newest) if newest is not None else None,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _fetch_row(self, seq: int) -> sqlite3.Row:
        return self.conn.execute(
            f"SELECT {_COLUMNS} FROM memories m WHERE m.seq = ?", (seq,)
        ).fetchone()


def _parse_id(memory_id: str) -> int | None:
    if not memory_id.startswith(_ID_PREFIX):
        return None
    try:
        return int(memory_id[len(_ID_PREFIX) :])
    except ValueError:
        return None


def _lower(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


def _fts_match_query(query: str | None) -> str | None:
    """Quote each word token so user punctuation cannot break FTS5 syntax."""
    tokens = re.findall(r"\w+", query or "")
    if not tokens:
        return None
    return " OR ".join(f'"{token}"' for token in tokens)


def _row_to_chunk(row: sqlite3.Row) -> MemoryChunk:
    return MemoryChunk(
        id=f"{_ID_PREFIX}{row['seq']}",
        text=row["text"],
        metadata=MemoryMetadata(
            tags=tuple(json.loads(row["tags"])),
            context=row["context"],
            source=row["source"],
            priority=row["priority"],
            category=row["category"],
            related_ids=tuple(json.loads(row["related_ids"])),
        ),
        created_at=from_timestamp(row["created_at"]),
        updated_at=from_timestamp(row["updated_at"]),
        access_count=row["access_count"],
        last_accessed_at=from_timestamp(row["last_accessed_at"]),
    )
