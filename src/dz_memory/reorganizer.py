"""
Memory housekeeping: similar-tag merging, pruning and storage maintenance.

Tag grouping is a single pass seeded in tag order: each ungrouped tag opens a
group and absorbs every later ungrouped tag similar *to that seed*.  It is
not a transitive closure, so the outcome depends on the order tags come back
from storage (sorted, for every backend).
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import timedelta

from .models import (
    ReorganizationStats,
    ReorganizeParams,
    ReorganizeResult,
    SearchParams,
    utcnow,
)
from .storage.base import StoragePort

logger = logging.getLogger(__name__)

#: Memory cap applied by cleanup when the caller does not give one.
DEFAULT_MAX_MEMORIES: int = 1000

#: Normalised Levenshtein similarity above which two tags are merged.
TAG_SIMILARITY_THRESHOLD: float = 0.8

#: "Old" for reorganization stats: older than this and rarely read.
STALE_AGE = timedelta(days=30)
STALE_ACCESS_COUNT = 5

_PAGE_SIZE = 100


# ---------------------------------------------------------------------------
# Tag similarity
# ---------------------------------------------------------------------------


def levenshtein_distance(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (ca != cb),
                )
            )
        previous = current
    return previous[-1]


def tags_are_similar(tag1: str, tag2: str) -> bool:
    """Identical, one contains the other, or Levenshtein similarity > 0.8."""
    t1, t2 = tag1.lower(), tag2.lower()
    if t1 == t2:
        return True
    if t1 in t2 or t2 in t1:
        return True
    similarity = 1 - levenshtein_distance(t1, t2) / max(len(t1), len(t2))
    return similarity > TAG_SIMILARITY_THRESHOLD


def group_similar_tags(tags: list[str]) -> list[list[str]]:
    """Seed-only grouping; every tag ends up in exactly one group."""
    groups: list[list[str]] = []
    grouped: set[str] = set()
    for seed in tags:
        if seed in grouped:
            continue
        group = [seed]
        grouped.add(seed)
        for other in tags:
            if other in grouped:
                continue
            if tags_are_similar(seed, other):
                group.append(other)
                grouped.add(other)
        groups.append(group)
    return groups


def select_primary_tag(group: list[str]) -> str:
    """Shortest once ``-``/``_`` are stripped, then fewest of those; first wins ties."""

    def rank(tag: str) -> tuple[int, int]:
        specials = tag.count("-") + tag.count("_")
        return len(tag) - specials, specials

    return min(group, key=rank)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class ReorganizerService:
    """
    Runs the maintenance steps requested by a :class:`ReorganizeParams`.

    Steps run in a fixed order (merge tags, clean up, optimize), each only
    when its flag is set.  The first step that raises stops the run: the
    result carries ``status="error"``, the message, and the counts of the
    steps that finished before it.
    """

    def __init__(self, storage: StoragePort) -> None:
        self._storage = storage

    def reorganize(self, params: ReorganizeParams) -> ReorganizeResult:
        result = ReorganizeResult()
        try:
            if params.merge_similar_tags:
                result.tags_merged = self.merge_similar_tags()
            if params.cleanup_old_memories:
                result.memories_cleaned = self.cleanup_old_memories(params.max_memories)
            if params.optimize_storage:
                result.storage_optimized = self.optimize_storage()
        except Exception as exc:
            logger.error("Reorganization failed: %s", exc)
            result.status = "error"
            result.error = str(exc)
        return result

    def merge_similar_tags(self) -> int:
        """Rewrite secondary tags to their group's primary; returns groups merged."""
        merged = 0
        for group in group_similar_tags(self._storage.get_all_tags()):
            if len(group) <= 1:
                continue
            primary = select_primary_tag(group)
            secondary = [tag for tag in group if tag != primary]
            logger.info("Merging similar tags into %r: %s", primary, secondary)
            rewritten = self._rewrite_tags(primary, secondary)
            logger.debug("Rewrote %d memories for tag %r", rewritten, primary)
            merged += 1
        return merged

    def cleanup_old_memories(self, max_memories: int | None = None) -> int:
        cap = max_memories or DEFAULT_MAX_MEMORIES
        total = self._storage.get_stats().total_memories
        if total <= cap:
            return 0
        removed = self._storage.cleanup(cap)
        logger.info("Cleaned up old memories (removed=%d, remaining=%d)", removed, cap)
        return removed

    def optimize_storage(self) -> bool:
        optimized = self._storage.optimize()
        logger.info("Storage optimization completed (success=%s)", optimized)
        return optimized

    def get_reorganization_stats(self) -> ReorganizationStats:
        tags = self._storage.get_all_tags()
        total = self._storage.get_stats().total_memories
        potential_merges = sum(1 for group in group_similar_tags(tags) if len(group) > 1)

        cutoff = utcnow() - STALE_AGE
        old = 0
        offset = 0
        while True:
            page = self._storage.search_memories(
                SearchParams(date_to=cutoff, limit=_PAGE_SIZE, offset=offset)
            )
            old += sum(1 for m in page.memories if m.access_count < STALE_ACCESS_COUNT)
            if not page.has_more:
                break
            offset += len(page.memories)

        return ReorganizationStats(
            total_tags=len(tags),
            total_memories=total,
            potential_merges=potential_merges,
            old_memories=old,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _rewrite_tags(self, primary: str, secondary: list[str]) -> int:
        """Replace *secondary* tags with *primary* on every carrying record.

        Each rewrite drops the secondary tags from the record, so re-querying
        from offset 0 always makes progress.
        """
        rewritten = 0
        wanted = set(secondary)
        while True:
            page = self._storage.search_memories(
                SearchParams(
                    tags=tuple(secondary),
                    limit=_PAGE_SIZE,
                    sort_by="date",
                    sort_order="asc",
                )
            )
            if not page.memories:
                return rewritten
            for memory in page.memories:
                tags = tuple(
                    dict.fromkeys(primary if t in wanted else t for t in memory.metadata.tags)
                )
                self._storage.update_memory(
                    memory.id,
                    metadata=replace(memory.metadata, tags=tags),
                )
                rewritten += 1