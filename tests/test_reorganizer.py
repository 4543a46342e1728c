"""Tests for ReorganizerService and the tag-similarity helpers."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import meta
from dz_memory.models import ReorganizeParams, SearchParams, utcnow
from dz_memory.reorganizer import (
    DEFAULT_MAX_MEMORIES,
    ReorganizerService,
    group_similar_tags,
    levenshtein_distance,
    select_primary_tag,
    tags_are_similar,
)


# ---------------------------------------------------------------------------
# Tag similarity helpers
# ---------------------------------------------------------------------------


class TestLevenshtein:
    @pytest.mark.parametrize(
        "a, b, expected",
        [
            ("kitten", "sitting", 3),
            ("", "abc", 3),
            ("same", "same", 0),
            ("flaw", "lawn", 2),
        ],
    )
    def test_distance(self, a, b, expected):
        assert levenshtein_distance(a, b) == expected
        assert levenshtein_distance(b, a) == expected


class TestTagsAreSimilar:
    @pytest.mark.parametrize(
        "a, b, expected",
        [
            ("API", "api", True),
            ("deploy", "deploys", True),
            ("api", "api-server", True),
            ("color", "colour", True),
            ("test", "tent", False),
            ("cat", "dog", False),
        ],
    )
    def test_similarity(self, a, b, expected):
        assert tags_are_similar(a, b) is expected


class TestGroupSimilarTags:
    def test_groups_around_first_seed(self):
        assert group_similar_tags(["api", "api-server", "server"]) == [
            ["api", "api-server"],
            ["server"],
        ]

    def test_grouping_is_not_transitive(self):
        # "zbcdefghi" is close to "abcdefghi" but not to the seed "abcdefgh".
        groups = group_similar_tags(["abcdefgh", "abcdefghi", "zbcdefghi"])
        assert groups == [["abcdefgh", "abcdefghi"], ["zbcdefghi"]]

    def test_every_tag_lands_in_one_group(self):
        tags = ["api", "apis", "database", "databases", "react", "redis"]
        groups = group_similar_tags(tags)
        flattened = [t for group in groups for t in group]
        assert sorted(flattened) == sorted(tags)

    def test_empty(self):
        assert group_similar_tags([]) == []


class TestSelectPrimaryTag:
    @pytest.mark.parametrize(
        "group, expected",
        [
            (["api-server", "api"], "api"),
            (["api_v2", "apiv2"], "apiv2"),
            (["a-b-c", "abc"], "abc"),
            (["abc", "abd"], "abc"),
        ],
    )
    def test_primary(self, group, expected):
        assert select_primary_tag(group) == expected


# ---------------------------------------------------------------------------
# ReorganizerService
# ---------------------------------------------------------------------------


class TestMergeSimilarTags:
    def test_secondary_tag_is_folded_into_primary(self, storage):
        storage.store_memory("first", meta("api"))
        storage.store_memory("second", meta("api-server"))

        result = ReorganizerService(storage).reorganize(ReorganizeParams(merge_similar_tags=True))

        assert result.status == "ok"
        assert result.tags_merged == 1
        assert storage.search_memories(SearchParams(tags=("api-server",))).total == 0
        assert storage.search_memories(SearchParams(tags=("api",))).total == 2
        assert storage.get_all_tags() == ["api"]

    def test_record_carrying_both_tags_keeps_one(self, memory_storage, reorganizer):
        chunk = memory_storage.store_memory("both", meta("api", "api-server", "misc"))
        reorganizer.merge_similar_tags()
        assert memory_storage.get_memory(chunk.id).metadata.tags == ("api", "misc")

    def test_nothing_to_merge(self, memory_storage, reorganizer):
        memory_storage.store_memory("x", meta("python", "kubernetes"))
        assert reorganizer.merge_similar_tags() == 0

    def test_rewrite_covers_more_than_one_page(self, memory_storage, reorganizer):
        for i in range(250):
            memory_storage.store_memory(f"n{i}", meta("deploys"))
        memory_storage.store_memory("seed", meta("deploy"))

        reorganizer.merge_similar_tags()

        assert memory_storage.search_memories(SearchParams(tags=("deploys",))).total == 0
        assert memory_storage.search_memories(SearchParams(tags=("deploy",))).total == 251


class TestCleanup:
    @pytest.mark.parametrize("backend", ["memory_storage", "sqlite_storage"])
    def test_cleanup_to_cap_removes_lowest_ranked(self, request, backend):
        storage = request.getfixturevalue(backend)
        ids = [storage.store_memory(f"memory {i}", meta()).id for i in range(1200)]
        for memory_id in ids[:100]:
            storage.get_memory(memory_id)

        result = ReorganizerService(storage).reorganize(
            ReorganizeParams(cleanup_old_memories=True, max_memories=1000)
        )

        assert result.memories_cleaned == 200
        assert storage.get_stats().total_memories == 1000
        remaining = {
            m.id for m in storage.search_memories(SearchParams(limit=2000)).memories
        }
        assert remaining == set(ids) - set(ids[100:300])

    def test_default_cap(self, memory_storage, reorganizer):
        memory_storage.store_memory("only one", meta())
        assert DEFAULT_MAX_MEMORIES == 1000
        assert reorganizer.cleanup_old_memories() == 0

    def test_under_cap_does_not_call_backend(self, memory_storage, reorganizer):
        memory_storage.store_memory("a", meta())
        with patch.object(memory_storage, "cleanup") as cleanup:
            assert reorganizer.cleanup_old_memories(5) == 0
        cleanup.assert_not_called()


class TestReorganize:
    def test_no_flags_does_nothing(self, memory_storage, reorganizer):
        memory_storage.store_memory("x", meta("api", "api-server"))
        result = reorganizer.reorganize(ReorganizeParams())
        assert result.to_dict() == {
            "status": "ok",
            "tagsMerged": 0,
            "memoriesCleaned": 0,
            "storageOptimized": False,
        }

    def test_optimize(self, storage):
        result = ReorganizerService(storage).reorganize(ReorganizeParams(optimize_storage=True))
        assert result.storage_optimized is True

    def test_failure_stops_later_steps_and_keeps_partial_counts(self, memory_storage, reorganizer):
        memory_storage.store_memory("a", meta("api"))
        memory_storage.store_memory("b", meta("api-server"))

        with patch.object(memory_storage, "cleanup", side_effect=RuntimeError("boom")), patch.object(
            memory_storage, "optimize"
        ) as optimize:
            result = reorganizer.reorganize(
                ReorganizeParams(
                    merge_similar_tags=True,
                    cleanup_old_memories=True,
                    optimize_storage=True,
                    max_memories=1,
                )
            )

        optimize.assert_not_called()
        assert result.status == "error"
        assert result.error == "boom"
        assert result.tags_merged == 1
        assert result.memories_cleaned == 0
        assert result.storage_optimized is False
        assert result.to_dict()["error"] == "boom"


class TestReorganizationStats:
    def test_fresh_memories_are_not_old(self, memory_storage, reorganizer):
        memory_storage.store_memory("a", meta("api", "api-server", "redis"))
        stats = reorganizer.get_reorganization_stats()
        assert stats.total_tags == 3
        assert stats.total_memories == 1
        assert stats.potential_merges == 1
        assert stats.old_memories == 0

    def test_old_rarely_read_memories_are_counted(self, memory_storage, reorganizer, monkeypatch):
        ids = [memory_storage.store_memory(f"m{i}", meta()).id for i in range(150)]
        for _ in range(5):
            memory_storage.get_memory(ids[0])

        future = utcnow() + timedelta(days=31)
        monkeypatch.setattr("dz_memory.reorganizer.utcnow", lambda: future)

        stats = reorganizer.get_reorganization_stats()
        assert stats.total_memories == 150
        assert stats.old_memories == 149
        assert stats.to_dict()["oldMemories"] == 149
