"""Tests for the request dispatcher: envelopes, parameter parsing, error codes."""

from __future__ import annotations

from datetime import timezone
from unittest.mock import patch

import pytest

from dz_memory.dispatcher import (
    MAX_SEARCH_LIMIT,
    parse_date,
    parse_memorize_params,
    parse_reorganize_params,
    parse_search_params,
)
from dz_memory.errors import ValidationError


def _request(tool, params=None, request_id="req-1"):
    return {"id": request_id, "tool": tool, "params": params if params is not None else {}}


# ---------------------------------------------------------------------------
# Parameter parsing
# ---------------------------------------------------------------------------


class TestParseMemorizeParams:
    def test_minimal(self):
        params = parse_memorize_params({"text": "  hello  "})
        assert params.text == "hello"
        assert params.tags == ()
        assert params.priority is None

    @pytest.mark.parametrize("raw, expected", [(42, 10), (0, 1), (-7, 1), (7, 7), (3.9, 3)])
    def test_priority_is_clamped(self, raw, expected):
        assert parse_memorize_params({"text": "x", "priority": raw}).priority == expected

    def test_non_numeric_priority_is_ignored(self):
        assert parse_memorize_params({"text": "x", "priority": "high"}).priority is None
        assert parse_memorize_params({"text": "x", "priority": True}).priority is None

    def test_tags_from_list_or_comma_string(self):
        assert parse_memorize_params({"text": "x", "tags": ["A", " b ", ""]}).tags == ("a", "b")
        assert parse_memorize_params({"text": "x", "tags": "ops, Infra"}).tags == ("ops", "infra")

    @pytest.mark.parametrize("params", [{}, {"text": ""}, {"text": "   "}, {"text": 12}])
    def test_text_is_required(self, params):
        with pytest.raises(ValidationError) as exc_info:
            parse_memorize_params(params)
        assert exc_info.value.details == {"field": "text"}


class TestParseSearchParams:
    def test_defaults(self):
        params = parse_search_params({})
        assert params.query is None
        assert params.limit == 50
        assert params.offset == 0
        assert params.sort_by == "date"
        assert params.sort_order == "desc"

    @pytest.mark.parametrize("raw, expected", [(500, MAX_SEARCH_LIMIT), (0, 1), (-3, 1), (20, 20)])
    def test_limit_is_clamped(self, raw, expected):
        assert parse_search_params({"limit": raw}).limit == expected

    def test_negative_offset_is_clamped(self):
        assert parse_search_params({"offset": -5}).offset == 0

    def test_unknown_sort_values_fall_back_to_defaults(self):
        params = parse_search_params({"sortBy": "size", "sortOrder": "sideways"})
        assert params.sort_by == "date"
        assert params.sort_order == "desc"

    def test_camel_case_fields(self):
        params = parse_search_params(
            {
                "query": " pool ",
                "tags": ["Ops"],
                "category": "database",
                "dateFrom": "2024-01-01",
                "dateTo": "2024-02-01T12:00:00Z",
                "sortBy": "priority",
                "sortOrder": "asc",
            }
        )
        assert params.query == "pool"
        assert params.tags == ("ops",)
        assert params.category == "database"
        assert params.date_from.year == 2024
        assert params.date_to.hour == 12
        assert params.sort_by == "priority"
        assert params.sort_order == "asc"

    def test_invalid_date_names_the_field(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_search_params({"dateTo": "yesterday"})
        assert exc_info.value.field == "dateTo"


class TestParseDate:
    def test_naive_dates_are_utc(self):
        assert parse_date("2024-05-01T10:00:00", "dateFrom").tzinfo == timezone.utc

    def test_offsets_are_kept(self):
        parsed = parse_date("2024-05-01T10:00:00+02:00", "dateFrom")
        assert parsed.utcoffset().total_seconds() == 7200


class TestParseReorganizeParams:
    def test_flags_must_be_true(self):
        params = parse_reorganize_params(
            {"mergeSimilarTags": "yes", "cleanupOldMemories": 1, "optimizeStorage": True}
        )
        assert params.merge_similar_tags is False
        assert params.cleanup_old_memories is False
        assert params.optimize_storage is True

    def test_max_memories_is_clamped(self):
        assert parse_reorganize_params({"maxMemories": 0}).max_memories == 1
        assert parse_reorganize_params({}).max_memories is None


# ---------------------------------------------------------------------------
# ToolDispatcher
# ---------------------------------------------------------------------------


class TestToolDispatcher:
    def test_available_tools(self, app):
        tools = app.dispatcher.get_available_tools()
        assert tools == sorted(tools)
        for name in (
            "memorize",
            "list",
            "search",
            "get_memory",
            "delete_memory",
            "get_tags",
            "get_categories",
            "get_stats",
            "reorganize",
            "get_reorganization_stats",
        ):
            assert app.dispatcher.has_tool(name)
        assert not app.dispatcher.has_tool("drop_everything")

    def test_memorize_envelope(self, app):
        response = app.dispatcher.process_request(
            _request("memorize", {"text": "Bug in API. Fixed with a patch.", "tags": ["bug"]})
        )
        assert response["id"] == "req-1"
        result = response["result"]
        assert result["status"] == "ok"
        assert result["chunksCreated"] == 1
        assert len(result["memoryIds"]) == 1

    def test_memorize_clamps_priority(self, app):
        response = app.dispatcher.process_request(
            _request("memorize", {"text": "Important.", "priority": 99})
        )
        memory_id = response["result"]["memoryIds"][0]
        fetched = app.dispatcher.process_request(_request("get_memory", {"id": memory_id}))
        assert fetched["result"]["memory"]["metadata"]["priority"] == 10
        assert fetched["result"]["memory"]["accessCount"] == 1

    def test_validation_error_envelope(self, app):
        response = app.dispatcher.process_request(_request("memorize", {"text": " "}, "r9"))
        assert response == {
            "id": "r9",
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Text parameter is required and must be a non-empty string",
                "details": {"field": "text"},
            },
        }

    def test_list_and_search_are_aliases(self, app):
        for text in ("alpha note", "beta note", "gamma"):
            app.dispatcher.process_request(_request("memorize", {"text": text}))
        listed = app.dispatcher.process_request(_request("list", {"query": "note"}))
        searched = app.dispatcher.process_request(_request("search", {"query": "note"}))
        assert listed["result"] == searched["result"]
        assert listed["result"]["total"] == 2
        assert listed["result"]["hasMore"] is False

    def test_list_pagination(self, app):
        for i in range(5):
            app.dispatcher.process_request(_request("memorize", {"text": f"entry {i}"}))
        result = app.dispatcher.process_request(_request("list", {"limit": 2, "offset": 1}))["result"]
        assert result["total"] == 5
        assert len(result["memories"]) == 2
        assert result["hasMore"] is True

    def test_get_unknown_memory(self, app):
        response = app.dispatcher.process_request(_request("get_memory", {"id": "mem-77"}))
        assert response["error"]["code"] == "NOT_FOUND"
        assert response["error"]["details"] == {"id": "mem-77"}

    def test_get_memory_requires_id(self, app):
        response = app.dispatcher.process_request(_request("get_memory", {}))
        assert response["error"]["code"] == "VALIDATION_ERROR"
        assert response["error"]["details"] == {"field": "id"}

    def test_delete_memory(self, app):
        memory_id = app.dispatcher.process_request(_request("memorize", {"text": "gone soon"}))[
            "result"
        ]["memoryIds"][0]
        response = app.dispatcher.process_request(_request("delete_memory", {"id": memory_id}))
        assert response["result"] == {"deleted": True, "id": memory_id}
        again = app.dispatcher.process_request(_request("delete_memory", {"id": memory_id}))
        assert again["error"]["code"] == "NOT_FOUND"

    def test_tags_categories_and_stats(self, app):
        app.dispatcher.process_request(
            _request("memorize", {"text": "a bug here", "tags": ["work"]})
        )
        tags = app.dispatcher.process_request(_request("get_tags"))["result"]["tags"]
        categories = app.dispatcher.process_request(_request("get_categories"))["result"]
        stats = app.dispatcher.process_request(_request("get_stats"))["result"]
        assert "work" in tags
        assert categories == {"categories": ["troubleshooting"]}
        assert stats["totalMemories"] == 1
        assert stats["totalCategories"] == 1
        assert stats["oldestMemory"] == stats["newestMemory"]

    def test_reorganize(self, app):
        app.dispatcher.process_request(_request("memorize", {"text": "x", "tags": ["api"]}))
        app.dispatcher.process_request(_request("memorize", {"text": "y", "tags": ["api-server"]}))
        preview = app.dispatcher.process_request(_request("get_reorganization_stats"))["result"]
        assert preview["potentialMerges"] == 1

        result = app.dispatcher.process_request(
            _request("reorganize", {"mergeSimilarTags": True, "optimizeStorage": True})
        )["result"]
        assert result == {
            "status": "ok",
            "tagsMerged": 1,
            "memoriesCleaned": 0,
            "storageOptimized": True,
        }

    def test_unknown_tool(self, app):
        response = app.dispatcher.process_request(_request("drop_everything"))
        assert response["error"]["code"] == "UNKNOWN_TOOL"
        assert "drop_everything" in response["error"]["message"]

    @pytest.mark.parametrize(
        "request_",
        [
            "not a dict",
            {"tool": "get_stats"},
            {"id": 5, "tool": "get_stats"},
            {"id": "r", "tool": ""},
            {"id": "r", "tool": "get_stats", "params": [1, 2]},
        ],
    )
    def test_malformed_requests(self, app, request_):
        response = app.dispatcher.process_request(request_)
        assert response["error"]["code"] == "VALIDATION_ERROR"
        expected_id = request_["id"] if isinstance(request_, dict) and isinstance(
            request_.get("id"), str
        ) else "unknown"
        assert response["id"] == expected_id

    def test_null_params_are_accepted(self, app):
        response = app.dispatcher.process_request({"id": "r", "tool": "get_stats", "params": None})
        assert response["result"]["totalMemories"] == 0

    def test_unexpected_errors_become_internal_error(self, app):
        with patch.object(app.memory, "get_stats", side_effect=RuntimeError("db gone")):
            response = app.dispatcher.process_request(_request("get_stats"))
        assert response["error"]["code"] == "INTERNAL_ERROR"
        assert response["error"]["message"] == "Internal server error"
        assert "db gone" not in str(response)
