"""
Request dispatcher: the thin RPC layer in front of the services.

A request is ``{"id": str, "tool": str, "params": dict}``.  The dispatcher
parses and clamps ``params`` for the named tool, calls the service and wraps
the outcome:

    success  ->  {"id": ..., "result": {...}}
    failure  ->  {"id": ..., "error": {"code": ..., "message": ..., "details": {...}}}

Domain errors keep their code (``VALIDATION_ERROR``, ``NOT_FOUND``); any other
exception is logged and reported as ``INTERNAL_ERROR``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from .errors import DomainError, ValidationError
from .memory import MemoryService
from .models import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    SORT_FIELDS,
    SORT_ORDERS,
    MemorizeParams,
    ReorganizeParams,
    SearchParams,
)
from .reorganizer import ReorganizerService

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any]], dict[str, Any]]

MAX_SEARCH_LIMIT: int = 100


# ---------------------------------------------------------------------------
# Parameter parsing
# ---------------------------------------------------------------------------


def _clamp(value: int, low: int, high: int | None = None) -> int:
    value = max(low, value)
    return min(high, value) if high is not None else value


def _as_int(value: Any) -> int | None:
    # bool is an int subclass but never a meaningful count here
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def _as_str(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _as_tags(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(t.strip().lower() for t in value if isinstance(t, str) and t.strip())


def parse_date(value: str, field: str) -> datetime:
    """Parse an ISO-8601 date; naive values are taken as UTC."""
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Invalid date format: {value!r}", field=field) from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_memorize_params(params: dict[str, Any]) -> MemorizeParams:
    text = params.get("text")
    if not isinstance(text, str) or not text.strip():
        raise ValidationError(
            "Text parameter is required and must be a non-empty string", field="text"
        )
    priority = _as_int(params.get("priority"))
    return MemorizeParams(
        text=text.strip(),
        tags=_as_tags(params.get("tags")),
        context=_as_str(params.get("context")),
        source=_as_str(params.get("source")),
        priority=_clamp(priority, MIN_PRIORITY, MAX_PRIORITY) if priority is not None else None,
        category=_as_str(params.get("category")),
    )


def parse_search_params(params: dict[str, Any]) -> SearchParams:
    kwargs: dict[str, Any] = {}
    query = params.get("query")
    if isinstance(query, str) and query.strip():
        kwargs["query"] = query.strip()
    kwargs["tags"] = _as_tags(params.get("tags"))
    category = _as_str(params.get("category"))
    if category:
        kwargs["category"] = category
    for key, field in (("dateFrom", "date_from"), ("dateTo", "date_to")):
        value = params.get(key)
        if isinstance(value, str) and value.strip():
            kwargs[field] = parse_date(value, key)

    limit = _as_int(params.get("limit"))
    if limit is not None:
        kwargs["limit"] = _clamp(limit, 1, MAX_SEARCH_LIMIT)
    offset = _as_int(params.get("offset"))
    if offset is not None:
        kwargs["offset"] = _clamp(offset, 0)

    if params.get("sortBy") in SORT_FIELDS:
        kwargs["sort_by"] = params["sortBy"]
    if params.get("sortOrder") in SORT_ORDERS:
        kwargs["sort_order"] = params["sortOrder"]
    return SearchParams(**kwargs)


def parse_reorganize_params(params: dict[str, Any]) -> ReorganizeParams:
    max_memories = _as_int(params.get("maxMemories"))
    return ReorganizeParams(
        merge_similar_tags=params.get("mergeSimilarTags") is True,
        cleanup_old_memories=params.get("cleanupOldMemories") is True,
        optimize_storage=params.get("optimizeStorage") is True,
        max_memories=_clamp(max_memories, 1) if max_memories is not None else None,
    )


def _parse_id(params: dict[str, Any]) -> str:
    memory_id = _as_str(params.get("id"))
    if memory_id is None:
        raise ValidationError("Memory ID is required and must be a non-empty string", field="id")
    return memory_id


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


def build_tools(memory: MemoryService, reorganizer: ReorganizerService) -> dict[str, ToolHandler]:
    """Map tool names to handlers taking raw params and returning a result dict."""

    def memorize(params: dict[str, Any]) -> dict[str, Any]:
        return memory.memorize(parse_memorize_params(params)).to_dict()

    def search(params: dict[str, Any]) -> dict[str, Any]:
        return memory.search_memories(parse_search_params(params)).to_dict()

    def get_memory(params: dict[str, Any]) -> dict[str, Any]:
        return {"memory": memory.get_memory(_parse_id(params)).to_dict()}

    def delete_memory(params: dict[str, Any]) -> dict[str, Any]:
        memory_id = _parse_id(params)
        memory.delete_memory(memory_id)
        return {"deleted": True, "id": memory_id}

    def get_tags(params: dict[str, Any]) -> dict[str, Any]:
        return {"tags": memory.get_all_tags()}

    def get_categories(params: dict[str, Any]) -> dict[str, Any]:
        return {"categories": memory.get_all_categories()}

    def get_stats(params: dict[str, Any]) -> dict[str, Any]:
        return memory.get_stats().to_dict()

    def reorganize(params: dict[str, Any]) -> dict[str, Any]:
        return reorganizer.reorganize(parse_reorganize_params(params)).to_dict()

    def get_reorganization_stats(params: dict[str, Any]) -> dict[str, Any]:
        return reorganizer.get_reorganization_stats().to_dict()

    return {
        "memorize": memorize,
        "list": search,
        "search": search,
        "get_memory": get_memory,
        "delete_memory": delete_memory,
        "get_tags": get_tags,
        "get_categories": get_categories,
        "get_stats": get_stats,
        "reorganize": reorganize,
        "get_reorganization_stats": get_reorganization_stats,
    }


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


def error_response(request_id: str, error: DomainError) -> dict[str, Any]:
    return {
        "id": request_id,
        "error": {
            "code": error.code,
            "message": error.message,
            "details": error.details,
        },
    }


class ToolDispatcher:
    """Routes request envelopes to tool handlers."""

    def __init__(self, tools: dict[str, ToolHandler]) -> None:
        self._tools = dict(tools)

    def process_request(self, request: Any) -> dict[str, Any]:
        request_id = "unknown"
        if isinstance(request, dict) and isinstance(request.get("id"), str):
            request_id = request["id"]

        try:
            tool, params = self._validate(request)
            handler = self._tools.get(tool)
            if handler is None:
                response = error_response(
                    request_id, DomainError(f"Unknown tool: {tool}", code="UNKNOWN_TOOL")
                )
            else:
                logger.debug("Request %s: tool=%s params=%s", request_id, tool, sorted(params))
                response = {"id": request_id, "result": handler(params)}
        except DomainError as exc:
            response = error_response(request_id, exc)
        except Exception:
            logger.exception("Request %s failed", request_id)
            response = error_response(
                request_id, DomainError("Internal server error", code="INTERNAL_ERROR")
            )

        if "error" in response:
            logger.warning("Request %s error: %s", request_id, response["error"]["message"])
        return response

    def get_available_tools(self) -> list[str]:
        return sorted(self._tools)

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    @staticmethod
    def _validate(request: Any) -> tuple[str, dict[str, Any]]:
        if not isinstance(request, dict):
            raise ValidationError("Request must be an object")
        if not isinstance(request.get("id"), str):
            raise ValidationError("Request id must be a string", field="id")
        tool = request.get("tool")
        if not isinstance(tool, str) or not tool:
            raise ValidationError("Request tool must be a non-empty string", field="tool")
        params = request.get("params", {})
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise ValidationError("Request params must be an object", field="params")
        return tool, params
