"""
MCP (Model Context Protocol) server for dz-memory.

Exposes the memory tools to an MCP client.  Every tool builds a request
envelope and runs it through the :class:`~dz_memory.dispatcher.ToolDispatcher`,
so validation, clamping and error codes are identical to the CLI.

Run as a stdio server:
    python -m dz_memory.mcp_server

Or via the installed entry-point:
    dz-memory-mcp

Configuration comes from ``DZ_MEMORY_*`` environment variables, see
:mod:`dz_memory.config`.  Over ``streamable-http`` every request must carry
``Authorization: Bearer $DZ_MEMORY_AUTH_TOKEN``.
"""

from __future__ import annotations

import hmac
import json
import logging
import uuid
from typing import Any

import uvicorn
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from starlette.datastructures import Headers
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from .app import MemoryApp, build_app, configure_logging
from .config import MemoryConfig, load_config

logger = logging.getLogger(__name__)

# Lazy-initialised singleton so storage is only opened once.
_app: MemoryApp | None = None


def _get_app() -> MemoryApp:
    global _app
    if _app is None:
        _app = build_app(load_config())
    return _app


def _call(tool: str, params: dict[str, Any]) -> str:
    """Dispatch *tool* and return its result as JSON; errors become ``ToolError``."""
    request = {
        "id": uuid.uuid4().hex,
        "tool": tool,
        "params": {k: v for k, v in params.items() if v is not None},
    }
    response = _get_app().dispatcher.process_request(request)
    if "error" in response:
        error = response["error"]
        raise ToolError(f"{error['code']}: {error['message']}")
    return json.dumps(response["result"], indent=2)


# ---------------------------------------------------------------------------
# FastMCP server
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "dz-memory",
    instructions=(
        "Long-term memory store. "
        "Use `memorize` to save facts, decisions or notes; long text is split "
        "into chunks and tagged automatically. "
        "Use `search_memories` to find memories by text, tags, category or date. "
        "Use `get_memory` to read one memory by ID. "
        "Use `get_tags`, `get_categories` and `get_stats` to explore the store. "
        "Use `reorganize` to merge similar tags and prune rarely used memories."
    ),
)


@mcp.tool()
def memorize(
    text: str,
    tags: list[str] | None = None,
    context: str | None = None,
    source: str | None = None,
    priority: int | None = None,
    category: str | None = None,
) -> str:
    """
    Memorize a piece of text.

    The text is split into chunks of bounded size; each chunk gets tags
    (yours plus detected ones) and a category (yours or a detected one).

    Args:
        text:     The text to remember.
        tags:     Optional tags to attach to every chunk.
        context:  Optional free-text context.
        source:   Optional origin of the information.
        priority: Importance from 1 to 10 (default 5); clamped to that range.
        category: Optional category; detected from keywords when omitted.

    Returns:
        JSON object with memoryIds and chunksCreated.
    """
    return _call(
        "memorize",
        {
            "text": text,
            "tags": tags,
            "context": context,
            "source": source,
            "priority": priority,
            "category": category,
        },
    )


@mcp.tool()
def search_memories(
    query: str | None = None,
    tags: list[str] | None = None,
    category: str | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    limit: int = 50,
    offset: int = 0,
    sort_by: str = "date",
    sort_order: str = "desc",
) -> str:
    """
    Search memories; all given filters must match.

    Args:
        query:      Text matched against content, tags and context.
        tags:       Memories carrying at least one of these tags.
        category:   Exact category.
        date_from:  ISO-8601 lower bound on creation time (inclusive).
        date_to:    ISO-8601 upper bound on creation time (inclusive).
        limit:      Page size, 1 to 100 (default 50).
        offset:     Number of results to skip (default 0).
        sort_by:    relevance, date, access or priority (default date).
        sort_order: asc or desc (default desc).

    Returns:
        JSON object with memories, total and hasMore.
    """
    return _call(
        "list",
        {
            "query": query,
            "tags": tags,
            "category": category,
            "dateFrom": date_from,
            "dateTo": date_to,
            "limit": limit,
            "offset": offset,
            "sortBy": sort_by,
            "sortOrder": sort_order,
        },
    )


@mcp.tool()
def get_memory(memory_id: str) -> str:
    """
    Read one memory by ID.  Each read increases its access count.

    Args:
        memory_id: The ID returned by memorize or search_memories.
    """
    return _call("get_memory", {"id": memory_id})


@mcp.tool()
def delete_memory(memory_id: str) -> str:
    """
    Delete a stored memory by its ID.

    Args:
        memory_id: The ID of the memory to delete.
    """
    return _call("delete_memory", {"id": memory_id})


@mcp.tool()
def get_tags() -> str:
    """Return every tag in use, sorted."""
    return _call("get_tags", {})


@mcp.tool()
def get_categories() -> str:
    """Return every category in use, sorted."""
    return _call("get_categories", {})


@mcp.tool()
def get_stats() -> str:
    """Return memory, tag and category counts plus the oldest and newest dates."""
    return _call("get_stats", {})


@mcp.tool()
def reorganize(
    merge_similar_tags: bool = False,
    cleanup_old_memories: bool = False,
    optimize_storage: bool = False,
    max_memories: int | None = None,
) -> str:
    """
    Run maintenance on the memory store.

    Args:
        merge_similar_tags:   Fold near-duplicate tags (e.g. "api-server"
                              into "api") on every memory.
        cleanup_old_memories: Delete the least accessed, oldest memories
                              beyond max_memories.
        optimize_storage:     Run the backend's maintenance routine.
        max_memories:         Cap used by cleanup (default 1000).

    Returns:
        JSON object with status, tagsMerged, memoriesCleaned and
        storageOptimized (plus error when a step failed).
    """
    return _call(
        "reorganize",
        {
            "mergeSimilarTags": merge_similar_tags,
            "cleanupOldMemories": cleanup_old_memories,
            "optimizeStorage": optimize_storage,
            "maxMemories": max_memories,
        },
    )


@mcp.tool()
def get_reorganization_stats() -> str:
    """Preview reorganization: potential tag merges and stale memory count."""
    return _call("get_reorganization_stats", {})


# ---------------------------------------------------------------------------
# HTTP authentication
# ---------------------------------------------------------------------------


class BearerTokenMiddleware:
    """
    ASGI middleware rejecting HTTP requests without the configured token.

    Requests must carry ``Authorization: Bearer <token>``; anything else gets
    a 401 before it reaches the MCP session manager.  Lifespan and other
    non-HTTP scopes pass straight through.
    """

    def __init__(self, app: ASGIApp, token: str) -> None:
        if not token:
            raise ValueError("A non-empty bearer token is required")
        self.app = app
        self._expected = f"Bearer {token}".encode()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            supplied = Headers(scope=scope).get("authorization", "").encode()
            if not hmac.compare_digest(supplied, self._expected):
                logger.warning("Rejected unauthenticated request to %s", scope.get("path"))
                response = JSONResponse(
                    {"error": {"code": "UNAUTHORIZED", "message": "Invalid or missing bearer token"}},
                    status_code=401,
                    headers={"WWW-Authenticate": "Bearer"},
                )
                await response(scope, receive, send)
                return
        await self.app(scope, receive, send)


def http_app(token: str) -> ASGIApp:
    """The streamable-http MCP app behind :class:`BearerTokenMiddleware`."""
    return BearerTokenMiddleware(mcp.streamable_http_app(), token)


# ---------------------------------------------------------------------------
# Entry-point
# ---------------------------------------------------------------------------


def main(config: MemoryConfig | None = None) -> None:
    """Run the MCP server with *config* (default: from the environment)."""
    global _app
    config = config or load_config()
    configure_logging(config.log_level)
    _app = build_app(config)
    try:
        if config.transport == "streamable-http":
            uvicorn.run(
                http_app(config.auth_token),
                host=mcp.settings.host,
                port=mcp.settings.port,
                log_level=config.log_level.lower(),
            )
        else:
            mcp.run(transport=config.transport)
    finally:
        _app.close()


if __name__ == "__main__":
    main()
