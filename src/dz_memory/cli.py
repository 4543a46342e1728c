"""
Command-line interface for dz-memory.

Sub-commands
------------
memorize    – Memorize text (reads stdin if omitted).
search      – Search memories with filters and pagination.
get         – Show one memory by ID (counts as an access).
delete      – Delete a memory by ID.
tags        – List every tag.
categories  – List every category.
stats       – Print store statistics.
reorganize  – Merge similar tags, clean up, optimize.
reorg-stats – Preview what reorganize would do.
serve       – Run the MCP server.

Every data command goes through the same dispatcher as the MCP server and
prints the JSON response envelope; the exit status is 1 on an error response.
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any

from .app import build_app, configure_logging
from .config import BACKENDS, TRANSPORTS, load_config


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dz-memory",
        description="Chunked, tagged long-term memory store.",
    )
    parser.add_argument(
        "--backend",
        choices=BACKENDS,
        default=None,
        help="Storage backend (default: $DZ_MEMORY_BACKEND or memory).",
    )
    parser.add_argument(
        "--db",
        default=None,
        metavar="PATH",
        help="Database file or directory (default: $DZ_MEMORY_DB_PATH).",
    )
    parser.add_argument(
        "--collection",
        default=None,
        metavar="NAME",
        help="ChromaDB collection name (default: memories).",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=None,
        metavar="N",
        help="Maximum characters per chunk (default: 500).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        type=str.upper,
        help="Logging level (default: $DZ_MEMORY_LOG_LEVEL or INFO).",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    # memorize
    p_mem = sub.add_parser("memorize", help="Memorize text.")
    p_mem.add_argument("text", nargs="?", help="Text to memorize (reads stdin if omitted).")
    p_mem.add_argument("--tags", default=None, help="Comma-separated tags.")
    p_mem.add_argument("--context", default=None)
    p_mem.add_argument("--source", default=None)
    p_mem.add_argument("--category", default=None)
    p_mem.add_argument("--priority", type=int, default=None, metavar="1-10")

    # search
    p_search = sub.add_parser("search", aliases=["list"], help="Search memories.")
    p_search.add_argument("query", nargs="?", default=None, help="Text to look for.")
    p_search.add_argument("--tags", default=None, help="Comma-separated tags (any of).")
    p_search.add_argument("--category", default=None)
    p_search.add_argument("--from", dest="date_from", default=None, metavar="DATE")
    p_search.add_argument("--to", dest="date_to", default=None, metavar="DATE")
    p_search.add_argument("--limit", type=int, default=None, metavar="N")
    p_search.add_argument("--offset", type=int, default=None, metavar="N")
    p_search.add_argument(
        "--sort-by", choices=("relevance", "date", "access", "priority"), default=None
    )
    p_search.add_argument("--sort-order", choices=("asc", "desc"), default=None)

    # get / delete
    p_get = sub.add_parser("get", help="Show a memory by ID.")
    p_get.add_argument("id", help="Memory ID.")
    p_delete = sub.add_parser("delete", help="Delete a memory by ID.")
    p_delete.add_argument("id", help="Memory ID to delete.")

    sub.add_parser("tags", help="List all tags.")
    sub.add_parser("categories", help="List all categories.")
    sub.add_parser("stats", help="Print store statistics.")

    # reorganize
    p_reorg = sub.add_parser("reorganize", help="Run maintenance steps.")
    p_reorg.add_argument("--merge-similar-tags", action="store_true")
    p_reorg.add_argument("--cleanup-old-memories", action="store_true")
    p_reorg.add_argument("--optimize-storage", action="store_true")
    p_reorg.add_argument("--max-memories", type=int, default=None, metavar="N")

    sub.add_parser("reorg-stats", help="Preview reorganization.")
    p_serve = sub.add_parser("serve", help="Run the MCP server.")
    p_serve.add_argument(
        "--transport",
        choices=TRANSPORTS,
        default=None,
        help="MCP transport (default: $DZ_MEMORY_TRANSPORT or stdio).",
    )

    return parser


def _request(args: argparse.Namespace) -> tuple[str, dict[str, Any]] | None:
    """Translate parsed arguments into a (tool, params) pair."""
    cmd = args.command
    if cmd == "memorize":
        text = args.text if args.text is not None else sys.stdin.read()
        return "memorize", {
            "text": text,
            "tags": args.tags,
            "context": args.context,
            "source": args.source,
            "category": args.category,
            "priority": args.priority,
        }
    if cmd in ("search", "list"):
        return "list", {
            "query": args.query,
            "tags": args.tags,
            "category": args.category,
            "dateFrom": args.date_from,
            "dateTo": args.date_to,
            "limit": args.limit,
            "offset": args.offset,
            "sortBy": args.sort_by,
            "sortOrder": args.sort_order,
        }
    if cmd == "get":
        return "get_memory", {"id": args.id}
    if cmd == "delete":
        return "delete_memory", {"id": args.id}
    if cmd == "tags":
        return "get_tags", {}
    if cmd == "categories":
        return "get_categories", {}
    if cmd == "stats":
        return "get_stats", {}
    if cmd == "reorganize":
        return "reorganize", {
            "mergeSimilarTags": args.merge_similar_tags,
            "cleanupOldMemories": args.cleanup_old_memories,
            "optimizeStorage": args.optimize_storage,
            "maxMemories": args.max_memories,
        }
    if cmd == "reorg-stats":
        return "get_reorganization_stats", {}
    return None


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    config = load_config()
    if args.backend:
        config.storage.backend = args.backend
    if args.db:
        config.storage.path = args.db
    if args.collection:
        config.storage.collection = args.collection
    if args.chunk_size is not None:
        config.chunk_size = args.chunk_size
    if args.log_level:
        config.log_level = args.log_level
    if getattr(args, "transport", None):
        config.transport = args.transport
    try:
        config.validate()
    except ValueError as exc:
        parser.error(str(exc))
    configure_logging(config.log_level)

    if args.command == "serve":
        from . import mcp_server

        mcp_server.main(config)
        return 0

    tool, params = _request(args)
    request = {
        "id": "cli",
        "tool": tool,
        "params": {k: v for k, v in params.items() if v is not None},
    }

    with build_app(config) as app:
        response = app.dispatcher.process_request(request)

    print(json.dumps(response, indent=2))
    return 1 if "error" in response else 0


if __name__ == "__main__":
    sys.exit(main())
