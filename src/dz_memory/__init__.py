"""
dz-memory: a chunked, tagged long-term memory store for LLM clients.

Text is split into bounded chunks, tagged and categorized automatically, and
kept in one of three interchangeable backends (in-memory, SQLite, ChromaDB).
The services are exposed over MCP and a command-line interface.
"""

from .errors import DomainError, NotFoundError, ValidationError
from .intelligence import chunk_text, detect_category, detect_metadata, extract_tags
from .memory import MemoryService
from .models import (
    MemorizeParams,
    MemoryChunk,
    MemoryMetadata,
    ReorganizeParams,
    SearchParams,
)
from .reorganizer import ReorganizerService
from .storage import StoragePort, create_storage

__all__ = [
    "DomainError",
    "MemorizeParams",
    "MemoryChunk",
    "MemoryMetadata",
    "MemoryService",
    "NotFoundError",
    "ReorganizeParams",
    "ReorganizerService",
    "SearchParams",
    "StoragePort",
    "ValidationError",
    "chunk_text",
    "create_storage",
    "detect_category",
    "detect_metadata",
    "extract_tags",
]
