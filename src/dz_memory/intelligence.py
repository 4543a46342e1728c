"""
Intelligent logic layer: chunking and metadata detection.

These utilities run before anything reaches storage:
  - Paragraph/sentence-aware chunking of memorized text
  - Tag extraction from identifiers, acronyms and a technical vocabulary
  - Keyword-based category inference

Everything here is pure: same input, same output, no storage access.
"""

from __future__ import annotations

import re

from .models import DEFAULT_PRIORITY, MemorizeParams, MemoryMetadata, normalize_tags

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Maximum number of characters per chunk when splitting long texts.
DEFAULT_CHUNK_SIZE: int = 500

#: Auto-extracted tokens shorter than this are discarded.
MIN_TAG_LENGTH: int = 3

_TAG_PATTERNS = (
    re.compile(r"[A-Z][a-z]+(?:[A-Z][a-z]+)*"),  # CamelCase word runs
    re.compile(r"[a-z]+(?:-[a-z]+)+"),  # kebab-case
    re.compile(r"[A-Z]{2,}"),  # ACRONYMS
)

#: Matched as plain substrings of the lowercased chunk.
TECHNICAL_TERMS: tuple[str, ...] = (
    "api", "http", "https", "json", "xml", "sql", "nosql", "react", "vue",
    "angular", "node", "python", "java", "javascript", "typescript", "docker",
    "kubernetes", "aws", "azure", "gcp", "git", "github", "gitlab", "jenkins",
    "ci", "cd", "rest", "graphql", "websocket", "oauth", "jwt", "ssl", "tls",
    "cdn", "database", "cache", "redis", "postgres", "mysql", "mongodb",
    "elasticsearch",
)

#: First matching group wins, so order matters.
CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("troubleshooting", ("bug", "error", "issue")),
    ("api", ("api", "endpoint", "rest")),
    ("database", ("database", "sql", "query")),
    ("deployment", ("deploy", "docker", "kubernetes")),
    ("testing", ("test", "spec", "unit")),
)


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------


def chunk_text(text: str, max_chunk_size: int = DEFAULT_CHUNK_SIZE) -> list[str]:
    """
    Split *text* into ordered chunks of at most *max_chunk_size* characters.

    Strategy:
      1. Split on blank lines (paragraph boundaries) and collapse whitespace
         runs inside each paragraph to single spaces.
      2. A paragraph that fits is emitted as one chunk.
      3. A longer paragraph is split on sentence boundaries and the sentences
         are packed greedily, joined by a single space.

    A sentence that is longer than the limit on its own is emitted whole.
    Empty or whitespace-only input returns an empty list.
    """
    chunks: list[str] = []

    for raw_para in re.split(r"\n\s*\n", text):
        para = _normalize_whitespace(raw_para)
        if not para:
            continue
        if len(para) <= max_chunk_size:
            chunks.append(para)
            continue

        buffer = ""
        for sent in _split_sentences(para):
            if buffer and len(buffer) + 1 + len(sent) > max_chunk_size:
                chunks.append(buffer)
                buffer = sent
            else:
                buffer = f"{buffer} {sent}" if buffer else sent
        if buffer:
            chunks.append(buffer)

    return chunks


def _normalize_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def _split_sentences(text: str) -> list[str]:
    """Naïve sentence splitter on '. ', '! ', '? ' boundaries."""
    parts = re.split(r"(?<=[.!?])\s+", text)
    return [p.strip() for p in parts if p.strip()]


# ---------------------------------------------------------------------------
# Metadata detection
# ---------------------------------------------------------------------------


def extract_tags(text: str) -> set[str]:
    """Tags inferred from *text*: identifier-like tokens plus known technical terms."""
    tags: set[str] = set()
    for pattern in _TAG_PATTERNS:
        for match in pattern.findall(text):
            if len(match) >= MIN_TAG_LENGTH:
                tags.add(match.lower())

    lowered = text.lower()
    tags.update(term for term in TECHNICAL_TERMS if term in lowered)
    return tags


def detect_category(text: str) -> str | None:
    lowered = text.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return None


def detect_metadata(chunk: str, params: MemorizeParams) -> MemoryMetadata:
    """
    Build the metadata for one *chunk*, merging caller input from *params*
    with what can be inferred from the chunk text.

    Caller tags come first (lowercased); inferred tags are appended in sorted
    order so the result is deterministic.  A caller category always wins over
    the inferred one.
    """
    caller_tags = normalize_tags(params.tags)
    inferred = sorted(extract_tags(chunk) - set(caller_tags))

    return MemoryMetadata(
        tags=caller_tags + tuple(inferred),
        context=params.context,
        source=params.source,
        priority=params.priority if params.priority is not None else DEFAULT_PRIORITY,
        category=params.category or detect_category(chunk),
        related_ids=(),
    )
