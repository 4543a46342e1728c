"""Configuration loading from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from .intelligence import DEFAULT_CHUNK_SIZE

_DEFAULT_DB_PATH = str(Path.home() / ".cache" / "dz-memory")

BACKENDS = ("memory", "sqlite", "chroma")
TRANSPORTS = ("stdio", "streamable-http")


@dataclass
class StorageConfig:
    """Which backend to run and where it keeps its data."""

    backend: str = "memory"
    path: str = _DEFAULT_DB_PATH
    collection: str = "memories"
    # Empty means the deterministic hashing embedding (no model download).
    embedding_model: str = ""


@dataclass
class MemoryConfig:
    """Top-level configuration, passed explicitly to :func:`dz_memory.app.build_app`."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    chunk_size: int = DEFAULT_CHUNK_SIZE
    log_level: str = "INFO"
    transport: str = "stdio"
    # Bearer token required on every streamable-http request.
    auth_token: str = ""

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise ``ValueError`` for an unusable combination of settings."""
        if self.storage.backend not in BACKENDS:
            raise ValueError(
                f"Unknown storage backend {self.storage.backend!r}; "
                f"expected one of {', '.join(BACKENDS)}"
            )
        if self.transport not in TRANSPORTS:
            raise ValueError(
                f"Unknown transport {self.transport!r}; expected one of {', '.join(TRANSPORTS)}"
            )
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be a positive integer")
        if self.transport == "streamable-http" and not self.auth_token:
            raise ValueError("DZ_MEMORY_AUTH_TOKEN must be set to serve over streamable-http")
        self.log_level = self.log_level.upper()


def load_config(environ: dict[str, str] | None = None) -> MemoryConfig:
    """Build a :class:`MemoryConfig` from ``DZ_MEMORY_*`` environment variables.

    Unset variables fall back to the dataclass defaults.  Raises ``ValueError``
    for malformed values.
    """
    env = os.environ if environ is None else environ

    raw_chunk_size = env.get("DZ_MEMORY_CHUNK_SIZE", str(DEFAULT_CHUNK_SIZE))
    try:
        chunk_size = int(raw_chunk_size)
    except ValueError:
        raise ValueError(f"DZ_MEMORY_CHUNK_SIZE must be an integer, got {raw_chunk_size!r}") from None

    return MemoryConfig(
        storage=StorageConfig(
            backend=env.get("DZ_MEMORY_BACKEND", "memory").lower(),
            path=env.get("DZ_MEMORY_DB_PATH", _DEFAULT_DB_PATH),
            collection=env.get("DZ_MEMORY_COLLECTION", "memories"),
            embedding_model=env.get("DZ_MEMORY_MODEL", ""),
        ),
        chunk_size=chunk_size,
        log_level=env.get("DZ_MEMORY_LOG_LEVEL", "INFO"),
        transport=env.get("DZ_MEMORY_TRANSPORT", "stdio"),
        auth_token=env.get("DZ_MEMORY_AUTH_TOKEN", ""),
    )
