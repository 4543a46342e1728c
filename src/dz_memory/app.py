"""Process bootstrap: wire storage, services and dispatcher from a config."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass

from .config import MemoryConfig
from .dispatcher import ToolDispatcher, build_tools
from .memory import MemoryService
from .reorganizer import ReorganizerService
from .storage import StoragePort, create_storage

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Log to stderr; stdout is reserved for CLI output and the MCP stdio channel."""
    logging.basicConfig(level=level.upper(), format=_LOG_FORMAT, stream=sys.stderr, force=True)


@dataclass
class MemoryApp:
    storage: StoragePort
    memory: MemoryService
    reorganizer: ReorganizerService
    dispatcher: ToolDispatcher

    def close(self) -> None:
        self.storage.close()

    def __enter__(self) -> MemoryApp:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def build_app(config: MemoryConfig, storage: StoragePort | None = None) -> MemoryApp:
    """Create and initialize the backend, then the services on top of it.

    *storage* overrides the configured backend (tests inject ephemeral ones);
    it is initialized here either way.
    """
    storage = storage or create_storage(config.storage)
    storage.initialize()

    memory = MemoryService(storage, chunk_size=config.chunk_size)
    reorganizer = ReorganizerService(storage)
    dispatcher = ToolDispatcher(build_tools(memory, reorganizer))

    logger.info(
        "Memory services ready (backend=%s, chunk_size=%d, tools=%s)",
        config.storage.backend,
        config.chunk_size,
        ", ".join(dispatcher.get_available_tools()),
    )
    return MemoryApp(storage=storage, memory=memory, reorganizer=reorganizer, dispatcher=dispatcher)
