"""Tests for environment-driven configuration and app wiring."""

from __future__ import annotations

import pytest

from dz_memory.app import build_app
from dz_memory.config import MemoryConfig, StorageConfig, load_config
from dz_memory.models import MemorizeParams
from dz_memory.storage import SqliteStorage


class TestLoadConfig:
    def test_defaults(self):
        config = load_config({})
        assert config.storage.backend == "memory"
        assert config.storage.collection == "memories"
        assert config.storage.embedding_model == ""
        assert config.chunk_size == 500
        assert config.log_level == "INFO"
        assert config.transport == "stdio"

    def test_overrides(self):
        config = load_config(
            {
                "DZ_MEMORY_BACKEND": "SQLite",
                "DZ_MEMORY_DB_PATH": "/tmp/dz",
                "DZ_MEMORY_COLLECTION": "notes",
                "DZ_MEMORY_MODEL": "all-MiniLM-L6-v2",
                "DZ_MEMORY_CHUNK_SIZE": "200",
                "DZ_MEMORY_LOG_LEVEL": "debug",
                "DZ_MEMORY_TRANSPORT": "streamable-http",
                "DZ_MEMORY_AUTH_TOKEN": "s3cret",
            }
        )
        assert config.storage.backend == "sqlite"
        assert config.storage.path == "/tmp/dz"
        assert config.storage.collection == "notes"
        assert config.storage.embedding_model == "all-MiniLM-L6-v2"
        assert config.chunk_size == 200
        assert config.log_level == "DEBUG"
        assert config.transport == "streamable-http"

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("DZ_MEMORY_CHUNK_SIZE", "321")
        assert load_config().chunk_size == 321

    @pytest.mark.parametrize(
        "env",
        [
            {"DZ_MEMORY_BACKEND": "redis"},
            {"DZ_MEMORY_TRANSPORT": "carrier-pigeon"},
            {"DZ_MEMORY_CHUNK_SIZE": "0"},
            {"DZ_MEMORY_CHUNK_SIZE": "lots"},
        ],
    )
    def test_invalid_values(self, env):
        with pytest.raises(ValueError):
            load_config(env)


class TestBuildApp:
    def test_wires_configured_backend(self, tmp_path):
        config = MemoryConfig(storage=StorageConfig(backend="sqlite", path=str(tmp_path)), chunk_size=30)
        with build_app(config) as app:
            assert isinstance(app.storage, SqliteStorage)
            result = app.memory.memorize(
                MemorizeParams(text="First sentence is here. Second sentence is here.")
            )
            assert result.chunks_created == 2
        assert (tmp_path / "memory.db").exists()

    def test_injected_storage_is_used(self, memory_storage):
        with build_app(MemoryConfig(), storage=memory_storage) as app:
            assert app.storage is memory_storage
            assert app.dispatcher.has_tool("memorize")


class TestAuthToken:
    def test_http_transport_requires_token(self):
        with pytest.raises(ValueError, match="DZ_MEMORY_AUTH_TOKEN"):
            MemoryConfig(transport="streamable-http")

    def test_http_transport_with_token(self):
        config = load_config(
            {"DZ_MEMORY_TRANSPORT": "streamable-http", "DZ_MEMORY_AUTH_TOKEN": "s3cret"}
        )
        assert config.auth_token == "s3cret"

    def test_stdio_needs_no_token(self):
        assert load_config({}).auth_token == ""

    def test_validate_catches_later_changes(self):
        config = MemoryConfig()
        config.transport = "streamable-http"
        with pytest.raises(ValueError):
            config.validate()
