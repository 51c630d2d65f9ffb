"""Shared fixtures for integration tests."""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
from fastmcp import Client


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def temp_db(tmp_path: Path) -> Path:
    """Create a temporary database path for test isolation."""
    return tmp_path / "test_tasks.db"


@pytest.fixture
def reloaded_server(monkeypatch, tmp_path: Path, temp_db: Path):
    """Server module reloaded against test settings and an isolated task DB."""
    monkeypatch.setenv("MCP_LLM_PROVIDER", "openai")
    monkeypatch.setenv("MCP_LLM_MODEL_NAME", "gpt-4o")
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("TAVILY_API_KEY", "tvly-test")
    monkeypatch.setenv("MCP_SEARCH_PROVIDER", "tavily")
    monkeypatch.setenv("MCP_SERVER_RESULTS_DIR", str(tmp_path / "reports"))

    # Reload config module to pick up new env vars, then reload server
    import importlib

    import mcp_server_deep_research.config

    importlib.reload(mcp_server_deep_research.config)
    mcp_server_deep_research.config.settings.research.save_directory = None

    import mcp_server_deep_research.server

    importlib.reload(mcp_server_deep_research.server)

    import mcp_server_deep_research.observability.store as store_mod
    from mcp_server_deep_research.observability.store import TaskStore

    monkeypatch.setattr(store_mod, "_task_store", TaskStore(db_path=temp_db))
    return mcp_server_deep_research.server


@pytest.fixture
async def mcp_client(reloaded_server) -> AsyncGenerator[Client, None]:
    """Create an in-memory FastMCP client with isolated storage."""
    app = reloaded_server.serve()

    async with Client(app) as client:
        yield client
