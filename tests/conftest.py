"""Pytest configuration and fixtures."""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from transit_feed.config import Settings
from transit_feed.main import create_app

from .fixtures.gtfs_fixture import write_gtfs_zip


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with an isolated cache directory."""
    return Settings(cache_dir=tmp_path / "cache", environment="development")


@pytest.fixture
def feed_path(tmp_path: Path) -> Path:
    """A complete sample feed written to disk."""
    return write_gtfs_zip(tmp_path / "feed.zip")


@pytest.fixture
async def app(settings: Settings) -> AsyncGenerator[FastAPI, None]:
    application = create_app(settings)
    yield application
    await application.state.registry.close()


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def loaded_client(client: AsyncClient, feed_path: Path) -> AsyncClient:
    """Client whose app has the sample feed loaded."""
    response = await client.post("/feeds/load", json={"archive_path": str(feed_path)})
    assert response.status_code == 200, response.text
    return client
