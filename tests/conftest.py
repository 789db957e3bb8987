"""
Shared test fixtures for shelfsync tests.

Provides:
- client: An async httpx test client wired to the FastAPI app (no MongoDB)
- sync_config: A SyncConfig with zero delays and one table per kind
- no_sleep: An AsyncMock to pass as a fetcher's sleep function
"""

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

import database
from models.job import DelayPolicy, FeishuConfig, SyncConfig
from models.record import ContentKind


@pytest_asyncio.fixture
async def client():
    """Async test client with no database.

    The app's lifespan is not run by ASGITransport, so database.db stays
    None and job history lives in memory only.
    """
    original_db = database.db
    database.db = None

    from main import app

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    database.db = original_db


@pytest.fixture
def feishu_config():
    return FeishuConfig(
        app_id="cli_test",
        app_secret="secret",
        app_token="bascnTEST",
        table_ids={
            ContentKind.BOOK: "tblBooks",
            ContentKind.MOVIE: "tblMovies",
        },
    )


@pytest.fixture
def sync_config(feishu_config):
    return SyncConfig(
        feishu=feishu_config,
        delay=DelayPolicy(
            base_ms=0, jitter_ms=0,
            slow_base_ms=0, slow_jitter_ms=0,
            retry_base_ms=0, retry_jitter_ms=0,
        ),
    )


@pytest.fixture
def no_sleep():
    return AsyncMock()
