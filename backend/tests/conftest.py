"""Shared fixtures: file-backed SQLite store per test, settings with metrics off."""
from __future__ import annotations

from typing import AsyncIterator

import pytest
import pytest_asyncio

from shared.config import Settings
from shared.utils.database import DatabaseManager

from store.gateway import StoreGateway


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        metrics_enabled=False,
        redis_url="",
        inter_request_delay_s=0.0,
        job_backoff_base_s=0.0,
        odds_api_key="odds-key",
        weather_api_key="weather-key",
    )


@pytest_asyncio.fixture
async def db(settings: Settings) -> AsyncIterator[DatabaseManager]:
    manager = DatabaseManager(settings)
    await manager.connect()
    await manager.create_schema()
    yield manager
    await manager.disconnect()


@pytest_asyncio.fixture
async def gateway(db: DatabaseManager) -> StoreGateway:
    return StoreGateway(db)
