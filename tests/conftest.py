"""
Pytest configuration and shared fixtures.
"""

import asyncio
import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import timedelta
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy import update

from mqueue.config import Settings
from mqueue.constants import QueueMode
from mqueue.db.models import MessageRecord
from mqueue.engine import QueueEngine
from mqueue.types import Channel
from mqueue.utils import utcnow

# Optional shared test database; each test gets a fresh SQLite file otherwise
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest.fixture
def database_url(tmp_path) -> str:
    """Get the test database URL."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'mqueue_test.db'}"


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=database_url,
        mode=QueueMode.DEBUG,
        log_level="INFO",
        log_format="console",
        default_visibility_seconds=30,
        channel_sync_interval_seconds=60,
        retention_sweep_interval_seconds=3600,
        watch_poll_interval_seconds=0.02,
        worker_heartbeat_interval_seconds=0.1,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[QueueEngine, None]:
    """Create a started debug-mode engine on a clean store."""
    engine = QueueEngine(test_settings, background=False)
    await engine.start()

    # Clean up data left by earlier tests on a shared database
    await engine.messages.clear()
    await engine.channels.clear()

    yield engine

    await engine.stop()


@pytest_asyncio.fixture
async def channel(engine: QueueEngine) -> Channel:
    """Create the channel "c" with the default visibility and no retry limit."""
    assert await engine.channels.create(Channel(name="c"))
    created = engine.channels.get("c")
    assert created is not None
    return created


@pytest.fixture
def expire_lease(engine: QueueEngine) -> Callable[[UUID], Awaitable[None]]:
    """Return a helper that moves a message's visibility deadline into the past."""

    async def _expire(message_id: UUID) -> None:
        async with engine.db.session() as session:
            await session.execute(
                update(MessageRecord)
                .where(MessageRecord.id == message_id)
                .values(visible=utcnow() - timedelta(seconds=1))
            )

    return _expire


WaitUntil = Callable[[Callable[[], Awaitable[bool]]], Awaitable[None]]


@pytest.fixture
def wait_until() -> WaitUntil:
    """Return a helper that polls an async predicate until it holds or times out."""

    async def _wait(
        predicate: Callable[[], Awaitable[bool]],
        timeout: float = 5.0,
        interval: float = 0.02,
    ) -> None:
        async with asyncio.timeout(timeout):
            while not await predicate():
                await asyncio.sleep(interval)

    return _wait
