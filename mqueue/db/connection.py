"""
Database connection management.
Handles async SQLAlchemy engine and session creation for one queue engine.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from mqueue.config import Settings
from mqueue.db.models import Base

logger = logging.getLogger(__name__)


def _engine_kwargs(settings: Settings) -> dict[str, Any]:
    """Return database-specific engine configuration."""
    base: dict[str, Any] = {"echo": settings.log_level.upper() == "DEBUG"}

    if settings.database_url.startswith("sqlite"):
        # SQLite: default pool, generous busy timeout for competing writers
        return {**base, "connect_args": {"timeout": 30}}

    return {
        **base,
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_pre_ping": True,
    }


class Database:
    """
    Owns the async engine and session factory of a queue engine.

    Each queue engine holds its own Database; nothing here is process-global.
    """

    def __init__(self, settings: Settings):
        """
        Create the async engine.

        Args:
            settings: Engine settings providing the database URL and pool sizes.
        """
        self._settings = settings
        self.engine: AsyncEngine = create_async_engine(
            settings.database_url,
            **_engine_kwargs(settings),
        )
        self._session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    async def ping(self) -> None:
        """
        Check connectivity to the store.

        Raises:
            SQLAlchemyError: If the store cannot be reached.
            TimeoutError: If the ping exceeds the connect timeout.
        """
        async with asyncio.timeout(self._settings.database_connect_timeout_seconds):
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))

    async def create_schema(self) -> None:
        """
        Provision tables and indexes.

        Existing tables and indexes are left untouched.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Queue schema provisioned", extra={"dialect": self.dialect})

    async def dispose(self) -> None:
        """Close all pooled connections."""
        await self.engine.dispose()
        logger.info("Database connection closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """
        Context manager for a transactional session.

        Commits on success and rolls back on any exception.

        Yields:
            AsyncSession: An async database session.
        """
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
