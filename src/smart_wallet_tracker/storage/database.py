"""Async engine and transactional session handling.

Every worker, the queue drainer and the API open short-lived sessions through
:class:`DatabaseManager`; a session is one transaction.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from smart_wallet_tracker.storage.models import Base

logger = logging.getLogger(__name__)

ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def to_async_url(database_url: str) -> str:
    """Swap a bare dialect for its async driver (``postgresql://`` -> asyncpg)."""
    scheme, sep, rest = database_url.partition("://")
    driver = ASYNC_DRIVERS.get(scheme)
    if not sep or driver is None:
        return database_url
    logger.warning("Database URL has no async driver; using %s", driver)
    return f"{driver}://{rest}"


def build_engine(
    database_url: str,
    *,
    pool_size: int = 5,
    max_overflow: int = 10,
    echo: bool = False,
) -> AsyncEngine:
    """Create the async engine. Pool sizing only applies to server databases."""
    url = to_async_url(database_url)
    options: dict[str, Any] = {"echo": echo}
    if make_url(url).get_backend_name() != "sqlite":
        options.update(pool_size=pool_size, max_overflow=max_overflow, pool_pre_ping=True)
    return create_async_engine(url, **options)


def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """Create every table without migrations (development and tests)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema created")


class DatabaseManager:
    """Owns the engine and hands out one-transaction sessions."""

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
        engine: AsyncEngine | None = None,
    ) -> None:
        """
        Args:
            database_url: Connection URL; PostgreSQL in production.
            pool_size: Pooled connections kept open.
            max_overflow: Extra connections allowed under load.
            echo: Log every SQL statement.
            engine: Pre-built engine to use instead of creating one.
        """
        self.database_url = database_url
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._echo = echo
        self._engine = engine
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = build_engine(
                self.database_url,
                pool_size=self._pool_size,
                max_overflow=self._max_overflow,
                echo=self._echo,
            )
        return self._engine

    @asynccontextmanager
    async def get_async_session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session that commits on exit and rolls back on error."""
        if self._sessions is None:
            self._sessions = session_factory(self.engine)

        async with self._sessions() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init_schema_async(self) -> None:
        await create_schema(self.engine)

    async def dispose_async(self) -> None:
        """Close pooled connections; the manager can reconnect afterwards."""
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessions = None
        logger.info("Database connections closed")
