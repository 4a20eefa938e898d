"""
Async engine and session handling for the panel runner datastore.

PostgreSQL through asyncpg in production; SQLite through aiosqlite in tests.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from panelrunner.storage.models import Base

logger = structlog.get_logger(__name__)


class DatabaseManager:
    """
    Owns the async engine used by every repository.

    Each ``session()`` block is one transaction: committed when the block
    exits normally, rolled back when it raises.
    """

    def __init__(
        self,
        database_url: str,
        echo: bool = False,
        pool_size: int = 5,
        max_overflow: int = 10,
    ) -> None:
        url = make_url(database_url)
        options: dict[str, Any] = {"echo": echo, "pool_pre_ping": True}
        if url.get_backend_name() != "sqlite":
            options.update(pool_size=pool_size, max_overflow=max_overflow)

        self._engine = create_async_engine(url, **options)
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False)
        self._log = logger.bind(component="database", backend=url.get_backend_name())

    async def create_tables(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._log.info("Tables ready", tables=sorted(Base.metadata.tables))

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self._sessions() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def close(self) -> None:
        await self._engine.dispose()
        self._log.debug("Engine disposed")
