"""Async database engine, session management and timed transactions."""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from colloquy.config import Settings
from colloquy.storage.models import Base

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransactionTimeout(TimeoutError):
    """A persistence transaction ran past its deadline and was rolled back.

    Retryable: nothing from the transaction was committed.
    """


class Database:
    def __init__(self, settings: Settings) -> None:
        engine_kwargs: dict[str, Any] = {"echo": settings.log_level == "debug"}
        if settings.db_url.startswith("sqlite"):
            # One shared connection so in-memory databases survive across sessions
            engine_kwargs["poolclass"] = StaticPool
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        else:
            engine_kwargs["pool_size"] = settings.db_pool_size
            engine_kwargs["max_overflow"] = settings.db_max_overflow
        self.engine = create_async_engine(settings.db_url, **engine_kwargs)
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def connect(self) -> None:
        """Verify the database is reachable."""
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def create_schema(self) -> None:
        """Create any missing conversation tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def disconnect(self) -> None:
        """Dispose of connection pool."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield an async session with automatic cleanup."""
        async with self.session_factory() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Yield a session inside BEGIN; commit on clean exit, roll back on any error."""
        async with self.session_factory() as session:
            async with session.begin():
                yield session

    async def run_in_transaction(
        self,
        operation: Callable[[AsyncSession], Awaitable[T]],
        timeout: float | None = None,
    ) -> T:
        """Run ``operation`` in one transaction bounded by ``timeout`` seconds.

        On timeout the in-flight work is cancelled, the transaction rolls
        back and TransactionTimeout is raised. Other errors roll back and
        propagate unchanged.
        """

        async def _run() -> T:
            async with self.transaction() as session:
                return await operation(session)

        try:
            return await asyncio.wait_for(_run(), timeout)
        except TimeoutError as e:
            logger.warning("Transaction exceeded %.1fs, rolled back", timeout or 0.0)
            raise TransactionTimeout(f"transaction exceeded {timeout}s and was rolled back") from e

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.disconnect()
