"""
Database Connection Management

Async SQLAlchemy 2.0 engine and session factory wrapped in an explicit
``Database`` handle. Pipeline stages receive a session from it instead of
reaching for a module-global engine, so every stage can run against an
in-memory SQLite store in tests.
"""

from contextlib import asynccontextmanager
import time
from typing import AsyncGenerator, Optional

import structlog
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool

from growth_marts.config import get_settings
from growth_marts.database.models import Base

logger = structlog.get_logger(__name__)


class Database:
    """
    Engine plus session factory for one relational store.

    Example:
        db = Database("sqlite+aiosqlite:///:memory:")
        await db.create_all()
        async with db.session() as session:
            await ingest_raw(session, records)
    """

    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None):
        settings = get_settings()
        self.url = url or settings.database.async_url
        echo = settings.database.echo if echo is None else echo

        engine_config = {"echo": echo, "pool_pre_ping": True}
        if self.url.startswith("sqlite") and ":memory:" in self.url:
            # One shared connection so every session sees the same in-memory database
            engine_config["poolclass"] = StaticPool
        else:
            # asyncpg handles its own connection pooling internally
            engine_config["poolclass"] = NullPool

        self.engine: AsyncEngine = create_async_engine(self.url, **engine_config)

        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

        self._session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    async def create_all(self) -> None:
        """Create every table that does not exist yet"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ready", dialect=self.dialect)

    async def drop_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        """Close every pooled connection"""
        await self.engine.dispose()
        logger.info("Database connection pool closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Transactional session scope.

        Commits when the block exits cleanly and rolls back on any error, so
        a pipeline stage either lands completely or not at all.

        Yields:
            AsyncSession: Database session
        """
        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.error("Database session error, rolling back", error=str(e), error_type=type(e).__name__)
            await session.rollback()
            raise
        finally:
            await session.close()

    async def health(self) -> dict:
        """
        Check database health status.

        Returns:
            dict: Health status with latency information
        """
        try:
            start = time.perf_counter()
            async with self.session() as session:
                await session.execute(text("SELECT 1"))
            latency_ms = (time.perf_counter() - start) * 1000
            return {"status": "healthy", "latency_ms": round(latency_ms, 2)}
        except Exception as e:
            return {"status": "unhealthy", "error": str(e)}


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
