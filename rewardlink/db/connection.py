"""Database connection management for RewardLink.

Builds the async SQLAlchemy engine and session factory from configuration.
Supports SQLite (via aiosqlite) for development and single-node deployments,
and any async SQLAlchemy URL (e.g. postgresql+asyncpg) for production.

Usage:
    from rewardlink.db.connection import (
        create_engine_from_url,
        create_session_factory,
        init_db,
    )

    engine = create_engine_from_url("sqlite:///./rewardlink.db")
    await init_db(engine)
    session_factory = create_session_factory(engine)
    async with session_factory() as session:
        ...
"""

import logging
import os
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from rewardlink.db.models import Base

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./rewardlink.db"


def to_async_url(url: str) -> str:
    """Convert a sync database URL into its async-driver equivalent.

    Converts sqlite:/// to sqlite+aiosqlite:/// and postgresql:// to
    postgresql+asyncpg://. URLs that already name a driver are returned
    unchanged.
    """
    if url.startswith("sqlite:///") or url == "sqlite://":
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
    """Configure SQLite pragmas for correctness and concurrency.

    Enables:
    - foreign_keys=ON: Referential integrity (disabled by default in SQLite).
    - journal_mode=WAL: Concurrent readers alongside a single writer.
    - busy_timeout: Writers wait for the lock instead of failing immediately.
    """
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA busy_timeout=5000;")
    cursor.close()


def create_engine_from_url(url: str | None = None, echo: bool | None = None) -> AsyncEngine:
    """Create the async engine for the document store.

    Args:
        url: Database URL. Falls back to DATABASE_URL, then a local SQLite file.
        echo: Log SQL statements. Defaults to SQL_ECHO=true in the environment.

    Returns:
        Configured AsyncEngine.
    """
    raw_url = url or os.environ.get("DATABASE_URL", "").strip() or DEFAULT_DATABASE_URL
    async_url = to_async_url(raw_url)
    if echo is None:
        echo = os.environ.get("SQL_ECHO", "").lower() == "true"

    engine = create_async_engine(async_url, echo=echo)
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _set_sqlite_pragma)
    logger.debug("Created database engine for dialect %s", engine.dialect.name)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the async session factory used by every repository."""
    return async_sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables and indexes.

    Safe to call multiple times - existing tables are left untouched.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


async def close_db(engine: AsyncEngine) -> None:
    """Dispose of the engine's connection pool."""
    await engine.dispose()
