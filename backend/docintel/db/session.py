"""
Database engine and session factory.

The engine is built lazily from settings so that the `memory` store backend
and the test suite never open a connection pool. Sessions come from one
async_sessionmaker; the SQL repositories open a session (and a transaction
where they write) per operation, so no session outlives a request or a job.

SQLite (aiosqlite) is accepted for tests and local runs: pool sizing and
pre-ping options are only passed to server databases.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from docintel.core.config import get_settings

logger = logging.getLogger(__name__)


def build_engine(
    database_url:  str,
    *,
    pool_size:     int  = 10,
    max_overflow:  int  = 20,
    echo:          bool = False,
) -> AsyncEngine:
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo)
    return create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,          # detect stale connections before use
        pool_recycle=3600,
        echo=echo,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps ORM rows readable after the transaction closes
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@lru_cache
def get_engine() -> AsyncEngine:
    s = get_settings()
    logger.info("DB engine | backend=%s pool_size=%d", s.database_url.split(":", 1)[0], s.db_pool_size)
    return build_engine(
        s.database_url,
        pool_size=s.db_pool_size,
        max_overflow=s.db_max_overflow,
        echo=s.db_echo_sql,
    )


@lru_cache
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return build_session_factory(get_engine())


async def create_all(engine: AsyncEngine) -> None:
    """Create every table on an empty database (tests, local SQLite runs)."""
    from docintel.models import chat, jobs  # noqa: F401  registers the tables
    from docintel.models.documents import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_db_health(engine: AsyncEngine) -> dict:
    """Ping the database; used by /ready."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
