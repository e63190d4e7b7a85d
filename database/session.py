"""
Async database session management — PostgreSQL, MySQL, SQLite.

Driver mapping:
  postgresql://  → postgresql+asyncpg://     (requires asyncpg)
  mysql://       → mysql+aiomysql://         (requires aiomysql)
  sqlite://      → sqlite+aiosqlite://       (requires aiosqlite)

Usage:
    await init_db()                    # Call once at startup
    async with get_session() as db:    # Use in request handlers
        result = await db.execute(...)
    await close_db()                   # Call at shutdown
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _to_async_url(db_url: str) -> str:
    """Convert a sync database URL to its async driver equivalent."""
    replacements = [
        ("postgresql://", "postgresql+asyncpg://"),
        ("postgres://", "postgresql+asyncpg://"),
        ("mysql://", "mysql+aiomysql://"),
        ("mysql+pymysql://", "mysql+aiomysql://"),
        ("sqlite://", "sqlite+aiosqlite://"),
    ]
    for sync_prefix, async_prefix in replacements:
        if db_url.startswith(sync_prefix):
            return db_url.replace(sync_prefix, async_prefix, 1)
    # already async, or unknown: returned as-is
    return db_url


def _engine_kwargs(db_url: str, echo: bool = False) -> dict:
    """Return database-specific engine configuration."""
    base = {"echo": echo}

    if "sqlite" in db_url:
        # SQLite: no connection pooling needed
        return {**base, "connect_args": {"check_same_thread": False}}

    # PostgreSQL / MySQL: connection pool tuning
    return {
        **base,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def create_engine_for_url(db_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for any supported URL (sync or async form)."""
    db_url = _to_async_url(db_url)
    return create_async_engine(db_url, **_engine_kwargs(db_url, echo))


def get_engine() -> AsyncEngine:
    """Return the global engine, creating it if needed."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine_for_url(settings.database.url, echo=settings.debug)
        logger.info("database_engine_created",
                     dialect=_engine.dialect.name,
                     url=str(_engine.url).split("@")[-1] if "@" in str(_engine.url) else str(_engine.url))
    return _engine


def get_session_factory(engine: Optional[AsyncEngine] = None) -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if engine is not None:
        return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Provide a transactional async session scope from `factory`."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Transactional scope on the global engine."""
    async with session_scope(get_session_factory()) as session:
        yield session


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables. Call once at application startup."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=list(Base.metadata.tables.keys()))


async def close_db() -> None:
    """Dispose engine connections. Call at application shutdown."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("database_closed")
