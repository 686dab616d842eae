"""
Async database engine management — PostgreSQL, MySQL, SQLite.

Driver mapping:
  postgresql://  → postgresql+asyncpg://     (requires asyncpg)
  mysql://       → mysql+aiomysql://         (requires aiomysql)
  sqlite://      → sqlite+aiosqlite://       (requires aiosqlite)

Usage:
    engine = create_engine_for("sqlite:///./bothost.db")
    factory = create_session_factory(engine)
    await init_db(engine)              # Call once at startup
    async with session_scope(factory) as db:
        result = await db.execute(...)
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from database.models import Base

logger = structlog.get_logger()


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
    # Already has async driver or unknown — return as-is
    return db_url


def _engine_kwargs(db_url: str, debug: bool = False) -> dict:
    """Return database-specific engine configuration."""
    base = {"echo": debug}

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


def create_engine_for(db_url: str, debug: bool = False) -> AsyncEngine:
    async_url = _to_async_url(db_url)
    engine = create_async_engine(async_url, **_engine_kwargs(async_url, debug))
    logger.info("database_engine_created",
                dialect=engine.dialect.name,
                url=str(engine.url).split("@")[-1] if "@" in str(engine.url) else str(engine.url))
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Provide a transactional async session scope."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=list(Base.metadata.tables.keys()))


async def close_db(engine: AsyncEngine) -> None:
    """Dispose engine connections. Call at application shutdown."""
    await engine.dispose()
    logger.info("database_closed")
