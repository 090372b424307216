"""
Async engine for the "sql" store backend.

Plain URLs from settings are switched to their async driver
(postgresql → asyncpg, mysql → aiomysql, sqlite → aiosqlite);
URLs that already name a driver are used as given.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None


def _to_async_url(db_url: str) -> str:
    url = make_url(db_url)
    driver = _ASYNC_DRIVERS.get(url.drivername)
    if driver is None:
        return db_url
    return url.set(drivername=driver).render_as_string(hide_password=False)


def get_engine(db_url: Optional[str] = None) -> AsyncEngine:
    """The process-wide engine; the first call decides the URL."""
    global _engine, _sessions
    if _engine is None:
        _engine = create_async_engine(
            _to_async_url(db_url or get_settings().database.url),
            echo=get_settings().debug,
            pool_pre_ping=True,
        )
        _sessions = async_sessionmaker(_engine, expire_on_commit=False)
        logger.info("database_engine_created", dialect=_engine.dialect.name,
                    database=_engine.url.database)
    return _engine


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """One transaction: committed on exit, rolled back on error."""
    get_engine()
    async with _sessions() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(db_url: Optional[str] = None) -> None:
    engine = get_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _sessions
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _sessions = None
    logger.info("database_closed")
