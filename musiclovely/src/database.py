"""
Async SQLAlchemy engine and sessions for the order store.

One engine per process, created on first use (asyncpg in production,
aiosqlite in tests). Sessions never expire on commit: reconciliation keeps
reading plain order fields after committing the paid transition, and lazy
loads are not possible in async code.
"""
import logging
from typing import AsyncGenerator, Optional
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_sessionmaker: Optional[async_sessionmaker] = None


class Base(DeclarativeBase):
    pass


def _engine_options(settings) -> dict:
    options = {"echo": settings.log_level.upper() == "DEBUG" and settings.app_env == "development"}
    # SQLite has no connection pool sizing
    if not settings.database_url.startswith("sqlite"):
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
        )
    return options


def get_sessionmaker() -> async_sessionmaker:
    global _engine, _sessionmaker
    if _sessionmaker is None:
        from src.config import get_settings
        settings = get_settings()
        _engine = create_async_engine(settings.database_url, **_engine_options(settings))
        _sessionmaker = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)
    return _sessionmaker


def async_session_factory() -> AsyncSession:
    """New session outside a request (fault audit rows, scripts). Caller commits."""
    return get_sessionmaker()()


async def dispose_engine() -> None:
    """Close pooled connections on shutdown."""
    global _engine, _sessionmaker
    if _engine is not None:
        await _engine.dispose()
        logger.info("Database engine disposed")
    _engine = None
    _sessionmaker = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency: one session per request, committed when the handler
    returns and rolled back when it raises.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            logger.debug("Request session rolled back", exc_info=True)
            raise
