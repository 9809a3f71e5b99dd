"""
Database engine and session lifecycle.

One engine per process, built lazily from settings. Request handlers get
a session through `get_db`; background workers open their own sessions
from `get_session_factory()`.
"""
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from order_payments.config import Settings, get_settings
from order_payments.database.models import Base

logger = structlog.get_logger(__name__)

_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(settings: Settings) -> AsyncEngine:
    """
    Create an async engine for the configured database.

    Pool sizing applies to server databases only; SQLite uses the
    dialect's default pool.

    Args:
        settings: Application settings

    Returns:
        AsyncEngine: New engine
    """
    url = make_url(settings.database_url)
    options: Dict[str, Any] = {"echo": settings.database_echo}
    if url.get_backend_name() != "sqlite":
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
    logger.info(
        "database_engine_created",
        backend=url.get_backend_name(),
        driver=url.get_driver_name(),
        host=url.host,
        database=url.database,
    )
    return create_async_engine(url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Build a session factory bound to an engine.

    Loaded records stay usable after commit; payment flows read the
    committed row back when they respond.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine(settings: Optional[Settings] = None) -> AsyncEngine:
    """Process-wide engine, created on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine(settings or get_settings())
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Process-wide session factory bound to `get_engine()`."""
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = create_session_factory(get_engine())
    return _async_session_factory


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """
    Session committed on success and rolled back on any error.

    Args:
        session_factory: Factory to open the session from

    Yields:
        AsyncSession: Open session
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, Any]:
    """FastAPI dependency yielding a request-scoped session."""
    async with session_scope(get_session_factory()) as session:
        yield session


async def init_db() -> None:
    """Create missing tables. Production schemas are managed by alembic."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and forget the session factory."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("database_engine_disposed")
    _engine = None
    _async_session_factory = None
