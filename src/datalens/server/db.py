"""
Database connection and session management.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


# Global engine and session factory
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_db(database_url: str | None = None) -> async_sessionmaker[AsyncSession]:
    """
    Initialize database connection.

    Args:
        database_url: SQLAlchemy async URL. Defaults to
            ``settings.database.url``. Pool options apply only to
            server databases; SQLite uses its own pool.
    """
    global _engine, _session_factory

    from datalens.server.config import get_settings

    db_settings = get_settings().database
    url = database_url or db_settings.url

    engine_kwargs: dict = {"echo": db_settings.echo}
    if not url.startswith("sqlite"):
        logger.info(
            "Initializing database connection pool: "
            f"pool_size={db_settings.pool_size}, "
            f"max_overflow={db_settings.max_overflow}, "
            f"pool_recycle={db_settings.pool_recycle}s"
        )
        engine_kwargs.update(
            pool_size=db_settings.pool_size,
            max_overflow=db_settings.max_overflow,
            pool_recycle=db_settings.pool_recycle,
            pool_pre_ping=db_settings.pool_pre_ping,
        )

    _engine = create_async_engine(url, **engine_kwargs)

    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return _session_factory


async def create_all() -> None:
    """Create all tables (development and tests; production uses migrations)."""
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    from datalens.server import models  # noqa: F401  (registers tables)

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connection."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
    _session_factory = None
