"""
Database engine, session factory, and declarative base.

Uses async SQLAlchemy 2.0 (aiosqlite in dev/tests, asyncpg in production).
"""

from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from cohortwatch.config import settings

logger = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all models."""

    pass


# Lazy-initialized singletons
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    """Get or create the async database engine."""
    global _engine
    if _engine is None:
        url = settings.async_database_url
        kwargs: dict = {"echo": settings.debug}
        if not url.startswith("sqlite"):
            kwargs.update(
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_recycle=settings.db_pool_recycle,
            )
        _engine = create_async_engine(url, **kwargs)
        logger.info("database_engine_created", dialect=_engine.dialect.name)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


async def init_db() -> None:
    """Create tables in development; production expects managed migrations."""
    engine = get_engine()

    # Import all models so Base.metadata is populated
    import cohortwatch.db.models  # noqa: F401

    if settings.environment.lower() == "development":
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("tables_created", mode="development")
    else:
        logger.info("skipping_auto_create", reason="production uses managed migrations")

    logger.info("database_initialized")


async def close_db() -> None:
    """Close the database engine (call at shutdown)."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("database_closed")
