"""
Database connection management.

Queue engines take an ``async_sessionmaker`` and never reach for a global;
the module-level engine below only backs the worker process.
"""

import logging

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from leasequeue.config import Settings, get_settings
from leasequeue.db.models import Base

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None


def create_engine(database_url: str, settings: Settings | None = None) -> AsyncEngine:
    """
    Create an async engine for the job tables.

    Pool sizing applies to server databases only; SQLite keeps the
    driver's default pool.
    """
    settings = settings or get_settings()
    options: dict = {
        "echo": settings.log_level == "DEBUG",
        "pool_pre_ping": True,
    }
    if make_url(database_url).get_backend_name() != "sqlite":
        options["pool_size"] = settings.database_pool_size
        options["max_overflow"] = settings.database_max_overflow
    return create_async_engine(database_url, **options)


def get_test_engine(database_url: str) -> AsyncEngine:
    """Engine without pooling, so every session gets its own connection."""
    return create_async_engine(database_url, poolclass=NullPool)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build the session factory the queue engines expect."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine(settings: Settings | None = None) -> AsyncEngine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        settings = settings or get_settings()
        _engine = create_engine(settings.database_url, settings)
    return _engine


async def init_db(settings: Settings | None = None) -> async_sessionmaker[AsyncSession]:
    """Open the process-wide engine and return a session factory for it."""
    engine = get_engine(settings)
    logger.info("Database connection initialized", extra={"backend": engine.dialect.name})
    return create_session_factory(engine)


async def close_db() -> None:
    """Dispose of the process-wide engine."""
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        logger.info("Database connection closed")


async def create_tables(engine: AsyncEngine) -> None:
    """
    Create the queue tables if they do not exist.

    Production deployments use the Alembic migrations; this is meant for
    development databases and tests.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
