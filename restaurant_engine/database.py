"""
Database Connection Module
Handles the SQLAlchemy async engine and session factory.

PostgreSQL (psycopg async) in deployment; any SQLAlchemy async URL works,
the test-suite uses SQLite through aiosqlite.
"""

import logging
from functools import lru_cache

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from restaurant_engine.core.config import get_settings

logger = logging.getLogger(__name__)


# Base class for all our models
class Base(DeclarativeBase):
    pass


def create_engine(database_url: str, *, pooled: bool = True, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine.

    Worker processes run each task in a fresh event loop, so they ask for
    an unpooled engine (connections cannot outlive the loop that made them).
    """
    if not pooled:
        return create_async_engine(database_url, echo=echo, poolclass=NullPool)

    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo)

    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=5,  # Connection pool size
        max_overflow=10,  # Extra connections when pool is full
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory - creates new database sessions bound to ``engine``."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Objects remain accessible after commit
    )


@lru_cache()
def get_engine() -> AsyncEngine:
    """Process-wide engine for the API server."""
    settings = get_settings()
    return create_engine(settings.database_url, echo=settings.database_echo)


@lru_cache()
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return create_session_factory(get_engine())


async def init_db(engine: AsyncEngine) -> None:
    """
    Create all tables in database.
    Called once at application startup.
    """
    # Import models so they register on Base.metadata
    from restaurant_engine import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")
