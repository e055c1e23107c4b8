"""
duel_engine/database.py
Database configuration for the scheduling engine
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)

from duel_engine.config import settings
from duel_engine.orm.base import Base
import duel_engine.orm  # ensures all models are registered

logger = logging.getLogger(__name__)


def build_engine(database_url: Optional[str] = None, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    SQLite gets a busy timeout so that the tick loops and the command layer
    can write to the same file without immediately failing.
    """
    url = database_url or settings.DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL environment variable is not set")

    if "sqlite" in url.lower():
        return create_async_engine(
            url,
            echo=echo,
            future=True,
            pool_pre_ping=True,
            connect_args={
                "timeout": 30.0,   # SQLite busy timeout in seconds
            }
        )

    # PostgreSQL/MySQL: Use standard pool with larger size
    return create_async_engine(
        url,
        echo=echo,
        future=True,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=3600,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine()
AsyncSessionLocal = build_session_factory(engine)


async def init_db(bind: Optional[AsyncEngine] = None):
    """
    Create all tables that do not exist yet.
    """
    target = bind or engine
    logger.info("Initializing database...")
    try:
        logger.info(f"Database dialect: {target.url.get_backend_name()}")
        async with target.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("✓ Database initialization complete")
    except Exception as e:
        logger.error(f"Database initialization failed: {str(e)}")
        raise


async def close_db(bind: Optional[AsyncEngine] = None):
    """Close database connection"""
    await (bind or engine).dispose()
    logger.info("Database connection closed")
