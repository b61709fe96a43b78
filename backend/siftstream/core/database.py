"""
Database engine for session persistence.

SQLite through aiosqlite by default; any SQLAlchemy async URL works.
"""

import logging
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from siftstream.core.config import settings

logger = logging.getLogger(__name__)


def _engine_kwargs(url: str) -> dict:
    # sqlite does not take pool sizing arguments
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_size": 5, "max_overflow": 10, "pool_timeout": 10}


engine = create_async_engine(
    settings.database_url,
    echo=False,
    **_engine_kwargs(settings.database_url),
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session for health checks."""
    async with async_session_maker() as session:
        yield session


async def ping_db(session: AsyncSession) -> None:
    """Round-trip a trivial query; raises when the database is unreachable."""
    await session.execute(text("SELECT 1"))


async def init_db() -> None:
    """
    Create the session tables if they do not exist.

    A failure is logged and the app keeps serving; analyses are then
    streamed without being stored.
    """
    from siftstream.models.database import Base

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database ready at {engine.url.render_as_string(hide_password=True)}")
    except Exception as e:
        logger.error(f"Error creating database tables: {str(e)}")
        logger.info("Continuing without database initialization (analyses will not be persisted)")


async def close_db() -> None:
    """Dispose of pooled connections."""
    await engine.dispose()
    logger.info("Database connections closed")
