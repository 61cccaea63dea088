"""
Engine and session factory helpers.

Every mutation runs inside one ``AsyncSession`` transaction obtained from the
factory built here.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from why_stack.config import Settings, get_settings
from why_stack.db.models import Base

logger = logging.getLogger(__name__)


def create_engine(settings: Settings | None = None, url: str | None = None) -> AsyncEngine:
    """
    Create the async engine.

    Args:
        settings: Application settings (uses cached settings if None).
        url: Overrides ``settings.database_url``.

    Returns:
        Configured async engine.
    """
    settings = settings or get_settings()
    database_url = url or settings.database_url

    kwargs: dict[str, object] = {
        "echo": settings.database_echo,
        "pool_pre_ping": True,
    }
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["isolation_level"] = settings.database_isolation_level

    return create_async_engine(database_url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory whose objects stay readable after commit."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema created")
