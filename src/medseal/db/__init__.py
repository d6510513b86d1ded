"""medseal database module.

Persistence for the authorization ledger view:
- SQLAlchemy 2.x async engine and session factory
- Schema creation for the ledger tables
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from medseal.db.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)


def normalize_database_url(url: str) -> str:
    """Ensure an async driver is named in the database URL.

    Args:
        url: SQLAlchemy URL, possibly without a driver.

    Returns:
        URL using asyncpg for PostgreSQL and aiosqlite for SQLite.
    """
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def create_ledger_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Create the async engine for the ledger database.

    Args:
        url: SQLAlchemy database URL.
        echo: Enable SQL query logging.

    Returns:
        AsyncEngine bound to the ledger database.
    """
    engine = create_async_engine(normalize_database_url(url), echo=echo)
    logger.debug("Created ledger engine for %s", engine.url.render_as_string(hide_password=True))
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory for the ledger engine."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_ledger_schema(engine: AsyncEngine) -> None:
    """Create the ledger tables if they do not exist.

    Args:
        engine: Engine bound to the ledger database.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Ledger schema initialized")


__all__ = [
    "create_ledger_engine",
    "create_session_factory",
    "init_ledger_schema",
    "normalize_database_url",
]
