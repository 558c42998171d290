"""Async engine and session factory for the metering store.

The URL scheme picks the backend:

* ``postgresql+asyncpg://...`` -- pooled engine with server-side statement
  and lock timeouts, so a stuck aggregation or invoice run cannot hold
  locks on ``user_quotas`` indefinitely.
* ``sqlite+aiosqlite://...`` -- local file or ``:memory:`` engine from
  :mod:`metering_engine.state.sqlite_adapter`.

Every metering service receives an ``async_sessionmaker`` and opens one
short session per unit of work; nothing here holds a session open.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

logger = logging.getLogger(__name__)

STATEMENT_TIMEOUT_MS = 30_000
LOCK_TIMEOUT_MS = 10_000


def sqlite_path_from_url(database_url: str) -> str:
    """Extract the database path from a ``sqlite+aiosqlite:///path`` URL.

    ``sqlite+aiosqlite://`` and ``.../:memory:`` both mean in-memory.
    """
    _, _, path = database_url.partition(":///")
    return path or ":memory:"


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Create the async engine for *database_url*.

    Parameters
    ----------
    database_url:
        PostgreSQL (asyncpg) or SQLite (aiosqlite) connection string.
    pool_size:
        Persistent PostgreSQL connections.  Ignored for SQLite.
    max_overflow:
        Extra PostgreSQL connections allowed under burst.  Ignored for SQLite.
    """
    if database_url.startswith("sqlite"):
        from metering_engine.state.sqlite_adapter import get_local_engine

        return get_local_engine(sqlite_path_from_url(database_url))

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        connect_args={
            "server_settings": {
                "statement_timeout": str(STATEMENT_TIMEOUT_MS),
                "lock_timeout": str(LOCK_TIMEOUT_MS),
                "application_name": "metering-engine",
            }
        },
    )
    logger.info("Created PostgreSQL engine pool_size=%d max_overflow=%d", pool_size, max_overflow)
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to *engine*.

    ``expire_on_commit=False`` keeps ORM rows readable after commit, which
    the billing engine relies on when it converts a freshly stored invoice
    into its pydantic model.
    """
    return async_sessionmaker(engine, expire_on_commit=False)


async def dispose_engine(engine: AsyncEngine) -> None:
    """Close every pooled connection."""
    await engine.dispose()
    logger.info("Database engine disposed")
