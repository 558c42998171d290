"""SQLite backend for running the metering engine locally.

Uses ``aiosqlite`` with the same ORM tables as PostgreSQL, so the CLI can
record, aggregate, and invoice against a single file with no services
running.  Differences worth knowing:

* the schema comes from :func:`create_local_tables`, not Alembic;
* JSONB columns are stored as JSON text;
* timestamps come back naive and are normalised by
  :func:`metering_engine.periods.ensure_utc`;
* there is one writer at a time, so concurrent recorder tasks serialise.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

MEMORY = ":memory:"

_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)


def get_local_engine(db_path: Path | str = ".metering/state.db") -> AsyncEngine:
    """Async engine over the SQLite database at *db_path*.

    The parent directory of a file path is created if missing.  Pass
    ``":memory:"`` for a throwaway database.
    """
    if str(db_path) == MEMORY:
        url = f"sqlite+aiosqlite:///{MEMORY}"
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"

    engine = create_async_engine(url, connect_args={"check_same_thread": False})

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        for pragma in _PRAGMAS:
            cursor.execute(pragma)
        cursor.close()

    logger.info("Created SQLite engine: %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create any missing metering tables.  Safe to call on every start."""
    from metering_engine.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Metering tables created/verified")
