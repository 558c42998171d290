"""Shared fixtures for metering engine unit tests.

The tests use an in-memory SQLite database via aiosqlite so they can run
without a PostgreSQL instance.  Because JSONB is Postgres-specific, the
table metadata is patched to plain JSON at import time, and tz-aware
datetime columns are wrapped so that SQLite's naive values come back UTC.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC

import pytest_asyncio
from sqlalchemy import JSON, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.types import TypeDecorator

from metering_engine.metering.counters import InMemoryCounterStore
from metering_engine.state.repository import QuotaRepository
from metering_engine.state.tables import Base


def _patch_columns_for_sqlite() -> None:
    """Substitute Postgres-specific column types for SQLite compatibility.

    * ``JSONB`` → ``JSON`` (SQLite has no JSONB type compiler).
    * ``DateTime(timezone=True)`` → a :class:`~sqlalchemy.TypeDecorator`
      that coerces naive datetimes returned by SQLite back to UTC-aware.
    """

    class _UTCAwareDateTime(TypeDecorator):
        """SQLAlchemy TypeDecorator that ensures datetimes are always UTC-aware."""

        impl = DateTime
        cache_ok = True

        def process_result_value(self, value, dialect):  # type: ignore[override]
            if value is not None and value.tzinfo is None:
                return value.replace(tzinfo=UTC)
            return value

    for table in Base.metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, JSONB):
                column.type = JSON()
            elif isinstance(column.type, DateTime) and getattr(column.type, "timezone", False):
                column.type = _UTCAwareDateTime()


_patch_columns_for_sqlite()


@pytest_asyncio.fixture
async def session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Session factory over a fresh in-memory SQLite database."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def counters() -> InMemoryCounterStore:
    return InMemoryCounterStore()


@pytest_asyncio.fixture
async def provision(session_factory: async_sessionmaker[AsyncSession]):
    """Return a coroutine function that provisions a quota row.

    Keyword arguments override quota columns after provisioning.
    """

    async def _provision(tenant_id: str, plan_tier: str = "free", **overrides: object) -> None:
        async with session_factory() as session:
            row = await QuotaRepository(session, tenant_id=tenant_id).provision(plan_tier)
            for name, value in overrides.items():
                setattr(row, name, value)
            await session.commit()

    return _provision
