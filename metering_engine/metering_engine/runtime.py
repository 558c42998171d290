"""Process-wide wiring of the metering components.

A :class:`MeteringRuntime` owns the database engine and counter store and
hands the same session factory to every service.  Build one per process
with :meth:`MeteringRuntime.from_settings` and close it on shutdown.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from metering_engine.config import Settings, load_settings
from metering_engine.metering.counters import CounterStore, InMemoryCounterStore, RedisCounterStore
from metering_engine.metering.recorder import UsageRecorder
from metering_engine.pricing import PlanTier
from metering_engine.services.aggregation import UsageAggregator
from metering_engine.services.billing import BillingEngine
from metering_engine.services.quota_validator import QuotaValidator
from metering_engine.services.scheduler import MeteringScheduler
from metering_engine.state.database import dispose_engine, get_engine, get_session_factory
from metering_engine.state.repository import QuotaRepository
from metering_engine.state.sqlite_adapter import create_local_tables

logger = logging.getLogger(__name__)


def build_counter_store(settings: Settings) -> CounterStore:
    """Redis-backed counters when configured, process-local otherwise."""
    if settings.redis_url is not None:
        return RedisCounterStore(
            settings.redis_url.get_secret_value(),
            socket_timeout=settings.redis_socket_timeout,
        )
    logger.info("No Redis URL configured; using in-memory usage counters")
    return InMemoryCounterStore()


class MeteringRuntime:
    """Holds the shared engine, counter store, and services of one process."""

    def __init__(self, settings: Settings, engine: AsyncEngine, counters: CounterStore) -> None:
        self.settings = settings
        self.engine = engine
        self.counters = counters
        self.session_factory = get_session_factory(engine)
        self.recorder = UsageRecorder(
            self.session_factory,
            counters,
            counter_ttl_seconds=settings.counter_ttl_seconds,
        )
        self.aggregator = UsageAggregator(self.session_factory)
        self.validator = QuotaValidator(self.session_factory, counters)
        self.billing = BillingEngine(self.session_factory)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> MeteringRuntime:
        settings = settings or load_settings()
        engine = get_engine(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )
        return cls(settings, engine, build_counter_store(settings))

    async def create_tables(self) -> None:
        """Create the schema directly (SQLite only; PostgreSQL uses Alembic)."""
        if not self.settings.is_sqlite():
            raise RuntimeError("create_tables() is for SQLite; run `alembic upgrade head` for PostgreSQL")
        await create_local_tables(self.engine)

    async def provision_tenant(
        self,
        tenant_id: str,
        plan_tier: PlanTier | str = PlanTier.FREE,
        *,
        trial_days: int | None = None,
    ) -> bool:
        """Create the tenant's quota row from plan defaults.

        Returns False if the tenant already has one.
        """
        async with self.session_factory() as session:
            repo = QuotaRepository(session, tenant_id=tenant_id)
            if await repo.get() is not None:
                return False
            await repo.provision(plan_tier, trial_days=trial_days)
            await session.commit()
        return True

    def scheduler(self) -> MeteringScheduler:
        """A scheduler over this runtime's aggregator and billing engine."""
        return MeteringScheduler(
            self.aggregator,
            self.billing if self.settings.invoice_on_month_close else None,
            poll_seconds=self.settings.scheduler_poll_seconds,
        )

    async def aclose(self) -> None:
        """Drain pending recordings, then release counters and the engine."""
        await self.recorder.drain(self.settings.recorder_drain_timeout_seconds)
        await self.counters.close()
        await dispose_engine(self.engine)
