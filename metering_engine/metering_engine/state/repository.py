"""Repository classes providing access to the metering state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()``.

Tenant-scoped repositories take a ``tenant_id`` and filter every query by
it.  The two cross-tenant repositories (:class:`UsageRollupRepository` and
:class:`QuotaAdminRepository`) exist for the batch jobs that sweep all
tenants.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from metering_engine.metering.events import UsageCategory, UsageEvent, UsageUnit
from metering_engine.periods import add_months, ensure_utc
from metering_engine.pricing import PlanTier, get_plan_config
from metering_engine.state.tables import (
    BillingRecordTable,
    QuotaAlertTable,
    UsageAggregateTable,
    UsageEventTable,
    UserQuotaTable,
)

logger = logging.getLogger(__name__)


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
        )
    return await session.execute(stmt)


async def _dialect_insert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Returns
    -------
    The execution result from ``session.execute()``.  ``rowcount`` is 0 when
    the row already existed.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# UsageEventRepository
# ---------------------------------------------------------------------------


class UsageEventRepository:
    """Append and summarise rows in the ``usage_events`` log."""

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def insert(self, event: UsageEvent) -> UsageEventTable:
        """Append *event* to the log."""
        row = UsageEventTable(
            id=event.event_id,
            tenant_id=self._tenant_id,
            resource_id=event.resource_id,
            category=event.category.value,
            event_type=event.event_type,
            quantity=event.quantity,
            unit=event.unit,
            cost=event.cost,
            metadata_json=event.metadata or None,
            created_at=event.timestamp,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_category_totals(self, start: datetime, end: datetime) -> list[Any]:
        """Group events in ``[start, end]`` by category.

        Returns
        -------
        list
            Rows with ``category``, ``events``, ``quantity`` and ``cost``.
        """
        stmt = (
            select(
                UsageEventTable.category,
                func.count().label("events"),
                func.coalesce(func.sum(UsageEventTable.quantity), 0).label("quantity"),
                func.coalesce(func.sum(UsageEventTable.cost), 0).label("cost"),
            )
            .where(
                UsageEventTable.tenant_id == self._tenant_id,
                UsageEventTable.created_at >= start,
                UsageEventTable.created_at <= end,
            )
            .group_by(UsageEventTable.category)
        )
        result = await self._session.execute(stmt)
        return list(result.all())

    async def list_events(self, start: datetime, end: datetime, limit: int = 500) -> list[UsageEventTable]:
        """Return events in ``[start, end]``, oldest first."""
        stmt = (
            select(UsageEventTable)
            .where(
                UsageEventTable.tenant_id == self._tenant_id,
                UsageEventTable.created_at >= start,
                UsageEventTable.created_at <= end,
            )
            .order_by(UsageEventTable.created_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class UsageRollupRepository:
    """Cross-tenant scan of the event log for the aggregator.

    Unlike tenant-scoped repositories, this class does NOT filter by
    ``tenant_id`` unless one is passed explicitly.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def summarize_window(
        self,
        start: datetime,
        end: datetime,
        tenant_id: str | None = None,
    ) -> list[Any]:
        """Summarise events in ``[start, end)`` grouped by tenant and category.

        Returns
        -------
        list
            Rows with ``tenant_id``, ``category``, ``events``, ``tokens``,
            ``api_calls`` and ``cost``.  Tokens sum only token-unit
            quantities; API calls count ai-category events.
        """
        tokens = func.sum(
            case(
                (UsageEventTable.unit == UsageUnit.TOKENS.value, UsageEventTable.quantity),
                else_=0,
            )
        )
        api_calls = func.sum(
            case(
                (UsageEventTable.category == UsageCategory.AI.value, 1),
                else_=0,
            )
        )
        stmt = (
            select(
                UsageEventTable.tenant_id,
                UsageEventTable.category,
                func.count().label("events"),
                func.coalesce(tokens, 0).label("tokens"),
                func.coalesce(api_calls, 0).label("api_calls"),
                func.coalesce(func.sum(UsageEventTable.cost), 0).label("cost"),
            )
            .where(
                UsageEventTable.created_at >= start,
                UsageEventTable.created_at < end,
            )
            .group_by(UsageEventTable.tenant_id, UsageEventTable.category)
            .order_by(UsageEventTable.tenant_id, UsageEventTable.category)
        )
        if tenant_id is not None:
            stmt = stmt.where(UsageEventTable.tenant_id == tenant_id)
        result = await self._session.execute(stmt)
        return list(result.all())


# ---------------------------------------------------------------------------
# UsageAggregateRepository
# ---------------------------------------------------------------------------


class UsageAggregateRepository:
    """Read and upsert rows in ``usage_aggregates`` for one tenant."""

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def upsert(
        self,
        *,
        period_type: str,
        period_start: datetime,
        total_events: int,
        total_tokens: int,
        total_api_calls: int,
        total_cost: float,
        category_breakdown: dict[str, float],
    ) -> None:
        """Insert or overwrite the aggregate for ``(period_type, period_start)``.

        The whole row is replaced with the supplied totals; callers always
        pass a full recomputation, never a delta.
        """
        now = datetime.now(UTC)
        values = {
            "tenant_id": self._tenant_id,
            "period_type": period_type,
            "period_start": period_start,
            "total_events": total_events,
            "total_tokens": total_tokens,
            "total_api_calls": total_api_calls,
            "total_cost": total_cost,
            "category_breakdown": category_breakdown,
            "created_at": now,
            "updated_at": now,
        }
        await _dialect_upsert(
            self._session,
            UsageAggregateTable,
            values,
            index_elements=["tenant_id", "period_type", "period_start"],
            update_columns=[
                "total_events",
                "total_tokens",
                "total_api_calls",
                "total_cost",
                "category_breakdown",
                "updated_at",
            ],
        )
        await self._session.flush()

    async def get(self, period_type: str, period_start: datetime) -> UsageAggregateTable | None:
        """Fetch the aggregate for one bucket."""
        stmt = select(UsageAggregateTable).where(
            UsageAggregateTable.tenant_id == self._tenant_id,
            UsageAggregateTable.period_type == period_type,
            UsageAggregateTable.period_start == period_start,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_monthly_totals(self, start: datetime, end: datetime | None = None) -> dict[str, Any]:
        """Sum monthly aggregates whose ``period_start`` falls in ``[start, end]``.

        Returns
        -------
        dict
            ``{"total_tokens": int, "total_api_calls": int, "total_cost": float,
               "rows": int}``
        """
        conditions = [
            UsageAggregateTable.tenant_id == self._tenant_id,
            UsageAggregateTable.period_type == "monthly",
            UsageAggregateTable.period_start >= start,
        ]
        if end is not None:
            conditions.append(UsageAggregateTable.period_start <= end)
        stmt = select(
            func.count().label("rows"),
            func.coalesce(func.sum(UsageAggregateTable.total_tokens), 0).label("tokens"),
            func.coalesce(func.sum(UsageAggregateTable.total_api_calls), 0).label("api_calls"),
            func.coalesce(func.sum(UsageAggregateTable.total_cost), 0).label("cost"),
        ).where(*conditions)
        result = await self._session.execute(stmt)
        row = result.one()
        return {
            "total_tokens": int(row.tokens),
            "total_api_calls": int(row.api_calls),
            "total_cost": float(row.cost),
            "rows": int(row.rows),
        }

    async def list_for_type(self, period_type: str, limit: int = 48) -> list[UsageAggregateTable]:
        """Most recent aggregates of *period_type*, newest first."""
        stmt = (
            select(UsageAggregateTable)
            .where(
                UsageAggregateTable.tenant_id == self._tenant_id,
                UsageAggregateTable.period_type == period_type,
            )
            .order_by(UsageAggregateTable.period_start.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# QuotaRepository
# ---------------------------------------------------------------------------


class QuotaRepository:
    """Reads and mutations of a tenant's ``user_quotas`` row."""

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self) -> UserQuotaTable | None:
        """Fetch the quota row for this tenant.  Returns None if not provisioned."""
        stmt = select(UserQuotaTable).where(UserQuotaTable.tenant_id == self._tenant_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def provision(
        self,
        plan_tier: PlanTier | str = PlanTier.FREE,
        *,
        now: datetime | None = None,
        trial_days: int | None = None,
    ) -> UserQuotaTable:
        """Create the quota row from the plan defaults.

        ``quota_reset_at`` is set one month after *now*.  For the
        ``free_trial`` tier *trial_days* (default 30) sets the trial expiry.
        """
        now = now or datetime.now(UTC)
        tier = PlanTier(plan_tier)
        plan = get_plan_config(tier)
        trial_expires_at = None
        if tier is PlanTier.FREE_TRIAL:
            trial_expires_at = now + timedelta(days=trial_days if trial_days is not None else 30)
        row = UserQuotaTable(
            tenant_id=self._tenant_id,
            plan_tier=tier.value,
            monthly_token_limit=plan.monthly_token_limit,
            current_token_usage=0,
            monthly_api_call_limit=plan.monthly_api_call_limit,
            current_api_call_usage=0,
            storage_limit_bytes=plan.storage_limit_bytes,
            current_storage_usage=0,
            quota_reset_at=add_months(now, 1),
            last_reset_at=None,
            allow_overage=plan.allow_overage,
            overage_rate=None,
            trial_expires_at=trial_expires_at,
            trial_extended=False,
            created_at=now,
            updated_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        logger.info("Provisioned quota for tenant=%s plan=%s", self._tenant_id, tier.value)
        return row

    async def set_overage(self, *, allow_overage: bool, overage_rate: float | None) -> bool:
        """Set the PAYG flag and rate.  Returns True if a row was updated."""
        stmt = (
            update(UserQuotaTable)
            .where(UserQuotaTable.tenant_id == self._tenant_id)
            .values(
                allow_overage=allow_overage,
                overage_rate=overage_rate,
                updated_at=datetime.now(UTC),
            )
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def update_overage_rate(self, overage_rate: float) -> bool:
        """Change the rate for a tenant with PAYG enabled.  Returns True if updated."""
        stmt = (
            update(UserQuotaTable)
            .where(
                UserQuotaTable.tenant_id == self._tenant_id,
                UserQuotaTable.allow_overage.is_(True),
            )
            .values(overage_rate=overage_rate, updated_at=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def add_usage(self, *, tokens: int = 0, api_calls: int = 0, storage_bytes: int = 0) -> None:
        """Increment the running usage counters in a single UPDATE."""
        stmt = (
            update(UserQuotaTable)
            .where(UserQuotaTable.tenant_id == self._tenant_id)
            .values(
                current_token_usage=UserQuotaTable.current_token_usage + tokens,
                current_api_call_usage=UserQuotaTable.current_api_call_usage + api_calls,
                current_storage_usage=UserQuotaTable.current_storage_usage + storage_bytes,
                updated_at=datetime.now(UTC),
            )
        )
        await self._session.execute(stmt)
        await self._session.flush()


class QuotaAdminRepository:
    """Cross-tenant quota maintenance for scheduled jobs."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_tenant_ids(self) -> list[str]:
        """Every tenant with a provisioned quota row."""
        stmt = select(UserQuotaTable.tenant_id).order_by(UserQuotaTable.tenant_id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def reset_expired(self, now: datetime) -> int:
        """Zero the monthly counters of every quota whose reset time has passed.

        Storage usage is cumulative and is left untouched.  ``quota_reset_at``
        advances by one calendar month and ``last_reset_at`` is stamped.

        Returns
        -------
        int
            Number of quota rows reset.
        """
        stmt = select(UserQuotaTable).where(UserQuotaTable.quota_reset_at <= now).with_for_update()
        result = await self._session.execute(stmt)
        rows = list(result.scalars().all())
        for row in rows:
            row.current_token_usage = 0
            row.current_api_call_usage = 0
            row.quota_reset_at = add_months(ensure_utc(row.quota_reset_at), 1)
            row.last_reset_at = now
            row.updated_at = now
        await self._session.flush()
        return len(rows)


# ---------------------------------------------------------------------------
# QuotaAlertRepository
# ---------------------------------------------------------------------------


class QuotaAlertRepository:
    """Lookup and insert rows in ``quota_alerts``."""

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def exists_since(self, quota_type: str, threshold_percent: int, since: datetime) -> bool:
        """Return True if this threshold already alerted at or after *since*."""
        stmt = (
            select(func.count())
            .select_from(QuotaAlertTable)
            .where(
                QuotaAlertTable.tenant_id == self._tenant_id,
                QuotaAlertTable.quota_type == quota_type,
                QuotaAlertTable.threshold_percent == threshold_percent,
                QuotaAlertTable.alerted_at >= since,
            )
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one()) > 0

    async def create(
        self,
        *,
        quota_type: str,
        threshold_percent: int,
        threshold_value: int,
        current_usage: int,
        alerted_at: datetime | None = None,
    ) -> QuotaAlertTable:
        """Insert a new alert row."""
        row = QuotaAlertTable(
            tenant_id=self._tenant_id,
            quota_type=quota_type,
            threshold_percent=threshold_percent,
            threshold_value=threshold_value,
            current_usage=current_usage,
            alerted_at=alerted_at or datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_recent(self, limit: int = 50) -> list[QuotaAlertTable]:
        """Alerts for this tenant, newest first."""
        stmt = (
            select(QuotaAlertTable)
            .where(QuotaAlertTable.tenant_id == self._tenant_id)
            .order_by(QuotaAlertTable.alerted_at.desc(), QuotaAlertTable.id.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# BillingRecordRepository
# ---------------------------------------------------------------------------


class BillingRecordRepository:
    """CRUD operations for the ``billing_records`` table."""

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self, record_id: str) -> BillingRecordTable | None:
        """Fetch a single billing record by ID for this tenant."""
        stmt = select(BillingRecordTable).where(
            BillingRecordTable.tenant_id == self._tenant_id,
            BillingRecordTable.id == record_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_period(self, period_start: datetime) -> BillingRecordTable | None:
        """Fetch the record for the billing period starting at *period_start*."""
        stmt = select(BillingRecordTable).where(
            BillingRecordTable.tenant_id == self._tenant_id,
            BillingRecordTable.billing_period_start == period_start,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create_if_absent(
        self,
        *,
        period_start: datetime,
        period_end: datetime,
        total_tokens: int,
        total_api_calls: int,
        total_storage_bytes: int,
        base_cost: float,
        usage_cost: float,
        overage_cost: float,
        total_cost: float,
    ) -> bool:
        """Insert a pending record unless one exists for the period.

        Returns
        -------
        bool
            True if this call inserted the row, False if another writer
            already had.
        """
        now = datetime.now(UTC)
        values = {
            "id": str(uuid.uuid4()),
            "tenant_id": self._tenant_id,
            "billing_period_start": period_start,
            "billing_period_end": period_end,
            "total_tokens": total_tokens,
            "total_api_calls": total_api_calls,
            "total_storage_bytes": total_storage_bytes,
            "base_cost": base_cost,
            "usage_cost": usage_cost,
            "overage_cost": overage_cost,
            "total_cost": total_cost,
            "status": "pending",
            "created_at": now,
            "updated_at": now,
        }
        result = await _dialect_insert_nothing(
            self._session,
            BillingRecordTable,
            values,
            index_elements=["tenant_id", "billing_period_start"],
        )
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def list_history(self, limit: int = 12) -> list[BillingRecordTable]:
        """Records for this tenant, newest period first."""
        stmt = (
            select(BillingRecordTable)
            .where(BillingRecordTable.tenant_id == self._tenant_id)
            .order_by(BillingRecordTable.billing_period_start.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def update_status(self, record_id: str, status: str) -> bool:
        """Update record status (pending, paid, failed, void).  Returns True if updated."""
        stmt = (
            update(BillingRecordTable)
            .where(
                BillingRecordTable.tenant_id == self._tenant_id,
                BillingRecordTable.id == record_id,
            )
            .values(status=status, updated_at=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]
