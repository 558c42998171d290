"""Usage aggregation, quota alerting, and monthly quota reset.

The :class:`UsageAggregator` is driven by the scheduler.  It rolls raw
``usage_events`` into one ``usage_aggregates`` row per tenant and bucket,
records threshold alerts against each tenant's quota, and zeroes the
running quota counters once a tenant's reset date has passed.

Aggregation recomputes the full bucket from the event log on every run and
overwrites the stored row, so re-running a bucket (after a partial failure
or for a backfill) converges on the same totals.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metering_engine.metering.events import UsageCategory
from metering_engine.periods import PeriodType, bucket_end, ensure_utc, truncate
from metering_engine.state.repository import (
    QuotaAdminRepository,
    QuotaAlertRepository,
    QuotaRepository,
    UsageAggregateRepository,
    UsageRollupRepository,
)
from metering_engine.state.tables import UserQuotaTable

logger = logging.getLogger(__name__)

ALERT_THRESHOLDS: tuple[int, ...] = (50, 80, 90, 100)


def usage_percent(current: int, limit: int) -> int:
    """Whole-number percentage of *limit* used, rounded half up.

    A zero limit reports 100 once anything has been used.
    """
    if limit <= 0:
        return 100 if current > 0 else 0
    return int(current * 100 / limit + 0.5)


def _empty_breakdown() -> dict[str, float]:
    return {category.value: 0.0 for category in UsageCategory}


def empty_usage_summary() -> dict[str, Any]:
    return {
        "total_events": 0,
        "total_tokens": 0,
        "total_api_calls": 0,
        "total_cost": 0.0,
        "category_breakdown": _empty_breakdown(),
    }


def fold_usage_rows(rows: list[Any]) -> dict[str, dict[str, Any]]:
    """Combine per-(tenant, category) rollup rows into one summary per tenant.

    This is the single definition of aggregate totals: the stored
    aggregates and the billing preview both go through it.
    """
    totals: dict[str, dict[str, Any]] = {}
    for row in rows:
        summary = totals.setdefault(row.tenant_id, empty_usage_summary())
        cost = float(row.cost)
        summary["total_events"] += int(row.events)
        summary["total_tokens"] += int(row.tokens)
        summary["total_api_calls"] += int(row.api_calls)
        summary["total_cost"] += cost
        summary["category_breakdown"][row.category] = cost
    return totals


class UsageAggregator:
    """Rolls usage events into aggregates and maintains quota alerts.

    Parameters
    ----------
    session_factory:
        Factory for database sessions.  Each tenant-bucket upsert runs in
        its own transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # -- Aggregation -----------------------------------------------------------

    async def aggregate(
        self,
        period_type: PeriodType | str,
        period_start: datetime,
        tenant_id: str | None = None,
    ) -> int:
        """Aggregate one bucket for one or all tenants.

        *period_start* is aligned to the bucket boundary first.  The window
        is ``[period_start, period_start + length)``.

        Returns
        -------
        int
            Number of aggregate rows upserted.

        Raises
        ------
        sqlalchemy.exc.SQLAlchemyError
            Database failures propagate to the caller (the scheduler).
        """
        ptype = PeriodType(period_type)
        start = truncate(ptype, period_start)
        end = bucket_end(ptype, start)

        async with self._session_factory() as session:
            rows = await UsageRollupRepository(session).summarize_window(start, end, tenant_id=tenant_id)

        totals = fold_usage_rows(rows)
        for tenant, summary in totals.items():
            async with self._session_factory() as session:
                await UsageAggregateRepository(session, tenant_id=tenant).upsert(
                    period_type=ptype.value,
                    period_start=start,
                    **summary,
                )
                await session.commit()

        logger.info(
            "Aggregated %s usage for %s: %d tenant(s)",
            ptype.value,
            start.isoformat(),
            len(totals),
            extra={"period_type": ptype.value, "job": f"aggregate_{ptype.value}"},
        )
        return len(totals)

    async def aggregate_hourly(self, at: datetime | None = None) -> int:
        """Aggregate the hour containing *at* (default: now)."""
        return await self.aggregate(PeriodType.HOURLY, at or datetime.now(UTC))

    async def aggregate_daily(self, at: datetime | None = None) -> int:
        """Aggregate the day containing *at* (default: now)."""
        return await self.aggregate(PeriodType.DAILY, at or datetime.now(UTC))

    async def aggregate_monthly(self, at: datetime | None = None) -> int:
        """Aggregate the month containing *at* (default: now)."""
        return await self.aggregate(PeriodType.MONTHLY, at or datetime.now(UTC))

    # -- Alerts --------------------------------------------------------------

    async def check_alert_thresholds(self, tenant_id: str) -> None:
        """Record a quota alert for every newly crossed threshold.

        For tokens, API calls, and storage, each threshold in
        :data:`ALERT_THRESHOLDS` that the tenant's running usage has reached
        is alerted once per reset period.  Each dimension commits on its
        own, so a failure in one is logged and the rest are still checked.
        Never raises.
        """
        try:
            async with self._session_factory() as session:
                quota = await QuotaRepository(session, tenant_id=tenant_id).get()
        except Exception:
            logger.error(
                "Quota alert check failed for tenant=%s (non-blocking)",
                tenant_id,
                exc_info=True,
                extra={"tenant_id": tenant_id, "job": "check_alerts"},
            )
            return
        if quota is None:
            logger.warning(
                "No quota row for tenant=%s; skipping alert check",
                tenant_id,
                extra={"tenant_id": tenant_id, "job": "check_alerts"},
            )
            return

        since = ensure_utc(quota.last_reset_at or quota.created_at)
        for quota_type, current, limit in _quota_dimensions(quota):
            if limit <= 0:
                continue
            try:
                await self._check_dimension(tenant_id, quota_type, current, limit, since)
            except Exception:
                logger.error(
                    "Quota alert check failed for tenant=%s type=%s (non-blocking)",
                    tenant_id,
                    quota_type,
                    exc_info=True,
                    extra={"tenant_id": tenant_id, "quota_type": quota_type, "job": "check_alerts"},
                )

    async def _check_dimension(self, tenant_id: str, quota_type: str, current: int, limit: int, since: datetime) -> int:
        percent = usage_percent(current, limit)
        created = 0
        async with self._session_factory() as session:
            alert_repo = QuotaAlertRepository(session, tenant_id=tenant_id)
            for threshold in ALERT_THRESHOLDS:
                if percent < threshold:
                    break
                if await alert_repo.exists_since(quota_type, threshold, since):
                    continue
                await alert_repo.create(
                    quota_type=quota_type,
                    threshold_percent=threshold,
                    threshold_value=limit * threshold // 100,
                    current_usage=current,
                )
                created += 1
                logger.info(
                    "Quota alert: tenant=%s type=%s threshold=%d%% usage=%d/%d",
                    tenant_id,
                    quota_type,
                    threshold,
                    current,
                    limit,
                    extra={"tenant_id": tenant_id, "quota_type": quota_type, "job": "check_alerts"},
                )
            await session.commit()
        return created

    async def check_all_alert_thresholds(self) -> int:
        """Run :meth:`check_alert_thresholds` for every provisioned tenant.

        Returns
        -------
        int
            Number of tenants checked.
        """
        async with self._session_factory() as session:
            tenant_ids = await QuotaAdminRepository(session).list_tenant_ids()
        for tenant_id in tenant_ids:
            await self.check_alert_thresholds(tenant_id)
        return len(tenant_ids)

    # -- Quota reset ---------------------------------------------------------

    async def reset_expired_quotas(self, now: datetime | None = None) -> int:
        """Reset the monthly counters of every quota past its reset time.

        Returns
        -------
        int
            Number of quota rows reset.
        """
        now = now or datetime.now(UTC)
        async with self._session_factory() as session:
            count = await QuotaAdminRepository(session).reset_expired(now)
            await session.commit()
        if count:
            logger.info("Reset %d expired quota(s)", count, extra={"job": "reset_quotas"})
        return count


def _quota_dimensions(quota: UserQuotaTable) -> list[tuple[str, int, int]]:
    """``(quota_type, current, limit)`` for each alerted dimension."""
    return [
        ("tokens", int(quota.current_token_usage), int(quota.monthly_token_limit)),
        ("api_calls", int(quota.current_api_call_usage), int(quota.monthly_api_call_limit)),
        ("storage", int(quota.current_storage_usage), int(quota.storage_limit_bytes)),
    ]
