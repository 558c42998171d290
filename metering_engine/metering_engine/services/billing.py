"""Monthly billing: invoices, previews, usage breakdowns, and PAYG settings.

Invoices are computed as::

    total = plan base price + summed usage cost + overage cost

where overage is only charged to tenants with pay-as-you-go enabled.
Generation is idempotent per ``(tenant_id, billing_period_start)``: if a
record already exists it is returned unchanged, so a retried scheduler job
never bills twice.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metering_engine.metering.events import UsageCategory
from metering_engine.periods import PeriodType, bucket_end, month_bounds
from metering_engine.pricing import PAYG_RATES, PlanTier, calculate_overage_cost, get_plan_config
from metering_engine.services.aggregation import empty_usage_summary, fold_usage_rows
from metering_engine.state.repository import (
    BillingRecordRepository,
    QuotaAdminRepository,
    QuotaRepository,
    UsageAggregateRepository,
    UsageEventRepository,
    UsageRollupRepository,
)
from metering_engine.state.tables import UserQuotaTable

logger = logging.getLogger(__name__)

# Cosmetic PAYG spending limit reported while PAYG is on.  It is not
# persisted and nothing enforces it.
DEFAULT_PAYG_SPENDING_LIMIT = 1000.0

INVOICE_STATUSES = frozenset({"pending", "paid", "failed", "void"})

# Per-category name of the quantity field in a usage breakdown.
_BREAKDOWN_QUANTITY_FIELDS: dict[str, str] = {
    UsageCategory.STORAGE.value: "bytes",
    UsageCategory.PROCESSING.value: "chunks",
    UsageCategory.EMBEDDINGS.value: "chunks",
    UsageCategory.SEARCH.value: "queries",
    UsageCategory.AI.value: "tokens",
}


class QuotaNotFoundError(Exception):
    """Raised when a PAYG operation targets a tenant without a quota row."""

    def __init__(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id
        super().__init__(f"No quota record for tenant '{tenant_id}'")


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------


class BillingRecord(BaseModel):
    """A generated monthly invoice."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    billing_period_start: datetime
    billing_period_end: datetime
    total_tokens: int
    total_api_calls: int
    total_storage_bytes: int
    base_cost: float
    usage_cost: float
    overage_cost: float
    total_cost: float
    status: str
    created_at: datetime
    updated_at: datetime


class InvoicePreview(BaseModel):
    """Projected invoice for the current, still-open month."""

    tenant_id: str
    billing_period_start: datetime
    billing_period_end: datetime
    plan_tier: str
    total_tokens: int
    total_api_calls: int
    total_storage_bytes: int
    base_cost: float
    usage_cost: float
    overage_cost: float
    total_cost: float
    breakdown: dict[str, dict[str, Any]]
    is_preview: bool = True


class PaygSettings(BaseModel):
    """Pay-as-you-go state of a tenant."""

    enabled: bool
    spending_limit: float
    current_overage: float
    overage_rate: float | None = None


def _overage_for(quota: UserQuotaTable | None) -> float:
    """Overage cost from the quota's running counters, zero without PAYG."""
    if quota is None or not quota.allow_overage:
        return 0.0
    return calculate_overage_cost(
        max(0, int(quota.current_token_usage) - int(quota.monthly_token_limit)),
        max(0, int(quota.current_api_call_usage) - int(quota.monthly_api_call_limit)),
        max(0, int(quota.current_storage_usage) - int(quota.storage_limit_bytes)),
    )


def _money(value: float) -> float:
    return round(value, 6)


class BillingEngine:
    """Produces invoices and billing views from aggregated usage.

    Parameters
    ----------
    session_factory:
        Factory for database sessions.  Errors are propagated to the caller.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # -- Invoices ------------------------------------------------------------

    async def generate_monthly_invoice(self, tenant_id: str, period_start: datetime) -> BillingRecord:
        """Generate (or return the existing) invoice for the month of *period_start*.

        Returns
        -------
        BillingRecord
            The stored record.  A second call for the same month returns the
            same record without recomputing it.
        """
        start, end = month_bounds(period_start)

        async with self._session_factory() as session:
            records = BillingRecordRepository(session, tenant_id=tenant_id)
            existing = await records.get_by_period(start)
            if existing is not None:
                logger.info(
                    "Billing record already exists for tenant=%s period=%s; returning it",
                    tenant_id,
                    start.date().isoformat(),
                )
                return BillingRecord.model_validate(existing)

            quota = await QuotaRepository(session, tenant_id=tenant_id).get()
            plan_tier = quota.plan_tier if quota is not None else PlanTier.FREE.value
            usage = await UsageAggregateRepository(session, tenant_id=tenant_id).get_monthly_totals(start, end)

            base_cost = get_plan_config(plan_tier).price
            usage_cost = usage["total_cost"]
            overage_cost = _overage_for(quota)
            total_cost = base_cost + usage_cost + overage_cost

            inserted = await records.create_if_absent(
                period_start=start,
                period_end=end,
                total_tokens=usage["total_tokens"],
                total_api_calls=usage["total_api_calls"],
                total_storage_bytes=int(quota.current_storage_usage) if quota is not None else 0,
                base_cost=_money(base_cost),
                usage_cost=_money(usage_cost),
                overage_cost=_money(overage_cost),
                total_cost=_money(total_cost),
            )
            await session.commit()

            row = await records.get_by_period(start)
            if row is None:
                raise RuntimeError(f"Billing record for tenant '{tenant_id}' vanished after insert")

        if inserted:
            logger.info(
                "Generated billing record %s for tenant=%s period=%s total=$%.2f",
                row.id,
                tenant_id,
                start.date().isoformat(),
                float(row.total_cost),
                extra={"tenant_id": tenant_id, "job": "generate_invoices"},
            )
        else:
            logger.info(
                "Concurrent billing run created record for tenant=%s; returning it",
                tenant_id,
                extra={"tenant_id": tenant_id},
            )
        return BillingRecord.model_validate(row)

    async def generate_all_monthly_invoices(self, period_start: datetime) -> int:
        """Generate invoices for every tenant with a quota row.

        Per-tenant failures are logged and skipped.

        Returns
        -------
        int
            Number of tenants whose invoice was generated (or already
            existed).
        """
        async with self._session_factory() as session:
            tenant_ids = await QuotaAdminRepository(session).list_tenant_ids()

        succeeded = 0
        for tenant_id in tenant_ids:
            try:
                await self.generate_monthly_invoice(tenant_id, period_start)
                succeeded += 1
            except Exception:
                logger.error(
                    "Invoice generation failed for tenant=%s",
                    tenant_id,
                    exc_info=True,
                    extra={"tenant_id": tenant_id, "job": "generate_invoices"},
                )
        logger.info("Generated invoices for %d/%d tenant(s)", succeeded, len(tenant_ids))
        return succeeded

    async def get_invoice(self, invoice_id: str, tenant_id: str) -> BillingRecord | None:
        """Fetch one invoice belonging to *tenant_id*."""
        async with self._session_factory() as session:
            row = await BillingRecordRepository(session, tenant_id=tenant_id).get(invoice_id)
        return BillingRecord.model_validate(row) if row is not None else None

    async def get_invoice_history(self, tenant_id: str, limit: int = 12) -> list[BillingRecord]:
        """Most recent invoices for *tenant_id*, newest period first."""
        async with self._session_factory() as session:
            rows = await BillingRecordRepository(session, tenant_id=tenant_id).list_history(limit)
        return [BillingRecord.model_validate(row) for row in rows]

    async def update_invoice_status(self, invoice_id: str, tenant_id: str, status: str) -> bool:
        """Move an invoice to ``pending``, ``paid``, ``failed`` or ``void``.

        Returns
        -------
        bool
            False if no invoice with that id belongs to *tenant_id*.
        """
        if status not in INVOICE_STATUSES:
            raise ValueError(f"Unknown invoice status '{status}'")
        async with self._session_factory() as session:
            updated = await BillingRecordRepository(session, tenant_id=tenant_id).update_status(invoice_id, status)
            await session.commit()
        if updated:
            logger.info(
                "Invoice %s for tenant=%s marked %s",
                invoice_id,
                tenant_id,
                status,
                extra={"tenant_id": tenant_id},
            )
        return updated

    # -- Previews and breakdowns --------------------------------------------

    async def get_current_period_preview(self, tenant_id: str, now: datetime | None = None) -> InvoicePreview:
        """Project the invoice for the month containing *now*.  Never writes.

        Token and API-call totals follow the monthly aggregate rule, so the
        preview matches the invoice generated once the month closes.
        """
        start, end = month_bounds(now or datetime.now(UTC))
        breakdown = await self.get_usage_breakdown(tenant_id, start, end)

        async with self._session_factory() as session:
            quota = await QuotaRepository(session, tenant_id=tenant_id).get()
            rows = await UsageRollupRepository(session).summarize_window(
                start, bucket_end(PeriodType.MONTHLY, start), tenant_id=tenant_id
            )
        totals = fold_usage_rows(rows).get(tenant_id) or empty_usage_summary()

        plan_tier = quota.plan_tier if quota is not None else PlanTier.FREE.value
        base_cost = get_plan_config(plan_tier).price
        usage_cost = breakdown["total"]["cost"]
        overage_cost = _overage_for(quota)
        return InvoicePreview(
            tenant_id=tenant_id,
            billing_period_start=start,
            billing_period_end=end,
            plan_tier=plan_tier,
            total_tokens=totals["total_tokens"],
            total_api_calls=totals["total_api_calls"],
            total_storage_bytes=int(quota.current_storage_usage) if quota is not None else 0,
            base_cost=_money(base_cost),
            usage_cost=_money(usage_cost),
            overage_cost=_money(overage_cost),
            total_cost=_money(base_cost + usage_cost + overage_cost),
            breakdown=breakdown,
        )

    async def get_usage_breakdown(self, tenant_id: str, start: datetime, end: datetime) -> dict[str, dict[str, Any]]:
        """Group raw events in ``[start, end]`` by category.

        Returns
        -------
        dict
            ``{"storage": {"events", "bytes", "cost"},
               "processing": {"events", "chunks", "cost"},
               "embeddings": {"events", "chunks", "cost"},
               "search": {"events", "queries", "cost"},
               "ai": {"events", "tokens", "cost"},
               "total": {"events", "cost"}}``
        """
        breakdown: dict[str, dict[str, Any]] = {
            category: {"events": 0, field: 0, "cost": 0.0} for category, field in _BREAKDOWN_QUANTITY_FIELDS.items()
        }
        async with self._session_factory() as session:
            rows = await UsageEventRepository(session, tenant_id=tenant_id).get_category_totals(start, end)

        total_events = 0
        total_cost = 0.0
        for row in rows:
            field = _BREAKDOWN_QUANTITY_FIELDS.get(row.category)
            if field is None:
                continue
            cost = _money(float(row.cost))
            breakdown[row.category] = {"events": int(row.events), field: int(row.quantity), "cost": cost}
            total_events += int(row.events)
            total_cost += cost
        breakdown["total"] = {"events": total_events, "cost": _money(total_cost)}
        return breakdown

    # -- Cost helpers --------------------------------------------------------

    @staticmethod
    def calculate_plan_cost(plan_tier: PlanTier | str) -> float:
        """Monthly base price of *plan_tier*."""
        return get_plan_config(plan_tier).price

    async def calculate_overage_cost_for_tenant(self, tenant_id: str) -> float:
        """Current overage cost for *tenant_id* (zero without PAYG)."""
        async with self._session_factory() as session:
            quota = await QuotaRepository(session, tenant_id=tenant_id).get()
        return _money(_overage_for(quota))

    # -- PAYG ----------------------------------------------------------------

    async def enable_payg(self, tenant_id: str, spending_limit: float = DEFAULT_PAYG_SPENDING_LIMIT) -> None:
        """Turn on pay-as-you-go overage at the standard token rate.

        *spending_limit* is accepted for interface compatibility and logged,
        but it is neither stored nor enforced.
        """
        async with self._session_factory() as session:
            updated = await QuotaRepository(session, tenant_id=tenant_id).set_overage(
                allow_overage=True,
                overage_rate=PAYG_RATES["model_input_token"],
            )
            if not updated:
                raise QuotaNotFoundError(tenant_id)
            await session.commit()
        logger.info(
            "PAYG enabled for tenant=%s spending_limit=%.2f",
            tenant_id,
            spending_limit,
            extra={"tenant_id": tenant_id},
        )

    async def disable_payg(self, tenant_id: str) -> None:
        """Turn off pay-as-you-go; over-quota requests are denied again."""
        async with self._session_factory() as session:
            updated = await QuotaRepository(session, tenant_id=tenant_id).set_overage(
                allow_overage=False,
                overage_rate=None,
            )
            if not updated:
                raise QuotaNotFoundError(tenant_id)
            await session.commit()
        logger.info("PAYG disabled for tenant=%s", tenant_id, extra={"tenant_id": tenant_id})

    async def update_payg_limit(self, tenant_id: str, spending_limit: float) -> bool:
        """Re-apply the PAYG rate for a tenant with PAYG on.

        Returns
        -------
        bool
            False if PAYG is not enabled for the tenant.
        """
        async with self._session_factory() as session:
            updated = await QuotaRepository(session, tenant_id=tenant_id).update_overage_rate(
                PAYG_RATES["model_input_token"]
            )
            await session.commit()
        if updated:
            logger.info(
                "PAYG limit updated for tenant=%s spending_limit=%.2f",
                tenant_id,
                spending_limit,
                extra={"tenant_id": tenant_id},
            )
        else:
            logger.warning(
                "PAYG limit update ignored for tenant=%s: PAYG not enabled",
                tenant_id,
                extra={"tenant_id": tenant_id},
            )
        return updated

    async def get_payg_settings(self, tenant_id: str) -> PaygSettings:
        """Current PAYG flag, cosmetic spending limit, and overage cost."""
        async with self._session_factory() as session:
            quota = await QuotaRepository(session, tenant_id=tenant_id).get()
        if quota is None:
            raise QuotaNotFoundError(tenant_id)
        enabled = bool(quota.allow_overage)
        return PaygSettings(
            enabled=enabled,
            spending_limit=DEFAULT_PAYG_SPENDING_LIMIT if enabled else 0.0,
            current_overage=_money(_overage_for(quota)),
            overage_rate=float(quota.overage_rate) if quota.overage_rate is not None else None,
        )
