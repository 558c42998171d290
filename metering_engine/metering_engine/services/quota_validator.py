"""Pre-flight quota validation.

Called on the request path immediately before an expensive operation.
Monthly token and API-call usage is read from the fast counter store first;
if the counter is missing or the store is unavailable, it falls back to the
current month's aggregates in the database.  Storage is cumulative and is
always read from the quota row.

The validator never raises.  Infrastructure failures produce a generic
``allowed=False`` decision (fail closed), and business denials carry a
human-actionable reason.
"""

from __future__ import annotations

import logging
import math
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metering_engine.metering.counters import CounterRead, CounterStore, counter_key
from metering_engine.metering.events import CounterMetric
from metering_engine.periods import ensure_utc, month_start
from metering_engine.pricing import PlanTier
from metering_engine.services.aggregation import usage_percent
from metering_engine.state.repository import QuotaRepository, UsageAggregateRepository
from metering_engine.state.tables import UserQuotaTable

logger = logging.getLogger(__name__)

_SYSTEM_ERROR_REASON = "Quota validation failed due to system error. Please try again."
_PROCEED_ERROR_REASON = "System error during quota check. Please try again."
_QUOTA_NOT_FOUND_REASON = "User quota record not found. Please contact support."
_PAYG_REASON = "Quota exceeded but PAYG enabled. Overage charges will apply."


class QuotaType(str, Enum):
    """Quota dimensions that can be validated."""

    TOKENS = "tokens"
    API_CALLS = "api_calls"
    STORAGE = "storage"


# Monthly fast counters backing the monthly quotas.  Storage is cumulative,
# so it has no per-month counter and is always read from the quota row.
_COUNTER_METRICS: dict[QuotaType, CounterMetric] = {
    QuotaType.TOKENS: CounterMetric.AI_TOKENS,
    QuotaType.API_CALLS: CounterMetric.AI_CALLS,
}


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------


class TrialStatus(BaseModel):
    """Outcome of a free-trial expiry check."""

    expired: bool
    reason: str | None = None
    days_remaining: int | None = None
    can_extend: bool = False


class QuotaValidationResult(BaseModel):
    """Full allow/deny decision for one quota check."""

    allowed: bool
    reason: str | None = None
    current_usage: int = 0
    limit: int = 0
    remaining: int = 0
    usage_percent: int = 0
    alert_threshold: int | None = None
    overage_allowed: bool = False
    trial: TrialStatus | None = None


class ProceedDecision(BaseModel):
    """Reduced decision for call sites that only need to branch."""

    allowed: bool
    reason: str | None = None
    payg_allowed: bool = False


class QuotaStatus(BaseModel):
    """Usage snapshot for one quota dimension."""

    quota_type: QuotaType
    current_usage: int
    limit: int
    percentage_used: int
    remaining: int
    will_exceed: bool


def _denied(reason: str, trial: TrialStatus | None = None) -> QuotaValidationResult:
    return QuotaValidationResult(allowed=False, reason=reason, trial=trial)


def _limit_for(quota: UserQuotaTable, quota_type: QuotaType) -> int:
    if quota_type is QuotaType.TOKENS:
        return int(quota.monthly_token_limit)
    if quota_type is QuotaType.API_CALLS:
        return int(quota.monthly_api_call_limit)
    return int(quota.storage_limit_bytes)


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class QuotaValidator:
    """Decides whether a tenant may consume more of a quota dimension.

    Parameters
    ----------
    session_factory:
        Factory for the short read-only sessions used per check.
    counters:
        Fast counter store.  ``None`` always uses the database fallback.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        counters: CounterStore | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._counters = counters

    async def validate_quota(
        self,
        tenant_id: str,
        quota_type: QuotaType | str,
        requested_amount: int,
    ) -> QuotaValidationResult:
        """Decide whether *requested_amount* more of *quota_type* is allowed.

        The request is allowed when ``current + requested <= limit``.  Over
        the limit it is allowed only with PAYG enabled (``overage_allowed``
        set), otherwise denied with the current, limit, and requested
        amounts in the reason.
        """
        try:
            qtype = QuotaType(quota_type)
            async with self._session_factory() as session:
                quota = await QuotaRepository(session, tenant_id=tenant_id).get()
                if quota is None:
                    logger.warning("Quota record not found for tenant=%s", tenant_id)
                    return _denied(_QUOTA_NOT_FOUND_REASON)

                if quota.plan_tier == PlanTier.FREE_TRIAL.value:
                    trial = self.check_trial_expiration(quota)
                    if trial.expired:
                        return _denied(trial.reason or "Free trial expired.", trial=trial)

                current = await self._current_usage(session, tenant_id, qtype, quota)
        except Exception:
            logger.error(
                "Quota validation failed for tenant=%s type=%s requested=%s; denying",
                tenant_id,
                quota_type,
                requested_amount,
                exc_info=True,
            )
            return _denied(_SYSTEM_ERROR_REASON)

        limit = _limit_for(quota, qtype)
        remaining = max(0, limit - current)
        percent = usage_percent(current, limit)
        allow_overage = bool(quota.allow_overage)

        if current + requested_amount <= limit:
            return QuotaValidationResult(
                allowed=True,
                current_usage=current,
                limit=limit,
                remaining=remaining,
                usage_percent=percent,
                overage_allowed=allow_overage,
            )

        if allow_overage:
            logger.info(
                "Quota exceeded with PAYG: tenant=%s type=%s current=%d limit=%d requested=%d",
                tenant_id,
                qtype.value,
                current,
                limit,
                requested_amount,
            )
            return QuotaValidationResult(
                allowed=True,
                reason=_PAYG_REASON,
                current_usage=current,
                limit=limit,
                remaining=remaining,
                usage_percent=percent,
                alert_threshold=100,
                overage_allowed=True,
            )

        logger.warning(
            "Quota exceeded: tenant=%s type=%s current=%d limit=%d requested=%d",
            tenant_id,
            qtype.value,
            current,
            limit,
            requested_amount,
        )
        return QuotaValidationResult(
            allowed=False,
            reason=(
                f"{qtype.value} quota exceeded. Current: {current}, Limit: {limit}, "
                f"Requested: {requested_amount}. Please upgrade your plan."
            ),
            current_usage=current,
            limit=limit,
            remaining=remaining,
            usage_percent=percent,
            alert_threshold=100,
            overage_allowed=False,
        )

    async def can_proceed(self, tenant_id: str, quota_type: QuotaType | str, amount: int) -> ProceedDecision:
        """Thin wrapper over :meth:`validate_quota` returning only the decision."""
        try:
            result = await self.validate_quota(tenant_id, quota_type, amount)
        except Exception:
            logger.error("can_proceed failed for tenant=%s type=%s", tenant_id, quota_type, exc_info=True)
            return ProceedDecision(allowed=False, reason=_PROCEED_ERROR_REASON, payg_allowed=False)
        return ProceedDecision(
            allowed=result.allowed,
            reason=result.reason,
            payg_allowed=result.overage_allowed,
        )

    async def check_all_quotas(self, tenant_id: str) -> list[QuotaStatus]:
        """Usage snapshot for every quota dimension.

        Returns an empty list when the tenant has no quota row or the lookup
        fails.
        """
        try:
            async with self._session_factory() as session:
                quota = await QuotaRepository(session, tenant_id=tenant_id).get()
                if quota is None:
                    logger.warning("No quota limits for tenant=%s", tenant_id)
                    return []
                statuses: list[QuotaStatus] = []
                for qtype in QuotaType:
                    current = await self._current_usage(session, tenant_id, qtype, quota)
                    limit = _limit_for(quota, qtype)
                    statuses.append(
                        QuotaStatus(
                            quota_type=qtype,
                            current_usage=current,
                            limit=limit,
                            percentage_used=usage_percent(current, limit),
                            remaining=max(0, limit - current),
                            will_exceed=current >= limit,
                        )
                    )
                return statuses
        except Exception:
            logger.error("Failed to check quotas for tenant=%s", tenant_id, exc_info=True)
            return []

    def check_trial_expiration(self, quota: UserQuotaTable, now: datetime | None = None) -> TrialStatus:
        """Evaluate the free-trial window on *quota*.

        An unset expiry is a provisioning defect and does not block the
        tenant.  An expired trial can be extended once, tracked by
        ``trial_extended``.  Errors fail open.
        """
        try:
            now = now or datetime.now(UTC)
            if quota.trial_expires_at is None:
                logger.warning("Free trial tenant=%s has no expiration date", quota.tenant_id)
                return TrialStatus(
                    expired=False,
                    reason="Trial expiration date not set. Please contact support.",
                    can_extend=False,
                )

            expires_at = ensure_utc(quota.trial_expires_at)
            can_extend = not quota.trial_extended
            if now > expires_at:
                logger.info("Free trial expired for tenant=%s can_extend=%s", quota.tenant_id, can_extend)
                if can_extend:
                    reason = (
                        "Your free trial has expired. You can extend it for one more month by "
                        "providing feedback, or upgrade to a paid plan to continue using the service."
                    )
                else:
                    reason = "Your free trial has expired. Please upgrade to a paid plan to continue using the service."
                return TrialStatus(expired=True, reason=reason, days_remaining=0, can_extend=can_extend)

            days_remaining = math.ceil((expires_at - now).total_seconds() / 86400)
            return TrialStatus(expired=False, days_remaining=days_remaining, can_extend=can_extend)
        except Exception:
            logger.error("Error checking trial expiration for tenant=%s", quota.tenant_id, exc_info=True)
            return TrialStatus(expired=False, reason="Error checking trial status", can_extend=False)

    # -- Usage lookup --------------------------------------------------------

    async def _read_counter(self, tenant_id: str, quota_type: QuotaType) -> CounterRead:
        if self._counters is None:
            return CounterRead.unavailable()
        return await self._counters.get(counter_key(tenant_id, _COUNTER_METRICS[quota_type].value))

    async def _current_usage(
        self,
        session: AsyncSession,
        tenant_id: str,
        quota_type: QuotaType,
        quota: UserQuotaTable,
    ) -> int:
        if quota_type is QuotaType.STORAGE:
            return int(quota.current_storage_usage)
        read = await self._read_counter(tenant_id, quota_type)
        if read.is_found:
            return read.value
        logger.debug(
            "Counter %s for tenant=%s type=%s; using database",
            read.status.value,
            tenant_id,
            quota_type.value,
        )
        return await self._database_usage(session, tenant_id, quota_type, quota)

    async def _database_usage(
        self,
        session: AsyncSession,
        tenant_id: str,
        quota_type: QuotaType,
        quota: UserQuotaTable,
    ) -> int:
        """Current-month usage from aggregates, floored by the running counter."""
        totals = await UsageAggregateRepository(session, tenant_id=tenant_id).get_monthly_totals(
            month_start(datetime.now(UTC))
        )
        if quota_type is QuotaType.TOKENS:
            return max(totals["total_tokens"], int(quota.current_token_usage))
        return max(totals["total_api_calls"], int(quota.current_api_call_usage))
