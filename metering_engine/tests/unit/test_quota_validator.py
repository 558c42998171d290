"""Tests for pre-flight quota validation."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from metering_engine.metering.counters import CounterRead, counter_key
from metering_engine.periods import month_start
from metering_engine.services.quota_validator import QuotaType, QuotaValidator
from metering_engine.state.repository import UsageAggregateRepository

TENANT = "tenant-q"


async def _set_counter(counters, metric: str, value: int) -> None:
    await counters.increment(counter_key(TENANT, metric), value)


class TestValidateQuota:
    @pytest.mark.asyncio
    async def test_allows_within_limit(self, session_factory, counters, provision) -> None:
        await provision(TENANT, monthly_api_call_limit=1000)
        await _set_counter(counters, "ai_calls", 100)

        result = await QuotaValidator(session_factory, counters).validate_quota(TENANT, QuotaType.API_CALLS, 10)

        assert result.allowed is True
        assert result.reason is None
        assert result.current_usage == 100
        assert result.remaining == 900
        assert result.usage_percent == 10

    @pytest.mark.asyncio
    async def test_exactly_at_limit_is_allowed(self, session_factory, counters, provision) -> None:
        await provision(TENANT, monthly_api_call_limit=1000)
        await _set_counter(counters, "ai_calls", 950)

        result = await QuotaValidator(session_factory, counters).validate_quota(TENANT, "api_calls", 50)

        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_denies_over_limit_without_payg(self, session_factory, counters, provision) -> None:
        await provision(TENANT, monthly_api_call_limit=1000)
        await _set_counter(counters, "ai_calls", 950)

        result = await QuotaValidator(session_factory, counters).validate_quota(TENANT, "api_calls", 100)

        assert result.allowed is False
        assert result.reason == (
            "api_calls quota exceeded. Current: 950, Limit: 1000, Requested: 100. Please upgrade your plan."
        )
        assert result.current_usage == 950
        assert result.limit == 1000
        assert result.remaining == 50
        assert result.usage_percent == 95
        assert result.alert_threshold == 100
        assert result.overage_allowed is False

    @pytest.mark.asyncio
    async def test_allows_over_limit_with_payg(self, session_factory, counters, provision) -> None:
        await provision(TENANT, monthly_api_call_limit=1000, allow_overage=True)
        await _set_counter(counters, "ai_calls", 950)

        result = await QuotaValidator(session_factory, counters).validate_quota(TENANT, "api_calls", 100)

        assert result.allowed is True
        assert result.overage_allowed is True
        assert result.alert_threshold == 100
        assert "PAYG" in (result.reason or "")

    @pytest.mark.asyncio
    async def test_missing_quota_is_denied(self, session_factory, counters) -> None:
        result = await QuotaValidator(session_factory, counters).validate_quota("ghost", "tokens", 1)

        assert result.allowed is False
        assert result.reason == "User quota record not found. Please contact support."

    @pytest.mark.asyncio
    async def test_system_error_fails_closed(self) -> None:
        factory = MagicMock(side_effect=RuntimeError("db down"))

        result = await QuotaValidator(factory).validate_quota(TENANT, "tokens", 1)

        assert result.allowed is False
        assert "system error" in (result.reason or "").lower()

    @pytest.mark.asyncio
    async def test_unknown_quota_type_fails_closed(self, session_factory, provision) -> None:
        await provision(TENANT)
        result = await QuotaValidator(session_factory).validate_quota(TENANT, "bandwidth", 1)
        assert result.allowed is False


class TestUsageFallback:
    @pytest.mark.asyncio
    async def test_unavailable_counter_uses_aggregates(self, session_factory, provision) -> None:
        await provision(TENANT)
        async with session_factory() as session:
            await UsageAggregateRepository(session, tenant_id=TENANT).upsert(
                period_type="monthly",
                period_start=month_start(datetime.now(UTC)),
                total_events=10,
                total_tokens=42_000,
                total_api_calls=12,
                total_cost=0.5,
                category_breakdown={"ai": 0.5},
            )
            await session.commit()
        store = MagicMock()
        store.get = AsyncMock(return_value=CounterRead.unavailable())

        result = await QuotaValidator(session_factory, store).validate_quota(TENANT, "tokens", 1000)

        assert result.allowed is True
        assert result.current_usage == 42_000

    @pytest.mark.asyncio
    async def test_missing_counter_uses_running_usage(self, session_factory, counters, provision) -> None:
        await provision(TENANT, current_token_usage=99_500)

        result = await QuotaValidator(session_factory, counters).validate_quota(TENANT, "tokens", 1000)

        assert result.allowed is False
        assert result.current_usage == 99_500

    @pytest.mark.asyncio
    async def test_storage_reads_quota_row(self, session_factory, provision) -> None:
        await provision(TENANT, current_storage_usage=1024)

        result = await QuotaValidator(session_factory).validate_quota(TENANT, QuotaType.STORAGE, 1024)

        assert result.current_usage == 1024
        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_storage_ignores_monthly_upload_counter(self, session_factory, counters, provision) -> None:
        stored = int(9.9 * 1024 * 1024)
        await provision(TENANT, current_storage_usage=stored)
        # This month's uploads only; the quota row holds the cumulative total.
        await _set_counter(counters, "storage_bytes", 1024)

        result = await QuotaValidator(session_factory, counters).validate_quota(TENANT, "storage", 1024 * 1024)

        assert result.allowed is False
        assert result.current_usage == stored
        assert result.remaining == 10 * 1024 * 1024 - stored


class TestTrial:
    @pytest.mark.asyncio
    async def test_expired_trial_is_denied(self, session_factory, counters, provision) -> None:
        await provision(TENANT, "free_trial", trial_expires_at=datetime.now(UTC) - timedelta(days=1))

        result = await QuotaValidator(session_factory, counters).validate_quota(TENANT, "tokens", 1)

        assert result.allowed is False
        assert result.trial is not None
        assert result.trial.expired is True
        assert result.trial.can_extend is True

    @pytest.mark.asyncio
    async def test_active_trial_is_allowed(self, session_factory, counters, provision) -> None:
        await provision(TENANT, "free_trial")

        result = await QuotaValidator(session_factory, counters).validate_quota(TENANT, "tokens", 1)

        assert result.allowed is True

    def test_extended_trial_cannot_extend_again(self) -> None:
        quota = SimpleNamespace(
            tenant_id=TENANT,
            trial_expires_at=datetime(2024, 1, 1, tzinfo=UTC),
            trial_extended=True,
        )
        status = QuotaValidator(MagicMock()).check_trial_expiration(quota, now=datetime(2024, 2, 1, tzinfo=UTC))
        assert status.expired is True
        assert status.can_extend is False
        assert "upgrade" in (status.reason or "")

    def test_days_remaining(self) -> None:
        quota = SimpleNamespace(
            tenant_id=TENANT,
            trial_expires_at=datetime(2024, 1, 10, 12, tzinfo=UTC),
            trial_extended=False,
        )
        status = QuotaValidator(MagicMock()).check_trial_expiration(quota, now=datetime(2024, 1, 1, tzinfo=UTC))
        assert status.expired is False
        assert status.days_remaining == 10

    def test_missing_expiry_fails_open(self) -> None:
        quota = SimpleNamespace(tenant_id=TENANT, trial_expires_at=None, trial_extended=False)
        status = QuotaValidator(MagicMock()).check_trial_expiration(quota)
        assert status.expired is False


class TestCanProceedAndStatus:
    @pytest.mark.asyncio
    async def test_can_proceed_reports_payg(self, session_factory, counters, provision) -> None:
        await provision(TENANT, allow_overage=True, monthly_api_call_limit=10)
        await _set_counter(counters, "ai_calls", 10)

        decision = await QuotaValidator(session_factory, counters).can_proceed(TENANT, "api_calls", 1)

        assert decision.allowed is True
        assert decision.payg_allowed is True

    @pytest.mark.asyncio
    async def test_check_all_quotas(self, session_factory, counters, provision) -> None:
        await provision(TENANT, current_storage_usage=5 * 1024 * 1024)
        await _set_counter(counters, "ai_tokens", 100_000)

        statuses = {s.quota_type: s for s in await QuotaValidator(session_factory, counters).check_all_quotas(TENANT)}

        assert set(statuses) == set(QuotaType)
        assert statuses[QuotaType.TOKENS].will_exceed is True
        assert statuses[QuotaType.TOKENS].remaining == 0
        assert statuses[QuotaType.STORAGE].percentage_used == 50

    @pytest.mark.asyncio
    async def test_check_all_quotas_without_row(self, session_factory) -> None:
        assert await QuotaValidator(session_factory).check_all_quotas("ghost") == []
