"""Tests for metering_cli/app.py -- the metering operator CLI.

Uses typer.testing.CliRunner to invoke each command against a fake
runtime, so the tests need neither a database nor Redis.  The runtime
factory ``metering_cli.app._build_runtime`` is patched for every test.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from metering_cli.app import app
from metering_engine.periods import PeriodType
from metering_engine.services.billing import (
    BillingRecord,
    InvoicePreview,
    PaygSettings,
    QuotaNotFoundError,
)
from metering_engine.services.quota_validator import QuotaStatus, QuotaType, QuotaValidationResult

runner = CliRunner()

MAY = datetime(2024, 5, 1, tzinfo=UTC)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _record(**overrides: object) -> BillingRecord:
    values: dict[str, object] = {
        "id": "inv-1",
        "tenant_id": "acme",
        "billing_period_start": MAY,
        "billing_period_end": datetime(2024, 5, 31, 23, 59, 59, 999999, tzinfo=UTC),
        "total_tokens": 250_000,
        "total_api_calls": 120,
        "total_storage_bytes": 4096,
        "base_cost": 25.0,
        "usage_cost": 1.75,
        "overage_cost": 0.0,
        "total_cost": 26.75,
        "status": "pending",
        "created_at": datetime(2024, 6, 1, tzinfo=UTC),
        "updated_at": datetime(2024, 6, 1, tzinfo=UTC),
    }
    values.update(overrides)
    return BillingRecord(**values)


def _runtime() -> MagicMock:
    rt = MagicMock()
    rt.aclose = AsyncMock()
    rt.create_tables = AsyncMock()
    rt.provision_tenant = AsyncMock(return_value=True)
    rt.aggregator.aggregate = AsyncMock(return_value=3)
    rt.aggregator.reset_expired_quotas = AsyncMock(return_value=2)
    rt.aggregator.check_alert_thresholds = AsyncMock()
    rt.aggregator.check_all_alert_thresholds = AsyncMock(return_value=4)
    rt.billing.generate_monthly_invoice = AsyncMock(return_value=_record())
    rt.billing.generate_all_monthly_invoices = AsyncMock(return_value=5)
    rt.billing.get_invoice_history = AsyncMock(return_value=[_record(), _record(id="inv-0")])
    rt.billing.get_payg_settings = AsyncMock(
        return_value=PaygSettings(enabled=True, spending_limit=1000.0, current_overage=0.1, overage_rate=0.000003)
    )
    rt.billing.enable_payg = AsyncMock()
    rt.billing.disable_payg = AsyncMock()
    rt.billing.update_payg_limit = AsyncMock(return_value=True)
    return rt


def _last_json(output: str) -> object:
    return json.loads(output.strip().splitlines()[-1])


@pytest.fixture
def rt():
    fake = _runtime()
    with patch("metering_cli.app._build_runtime", return_value=fake):
        yield fake


# ---------------------------------------------------------------------------
# Schema & provisioning
# ---------------------------------------------------------------------------


class TestInitDb:
    def test_creates_tables(self, rt) -> None:
        result = runner.invoke(app, ["init-db"])
        assert result.exit_code == 0, f"Output: {result.output}\n{result.exception}"
        rt.create_tables.assert_awaited_once()
        rt.aclose.assert_awaited_once()

    def test_postgres_url_exits_3(self, rt) -> None:
        rt.create_tables = AsyncMock(side_effect=RuntimeError("run alembic"))
        result = runner.invoke(app, ["init-db"])
        assert result.exit_code == 3
        rt.aclose.assert_awaited_once()


class TestProvision:
    def test_json_output(self, rt) -> None:
        result = runner.invoke(app, ["--json", "provision", "acme", "--plan", "pro"])
        assert result.exit_code == 0, f"Output: {result.output}\n{result.exception}"
        assert _last_json(result.stdout) == {"tenant_id": "acme", "plan_tier": "pro", "created": True}
        rt.provision_tenant.assert_awaited_once()

    def test_existing_tenant(self, rt) -> None:
        rt.provision_tenant = AsyncMock(return_value=False)
        result = runner.invoke(app, ["provision", "acme"])
        assert result.exit_code == 0
        assert "already" in result.output

    def test_unknown_plan_rejected(self, rt) -> None:
        result = runner.invoke(app, ["provision", "acme", "--plan", "platinum"])
        assert result.exit_code != 0


# ---------------------------------------------------------------------------
# Aggregation & maintenance
# ---------------------------------------------------------------------------


class TestAggregate:
    def test_aggregates_bucket(self, rt) -> None:
        result = runner.invoke(app, ["--json", "aggregate", "hourly", "--at", "2024-05-03T10:15:00"])
        assert result.exit_code == 0, f"Output: {result.output}\n{result.exception}"
        rt.aggregator.aggregate.assert_awaited_once_with(
            PeriodType.HOURLY, datetime(2024, 5, 3, 10, 15, tzinfo=UTC), tenant_id=None
        )
        assert _last_json(result.stdout)["tenants"] == 3

    def test_bad_timestamp_exits_3(self, rt) -> None:
        result = runner.invoke(app, ["aggregate", "daily", "--at", "yesterday"])
        assert result.exit_code == 3
        rt.aggregator.aggregate.assert_not_awaited()

    def test_failure_exits_3(self, rt) -> None:
        rt.aggregator.aggregate = AsyncMock(side_effect=RuntimeError("db down"))
        result = runner.invoke(app, ["aggregate", "monthly"])
        assert result.exit_code == 3
        assert "Aggregation failed" in result.output


class TestMaintenance:
    def test_reset_quotas(self, rt) -> None:
        result = runner.invoke(app, ["--json", "reset-quotas"])
        assert result.exit_code == 0
        assert _last_json(result.stdout) == {"reset": 2}

    def test_check_alerts_all(self, rt) -> None:
        result = runner.invoke(app, ["--json", "check-alerts"])
        assert result.exit_code == 0
        assert _last_json(result.stdout) == {"checked": 4}

    def test_check_alerts_one_tenant(self, rt) -> None:
        result = runner.invoke(app, ["check-alerts", "--tenant", "acme"])
        assert result.exit_code == 0
        rt.aggregator.check_alert_thresholds.assert_awaited_once_with("acme")


# ---------------------------------------------------------------------------
# Quotas
# ---------------------------------------------------------------------------


class TestQuota:
    def test_status_table(self, rt) -> None:
        rt.validator.check_all_quotas = AsyncMock(
            return_value=[
                QuotaStatus(
                    quota_type=QuotaType.TOKENS,
                    current_usage=85_000,
                    limit=100_000,
                    percentage_used=85,
                    remaining=15_000,
                    will_exceed=False,
                )
            ]
        )
        result = runner.invoke(app, ["quota", "acme"])
        assert result.exit_code == 0, f"Output: {result.output}\n{result.exception}"
        assert "tokens" in result.output

    def test_check_allowed(self, rt) -> None:
        rt.validator.validate_quota = AsyncMock(
            return_value=QuotaValidationResult(allowed=True, current_usage=10, limit=1000, remaining=990)
        )
        result = runner.invoke(app, ["--json", "quota", "acme", "--check", "api_calls", "--amount", "5"])
        assert result.exit_code == 0
        assert _last_json(result.stdout)["allowed"] is True
        rt.validator.validate_quota.assert_awaited_once_with("acme", QuotaType.API_CALLS, 5)

    def test_check_denied_exits_1(self, rt) -> None:
        rt.validator.validate_quota = AsyncMock(
            return_value=QuotaValidationResult(allowed=False, reason="api_calls quota exceeded.")
        )
        result = runner.invoke(app, ["quota", "acme", "--check", "api_calls", "--amount", "100"])
        assert result.exit_code == 1
        assert "Denied" in result.output


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


class TestInvoice:
    def test_generates_for_month(self, rt) -> None:
        result = runner.invoke(app, ["--json", "invoice", "acme", "--month", "2024-05"])
        assert result.exit_code == 0, f"Output: {result.output}\n{result.exception}"
        rt.billing.generate_monthly_invoice.assert_awaited_once_with("acme", MAY)
        payload = _last_json(result.stdout)
        assert payload["id"] == "inv-1"
        assert payload["total_cost"] == 26.75

    def test_human_output(self, rt) -> None:
        result = runner.invoke(app, ["invoice", "acme", "--month", "2024-05"])
        assert result.exit_code == 0
        assert "inv-1" in result.output

    def test_bad_month_exits_3(self, rt) -> None:
        result = runner.invoke(app, ["invoice", "acme", "--month", "May 2024"])
        assert result.exit_code == 3
        rt.billing.generate_monthly_invoice.assert_not_awaited()

    def test_generation_failure_exits_3(self, rt) -> None:
        rt.billing.generate_monthly_invoice = AsyncMock(side_effect=RuntimeError("db down"))
        result = runner.invoke(app, ["invoice", "acme", "--month", "2024-05"])
        assert result.exit_code == 3

    def test_history(self, rt) -> None:
        result = runner.invoke(app, ["--json", "invoice", "acme", "--history", "--limit", "2"])
        assert result.exit_code == 0
        assert [r["id"] for r in _last_json(result.stdout)] == ["inv-1", "inv-0"]
        rt.billing.get_invoice_history.assert_awaited_once_with("acme", 2)
        rt.billing.generate_monthly_invoice.assert_not_awaited()

    def test_invoice_all(self, rt) -> None:
        result = runner.invoke(app, ["--json", "invoice-all", "--month", "2024-05"])
        assert result.exit_code == 0
        assert _last_json(result.stdout)["invoices"] == 5
        rt.billing.generate_all_monthly_invoices.assert_awaited_once_with(MAY)


class TestPreview:
    def test_renders_breakdown(self, rt) -> None:
        rt.billing.get_current_period_preview = AsyncMock(
            return_value=InvoicePreview(
                tenant_id="acme",
                billing_period_start=datetime(2024, 6, 1, tzinfo=UTC),
                billing_period_end=datetime(2024, 6, 30, 23, 59, 59, tzinfo=UTC),
                plan_tier="pro",
                total_tokens=2000,
                total_api_calls=1,
                total_storage_bytes=0,
                base_cost=25.0,
                usage_cost=0.006,
                overage_cost=0.0,
                total_cost=25.006,
                breakdown={
                    "ai": {"events": 1, "tokens": 2000, "cost": 0.006},
                    "total": {"events": 1, "cost": 0.006},
                },
            )
        )
        result = runner.invoke(app, ["preview", "acme"])
        assert result.exit_code == 0, f"Output: {result.output}\n{result.exception}"
        assert "Invoice Preview" in result.output
        assert "2,000 tokens" in result.output


class TestPayg:
    def test_status(self, rt) -> None:
        result = runner.invoke(app, ["--json", "payg", "acme"])
        assert result.exit_code == 0
        payload = _last_json(result.stdout)
        assert payload["tenant_id"] == "acme"
        assert payload["enabled"] is True
        rt.billing.enable_payg.assert_not_awaited()

    def test_enable_with_limit(self, rt) -> None:
        result = runner.invoke(app, ["payg", "acme", "enable", "--limit", "250"])
        assert result.exit_code == 0, f"Output: {result.output}\n{result.exception}"
        rt.billing.enable_payg.assert_awaited_once_with("acme", 250.0)

    def test_disable(self, rt) -> None:
        result = runner.invoke(app, ["payg", "acme", "disable"])
        assert result.exit_code == 0
        rt.billing.disable_payg.assert_awaited_once_with("acme")

    def test_unknown_action_exits_3(self, rt) -> None:
        result = runner.invoke(app, ["payg", "acme", "toggle"])
        assert result.exit_code == 3

    def test_unknown_tenant_exits_3(self, rt) -> None:
        rt.billing.get_payg_settings = AsyncMock(side_effect=QuotaNotFoundError("ghost"))
        result = runner.invoke(app, ["payg", "ghost"])
        assert result.exit_code == 3


class TestScheduler:
    def test_once(self, rt) -> None:
        sched = MagicMock()
        sched.run_due_jobs = AsyncMock(return_value=["reset_quotas", "aggregate_hourly"])
        rt.scheduler.return_value = sched

        result = runner.invoke(app, ["--json", "scheduler", "--once"])

        assert result.exit_code == 0, f"Output: {result.output}\n{result.exception}"
        assert _last_json(result.stdout) == {"jobs": ["reset_quotas", "aggregate_hourly"]}
        rt.aclose.assert_awaited_once()
