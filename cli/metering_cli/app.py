"""Metering CLI application -- Typer-based operator interface.

Provides commands for schema setup, tenant provisioning, aggregation,
quota maintenance, invoicing, and PAYG management.  Human-readable output
goes to *stderr* via Rich; ``--json`` writes machine-readable results to
*stdout* so that scripts can compose cleanly.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

import typer
from rich.console import Console

from metering_cli.display import (
    display_invoice,
    display_invoice_history,
    display_payg_settings,
    display_preview,
    display_quota_status,
)
from metering_engine.config import load_settings
from metering_engine.periods import PeriodType, month_start, previous_bucket
from metering_engine.pricing import PlanTier
from metering_engine.runtime import MeteringRuntime
from metering_engine.services.billing import QuotaNotFoundError
from metering_engine.services.quota_validator import QuotaType
from metering_engine.telemetry import configure_logging

T = TypeVar("T")

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="metering",
    help="Usage metering, quota enforcement, and billing operations.",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output  # noqa: PLW0603
    _json_output = json_mode


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _build_runtime() -> MeteringRuntime:
    settings = load_settings()
    configure_logging(settings)
    return MeteringRuntime.from_settings(settings)


def _run(action: Callable[[MeteringRuntime], Awaitable[T]]) -> T:
    """Run *action* against a fresh runtime and close it afterwards."""
    runtime = _build_runtime()

    async def _main() -> T:
        try:
            return await action(runtime)
        finally:
            await runtime.aclose()

    return asyncio.run(_main())


def _emit_json(data: Any) -> None:
    sys.stdout.write(json.dumps(data, sort_keys=True, default=str) + "\n")


def _parse_month(value: str | None) -> datetime:
    """Parse ``YYYY-MM`` into the first instant of that month (UTC).

    ``None`` means the previous, already closed month.
    """
    if value is None:
        return previous_bucket(PeriodType.MONTHLY, datetime.now(UTC))
    try:
        parsed = datetime.strptime(value, "%Y-%m")
    except ValueError as exc:
        console.print(f"[red]Invalid month '{value}': expected YYYY-MM[/red]")
        raise typer.Exit(code=3) from exc
    return month_start(parsed)


def _parse_timestamp(value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        console.print(f"[red]Invalid timestamp '{value}': {exc}[/red]")
        raise typer.Exit(code=3) from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# Schema & provisioning
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create the metering tables in a local SQLite database."""
    try:
        _run(lambda rt: rt.create_tables())
    except RuntimeError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=3) from exc
    console.print("[green]Metering tables created.[/green]")


@app.command()
def provision(
    tenant_id: str = typer.Argument(..., help="Tenant to provision."),
    plan: PlanTier = typer.Option(PlanTier.FREE, "--plan", help="Plan tier."),
    trial_days: int | None = typer.Option(None, "--trial-days", help="Trial length for free_trial."),
) -> None:
    """Create a tenant's quota record from plan defaults."""
    created = _run(lambda rt: rt.provision_tenant(tenant_id, plan, trial_days=trial_days))
    if _json_output:
        _emit_json({"tenant_id": tenant_id, "plan_tier": plan.value, "created": created})
    elif created:
        console.print(f"[green]Provisioned tenant '{tenant_id}' on plan {plan.value}.[/green]")
    else:
        console.print(f"[yellow]Tenant '{tenant_id}' already has a quota record.[/yellow]")


# ---------------------------------------------------------------------------
# Aggregation & quota maintenance
# ---------------------------------------------------------------------------


@app.command()
def aggregate(
    period: PeriodType = typer.Argument(..., help="Bucket size: hourly, daily, or monthly."),
    at: str | None = typer.Option(None, "--at", help="ISO timestamp inside the bucket (default: now)."),
    tenant_id: str | None = typer.Option(None, "--tenant", help="Only aggregate this tenant."),
) -> None:
    """Roll usage events into aggregates for one bucket."""
    start = _parse_timestamp(at) or datetime.now(UTC)
    try:
        count = _run(lambda rt: rt.aggregator.aggregate(period, start, tenant_id=tenant_id))
    except Exception as exc:
        console.print(f"[red]Aggregation failed: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        _emit_json({"period_type": period.value, "at": start.isoformat(), "tenants": count})
    else:
        console.print(f"Aggregated [bold]{period.value}[/bold] usage for {count} tenant(s).")


@app.command("reset-quotas")
def reset_quotas() -> None:
    """Zero the monthly counters of quotas past their reset date."""
    count = _run(lambda rt: rt.aggregator.reset_expired_quotas())
    if _json_output:
        _emit_json({"reset": count})
    else:
        console.print(f"Reset {count} quota(s).")


@app.command("check-alerts")
def check_alerts(
    tenant_id: str | None = typer.Option(None, "--tenant", help="Only check this tenant."),
) -> None:
    """Record quota alerts for newly crossed usage thresholds."""
    if tenant_id is not None:
        _run(lambda rt: rt.aggregator.check_alert_thresholds(tenant_id))
        checked = 1
    else:
        checked = _run(lambda rt: rt.aggregator.check_all_alert_thresholds())
    if _json_output:
        _emit_json({"checked": checked})
    else:
        console.print(f"Checked alert thresholds for {checked} tenant(s).")


@app.command()
def quota(
    tenant_id: str = typer.Argument(..., help="Tenant to inspect."),
    check: QuotaType | None = typer.Option(None, "--check", help="Validate a request of this quota type."),
    amount: int = typer.Option(0, "--amount", min=0, help="Requested amount for --check."),
) -> None:
    """Show quota usage, or validate a prospective request with --check."""
    if check is not None:
        result = _run(lambda rt: rt.validator.validate_quota(tenant_id, check, amount))
        if _json_output:
            _emit_json(result.model_dump(mode="json"))
        elif result.allowed:
            console.print(f"[green]Allowed[/green] {result.reason or ''}".rstrip())
        else:
            console.print(f"[red]Denied[/red] {result.reason}")
        if not result.allowed:
            raise typer.Exit(code=1)
        return

    statuses = _run(lambda rt: rt.validator.check_all_quotas(tenant_id))
    if _json_output:
        _emit_json([status.model_dump(mode="json") for status in statuses])
    else:
        display_quota_status(console, tenant_id, statuses)


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


@app.command()
def invoice(
    tenant_id: str = typer.Argument(..., help="Tenant to bill."),
    month: str | None = typer.Option(None, "--month", help="Billing month YYYY-MM (default: last month)."),
    history: bool = typer.Option(False, "--history", help="List past invoices instead of generating."),
    limit: int = typer.Option(12, "--limit", min=1, help="Number of invoices for --history."),
) -> None:
    """Generate (or fetch) a tenant's monthly invoice."""
    if history:
        records = _run(lambda rt: rt.billing.get_invoice_history(tenant_id, limit))
        if _json_output:
            _emit_json([record.model_dump(mode="json") for record in records])
        else:
            display_invoice_history(console, records)
        return

    period_start = _parse_month(month)
    try:
        record = _run(lambda rt: rt.billing.generate_monthly_invoice(tenant_id, period_start))
    except Exception as exc:
        console.print(f"[red]Invoice generation failed: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        _emit_json(record.model_dump(mode="json"))
    else:
        display_invoice(console, record)


@app.command("invoice-all")
def invoice_all(
    month: str | None = typer.Option(None, "--month", help="Billing month YYYY-MM (default: last month)."),
) -> None:
    """Generate monthly invoices for every provisioned tenant."""
    period_start = _parse_month(month)
    count = _run(lambda rt: rt.billing.generate_all_monthly_invoices(period_start))
    if _json_output:
        _emit_json({"period_start": period_start.isoformat(), "invoices": count})
    else:
        console.print(f"Generated {count} invoice(s) for {period_start:%Y-%m}.")


@app.command()
def preview(tenant_id: str = typer.Argument(..., help="Tenant to preview.")) -> None:
    """Project the current month's invoice without storing it."""
    result = _run(lambda rt: rt.billing.get_current_period_preview(tenant_id))
    if _json_output:
        _emit_json(result.model_dump(mode="json"))
    else:
        display_preview(console, result)


@app.command()
def payg(
    tenant_id: str = typer.Argument(..., help="Tenant to manage."),
    action: str = typer.Argument("status", help="status | enable | disable | limit"),
    spending_limit: float = typer.Option(1000.0, "--limit", min=0, help="Spending limit for enable/limit."),
) -> None:
    """Inspect or change a tenant's pay-as-you-go setting."""

    async def _apply(rt: MeteringRuntime) -> Any:
        if action == "enable":
            await rt.billing.enable_payg(tenant_id, spending_limit)
        elif action == "disable":
            await rt.billing.disable_payg(tenant_id)
        elif action == "limit":
            if not await rt.billing.update_payg_limit(tenant_id, spending_limit):
                console.print(f"[yellow]PAYG is not enabled for '{tenant_id}'.[/yellow]")
        return await rt.billing.get_payg_settings(tenant_id)

    if action not in {"status", "enable", "disable", "limit"}:
        console.print(f"[red]Unknown action '{action}'. Use status, enable, disable, or limit.[/red]")
        raise typer.Exit(code=3)

    try:
        settings = _run(_apply)
    except QuotaNotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        _emit_json({"tenant_id": tenant_id, **settings.model_dump(mode="json")})
    else:
        display_payg_settings(console, tenant_id, settings)


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


@app.command()
def scheduler(
    once: bool = typer.Option(False, "--once", help="Run the due jobs once and exit."),
) -> None:
    """Run the periodic aggregation, alert, reset, and invoice jobs."""

    async def _serve(rt: MeteringRuntime) -> list[str]:
        sched = rt.scheduler()
        if once:
            return await sched.run_due_jobs()
        await sched.start()
        try:
            await sched.wait()
        finally:
            await sched.stop()
        return []

    try:
        ran = _run(_serve)
    except KeyboardInterrupt:
        console.print("[dim]Scheduler stopped.[/dim]")
        return

    if once:
        if _json_output:
            _emit_json({"jobs": ran})
        else:
            console.print(f"Ran: {', '.join(ran)}")
