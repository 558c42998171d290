"""Rich output formatting for the metering CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from metering_engine.services.billing import BillingRecord, InvoicePreview, PaygSettings
    from metering_engine.services.quota_validator import QuotaStatus


# ---------------------------------------------------------------------------
# Colour helpers
# ---------------------------------------------------------------------------

_STATUS_COLOURS: dict[str, str] = {
    "pending": "yellow",
    "paid": "green",
    "failed": "red",
    "void": "dim",
}


def _coloured_status(status: str) -> str:
    """Return a Rich markup string with the invoice status colour-coded."""
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


def _usage_colour(percent: int) -> str:
    if percent >= 100:
        return "red"
    if percent >= 80:
        return "yellow"
    return "green"


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


def display_invoice(console: Console, record: BillingRecord) -> None:
    """Render one stored invoice as a panel."""
    lines = [
        f"[bold]Invoice:[/bold]   {record.id}",
        f"[bold]Tenant:[/bold]    {record.tenant_id}",
        f"[bold]Period:[/bold]    {record.billing_period_start:%Y-%m-%d} .. {record.billing_period_end:%Y-%m-%d}",
        f"[bold]Status:[/bold]    {_coloured_status(record.status)}",
        "",
        f"Tokens:      {record.total_tokens:,}",
        f"API calls:   {record.total_api_calls:,}",
        f"Storage:     {record.total_storage_bytes:,} bytes",
        "",
        f"Base:        ${record.base_cost:.2f}",
        f"Usage:       ${record.usage_cost:.4f}",
        f"Overage:     ${record.overage_cost:.4f}",
        f"[bold]Total:       ${record.total_cost:.2f}[/bold]",
    ]
    console.print(Panel("\n".join(lines), title="Monthly Invoice", border_style="blue"))


def display_invoice_history(console: Console, records: list[BillingRecord]) -> None:
    """Render a table of past invoices, newest first."""
    if not records:
        console.print("[dim]No invoices found.[/dim]")
        return

    table = Table(title="Invoice History", show_lines=False)
    table.add_column("Period", style="bold")
    table.add_column("Status")
    table.add_column("Tokens", justify="right")
    table.add_column("API calls", justify="right")
    table.add_column("Total", justify="right")

    for record in records:
        table.add_row(
            f"{record.billing_period_start:%Y-%m}",
            _coloured_status(record.status),
            f"{record.total_tokens:,}",
            f"{record.total_api_calls:,}",
            f"${record.total_cost:.2f}",
        )
    console.print(table)


def display_preview(console: Console, preview: InvoicePreview) -> None:
    """Render the current-period projection with its category breakdown."""
    console.print(
        Panel(
            "\n".join(
                [
                    f"[bold]Tenant:[/bold]  {preview.tenant_id}",
                    f"[bold]Plan:[/bold]    {preview.plan_tier}",
                    f"[bold]Period:[/bold]  {preview.billing_period_start:%Y-%m-%d} .. "
                    f"{preview.billing_period_end:%Y-%m-%d}",
                    f"[bold]Projected total:[/bold] ${preview.total_cost:.2f} "
                    f"(base ${preview.base_cost:.2f} + usage ${preview.usage_cost:.4f} "
                    f"+ overage ${preview.overage_cost:.4f})",
                ]
            ),
            title="Invoice Preview",
            border_style="cyan",
        )
    )
    display_usage_breakdown(console, preview.breakdown)


def display_usage_breakdown(console: Console, breakdown: dict[str, dict[str, Any]]) -> None:
    """Render per-category events, quantity, and cost."""
    table = Table(title="Usage by Category", show_lines=False)
    table.add_column("Category", style="bold")
    table.add_column("Events", justify="right")
    table.add_column("Quantity", justify="right")
    table.add_column("Cost", justify="right")

    for category, values in breakdown.items():
        if category == "total":
            continue
        quantity_field = next((key for key in values if key not in ("events", "cost")), None)
        quantity = values.get(quantity_field, 0) if quantity_field else 0
        label = f"{quantity:,} {quantity_field}" if quantity_field else "-"
        table.add_row(category, f"{values['events']:,}", label, f"${values['cost']:.6f}")

    total = breakdown.get("total", {"events": 0, "cost": 0.0})
    table.add_row("[bold]total[/bold]", f"{total['events']:,}", "", f"[bold]${total['cost']:.6f}[/bold]")
    console.print(table)


# ---------------------------------------------------------------------------
# Quotas
# ---------------------------------------------------------------------------


def display_quota_status(console: Console, tenant_id: str, statuses: list[QuotaStatus]) -> None:
    """Render current usage against each quota limit."""
    if not statuses:
        console.print(f"[yellow]No quota record for tenant '{tenant_id}'.[/yellow]")
        return

    table = Table(title=f"Quota Usage: {tenant_id}", show_lines=False)
    table.add_column("Quota", style="bold")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("%", justify="right")
    table.add_column("Remaining", justify="right")

    for status in statuses:
        colour = _usage_colour(status.percentage_used)
        table.add_row(
            status.quota_type.value,
            f"{status.current_usage:,}",
            f"{status.limit:,}",
            f"[{colour}]{status.percentage_used}%[/{colour}]",
            f"{status.remaining:,}",
        )
    console.print(table)


def display_payg_settings(console: Console, tenant_id: str, settings: PaygSettings) -> None:
    """Render a tenant's pay-as-you-go state."""
    state = "[green]enabled[/green]" if settings.enabled else "[dim]disabled[/dim]"
    rate = f"{settings.overage_rate:.8f}" if settings.overage_rate is not None else "-"
    console.print(
        Panel(
            "\n".join(
                [
                    f"[bold]Tenant:[/bold]          {tenant_id}",
                    f"[bold]PAYG:[/bold]            {state}",
                    f"[bold]Spending limit:[/bold]  ${settings.spending_limit:.2f}",
                    f"[bold]Overage rate:[/bold]    {rate}",
                    f"[bold]Current overage:[/bold] ${settings.current_overage:.4f}",
                ]
            ),
            title="Pay-As-You-Go",
            border_style="magenta",
        )
    )
