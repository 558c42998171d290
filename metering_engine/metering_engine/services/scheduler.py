"""Background scheduler for aggregation, alerting, quota reset, and invoicing.

Runs as an ``asyncio`` background task.  Each poll it works out which
buckets have closed since the previous poll and runs the matching jobs,
in this order:

* each new hour -- aggregate the previous hourly bucket;
* each new day -- aggregate the previous daily bucket and check alerts;
* each new month -- aggregate the previous month and generate invoices;
* every poll -- reset quotas whose reset date has passed.

The reset runs last because alerts and PAYG overage read the running
quota counters it zeroes.

Every job is idempotent, so a bucket re-run after a restart converges on
the same state.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from sqlalchemy.exc import InterfaceError, OperationalError

from metering_engine.periods import PeriodType, previous_bucket
from metering_engine.services.aggregation import UsageAggregator
from metering_engine.services.billing import BillingEngine

logger = logging.getLogger(__name__)

DEFAULT_POLL_SECONDS = 60.0


class MeteringScheduler:
    """AsyncIO background task driving the periodic metering jobs.

    Parameters
    ----------
    aggregator:
        Aggregator used for rollups, alert checks, and quota reset.
    billing:
        Billing engine used for month-close invoices.  ``None`` skips
        invoice generation.
    poll_seconds:
        Delay between polls.
    """

    def __init__(
        self,
        aggregator: UsageAggregator,
        billing: BillingEngine | None = None,
        poll_seconds: float = DEFAULT_POLL_SECONDS,
    ) -> None:
        self._aggregator = aggregator
        self._billing = billing
        self._poll_seconds = poll_seconds
        self._running = False
        self._task: asyncio.Task[None] | None = None
        # Start of the last bucket each job completed, keyed by period type.
        self._last_run: dict[PeriodType, datetime] = {}

    @property
    def running(self) -> bool:
        """Whether the scheduler loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the scheduler background task."""
        if self._running:
            logger.warning("MeteringScheduler already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("MeteringScheduler started (poll=%.0fs)", self._poll_seconds)

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("MeteringScheduler stopped")

    async def wait(self) -> None:
        """Block until the loop exits, re-raising an unexpected loop error."""
        if self._task is not None:
            await self._task

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_due_jobs()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("MeteringScheduler database error: %s", exc, exc_info=True)
            except Exception as exc:
                logger.critical("MeteringScheduler unexpected error: %s", exc, exc_info=True)
                self._running = False
                raise
            await asyncio.sleep(self._poll_seconds)

    async def run_due_jobs(self, now: datetime | None = None) -> list[str]:
        """Run every job whose bucket has closed since it last ran.

        Returns
        -------
        list[str]
            Names of the jobs that ran, in order.
        """
        now = now or datetime.now(UTC)
        ran: list[str] = []

        hour = previous_bucket(PeriodType.HOURLY, now)
        if self._last_run.get(PeriodType.HOURLY) != hour:
            await self._aggregator.aggregate(PeriodType.HOURLY, hour)
            self._last_run[PeriodType.HOURLY] = hour
            ran.append("aggregate_hourly")

        day = previous_bucket(PeriodType.DAILY, now)
        if self._last_run.get(PeriodType.DAILY) != day:
            await self._aggregator.aggregate(PeriodType.DAILY, day)
            await self._aggregator.check_all_alert_thresholds()
            self._last_run[PeriodType.DAILY] = day
            ran.extend(["aggregate_daily", "check_alerts"])

        month = previous_bucket(PeriodType.MONTHLY, now)
        if now.day == 1 and self._last_run.get(PeriodType.MONTHLY) != month:
            await self._aggregator.aggregate(PeriodType.MONTHLY, month)
            ran.append("aggregate_monthly")
            if self._billing is not None:
                await self._billing.generate_all_monthly_invoices(month)
                ran.append("generate_invoices")
            self._last_run[PeriodType.MONTHLY] = month

        # Must follow invoicing: the reset zeroes the counters overage is billed from.
        await self._aggregator.reset_expired_quotas(now)
        ran.append("reset_quotas")

        logger.debug(
            "MeteringScheduler poll at %s ran: %s",
            now.isoformat(),
            ", ".join(ran),
            extra={"job": "poll"},
        )
        return ran
