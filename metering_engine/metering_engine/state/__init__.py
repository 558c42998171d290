"""State persistence layer using PostgreSQL (or SQLite in local mode)."""

from metering_engine.state.database import dispose_engine, get_engine, get_session_factory
from metering_engine.state.repository import (
    BillingRecordRepository,
    QuotaAdminRepository,
    QuotaAlertRepository,
    QuotaRepository,
    UsageAggregateRepository,
    UsageEventRepository,
    UsageRollupRepository,
)

__all__ = [
    "BillingRecordRepository",
    "QuotaAdminRepository",
    "QuotaAlertRepository",
    "QuotaRepository",
    "UsageAggregateRepository",
    "UsageEventRepository",
    "UsageRollupRepository",
    "dispose_engine",
    "get_engine",
    "get_session_factory",
]
