"""Metering services: aggregation, quota validation, billing, and scheduling."""

from metering_engine.services.aggregation import ALERT_THRESHOLDS, UsageAggregator, usage_percent
from metering_engine.services.billing import BillingEngine, BillingRecord, InvoicePreview, PaygSettings, QuotaNotFoundError
from metering_engine.services.quota_validator import (
    ProceedDecision,
    QuotaStatus,
    QuotaType,
    QuotaValidationResult,
    QuotaValidator,
    TrialStatus,
)
from metering_engine.services.scheduler import MeteringScheduler

__all__ = [
    "ALERT_THRESHOLDS",
    "BillingEngine",
    "BillingRecord",
    "InvoicePreview",
    "MeteringScheduler",
    "PaygSettings",
    "ProceedDecision",
    "QuotaNotFoundError",
    "QuotaStatus",
    "QuotaType",
    "QuotaValidationResult",
    "QuotaValidator",
    "TrialStatus",
    "UsageAggregator",
    "usage_percent",
]
