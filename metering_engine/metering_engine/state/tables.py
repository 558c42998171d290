"""SQLAlchemy 2.0 ORM table definitions for the metering state store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by Alembic migrations and the repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: uses JSONB on PostgreSQL for GIN indexing and
# query operators, falls back to plain JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")

# Per-event costs are fractions of a cent; keep enough scale for one token.
_EventCost = Numeric(20, 10)
_Money = Numeric(14, 6)


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all metering tables."""


# ---------------------------------------------------------------------------
# Usage events
# ---------------------------------------------------------------------------


class UsageEventTable(Base):
    """Append-only log of billable operations.

    Each row captures a single billable action (tokens consumed, bytes
    uploaded, pages extracted, ...) with its computed cost.  Rows are never
    updated; the aggregator re-reads them to build ``usage_aggregates``.
    """

    __tablename__ = "usage_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(36), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    unit: Mapped[str] = mapped_column(String(32), nullable=False)
    cost: Mapped[float] = mapped_column(_EventCost, nullable=False, default=0)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "category IN ('storage','processing','embeddings','search','ai')",
            name="ck_usage_events_category",
        ),
        Index("ix_usage_events_tenant_created", "tenant_id", "created_at"),
        Index("ix_usage_events_created_category", "created_at", "category"),
        Index("ix_usage_events_resource", "resource_id"),
    )


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


class UsageAggregateTable(Base):
    """Per-tenant usage rollup for one hourly, daily, or monthly bucket.

    The ``(tenant_id, period_type, period_start)`` unique constraint is the
    conflict target for the aggregator's upsert, so a bucket only ever has
    one row no matter how many times it is re-aggregated.
    """

    __tablename__ = "usage_aggregates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period_type: Mapped[str] = mapped_column(String(16), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    total_events: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_api_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_cost: Mapped[float] = mapped_column(_EventCost, nullable=False, default=0)
    category_breakdown: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "period_type", "period_start", name="uq_usage_aggregates_period"),
        CheckConstraint(
            "period_type IN ('hourly','daily','monthly')",
            name="ck_usage_aggregates_period_type",
        ),
        Index("ix_usage_aggregates_type_start", "period_type", "period_start"),
    )


# ---------------------------------------------------------------------------
# Quotas
# ---------------------------------------------------------------------------


class UserQuotaTable(Base):
    """Plan limits and running usage counters for a tenant.

    The ``current_*`` columns are running counters that are zeroed by the
    monthly quota reset; they are independent of ``usage_aggregates``.
    """

    __tablename__ = "user_quotas"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    plan_tier: Mapped[str] = mapped_column(String(32), nullable=False, default="free")
    monthly_token_limit: Mapped[int] = mapped_column(BigInteger, nullable=False)
    current_token_usage: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    monthly_api_call_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    current_api_call_usage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    storage_limit_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    current_storage_usage: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    quota_reset_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_reset_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    allow_overage: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    overage_rate: Mapped[float | None] = mapped_column(Numeric(20, 10), nullable=True)
    trial_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    trial_extended: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (Index("ix_user_quotas_reset_at", "quota_reset_at"),)


class QuotaAlertTable(Base):
    """Threshold crossings recorded by the aggregator.

    Consumed by notifiers.  Deduplication is a lookup before insert, so the
    table deliberately carries no uniqueness constraint on the threshold.
    """

    __tablename__ = "quota_alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    quota_type: Mapped[str] = mapped_column(String(32), nullable=False)
    threshold_percent: Mapped[int] = mapped_column(Integer, nullable=False)
    threshold_value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    current_usage: Mapped[int] = mapped_column(BigInteger, nullable=False)
    alerted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "threshold_percent IN (50, 80, 90, 100)",
            name="ck_quota_alerts_threshold",
        ),
        Index(
            "ix_quota_alerts_lookup",
            "tenant_id",
            "quota_type",
            "threshold_percent",
            "alerted_at",
        ),
    )


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


class BillingRecordTable(Base):
    """Monthly invoice for a tenant.

    At most one row exists per ``(tenant_id, billing_period_start)``; the
    billing engine returns the existing row instead of recomputing it.
    """

    __tablename__ = "billing_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    billing_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    billing_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    total_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_api_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_storage_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    base_cost: Mapped[float] = mapped_column(_Money, nullable=False, default=0)
    usage_cost: Mapped[float] = mapped_column(_Money, nullable=False, default=0)
    overage_cost: Mapped[float] = mapped_column(_Money, nullable=False, default=0)
    total_cost: Mapped[float] = mapped_column(_Money, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "billing_period_start", name="uq_billing_records_period"),
        CheckConstraint(
            "status IN ('pending','paid','failed','void')",
            name="ck_billing_records_status",
        ),
        Index("ix_billing_records_tenant_start", "tenant_id", "billing_period_start"),
    )
