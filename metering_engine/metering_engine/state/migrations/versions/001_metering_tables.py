"""Create the metering tables.

Creates ``usage_events``, ``usage_aggregates``, ``user_quotas``,
``quota_alerts``, and ``billing_records``.

Revision ID: 001
Revises:
Create Date: 2026-03-02 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JsonType = JSONB().with_variant(sa.JSON(), "sqlite")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "usage_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("resource_id", sa.String(36), nullable=False),
        sa.Column("category", sa.String(32), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("quantity", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("unit", sa.String(32), nullable=False),
        sa.Column("cost", sa.Numeric(20, 10), nullable=False, server_default="0"),
        sa.Column("metadata_json", _JsonType, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "category IN ('storage','processing','embeddings','search','ai')",
            name="ck_usage_events_category",
        ),
    )
    op.create_index("ix_usage_events_tenant_created", "usage_events", ["tenant_id", "created_at"])
    op.create_index("ix_usage_events_created_category", "usage_events", ["created_at", "category"])
    op.create_index("ix_usage_events_resource", "usage_events", ["resource_id"])

    op.create_table(
        "usage_aggregates",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("period_type", sa.String(16), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_events", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_tokens", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_api_calls", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_cost", sa.Numeric(20, 10), nullable=False, server_default="0"),
        sa.Column("category_breakdown", _JsonType, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "period_type", "period_start", name="uq_usage_aggregates_period"),
        sa.CheckConstraint(
            "period_type IN ('hourly','daily','monthly')",
            name="ck_usage_aggregates_period_type",
        ),
    )
    op.create_index("ix_usage_aggregates_type_start", "usage_aggregates", ["period_type", "period_start"])

    op.create_table(
        "user_quotas",
        sa.Column("tenant_id", sa.String(64), primary_key=True),
        sa.Column("plan_tier", sa.String(32), nullable=False, server_default="free"),
        sa.Column("monthly_token_limit", sa.BigInteger(), nullable=False),
        sa.Column("current_token_usage", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("monthly_api_call_limit", sa.Integer(), nullable=False),
        sa.Column("current_api_call_usage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("storage_limit_bytes", sa.BigInteger(), nullable=False),
        sa.Column("current_storage_usage", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("quota_reset_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("allow_overage", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("overage_rate", sa.Numeric(20, 10), nullable=True),
        sa.Column("trial_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_extended", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index("ix_user_quotas_reset_at", "user_quotas", ["quota_reset_at"])

    op.create_table(
        "quota_alerts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("quota_type", sa.String(32), nullable=False),
        sa.Column("threshold_percent", sa.Integer(), nullable=False),
        sa.Column("threshold_value", sa.BigInteger(), nullable=False),
        sa.Column("current_usage", sa.BigInteger(), nullable=False),
        sa.Column("alerted_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("threshold_percent IN (50, 80, 90, 100)", name="ck_quota_alerts_threshold"),
    )
    op.create_index(
        "ix_quota_alerts_lookup",
        "quota_alerts",
        ["tenant_id", "quota_type", "threshold_percent", "alerted_at"],
    )

    op.create_table(
        "billing_records",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("billing_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("billing_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_tokens", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_api_calls", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_storage_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("base_cost", sa.Numeric(14, 6), nullable=False, server_default="0"),
        sa.Column("usage_cost", sa.Numeric(14, 6), nullable=False, server_default="0"),
        sa.Column("overage_cost", sa.Numeric(14, 6), nullable=False, server_default="0"),
        sa.Column("total_cost", sa.Numeric(14, 6), nullable=False, server_default="0"),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "billing_period_start", name="uq_billing_records_period"),
        sa.CheckConstraint(
            "status IN ('pending','paid','failed','void')",
            name="ck_billing_records_status",
        ),
    )
    op.create_index(
        "ix_billing_records_tenant_start",
        "billing_records",
        ["tenant_id", "billing_period_start"],
    )


def downgrade() -> None:
    op.drop_index("ix_billing_records_tenant_start")
    op.drop_table("billing_records")
    op.drop_index("ix_quota_alerts_lookup")
    op.drop_table("quota_alerts")
    op.drop_index("ix_user_quotas_reset_at")
    op.drop_table("user_quotas")
    op.drop_index("ix_usage_aggregates_type_start")
    op.drop_table("usage_aggregates")
    op.drop_index("ix_usage_events_resource")
    op.drop_index("ix_usage_events_created_category")
    op.drop_index("ix_usage_events_tenant_created")
    op.drop_table("usage_events")
