"""Initial billing schema.

Revision ID: 001
Revises:
Create Date: 2026-10-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers
revision: str = "001"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_json = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def upgrade() -> None:
    # -- provider_accounts -------------------------------------------------
    op.create_table(
        "provider_accounts",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("gateway_customer_ref", sa.String(256), nullable=True),
        sa.Column("gateway_subscription_ref", sa.String(256), nullable=True),
        sa.Column("tier", sa.String(32), nullable=False, server_default="free"),
        sa.Column("subscription_status", sa.String(32), nullable=False, server_default="active"),
        sa.Column("lead_credits_used_this_period", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payment_failure_count", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("grace_period_end", nullable=True),
        sa.Column("dispute_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("dispute_status", sa.String(32), nullable=False, server_default="none"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("lead_credits_used_this_period >= 0", name="ck_provider_accounts_credits"),
        sa.CheckConstraint("payment_failure_count >= 0", name="ck_provider_accounts_failures"),
        sa.CheckConstraint("dispute_count >= 0", name="ck_provider_accounts_disputes"),
    )
    op.create_index(
        "ix_provider_accounts_customer",
        "provider_accounts",
        ["gateway_customer_ref"],
        unique=True,
    )

    # -- lead_charges ------------------------------------------------------
    op.create_table(
        "lead_charges",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("provider_id", sa.String(64), sa.ForeignKey("provider_accounts.id"), nullable=False),
        sa.Column("lead_id", sa.String(128), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("idempotency_key", sa.String(128), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("provider_charge_ref", sa.String(256), nullable=True),
        sa.Column("charge_ref", sa.String(256), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("resolved_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key", name="uq_lead_charges_idempotency_key"),
        sa.UniqueConstraint("provider_id", "lead_id", "attempt", name="uq_lead_charges_attempt"),
        sa.CheckConstraint("status IN ('pending', 'succeeded', 'failed')", name="ck_lead_charges_status"),
    )
    op.create_index("ix_lead_charges_provider_lead", "lead_charges", ["provider_id", "lead_id"])
    op.create_index("ix_lead_charges_provider_charge_ref", "lead_charges", ["provider_charge_ref"])

    # -- payment_records ---------------------------------------------------
    op.create_table(
        "payment_records",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("provider_id", sa.String(64), sa.ForeignKey("provider_accounts.id"), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("payment_intent_ref", sa.String(256), nullable=True),
        sa.Column("invoice_ref", sa.String(256), nullable=True),
        sa.Column("charge_ref", sa.String(256), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("status", sa.String(32), nullable=False, server_default="succeeded"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata_json", _json, nullable=True),
        _timestamp("paid_at", nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payment_intent_ref", name="uq_payment_records_payment_intent"),
        sa.UniqueConstraint("invoice_ref", name="uq_payment_records_invoice"),
    )
    op.create_index("ix_payment_records_provider", "payment_records", ["provider_id"])
    op.create_index("ix_payment_records_charge_ref", "payment_records", ["charge_ref"])

    # -- disputes ----------------------------------------------------------
    op.create_table(
        "disputes",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("dispute_ref", sa.String(256), nullable=False),
        sa.Column("provider_id", sa.String(64), sa.ForeignKey("provider_accounts.id"), nullable=True),
        sa.Column("charge_ref", sa.String(256), nullable=True),
        sa.Column("payment_intent_ref", sa.String(256), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("reason", sa.String(128), nullable=False, server_default="unknown"),
        sa.Column("status", sa.String(64), nullable=False, server_default="needs_response"),
        _timestamp("evidence_due_by", nullable=True),
        _timestamp("resolved_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dispute_ref", name="uq_disputes_dispute_ref"),
    )
    op.create_index("ix_disputes_provider", "disputes", ["provider_id"])
    op.create_index("ix_disputes_provider_status", "disputes", ["provider_id", "status"])

    # -- webhook_events ----------------------------------------------------
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("event_id", sa.String(256), nullable=False),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="processing"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("payload", _json, nullable=True),
        _timestamp("received_at"),
        _timestamp("processed_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id", name="uq_webhook_events_event_id"),
    )
    op.create_index("ix_webhook_events_status", "webhook_events", ["status"])
    op.create_index("ix_webhook_events_type", "webhook_events", ["event_type"])

    # -- notification_log --------------------------------------------------
    op.create_table(
        "notification_log",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("kind", sa.String(64), nullable=False),
        sa.Column("recipient_ref", sa.String(256), nullable=False),
        sa.Column("data", _json, nullable=True),
        sa.Column("correlation_id", sa.String(128), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notification_log_recipient", "notification_log", ["recipient_ref"])
    op.create_index("ix_notification_log_kind", "notification_log", ["kind"])


def downgrade() -> None:
    op.drop_table("notification_log")
    op.drop_table("webhook_events")
    op.drop_table("disputes")
    op.drop_table("payment_records")
    op.drop_table("lead_charges")
    op.drop_table("provider_accounts")
