"""SQLAlchemy 2.0 ORM table definitions for the billing state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and the
repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """``DateTime(timezone=True)`` that always round-trips aware UTC values.

    SQLite has no timezone storage and hands back naive datetimes; values
    read back are tagged as UTC so comparisons with ``datetime.now(UTC)``
    behave the same on both dialects.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all billing tables."""


# ---------------------------------------------------------------------------
# Provider accounts
# ---------------------------------------------------------------------------


class ProviderAccountTable(Base):
    """Billing fields of a provider (cleaner) account.

    ``version`` is bumped on every write to a billing field and guards the
    optimistic compare-and-swap in ``ProviderAccountRepository``.
    """

    __tablename__ = "provider_accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    gateway_customer_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    gateway_subscription_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    tier: Mapped[str] = mapped_column(String(32), nullable=False, default="free")
    subscription_status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    lead_credits_used_this_period: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payment_failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    grace_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    dispute_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    dispute_status: Mapped[str] = mapped_column(String(32), nullable=False, default="none")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_provider_accounts_customer", "gateway_customer_ref", unique=True),
        CheckConstraint("lead_credits_used_this_period >= 0", name="ck_provider_accounts_credits"),
        CheckConstraint("payment_failure_count >= 0", name="ck_provider_accounts_failures"),
        CheckConstraint("dispute_count >= 0", name="ck_provider_accounts_disputes"),
    )


# ---------------------------------------------------------------------------
# Lead charges
# ---------------------------------------------------------------------------


class LeadChargeTable(Base):
    """One row per attempted per-lead payment.

    A row is created ``pending`` before the gateway is called and moves to
    ``succeeded`` or ``failed`` exactly once.
    """

    __tablename__ = "lead_charges"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    provider_id: Mapped[str] = mapped_column(String(64), ForeignKey("provider_accounts.id"), nullable=False)
    lead_id: Mapped[str] = mapped_column(String(128), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    provider_charge_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    charge_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        UniqueConstraint("provider_id", "lead_id", "attempt", name="uq_lead_charges_attempt"),
        Index("ix_lead_charges_provider_lead", "provider_id", "lead_id"),
        Index("ix_lead_charges_provider_charge_ref", "provider_charge_ref"),
        CheckConstraint("status IN ('pending', 'succeeded', 'failed')", name="ck_lead_charges_status"),
    )


# ---------------------------------------------------------------------------
# Payment history
# ---------------------------------------------------------------------------


class PaymentRecordTable(Base):
    """Unified payment history for lead fees and subscription invoices."""

    __tablename__ = "payment_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_id: Mapped[str] = mapped_column(String(64), ForeignKey("provider_accounts.id"), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_intent_ref: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    invoice_ref: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    charge_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="succeeded")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_payment_records_provider", "provider_id"),
        Index("ix_payment_records_charge_ref", "charge_ref"),
    )


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


class DisputeTable(Base):
    """Chargeback disputes, deduplicated by the provider's dispute id.

    ``provider_id`` is null for disputes that could not be attributed to an
    account.  Rows are updated in place on close and never deleted.
    """

    __tablename__ = "disputes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    dispute_ref: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    provider_id: Mapped[str | None] = mapped_column(String(64), ForeignKey("provider_accounts.id"), nullable=True)
    charge_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    payment_intent_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    reason: Mapped[str] = mapped_column(String(128), nullable=False, default="unknown")
    status: Mapped[str] = mapped_column(String(64), nullable=False, default="needs_response")
    evidence_due_by: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_disputes_provider", "provider_id"),
        Index("ix_disputes_provider_status", "provider_id", "status"),
    )


# ---------------------------------------------------------------------------
# Webhook events
# ---------------------------------------------------------------------------


class WebhookEventTable(Base):
    """Idempotency ledger of inbound payment-provider events.

    The unique ``event_id`` row is claimed in the same transaction as the
    side effects of the event.
    """

    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="processing")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_webhook_events_status", "status"),
        Index("ix_webhook_events_type", "event_type"),
    )


# ---------------------------------------------------------------------------
# Notification log
# ---------------------------------------------------------------------------


class NotificationLogTable(Base):
    """Record of every notification handed to the notification port."""

    __tablename__ = "notification_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient_ref: Mapped[str] = mapped_column(String(256), nullable=False)
    data: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_notification_log_recipient", "recipient_ref"),
        Index("ix_notification_log_kind", "kind"),
    )
