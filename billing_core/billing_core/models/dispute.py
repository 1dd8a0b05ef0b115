"""Chargeback dispute models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

# Statuses after which the provider no longer changes a dispute.
TERMINAL_DISPUTE_STATUSES: frozenset[str] = frozenset({"won", "lost", "warning_closed", "charge_refunded"})


def is_terminal_dispute_status(status: str) -> bool:
    return status in TERMINAL_DISPUTE_STATUSES


class DisputeOutcome(str, Enum):
    """Outcome reported to the provider when a dispute closes."""

    WON = "won"
    LOST = "lost"

    @classmethod
    def from_status(cls, status: str) -> DisputeOutcome:
        return cls.WON if status == "won" else cls.LOST


class DisputeLedgerResult(BaseModel):
    """What the dispute ledger did with an event."""

    dispute_ref: str
    provider_id: str | None = None
    changed: bool = Field(
        default=False,
        description="False when the event repeated one already applied.",
    )
    outcome: DisputeOutcome | None = None
    dispute_status: str | None = Field(
        default=None,
        description="Account-level dispute flag after the event, when attributed.",
    )

    @property
    def attributed(self) -> bool:
        return self.provider_id is not None


class DisputeDetails(BaseModel):
    """Everything the payment provider tells us about a dispute."""

    dispute_ref: str = Field(..., min_length=1)
    charge_ref: str | None = None
    payment_intent_ref: str | None = None
    customer_ref: str | None = None
    amount_cents: int = Field(default=0, ge=0)
    currency: str = "usd"
    reason: str = "unknown"
    status: str = "needs_response"
    evidence_due_by: datetime | None = None
