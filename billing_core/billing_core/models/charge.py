"""Lead charge models and gateway charge results."""

from __future__ import annotations

import hashlib
from enum import Enum

from pydantic import BaseModel, Field


def lead_charge_idempotency_key(provider_id: str, lead_id: str, attempt: int) -> str:
    """Derive the gateway idempotency key for one attempt at charging a lead.

    The same ``(provider_id, lead_id, attempt)`` always yields the same key,
    so a retried attempt is collapsed into one payment by the gateway.
    """
    digest = hashlib.sha256(f"{provider_id}:{lead_id}:{attempt}".encode()).hexdigest()
    return f"lead_{digest}"


class LeadChargeStatus(str, Enum):
    """Lifecycle of a ``lead_charges`` row.

    ``PENDING`` transitions exactly once to a terminal state.
    """

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not LeadChargeStatus.PENDING


class ChargeStatus(str, Enum):
    """Result status reported by the payment gateway for a charge call."""

    SUCCEEDED = "succeeded"
    DECLINED = "declined"
    REQUIRES_ACTION = "requires_action"


class ChargeResult(BaseModel):
    """Normalised outcome of ``PaymentGateway.charge``."""

    status: ChargeStatus
    provider_charge_ref: str | None = Field(
        default=None,
        description="Gateway reference for the payment (Stripe PaymentIntent id).",
    )
    charge_ref: str | None = Field(
        default=None,
        description="Underlying charge id, used for dispute attribution.",
    )
    failure_message: str | None = Field(
        default=None,
        description="Human-readable reason supplied by the gateway on failure.",
    )


class OutcomeKind(str, Enum):
    """Successful outcomes of a lead charge attempt."""

    NO_CHARGE_REQUIRED = "no_charge_required"
    CHARGED = "charged"


class LeadChargeOutcome(BaseModel):
    """Result returned by ``LeadChargeService.attempt_lead_charge``."""

    kind: OutcomeKind
    provider_id: str
    lead_id: str
    amount_cents: int = 0
    charge_id: str | None = None
    provider_charge_ref: str | None = None
    replayed: bool = Field(
        default=False,
        description="True when an earlier successful charge for the lead was returned.",
    )

    @classmethod
    def no_charge(cls, provider_id: str, lead_id: str) -> LeadChargeOutcome:
        return cls(kind=OutcomeKind.NO_CHARGE_REQUIRED, provider_id=provider_id, lead_id=lead_id)


class LeadFeeQuote(BaseModel):
    """What the next lead claim would cost a provider."""

    provider_id: str
    tier: str
    credits_used: int
    credit_limit: int
    needs_payment: bool
    fee_cents: int
    has_payment_method: bool
