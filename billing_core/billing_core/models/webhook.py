"""Inbound payment-provider webhook events."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class WebhookEventKind(str, Enum):
    """Domain-level meaning of a provider event."""

    SUBSCRIPTION_PAYMENT_FAILED = "subscription_payment_failed"
    SUBSCRIPTION_PAYMENT_SUCCEEDED = "subscription_payment_succeeded"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_CLOSED = "dispute_closed"
    LEAD_CHARGE_SUCCEEDED = "lead_charge_succeeded"
    LEAD_CHARGE_FAILED = "lead_charge_failed"
    OTHER = "other"


# Stripe event type -> domain kind.  Anything not listed maps to OTHER.
STRIPE_EVENT_KINDS: dict[str, WebhookEventKind] = {
    "invoice.payment_failed": WebhookEventKind.SUBSCRIPTION_PAYMENT_FAILED,
    "invoice.payment_succeeded": WebhookEventKind.SUBSCRIPTION_PAYMENT_SUCCEEDED,
    "invoice.paid": WebhookEventKind.SUBSCRIPTION_PAYMENT_SUCCEEDED,
    "charge.dispute.created": WebhookEventKind.DISPUTE_OPENED,
    "charge.dispute.closed": WebhookEventKind.DISPUTE_CLOSED,
    "payment_intent.succeeded": WebhookEventKind.LEAD_CHARGE_SUCCEEDED,
    "payment_intent.payment_failed": WebhookEventKind.LEAD_CHARGE_FAILED,
}


def classify_event_type(event_type: str) -> WebhookEventKind:
    return STRIPE_EVENT_KINDS.get(event_type, WebhookEventKind.OTHER)


class WebhookEventStatus(str, Enum):
    """Processing status stored on a ``webhook_events`` row."""

    PROCESSING = "processing"
    PROCESSED = "processed"
    IGNORED = "ignored"
    UNATTRIBUTED = "unattributed"
    FAILED = "failed"


class WebhookEvent(BaseModel):
    """A verified provider event."""

    event_id: str = Field(..., min_length=1)
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def kind(self) -> WebhookEventKind:
        return classify_event_type(self.event_type)

    @property
    def data_object(self) -> dict[str, Any]:
        """The ``data.object`` section of the Stripe event payload."""
        data = self.payload.get("data") or {}
        obj = data.get("object") if isinstance(data, dict) else None
        return obj if isinstance(obj, dict) else {}


class IngressStatus(str, Enum):
    """Result of handing an event to the ingress."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNATTRIBUTED = "unattributed"


class IngressResult(BaseModel):
    """Response body for the webhook endpoint."""

    status: IngressStatus
    event_id: str
    event_type: str
    detail: str | None = None


class FailedWebhookEvent(BaseModel):
    """Monitoring view of an event that needs attention."""

    event_id: str
    event_type: str
    status: WebhookEventStatus
    attempts: int
    last_error: str | None = None
