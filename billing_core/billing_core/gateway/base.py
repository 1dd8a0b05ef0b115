"""Abstract interface for payment gateways.

The charge engine, the dispute ledger and the webhook ingress talk to the
payment provider only through :class:`PaymentGateway` so that tests can
substitute an in-memory fake and the Stripe client stays in one module.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from billing_core.models.charge import ChargeResult


class GatewayErrorKind(str, Enum):
    """Classification of a gateway failure."""

    TRANSIENT = "transient"
    DECLINED = "declined"
    AUTHENTICATION_REQUIRED = "authentication_required"
    INVALID_REQUEST = "invalid_request"
    CONFIGURATION = "configuration"


class GatewayError(Exception):
    """Failure raised by a gateway implementation.

    Callers branch on :attr:`kind`, never on the message.
    """

    def __init__(self, kind: GatewayErrorKind, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code

    @property
    def is_transient(self) -> bool:
        return self.kind is GatewayErrorKind.TRANSIENT


@dataclass(frozen=True)
class PaymentInstrument:
    """A stored card that can be charged off-session."""

    instrument_ref: str
    brand: str | None = None
    last4: str | None = None
    exp_month: int | None = None
    exp_year: int | None = None


class PaymentGateway(Protocol):
    """Structural interface for payment providers.

    Implementations are **not** required to subclass this protocol; they
    only need to expose methods with matching signatures.
    """

    async def charge(
        self,
        customer_ref: str,
        instrument_ref: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> ChargeResult:
        """Charge a stored instrument off-session.

        Parameters
        ----------
        customer_ref:
            Gateway customer identifier.
        instrument_ref:
            The payment method to charge.
        amount_cents:
            Amount in the smallest currency unit.
        currency:
            ISO currency code.
        idempotency_key:
            Key the gateway uses to collapse duplicate requests into one
            charge.
        metadata:
            Key-value pairs attached to the payment for later correlation.

        Returns
        -------
        ChargeResult
            ``SUCCEEDED``, ``DECLINED`` or ``REQUIRES_ACTION``.

        Raises
        ------
        GatewayError
            With kind ``TRANSIENT`` on network failure or timeout.
        """
        ...

    async def get_default_instrument(self, customer_ref: str) -> PaymentInstrument | None:
        """Return the customer's default instrument, or ``None`` if none exists.

        A deleted customer is reported as ``None``.
        """
        ...

    async def list_payment_instruments(self, customer_ref: str) -> list[PaymentInstrument]:
        """Return every card stored for the customer."""
        ...

    def verify_webhook(self, payload: bytes, signature_header: str) -> dict[str, Any]:
        """Verify the signature of a webhook payload and return the decoded event.

        Raises
        ------
        WebhookSignatureError
            If the signature does not match or the payload is malformed.
        """
        ...
