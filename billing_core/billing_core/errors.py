"""Error taxonomy for billing operations.

Every failure surfaced by the billing engines carries an :class:`ErrorKind`
tag so that callers (HTTP routers, the webhook ingress, retry logic) can
branch on the kind of failure instead of matching message strings.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Classification of a billing failure."""

    TRANSIENT_PROVIDER = "transient_provider"
    NEEDS_PAYMENT_METHOD = "needs_payment_method"
    CARD_DECLINED = "card_declined"
    UNATTRIBUTED_EVENT = "unattributed_event"
    CONFIGURATION = "configuration"
    NOT_FOUND = "not_found"
    CONCURRENT_UPDATE = "concurrent_update"
    INVALID_SIGNATURE = "invalid_signature"


class BillingError(Exception):
    """Base class for all billing failures."""

    kind: ErrorKind = ErrorKind.CONFIGURATION
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ChargeError(BillingError):
    """A lead charge attempt did not produce a successful payment."""


class TransientProviderError(ChargeError):
    """Network failure or timeout talking to the payment gateway.

    Records touched by the attempt are left in their pre-call state and the
    same call may be retried with the same idempotency key.
    """

    kind = ErrorKind.TRANSIENT_PROVIDER
    retryable = True


class NeedsPaymentMethodError(ChargeError):
    """The provider must add or update a payment method before retrying."""

    kind = ErrorKind.NEEDS_PAYMENT_METHOD


class CardDeclinedError(NeedsPaymentMethodError):
    """The card on file was declined by the issuer."""

    kind = ErrorKind.CARD_DECLINED

    def __init__(self, message: str, decline_reason: str | None = None) -> None:
        super().__init__(message)
        self.decline_reason = decline_reason


class ConfigurationError(BillingError):
    """Required billing configuration (tier pricing, secrets) is missing."""

    kind = ErrorKind.CONFIGURATION


class UnattributedEventError(BillingError):
    """A provider event could not be mapped to a provider account."""

    kind = ErrorKind.UNATTRIBUTED_EVENT

    def __init__(self, message: str, *, reference: str | None = None) -> None:
        super().__init__(message)
        self.reference = reference


class AccountNotFoundError(BillingError, LookupError):
    """No provider account exists for the given id."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, provider_id: str) -> None:
        super().__init__(f"Provider account '{provider_id}' not found")
        self.provider_id = provider_id


class ConcurrentUpdateError(BillingError):
    """An optimistic account transition lost the race too many times."""

    kind = ErrorKind.CONCURRENT_UPDATE
    retryable = True


class WebhookSignatureError(BillingError):
    """An inbound webhook payload failed signature verification."""

    kind = ErrorKind.INVALID_SIGNATURE
