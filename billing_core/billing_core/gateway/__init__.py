"""Payment gateway interface and the Stripe client."""

from billing_core.gateway.base import GatewayError, GatewayErrorKind, PaymentGateway, PaymentInstrument
from billing_core.gateway.stripe_gateway import StripeGateway

__all__ = [
    "GatewayError",
    "GatewayErrorKind",
    "PaymentGateway",
    "PaymentInstrument",
    "StripeGateway",
]
