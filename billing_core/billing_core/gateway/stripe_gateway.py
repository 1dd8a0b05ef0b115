"""Stripe implementation of the payment gateway.

The ``stripe`` library is synchronous.  Every call runs in a worker thread
under a bounded timeout so the event loop is never blocked by a slow
provider, and every Stripe exception is translated into a
:class:`GatewayError` before it leaves this module.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from billing_core.errors import ConfigurationError, WebhookSignatureError
from billing_core.gateway.base import GatewayError, GatewayErrorKind, PaymentInstrument
from billing_core.models.charge import ChargeResult, ChargeStatus

logger = logging.getLogger(__name__)

# Stripe decline code returned when the issuer demands 3-D Secure.
_AUTHENTICATION_REQUIRED = "authentication_required"


class StripeGateway:
    """Charges stored cards and verifies webhooks through Stripe.

    Parameters
    ----------
    secret_key:
        Stripe secret API key.
    webhook_secret:
        Signing secret of the webhook endpoint.
    webhook_tolerance_seconds:
        Maximum accepted age of a webhook signature timestamp.
    timeout_seconds:
        Upper bound on a single Stripe API round trip.
    """

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        *,
        webhook_tolerance_seconds: int = 300,
        timeout_seconds: float = 20.0,
    ) -> None:
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._tolerance = webhook_tolerance_seconds
        self._timeout = timeout_seconds

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        if not self._secret_key:
            raise ConfigurationError("Stripe secret key is not configured")

        import stripe

        stripe.api_key = self._secret_key
        return stripe

    async def _call(self, func: Any, /, *args: Any, **kwargs: Any) -> Any:
        stripe = self._get_stripe()
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            raise GatewayError(
                GatewayErrorKind.TRANSIENT,
                f"Stripe request timed out after {self._timeout}s",
            ) from None
        except stripe.CardError:
            raise
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as exc:
            raise GatewayError(GatewayErrorKind.TRANSIENT, str(exc), code=exc.code) from exc
        except stripe.AuthenticationError as exc:
            raise GatewayError(GatewayErrorKind.CONFIGURATION, str(exc), code=exc.code) from exc
        except stripe.InvalidRequestError as exc:
            raise GatewayError(GatewayErrorKind.INVALID_REQUEST, str(exc), code=exc.code) from exc
        except stripe.StripeError as exc:
            raise GatewayError(GatewayErrorKind.TRANSIENT, str(exc), code=exc.code) from exc

    # ------------------------------------------------------------------
    # Charges
    # ------------------------------------------------------------------

    async def charge(
        self,
        customer_ref: str,
        instrument_ref: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> ChargeResult:
        """Create and confirm an off-session PaymentIntent.

        Card declines are returned as results, not raised.  Stripe replays
        the original response for a repeated ``idempotency_key`` so a retry
        after a timeout can never create a second payment.
        """
        stripe = self._get_stripe()
        description = metadata.get("description") or "Lead fee"
        try:
            intent = await self._call(
                stripe.PaymentIntent.create,
                amount=amount_cents,
                currency=currency,
                customer=customer_ref,
                payment_method=instrument_ref,
                off_session=True,
                confirm=True,
                description=description,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as exc:
            return _card_error_result(exc)

        return _intent_result(intent)

    # ------------------------------------------------------------------
    # Payment instruments
    # ------------------------------------------------------------------

    async def get_default_instrument(self, customer_ref: str) -> PaymentInstrument | None:
        stripe = self._get_stripe()
        try:
            customer = await self._call(stripe.Customer.retrieve, customer_ref)
        except GatewayError as exc:
            if exc.kind is GatewayErrorKind.INVALID_REQUEST and exc.code == "resource_missing":
                logger.info("Stripe customer %s does not exist", customer_ref)
                return None
            raise

        if customer.get("deleted"):
            return None

        invoice_settings = customer.get("invoice_settings") or {}
        default_pm = invoice_settings.get("default_payment_method")
        if isinstance(default_pm, dict):
            default_pm = default_pm.get("id")
        if default_pm:
            return PaymentInstrument(instrument_ref=default_pm)

        # No default set: fall back to any card on file.
        instruments = await self.list_payment_instruments(customer_ref, limit=1)
        return instruments[0] if instruments else None

    async def list_payment_instruments(self, customer_ref: str, limit: int = 10) -> list[PaymentInstrument]:
        stripe = self._get_stripe()
        methods = await self._call(
            stripe.PaymentMethod.list,
            customer=customer_ref,
            type="card",
            limit=limit,
        )
        return [_to_instrument(pm) for pm in methods.get("data", [])]

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook(self, payload: bytes, signature_header: str) -> dict[str, Any]:
        if not self._webhook_secret:
            raise ConfigurationError("Stripe webhook secret is not configured")
        if not signature_header:
            raise WebhookSignatureError("Missing Stripe signature header")

        import stripe

        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature_header,
                secret=self._webhook_secret,
                tolerance=self._tolerance,
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            raise WebhookSignatureError("Signature verification failed") from exc
        except ValueError:
            raise WebhookSignatureError("Invalid payload") from None

        data = event.to_dict()
        if not data.get("id") or not data.get("type"):
            raise WebhookSignatureError("Invalid payload")
        return data


def _intent_result(intent: Any) -> ChargeResult:
    status = intent.get("status")
    intent_id = intent.get("id")
    latest_charge = intent.get("latest_charge")
    if isinstance(latest_charge, dict):
        latest_charge = latest_charge.get("id")

    if status == "succeeded":
        return ChargeResult(
            status=ChargeStatus.SUCCEEDED,
            provider_charge_ref=intent_id,
            charge_ref=latest_charge,
        )
    if status == "requires_action":
        return ChargeResult(
            status=ChargeStatus.REQUIRES_ACTION,
            provider_charge_ref=intent_id,
            failure_message="Payment requires additional authentication",
        )
    if status == "requires_payment_method":
        last_error = intent.get("last_payment_error") or {}
        return ChargeResult(
            status=ChargeStatus.DECLINED,
            provider_charge_ref=intent_id,
            failure_message=last_error.get("message") or "Payment method was declined",
        )

    # "processing" and friends settle later through payment_intent.* webhooks.
    raise GatewayError(
        GatewayErrorKind.TRANSIENT,
        f"PaymentIntent {intent_id} is still in status '{status}'",
    )


def _card_error_result(exc: Any) -> ChargeResult:
    error = getattr(exc, "error", None)
    intent = getattr(error, "payment_intent", None) if error is not None else None
    intent_id = intent.get("id") if isinstance(intent, dict) else None
    message = getattr(exc, "user_message", None) or str(exc)

    if exc.code == _AUTHENTICATION_REQUIRED:
        return ChargeResult(
            status=ChargeStatus.REQUIRES_ACTION,
            provider_charge_ref=intent_id,
            failure_message=message,
        )
    return ChargeResult(
        status=ChargeStatus.DECLINED,
        provider_charge_ref=intent_id,
        failure_message=message,
    )


def _to_instrument(pm: Any) -> PaymentInstrument:
    card = pm.get("card") or {}
    return PaymentInstrument(
        instrument_ref=pm["id"],
        brand=card.get("brand"),
        last4=card.get("last4"),
        exp_month=card.get("exp_month"),
        exp_year=card.get("exp_year"),
    )
