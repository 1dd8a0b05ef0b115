"""Per-lead charge engine.

Charges a provider's stored card for a sales lead once the monthly lead
credit allowance of their tier is used up.

No database transaction is held open across the gateway call.  The attempt
row is committed ``pending`` first, the gateway is called with the row's
idempotency key, and the outcome is written with a conditional
``pending -> terminal`` update.  Together with the gateway's own
idempotency this guarantees at most one successful charge per
``(provider, lead)`` pair, however often and however concurrently the
operation is invoked.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from billing_core.errors import (
    AccountNotFoundError,
    BillingError,
    CardDeclinedError,
    ConfigurationError,
    NeedsPaymentMethodError,
    TransientProviderError,
    UnattributedEventError,
)
from billing_core.gateway.base import PaymentGateway, PaymentInstrument
from billing_core.models.account import Tier
from billing_core.models.charge import (
    ChargeResult,
    ChargeStatus,
    LeadChargeOutcome,
    LeadChargeStatus,
    LeadFeeQuote,
    OutcomeKind,
)
from billing_core.pricing import DEFAULT_TIER_PRICING, TierPricing, pricing_for_tier
from billing_core.state.repository import (
    LeadChargeRepository,
    PaymentRecordRepository,
    ProviderAccountRepository,
)
from billing_core.state.tables import LeadChargeTable
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_api.services.notifications import NotificationKind, NotificationPort, PendingNotifications

logger = logging.getLogger(__name__)

_NO_CARD_MESSAGE = "No payment method on file. Please add a card in Billing settings before claiming leads."
_AUTH_REQUIRED_MESSAGE = (
    "Payment requires additional authentication. Please update your payment method in Billing settings."
)

PAYMENT_KIND_LEAD_FEE = "lead_fee"


class LeadChargeService:
    """Charge providers for claimed leads.

    Parameters
    ----------
    session_factory:
        Factory for short-lived sessions; each phase of a charge runs in
        its own transaction.
    gateway:
        Payment gateway used to resolve cards and create charges.
    notifier:
        Port receiving ``lead_charge.*`` notifications after commit.
    pricing:
        Tier pricing table.
    currency:
        Currency of every lead fee.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        notifier: NotificationPort,
        *,
        pricing: Mapping[Tier, TierPricing] = DEFAULT_TIER_PRICING,
        currency: str = "usd",
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._notifier = notifier
        self._pricing = pricing
        self._currency = currency

    # ------------------------------------------------------------------
    # Charging
    # ------------------------------------------------------------------

    async def attempt_lead_charge(self, provider_id: str, lead_id: str, tier: Tier | str) -> LeadChargeOutcome:
        """Charge the provider for *lead_id* if their tier requires it.

        Safe to call repeatedly: a lead that was already paid for returns
        the original charge without contacting the gateway, and a retry
        after a transient failure reuses the same idempotency key.

        Returns
        -------
        LeadChargeOutcome
            ``NO_CHARGE_REQUIRED`` or ``CHARGED``.

        Raises
        ------
        ConfigurationError
            *tier* has no pricing entry.
        AccountNotFoundError
            The provider does not exist.
        NeedsPaymentMethodError
            No usable card on file, or the card needs authentication.
        CardDeclinedError
            The card was declined.
        TransientProviderError
            The gateway could not be reached; retry later.
        """
        try:
            pricing = pricing_for_tier(tier, self._pricing)
        except ConfigurationError:
            logger.error("Lead charge for provider=%s lead=%s has no pricing for tier %r", provider_id, lead_id, tier)
            raise

        if pricing.never_charges:
            return LeadChargeOutcome.no_charge(provider_id, lead_id)

        async with self._session_factory() as session:
            account = await ProviderAccountRepository(session).get(provider_id)
            if account is None:
                raise AccountNotFoundError(provider_id)
            if pricing.has_credit_remaining(account.lead_credits_used_this_period):
                return LeadChargeOutcome.no_charge(provider_id, lead_id)

            attempts = await LeadChargeRepository(session).list_for_lead(provider_id, lead_id)
            for row in attempts:
                if row.status == LeadChargeStatus.SUCCEEDED.value:
                    logger.info("Lead %s already paid by provider %s; charge %s", lead_id, provider_id, row.id)
                    return _charged(row, replayed=True)

        instrument = await self._resolve_instrument(account.gateway_customer_ref, provider_id)

        async with self._session_factory() as session:
            row, created = await LeadChargeRepository(session).open_attempt(
                provider_id,
                lead_id,
                pricing.lead_fee_cents,
                self._currency,
            )
            await session.commit()

        if row.status == LeadChargeStatus.SUCCEEDED.value:
            return _charged(row, replayed=True)
        logger.info(
            "%s lead charge attempt %d provider=%s lead=%s amount=%d",
            "Opened" if created else "Retrying",
            row.attempt,
            provider_id,
            lead_id,
            row.amount_cents,
        )

        result = await self._call_gateway(row, account.gateway_customer_ref or "", instrument, tier)
        return await self._settle(row, result, pricing.tier)

    async def _resolve_instrument(self, customer_ref: str | None, provider_id: str) -> PaymentInstrument:
        if not customer_ref:
            raise NeedsPaymentMethodError(_NO_CARD_MESSAGE)
        try:
            instrument = await self._gateway.get_default_instrument(customer_ref)
        except BillingError:
            raise
        except Exception as exc:
            logger.warning("Could not resolve card for provider %s: %s", provider_id, exc)
            raise TransientProviderError(f"Payment provider unavailable: {exc}") from exc
        if instrument is None:
            raise NeedsPaymentMethodError(_NO_CARD_MESSAGE)
        return instrument

    async def _call_gateway(
        self,
        row: LeadChargeTable,
        customer_ref: str,
        instrument: PaymentInstrument,
        tier: Tier | str,
    ) -> ChargeResult:
        tier_value = Tier(tier).value
        try:
            return await self._gateway.charge(
                customer_ref,
                instrument.instrument_ref,
                row.amount_cents,
                row.currency,
                row.idempotency_key,
                {
                    "type": PAYMENT_KIND_LEAD_FEE,
                    "provider_id": row.provider_id,
                    "lead_id": row.lead_id,
                    "lead_charge_id": row.id,
                    "tier": tier_value,
                    "description": f"Lead fee - {tier_value} tier",
                },
            )
        except BillingError:
            raise
        except Exception as exc:
            logger.warning(
                "Lead charge %s (attempt %d) left pending after gateway error: %s",
                row.id,
                row.attempt,
                exc,
            )
            raise TransientProviderError("Payment provider unavailable; the charge can be retried safely") from exc

    async def _settle(self, row: LeadChargeTable, result: ChargeResult, tier: Tier) -> LeadChargeOutcome:
        pending = PendingNotifications()

        async with self._session_factory() as session:
            charges = LeadChargeRepository(session)
            if result.status is ChargeStatus.SUCCEEDED:
                won = await charges.mark_succeeded(
                    row.id,
                    provider_charge_ref=result.provider_charge_ref,
                    charge_ref=result.charge_ref,
                )
                if won:
                    await self._record_success(session, row, result, tier, pending)
            else:
                won = await charges.mark_failed(
                    row.id,
                    failure_reason=result.failure_message,
                    provider_charge_ref=result.provider_charge_ref,
                )
                if won:
                    pending.add(
                        row.provider_id,
                        NotificationKind.LEAD_CHARGE_FAILED,
                        {
                            "lead_id": row.lead_id,
                            "amount_cents": row.amount_cents,
                            "reason": result.failure_message,
                            "requires_action": result.status is ChargeStatus.REQUIRES_ACTION,
                        },
                        correlation_id=row.id,
                    )
            current = await charges.get(row.id)
            await session.commit()

        await pending.flush(self._notifier)

        if current is not None and current.status == LeadChargeStatus.SUCCEEDED.value:
            return _charged(current, replayed=not won)

        if result.status is ChargeStatus.SUCCEEDED:
            # The gateway took the money but the row was already closed as failed.
            logger.error(
                "Lead charge %s succeeded at the gateway (%s) but was already resolved as failed",
                row.id,
                result.provider_charge_ref,
            )
            raise TransientProviderError("Charge outcome conflict; reconcile before retrying")

        if result.status is ChargeStatus.REQUIRES_ACTION:
            raise NeedsPaymentMethodError(_AUTH_REQUIRED_MESSAGE)
        reason = (result.failure_message or "Card declined").rstrip(".")
        raise CardDeclinedError(
            f"Payment failed: {reason}. Please update your card in Billing settings.",
            decline_reason=result.failure_message,
        )

    async def _record_success(
        self,
        session: AsyncSession,
        row: LeadChargeTable,
        result: ChargeResult,
        tier: Tier,
        pending: PendingNotifications,
    ) -> None:
        await PaymentRecordRepository(session).record(
            row.provider_id,
            PAYMENT_KIND_LEAD_FEE,
            amount_cents=row.amount_cents,
            currency=row.currency,
            payment_intent_ref=result.provider_charge_ref,
            charge_ref=result.charge_ref,
            description=f"Lead fee ({tier.value} tier)",
            metadata={"lead_id": row.lead_id, "lead_charge_id": row.id, "type": PAYMENT_KIND_LEAD_FEE},
        )
        pending.add(
            row.provider_id,
            NotificationKind.LEAD_CHARGE_SUCCEEDED,
            {
                "lead_id": row.lead_id,
                "amount_cents": row.amount_cents,
                "provider_charge_ref": result.provider_charge_ref,
            },
            correlation_id=row.id,
        )

    # ------------------------------------------------------------------
    # Webhook reconciliation
    # ------------------------------------------------------------------

    async def reconcile_gateway_outcome(
        self,
        session: AsyncSession,
        pending: PendingNotifications,
        *,
        succeeded: bool,
        lead_charge_id: str | None,
        provider_charge_ref: str | None,
        charge_ref: str | None = None,
        failure_reason: str | None = None,
    ) -> bool:
        """Settle a lead charge from a ``payment_intent.*`` webhook.

        Runs inside the caller's (ingress) transaction.  A row already in a
        terminal state is left untouched.

        Returns
        -------
        bool
            ``True`` if this call moved the row out of ``pending``.

        Raises
        ------
        UnattributedEventError
            No lead charge matches the event.
        """
        charges = LeadChargeRepository(session)
        row = await charges.get(lead_charge_id) if lead_charge_id else None
        if row is None and provider_charge_ref:
            row = await charges.find_by_provider_charge_ref(provider_charge_ref)
        if row is None:
            raise UnattributedEventError(
                "No lead charge matches payment event",
                reference=lead_charge_id or provider_charge_ref,
            )

        if succeeded:
            won = await charges.mark_succeeded(row.id, provider_charge_ref=provider_charge_ref, charge_ref=charge_ref)
            if won:
                result = ChargeResult(
                    status=ChargeStatus.SUCCEEDED,
                    provider_charge_ref=provider_charge_ref,
                    charge_ref=charge_ref,
                )
                account = await ProviderAccountRepository(session).get(row.provider_id)
                tier = account.tier if account is not None else Tier.FREE
                await self._record_success(session, row, result, tier, pending)
        else:
            won = await charges.mark_failed(
                row.id,
                failure_reason=failure_reason,
                provider_charge_ref=provider_charge_ref,
            )
            if won:
                pending.add(
                    row.provider_id,
                    NotificationKind.LEAD_CHARGE_FAILED,
                    {"lead_id": row.lead_id, "amount_cents": row.amount_cents, "reason": failure_reason},
                    correlation_id=row.id,
                )

        if won:
            logger.info("Reconciled lead charge %s as %s from webhook", row.id, "succeeded" if succeeded else "failed")
        return won

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def quote_lead_fee(self, provider_id: str) -> LeadFeeQuote:
        """Return what claiming the next lead would cost the provider."""
        async with self._session_factory() as session:
            account = await ProviderAccountRepository(session).get(provider_id)
        if account is None:
            raise AccountNotFoundError(provider_id)

        pricing = pricing_for_tier(account.tier, self._pricing)
        needs_payment = pricing.requires_payment(account.lead_credits_used_this_period)
        return LeadFeeQuote(
            provider_id=provider_id,
            tier=account.tier.value,
            credits_used=account.lead_credits_used_this_period,
            credit_limit=pricing.monthly_lead_credits,
            needs_payment=needs_payment,
            fee_cents=pricing.lead_fee_cents if needs_payment else 0,
            has_payment_method=bool(account.gateway_customer_ref),
        )


def _charged(row: LeadChargeTable, *, replayed: bool) -> LeadChargeOutcome:
    return LeadChargeOutcome(
        kind=OutcomeKind.CHARGED,
        provider_id=row.provider_id,
        lead_id=row.lead_id,
        amount_cents=row.amount_cents,
        charge_id=row.id,
        provider_charge_ref=row.provider_charge_ref,
        replayed=replayed,
    )


def lead_fee_metadata(data_object: Mapping[str, Any]) -> dict[str, str] | None:
    """Return the lead-fee metadata of a PaymentIntent object, if it has any."""
    metadata = data_object.get("metadata") or {}
    if metadata.get("type") != PAYMENT_KIND_LEAD_FEE:
        return None
    return {str(k): str(v) for k, v in metadata.items()}
