"""Webhook ingress: verify, deduplicate and route payment-provider events.

Each event is processed in a single transaction that first claims the
event id in ``webhook_events`` and then applies the event's side effects.
A redelivered event finds its claim already committed and is reported as
a duplicate without touching any account, so side effects happen at most
once.  If processing fails the whole transaction rolls back, the failure is
recorded in a separate transaction, and the error propagates so the
provider redelivers the event later.

Notifications produced while handling an event are sent only after the
transaction commits.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from billing_core.errors import UnattributedEventError
from billing_core.gateway.base import PaymentGateway
from billing_core.models.dispute import DisputeDetails, DisputeLedgerResult
from billing_core.models.webhook import (
    FailedWebhookEvent,
    IngressResult,
    IngressStatus,
    WebhookEvent,
    WebhookEventKind,
    WebhookEventStatus,
)
from billing_core.state.repository import (
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_SUCCEEDED,
    PaymentRecordRepository,
    ProviderAccountRepository,
    WebhookEventRepository,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_api.services.dispute_service import DisputeService
from billing_api.services.dunning_service import DunningService
from billing_api.services.lead_charge_service import LeadChargeService, lead_fee_metadata
from billing_api.services.notifications import NotificationKind, NotificationPort, PendingNotifications

logger = logging.getLogger(__name__)

_LEDGER_STATUS = {
    IngressStatus.PROCESSED: WebhookEventStatus.PROCESSED,
    IngressStatus.IGNORED: WebhookEventStatus.IGNORED,
    IngressStatus.UNATTRIBUTED: WebhookEventStatus.UNATTRIBUTED,
}

PAYMENT_KIND_SUBSCRIPTION = "subscription"

_INVOICE_KINDS = frozenset(
    {WebhookEventKind.SUBSCRIPTION_PAYMENT_FAILED, WebhookEventKind.SUBSCRIPTION_PAYMENT_SUCCEEDED}
)


def _ref(value: Any) -> str | None:
    """Stripe fields may hold an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), UTC)


def dispute_details_from_object(obj: dict[str, Any]) -> DisputeDetails:
    """Build :class:`DisputeDetails` from a Stripe ``dispute`` object."""
    charge = obj.get("charge")
    customer = obj.get("customer")
    if customer is None and isinstance(charge, dict):
        customer = charge.get("customer")
    evidence = obj.get("evidence_details") or {}
    return DisputeDetails(
        dispute_ref=obj["id"],
        charge_ref=_ref(charge),
        payment_intent_ref=_ref(obj.get("payment_intent")),
        customer_ref=_ref(customer),
        amount_cents=int(obj.get("amount") or 0),
        currency=obj.get("currency") or "usd",
        reason=obj.get("reason") or "unknown",
        status=obj.get("status") or "needs_response",
        evidence_due_by=_timestamp(evidence.get("due_by")),
    )


class WebhookIngressService:
    """Entry point for every inbound payment-provider event.

    Parameters
    ----------
    session_factory:
        Factory for the per-event processing session and the separate
        failure-recording session.
    gateway:
        Verifies webhook signatures.
    notifier:
        Port receiving notifications after commit.
    lead_charges:
        Settles lead charges from ``payment_intent.*`` events.
    dunning:
        Applies subscription payment outcomes.
    disputes:
        Records dispute lifecycle events.
    review_channel:
        Recipient of events that cannot be attributed to an account.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        notifier: NotificationPort,
        *,
        lead_charges: LeadChargeService,
        dunning: DunningService,
        disputes: DisputeService,
        review_channel: str,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._notifier = notifier
        self._lead_charges = lead_charges
        self._dunning = dunning
        self._disputes = disputes
        self._review_channel = review_channel

    async def handle(self, payload: bytes, signature_header: str) -> IngressResult:
        """Verify a raw webhook delivery and process it.

        Raises
        ------
        WebhookSignatureError
            If the signature or payload is invalid.
        ConfigurationError
            If no webhook secret is configured.
        """
        raw = self._gateway.verify_webhook(payload, signature_header)
        event = WebhookEvent(event_id=raw["id"], event_type=raw["type"], payload=raw)
        return await self.process(event)

    async def process(self, event: WebhookEvent) -> IngressResult:
        """Process a verified event exactly once.

        Returns
        -------
        IngressResult
            ``processed``, ``duplicate``, ``ignored`` or ``unattributed``.
        """
        pending = PendingNotifications()
        try:
            async with self._session_factory() as session:
                events = WebhookEventRepository(session)
                if not await events.claim(event.event_id, event.event_type, event.payload):
                    logger.debug("Duplicate webhook event %s (%s)", event.event_id, event.event_type)
                    return IngressResult(
                        status=IngressStatus.DUPLICATE,
                        event_id=event.event_id,
                        event_type=event.event_type,
                    )

                status, detail = await self._route(session, pending, event)
                await events.mark_status(event.event_id, _LEDGER_STATUS[status], detail=detail)
                await session.commit()
        except Exception as exc:
            pending.clear()
            logger.exception("Webhook event %s (%s) failed", event.event_id, event.event_type)
            await self._record_failure(event, exc)
            raise

        await pending.flush(self._notifier)
        logger.info("Webhook event %s (%s) %s", event.event_id, event.event_type, status.value)
        return IngressResult(status=status, event_id=event.event_id, event_type=event.event_type, detail=detail)

    async def list_failed_events(self, limit: int = 50) -> list[FailedWebhookEvent]:
        """Events that failed or could not be attributed, newest first."""
        async with self._session_factory() as session:
            rows = await WebhookEventRepository(session).list_failed(limit)
        return [
            FailedWebhookEvent(
                event_id=row.event_id,
                event_type=row.event_type,
                status=WebhookEventStatus(row.status),
                attempts=row.attempts,
                last_error=row.last_error,
            )
            for row in rows
        ]

    async def _record_failure(self, event: WebhookEvent, exc: Exception) -> None:
        try:
            async with self._session_factory() as session:
                await WebhookEventRepository(session).record_failure(
                    event.event_id,
                    event.event_type,
                    f"{type(exc).__name__}: {exc}",
                    event.payload,
                )
                await session.commit()
        except Exception:
            logger.exception("Could not record failure of webhook event %s", event.event_id)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def _route(
        self,
        session: AsyncSession,
        pending: PendingNotifications,
        event: WebhookEvent,
    ) -> tuple[IngressStatus, str | None]:
        kind = event.kind
        obj = event.data_object

        if kind is WebhookEventKind.OTHER:
            logger.debug("Ignoring webhook event type %s", event.event_type)
            return IngressStatus.IGNORED, None

        try:
            if kind in _INVOICE_KINDS and not _ref(obj.get("subscription")):
                logger.debug("Invoice %s is not for a subscription", obj.get("id"))
                return IngressStatus.IGNORED, "not a subscription invoice"

            if kind is WebhookEventKind.SUBSCRIPTION_PAYMENT_FAILED:
                if obj.get("status") == "paid":
                    return IngressStatus.IGNORED, "invoice already paid"
                provider_id = await self._resolve_provider(session, obj)
                if await self._invoice_already_paid(session, obj.get("id")):
                    logger.info("Ignoring late failure for paid invoice %s", obj.get("id"))
                    return IngressStatus.IGNORED, "invoice already paid"
                await self._record_subscription_payment(session, provider_id, obj, succeeded=False)
                await self._dunning.apply_payment_failure(session, pending, provider_id, invoice_ref=obj.get("id"))
                return IngressStatus.PROCESSED, None

            if kind is WebhookEventKind.SUBSCRIPTION_PAYMENT_SUCCEEDED:
                provider_id = await self._resolve_provider(session, obj)
                await self._record_subscription_payment(session, provider_id, obj, succeeded=True)
                await self._dunning.apply_payment_success(session, provider_id)
                return IngressStatus.PROCESSED, None

            if kind is WebhookEventKind.DISPUTE_OPENED:
                details = dispute_details_from_object(obj)
                result = await self._disputes.apply_dispute_opened(session, pending, details)
                return self._dispute_status(result)

            if kind is WebhookEventKind.DISPUTE_CLOSED:
                details = dispute_details_from_object(obj)
                result = await self._disputes.apply_dispute_closed(
                    session,
                    pending,
                    details.dispute_ref,
                    details.status,
                    details=details,
                )
                return self._dispute_status(result)

            metadata = lead_fee_metadata(obj)
            if metadata is None:
                return IngressStatus.IGNORED, "not a lead fee payment"
            last_error = obj.get("last_payment_error") or {}
            await self._lead_charges.reconcile_gateway_outcome(
                session,
                pending,
                succeeded=kind is WebhookEventKind.LEAD_CHARGE_SUCCEEDED,
                lead_charge_id=metadata.get("lead_charge_id"),
                provider_charge_ref=obj.get("id"),
                charge_ref=_ref(obj.get("latest_charge")),
                failure_reason=last_error.get("message"),
            )
            return IngressStatus.PROCESSED, None

        except UnattributedEventError as exc:
            logger.warning("Webhook event %s could not be attributed: %s", event.event_id, exc.message)
            pending.add(
                self._review_channel,
                NotificationKind.EVENT_UNATTRIBUTED,
                {
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "reference": exc.reference,
                    "reason": exc.message,
                },
                correlation_id=event.event_id,
            )
            return IngressStatus.UNATTRIBUTED, exc.message

    @staticmethod
    def _dispute_status(result: DisputeLedgerResult) -> tuple[IngressStatus, str | None]:
        if result.attributed:
            return IngressStatus.PROCESSED, None
        return IngressStatus.UNATTRIBUTED, f"dispute {result.dispute_ref} needs manual review"

    async def _resolve_provider(self, session: AsyncSession, obj: dict[str, Any]) -> str:
        """Map an invoice to a provider by customer id, then by invoice or subscription metadata."""
        accounts = ProviderAccountRepository(session)
        customer_ref = _ref(obj.get("customer"))
        if customer_ref:
            account = await accounts.get_by_customer_ref(customer_ref)
            if account is not None:
                return account.provider_id

        subscription_details = obj.get("subscription_details") or {}
        for metadata in (obj.get("metadata") or {}, subscription_details.get("metadata") or {}):
            provider_id = metadata.get("provider_id")
            if provider_id and await accounts.get(provider_id) is not None:
                return provider_id

        raise UnattributedEventError(
            f"No provider account for customer {customer_ref!r}",
            reference=customer_ref,
        )

    @staticmethod
    async def _invoice_already_paid(session: AsyncSession, invoice_ref: str | None) -> bool:
        if not invoice_ref:
            return False
        record = await PaymentRecordRepository(session).find_by_invoice_ref(invoice_ref)
        return record is not None and record.status == PAYMENT_STATUS_SUCCEEDED

    async def _record_subscription_payment(
        self,
        session: AsyncSession,
        provider_id: str,
        invoice: dict[str, Any],
        *,
        succeeded: bool,
    ) -> None:
        metadata: dict[str, Any] = {
            "type": PAYMENT_KIND_SUBSCRIPTION,
            "subscription_id": _ref(invoice.get("subscription")),
        }
        if succeeded:
            status = PAYMENT_STATUS_SUCCEEDED
            amount = invoice.get("amount_paid")
            description = "Subscription payment"
            paid_at = _timestamp((invoice.get("status_transitions") or {}).get("paid_at"))
        else:
            status = PAYMENT_STATUS_FAILED
            amount = invoice.get("amount_due")
            description = "Subscription payment failed"
            paid_at = None
            metadata["failure_reason"] = "payment_failed"
            metadata["attempt_count"] = invoice.get("attempt_count")

        await PaymentRecordRepository(session).record_invoice(
            provider_id,
            PAYMENT_KIND_SUBSCRIPTION,
            invoice["id"],
            status=status,
            amount_cents=int(amount or 0),
            currency=invoice.get("currency") or "usd",
            payment_intent_ref=_ref(invoice.get("payment_intent")),
            charge_ref=_ref(invoice.get("charge")),
            description=description,
            metadata=metadata,
            paid_at=paid_at,
        )
