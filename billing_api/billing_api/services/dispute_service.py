"""Dispute ledger.

Records chargebacks against provider accounts, flags the account while any
dispute is open, and reports the outcome when a dispute closes.  Every
dispute is stored exactly once (keyed by the provider's dispute id) even
when it cannot be attributed to an account, so nothing is silently lost.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from billing_core.models.account import AccountSnapshot, DisputeStatus
from billing_core.models.dispute import (
    TERMINAL_DISPUTE_STATUSES,
    DisputeDetails,
    DisputeLedgerResult,
    DisputeOutcome,
)
from billing_core.state.repository import (
    DisputeRepository,
    LeadChargeRepository,
    PaymentRecordRepository,
    ProviderAccountRepository,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_api.services.notifications import NotificationKind, NotificationPort, PendingNotifications

logger = logging.getLogger(__name__)

# Status given to a dispute first seen through its close event.
_BACKFILLED_STATUS = "needs_response"


class DisputeService:
    """Open and close disputes.

    Parameters
    ----------
    session_factory:
        Factory for the sessions used by the standalone entry points.
    notifier:
        Port receiving dispute notifications after commit.
    operator_channel:
        Recipient of admin alerts for every new dispute.
    review_channel:
        Recipient of disputes that need manual attribution.
    transition_max_attempts:
        Compare-and-swap attempts when recomputing the account flag.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: NotificationPort,
        *,
        operator_channel: str,
        review_channel: str,
        transition_max_attempts: int = 5,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier
        self._operator_channel = operator_channel
        self._review_channel = review_channel
        self._transition_max_attempts = transition_max_attempts

    # ------------------------------------------------------------------
    # Standalone entry points
    # ------------------------------------------------------------------

    async def on_dispute_opened(
        self,
        dispute_ref: str,
        charge_ref: str | None,
        amount_cents: int,
        reason: str,
        evidence_due_by: datetime | None = None,
        *,
        payment_intent_ref: str | None = None,
        customer_ref: str | None = None,
        currency: str = "usd",
        status: str = "needs_response",
    ) -> DisputeLedgerResult:
        """Record a new dispute in its own transaction."""
        details = DisputeDetails(
            dispute_ref=dispute_ref,
            charge_ref=charge_ref,
            payment_intent_ref=payment_intent_ref,
            customer_ref=customer_ref,
            amount_cents=amount_cents,
            currency=currency,
            reason=reason,
            status=status,
            evidence_due_by=evidence_due_by,
        )
        pending = PendingNotifications()
        async with self._session_factory() as session:
            result = await self.apply_dispute_opened(session, pending, details)
            await session.commit()
        await pending.flush(self._notifier)
        return result

    async def on_dispute_closed(
        self,
        dispute_ref: str,
        outcome: str,
        *,
        details: DisputeDetails | None = None,
    ) -> DisputeLedgerResult:
        """Close a dispute in its own transaction.

        *outcome* is the provider's final status (``won``, ``lost``,
        ``warning_closed`` or ``charge_refunded``).
        """
        pending = PendingNotifications()
        async with self._session_factory() as session:
            result = await self.apply_dispute_closed(session, pending, dispute_ref, outcome, details=details)
            await session.commit()
        await pending.flush(self._notifier)
        return result

    # ------------------------------------------------------------------
    # Transactional operations
    # ------------------------------------------------------------------

    async def apply_dispute_opened(
        self,
        session: AsyncSession,
        pending: PendingNotifications,
        details: DisputeDetails,
    ) -> DisputeLedgerResult:
        """Record a dispute inside the caller's transaction.

        A repeated open for the same dispute id changes nothing.
        """
        provider_id = await self.attribute(session, details)

        created = await DisputeRepository(session).insert_if_absent(details, provider_id)
        if not created:
            logger.debug("Dispute %s already recorded", details.dispute_ref)
            return DisputeLedgerResult(dispute_ref=details.dispute_ref, provider_id=provider_id)

        alert = {
            "dispute_ref": details.dispute_ref,
            "provider_id": provider_id,
            "amount_cents": details.amount_cents,
            "currency": details.currency,
            "reason": details.reason,
            "charge_ref": details.charge_ref,
        }

        if provider_id is None:
            logger.error("Could not attribute dispute %s to a provider; escalating", details.dispute_ref)
            pending.add(
                self._review_channel,
                NotificationKind.DISPUTE_UNATTRIBUTED,
                alert,
                correlation_id=details.dispute_ref,
            )
            return DisputeLedgerResult(dispute_ref=details.dispute_ref, changed=True)

        await ProviderAccountRepository(session).increment_dispute_count(provider_id)

        pending.add(
            self._operator_channel,
            NotificationKind.DISPUTE_ADMIN_ALERT,
            alert,
            correlation_id=details.dispute_ref,
        )
        pending.add(
            provider_id,
            NotificationKind.DISPUTE_OPENED,
            {
                "dispute_ref": details.dispute_ref,
                "amount_cents": details.amount_cents,
                "currency": details.currency,
                "reason": details.reason,
                "evidence_due_by": details.evidence_due_by.isoformat() if details.evidence_due_by else None,
            },
            correlation_id=details.dispute_ref,
        )
        logger.info("Dispute %s recorded for provider %s", details.dispute_ref, provider_id)
        return DisputeLedgerResult(
            dispute_ref=details.dispute_ref,
            provider_id=provider_id,
            changed=True,
            dispute_status=DisputeStatus.UNDER_REVIEW.value,
        )

    async def apply_dispute_closed(
        self,
        session: AsyncSession,
        pending: PendingNotifications,
        dispute_ref: str,
        status: str,
        *,
        details: DisputeDetails | None = None,
    ) -> DisputeLedgerResult:
        """Close a dispute inside the caller's transaction.

        A close that arrives before the dispute was recorded records it from
        *details* first.  A repeated close changes nothing.
        """
        disputes = DisputeRepository(session)
        if status not in TERMINAL_DISPUTE_STATUSES:
            logger.warning("Dispute %s closed with non-terminal status %r; treating as lost", dispute_ref, status)
            status = DisputeOutcome.LOST.value

        record = await disputes.get_by_ref(dispute_ref)
        if record is None:
            if details is None:
                logger.error("Close received for unknown dispute %s; escalating", dispute_ref)
                pending.add(
                    self._review_channel,
                    NotificationKind.DISPUTE_UNATTRIBUTED,
                    {"dispute_ref": dispute_ref, "status": status},
                    correlation_id=dispute_ref,
                )
                return DisputeLedgerResult(dispute_ref=dispute_ref)

            logger.info("Dispute %s closed before it was recorded; recording it first", dispute_ref)
            await self.apply_dispute_opened(
                session,
                pending,
                details.model_copy(update={"dispute_ref": dispute_ref, "status": _BACKFILLED_STATUS}),
            )
            record = await disputes.get_by_ref(dispute_ref)

        closed = await disputes.close(dispute_ref, status)
        if not closed or record is None:
            logger.debug("Dispute %s already closed", dispute_ref)
            return DisputeLedgerResult(dispute_ref=dispute_ref, provider_id=record.provider_id if record else None)

        outcome = DisputeOutcome.from_status(status)
        provider_id = record.provider_id
        if provider_id is None:
            logger.warning("Unattributed dispute %s closed with outcome %s", dispute_ref, outcome.value)
            pending.add(
                self._review_channel,
                NotificationKind.DISPUTE_UNATTRIBUTED,
                {
                    "dispute_ref": dispute_ref,
                    "status": status,
                    "outcome": outcome.value,
                    "amount_cents": record.amount_cents,
                    "resolved": True,
                },
                correlation_id=dispute_ref,
            )
            return DisputeLedgerResult(dispute_ref=dispute_ref, changed=True, outcome=outcome)

        new_status = await self._refresh_account_flag(session, provider_id)

        pending.add(
            provider_id,
            NotificationKind.DISPUTE_RESOLVED,
            {
                "dispute_ref": dispute_ref,
                "amount_cents": record.amount_cents,
                "currency": record.currency,
                "outcome": outcome.value,
            },
            correlation_id=dispute_ref,
        )
        logger.info("Dispute %s closed with outcome: %s", dispute_ref, outcome.value)
        return DisputeLedgerResult(
            dispute_ref=dispute_ref,
            provider_id=provider_id,
            changed=True,
            outcome=outcome,
            dispute_status=new_status.value,
        )

    async def _refresh_account_flag(self, session: AsyncSession, provider_id: str) -> DisputeStatus:
        accounts = ProviderAccountRepository(session)
        await accounts.lock(provider_id)
        open_count = await DisputeRepository(session).count_open(provider_id)
        target = DisputeStatus.UNDER_REVIEW if open_count > 0 else DisputeStatus.NONE

        def _transition(snapshot: AccountSnapshot) -> tuple[dict[str, Any], DisputeStatus]:
            if snapshot.dispute_status is target:
                return {}, target
            return {"dispute_status": target}, target

        _, status = await accounts.apply_transition(
            provider_id,
            _transition,
            max_attempts=self._transition_max_attempts,
        )
        return status

    # ------------------------------------------------------------------
    # Attribution
    # ------------------------------------------------------------------

    async def attribute(self, session: AsyncSession, details: DisputeDetails) -> str | None:
        """Find the provider a dispute belongs to.

        Tries, in order: the payment history by charge id, the payment
        history (and lead charges) by payment-intent id, and the account by
        gateway customer id.
        """
        payments = PaymentRecordRepository(session)

        if details.charge_ref:
            record = await payments.find_by_charge_ref(details.charge_ref)
            if record is not None:
                return record.provider_id

        if details.payment_intent_ref:
            record = await payments.find_by_payment_intent_ref(details.payment_intent_ref)
            if record is not None:
                return record.provider_id
            charge = await LeadChargeRepository(session).find_by_provider_charge_ref(details.payment_intent_ref)
            if charge is not None:
                return charge.provider_id

        if details.customer_ref:
            account = await ProviderAccountRepository(session).get_by_customer_ref(details.customer_ref)
            if account is not None:
                return account.provider_id

        return None
