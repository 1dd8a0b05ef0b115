"""Dunning state machine for subscription payment failures.

The first failure of an episode opens a grace period.  Later failures warn
the provider with the attempt number, and once the retry schedule is
exhausted the account is either given a final warning (grace period still
running) or downgraded to the free tier (grace period over).  A successful
payment ends the episode.

Transitions are pure functions of the account snapshot and the current
time, committed through ``ProviderAccountRepository.apply_transition`` so
concurrent events for the same account are serialised.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from billing_core.errors import AccountNotFoundError
from billing_core.models.account import AccountSnapshot, SubscriptionStatus, Tier
from billing_core.models.dunning import DunningAction, DunningPolicy, DunningState, GracePeriodStatus
from billing_core.state.repository import ProviderAccountRepository
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_api.services.notifications import NotificationKind, NotificationPort, PendingNotifications

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Pure transitions
# ---------------------------------------------------------------------------


def payment_failure_transition(
    snapshot: AccountSnapshot,
    now: datetime,
    policy: DunningPolicy,
) -> tuple[dict[str, Any], DunningState]:
    """Compute the account changes for one subscription payment failure.

    Parameters
    ----------
    snapshot:
        Account state before the failure.
    now:
        Time the failure is processed.
    policy:
        Retry schedule.

    Returns
    -------
    tuple
        Column changes and the resulting :class:`DunningState`.
    """
    count = snapshot.payment_failure_count + 1
    grace_end = snapshot.grace_period_end
    max_attempts = policy.max_attempts

    if count == 1 or (grace_end is None and count < max_attempts):
        grace_end = now + timedelta(days=policy.grace_period_days)
        changes: dict[str, Any] = {
            "payment_failure_count": count,
            "grace_period_end": grace_end,
        }
        if snapshot.subscription_status is not SubscriptionStatus.CANCELED:
            changes["subscription_status"] = SubscriptionStatus.PAST_DUE
        return changes, DunningState(
            provider_id=snapshot.provider_id,
            action=DunningAction.GRACE_STARTED,
            failure_count=count,
            max_attempts=max_attempts,
            grace_period_end=grace_end,
            in_grace_period=True,
        )

    if count < max_attempts:
        return {"payment_failure_count": count}, DunningState(
            provider_id=snapshot.provider_id,
            action=DunningAction.WARNING_SENT,
            failure_count=count,
            max_attempts=max_attempts,
            grace_period_end=grace_end,
            in_grace_period=True,
        )

    if grace_end is not None and now < grace_end:
        return {"payment_failure_count": count}, DunningState(
            provider_id=snapshot.provider_id,
            action=DunningAction.FINAL_WARNING,
            failure_count=count,
            max_attempts=max_attempts,
            grace_period_end=grace_end,
            in_grace_period=True,
        )

    # Schedule exhausted and no grace left: downgrade.
    changes = {
        "tier": Tier.FREE,
        "payment_failure_count": 0,
        "grace_period_end": None,
        "subscription_status": SubscriptionStatus.CANCELED,
    }
    return changes, DunningState(
        provider_id=snapshot.provider_id,
        action=DunningAction.DOWNGRADED,
        failure_count=count,
        max_attempts=max_attempts,
        grace_period_end=None,
        in_grace_period=False,
        downgraded=True,
        previous_tier=snapshot.tier.value,
    )


def payment_success_transition(snapshot: AccountSnapshot) -> tuple[dict[str, Any], bool]:
    """End the failure episode.  Returns ``(changes, episode_was_open)``."""
    changes: dict[str, Any] = {}
    if snapshot.payment_failure_count != 0:
        changes["payment_failure_count"] = 0
    if snapshot.grace_period_end is not None:
        changes["grace_period_end"] = None
    if snapshot.subscription_status is SubscriptionStatus.PAST_DUE:
        changes["subscription_status"] = SubscriptionStatus.ACTIVE
    return changes, bool(changes)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class DunningService:
    """Apply subscription payment outcomes to provider accounts.

    Parameters
    ----------
    session_factory:
        Factory for the sessions used by the standalone entry points.
    notifier:
        Port receiving dunning notifications after commit.
    policy:
        Retry schedule (max attempts and grace period length).
    transition_max_attempts:
        Compare-and-swap attempts per transition.
    clock:
        Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: NotificationPort,
        *,
        policy: DunningPolicy | None = None,
        transition_max_attempts: int = 5,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier
        self._policy = policy or DunningPolicy()
        self._transition_max_attempts = transition_max_attempts
        self._clock = clock

    @property
    def policy(self) -> DunningPolicy:
        return self._policy

    async def on_subscription_payment_failed(self, provider_id: str, invoice_ref: str | None = None) -> DunningState:
        """Record a failed subscription payment in its own transaction."""
        pending = PendingNotifications()
        async with self._session_factory() as session:
            state = await self.apply_payment_failure(session, pending, provider_id, invoice_ref=invoice_ref)
            await session.commit()
        await pending.flush(self._notifier)
        return state

    async def on_subscription_payment_succeeded(self, provider_id: str) -> bool:
        """Record a successful subscription payment in its own transaction.

        Returns ``True`` if a failure episode was closed.
        """
        async with self._session_factory() as session:
            reset = await self.apply_payment_success(session, provider_id)
            await session.commit()
        return reset

    async def apply_payment_failure(
        self,
        session: AsyncSession,
        pending: PendingNotifications,
        provider_id: str,
        *,
        invoice_ref: str | None = None,
    ) -> DunningState:
        """Apply a failure inside the caller's transaction.

        Notifications are queued on *pending* for delivery after commit.
        """
        now = self._clock()
        _, state = await ProviderAccountRepository(session).apply_transition(
            provider_id,
            lambda snapshot: payment_failure_transition(snapshot, now, self._policy),
            max_attempts=self._transition_max_attempts,
        )

        grace_iso = state.grace_period_end.isoformat() if state.grace_period_end else None
        if state.action is DunningAction.DOWNGRADED:
            logger.info("Provider %s downgraded to free tier after failed payments", provider_id)
            pending.add(
                provider_id,
                NotificationKind.SUBSCRIPTION_DOWNGRADED,
                {"previous_tier": state.previous_tier, "invoice_ref": invoice_ref},
                correlation_id=invoice_ref,
            )
        elif state.action is DunningAction.FINAL_WARNING:
            logger.info("Provider %s final payment warning (grace until %s)", provider_id, grace_iso)
            pending.add(
                provider_id,
                NotificationKind.PAYMENT_FINAL_WARNING,
                {"grace_period_end": grace_iso, "invoice_ref": invoice_ref},
                correlation_id=invoice_ref,
            )
        else:
            logger.info(
                "Provider %s payment failure %d of %d (grace until %s)",
                provider_id,
                state.failure_count,
                state.max_attempts,
                grace_iso,
            )
            pending.add(
                provider_id,
                NotificationKind.PAYMENT_FAILED,
                {
                    "attempt_number": state.failure_count,
                    "max_attempts": state.max_attempts,
                    "grace_period_end": grace_iso,
                    "invoice_ref": invoice_ref,
                },
                correlation_id=invoice_ref,
            )
        return state

    async def apply_payment_success(self, session: AsyncSession, provider_id: str) -> bool:
        """Reset the dunning episode inside the caller's transaction."""
        _, reset = await ProviderAccountRepository(session).apply_transition(
            provider_id,
            payment_success_transition,
            max_attempts=self._transition_max_attempts,
        )
        if reset:
            logger.info("Dunning state reset for provider %s", provider_id)
        return reset

    async def get_grace_period_status(self, provider_id: str) -> GracePeriodStatus:
        """Summarise the provider's current failure episode for the dashboard."""
        async with self._session_factory() as session:
            account = await ProviderAccountRepository(session).get(provider_id)
        if account is None:
            raise AccountNotFoundError(provider_id)

        grace_end = account.grace_period_end
        if grace_end is None or account.payment_failure_count == 0:
            return GracePeriodStatus(provider_id=provider_id, in_grace_period=False, failure_count=0)

        now = self._clock()
        remaining = math.ceil((grace_end - now).total_seconds() / 86400)
        return GracePeriodStatus(
            provider_id=provider_id,
            in_grace_period=now < grace_end,
            failure_count=account.payment_failure_count,
            grace_period_end=grace_end,
            days_remaining=max(0, remaining),
        )
