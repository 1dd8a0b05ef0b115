"""Tests for the subscription dunning state machine."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from billing_core.errors import AccountNotFoundError
from billing_core.models.account import AccountSnapshot, SubscriptionStatus, Tier
from billing_core.models.dunning import DunningAction, DunningPolicy
from fakes import Clock, RecordingNotifier

from billing_api.services.dunning_service import (
    DunningService,
    payment_failure_transition,
    payment_success_transition,
)
from billing_api.services.notifications import NotificationKind

MakeAccount = Callable[..., Awaitable[AccountSnapshot]]
ReadAccount = Callable[..., Awaitable[AccountSnapshot]]

_NOW = datetime(2026, 5, 1, 9, 0, tzinfo=UTC)
_POLICY = DunningPolicy(max_attempts=3, grace_period_days=7)


def _snapshot(**overrides: Any) -> AccountSnapshot:
    values: dict[str, Any] = {"provider_id": "prov-1", "tier": Tier.PRO}
    values.update(overrides)
    return AccountSnapshot(**values)


# ---------------------------------------------------------------------------
# Pure transitions
# ---------------------------------------------------------------------------


class TestFailureTransition:
    def test_first_failure_opens_grace_period(self) -> None:
        changes, state = payment_failure_transition(_snapshot(), _NOW, _POLICY)

        assert state.action is DunningAction.GRACE_STARTED
        assert state.failure_count == 1
        assert changes["grace_period_end"] == _NOW + timedelta(days=7)
        assert changes["subscription_status"] is SubscriptionStatus.PAST_DUE

    def test_first_failure_opens_grace_even_with_single_attempt_policy(self) -> None:
        policy = DunningPolicy(max_attempts=1, grace_period_days=3)
        _, state = payment_failure_transition(_snapshot(), _NOW, policy)

        assert state.action is DunningAction.GRACE_STARTED
        assert state.grace_period_end == _NOW + timedelta(days=3)

    def test_later_failure_keeps_grace_end(self) -> None:
        grace_end = _NOW + timedelta(days=5)
        snapshot = _snapshot(payment_failure_count=1, grace_period_end=grace_end)

        changes, state = payment_failure_transition(snapshot, _NOW, _POLICY)

        assert state.action is DunningAction.WARNING_SENT
        assert changes == {"payment_failure_count": 2}
        assert state.grace_period_end == grace_end

    def test_missing_grace_below_limit_starts_grace(self) -> None:
        snapshot = _snapshot(payment_failure_count=1, grace_period_end=None)

        changes, state = payment_failure_transition(snapshot, _NOW, _POLICY)

        assert state.action is DunningAction.GRACE_STARTED
        assert changes["grace_period_end"] == _NOW + timedelta(days=7)

    def test_exhausted_within_grace_is_final_warning(self) -> None:
        snapshot = _snapshot(payment_failure_count=2, grace_period_end=_NOW + timedelta(hours=1))

        changes, state = payment_failure_transition(snapshot, _NOW, _POLICY)

        assert state.action is DunningAction.FINAL_WARNING
        assert changes == {"payment_failure_count": 3}

    def test_exhausted_after_grace_downgrades(self) -> None:
        snapshot = _snapshot(payment_failure_count=2, grace_period_end=_NOW - timedelta(seconds=1))

        changes, state = payment_failure_transition(snapshot, _NOW, _POLICY)

        assert state.action is DunningAction.DOWNGRADED
        assert state.previous_tier == "pro"
        assert changes == {
            "tier": Tier.FREE,
            "payment_failure_count": 0,
            "grace_period_end": None,
            "subscription_status": SubscriptionStatus.CANCELED,
        }

    def test_exhausted_without_grace_downgrades(self) -> None:
        snapshot = _snapshot(payment_failure_count=2, grace_period_end=None)
        _, state = payment_failure_transition(snapshot, _NOW, _POLICY)
        assert state.downgraded is True

    def test_canceled_subscription_is_not_reopened(self) -> None:
        snapshot = _snapshot(subscription_status=SubscriptionStatus.CANCELED)
        changes, _ = payment_failure_transition(snapshot, _NOW, _POLICY)
        assert "subscription_status" not in changes


class TestSuccessTransition:
    def test_resets_open_episode(self) -> None:
        snapshot = _snapshot(
            payment_failure_count=2,
            grace_period_end=_NOW,
            subscription_status=SubscriptionStatus.PAST_DUE,
        )

        changes, reset = payment_success_transition(snapshot)

        assert reset is True
        assert changes == {
            "payment_failure_count": 0,
            "grace_period_end": None,
            "subscription_status": SubscriptionStatus.ACTIVE,
        }

    def test_clean_account_is_untouched(self) -> None:
        assert payment_success_transition(_snapshot()) == ({}, False)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class TestDunningService:
    @pytest.mark.asyncio
    async def test_grace_period_is_set_once(
        self,
        dunning: DunningService,
        clock: Clock,
        make_account: MakeAccount,
        read_account: ReadAccount,
    ) -> None:
        await make_account(tier=Tier.PRO)

        first = await dunning.on_subscription_payment_failed("prov-1", "in_1")
        clock.advance(days=2)
        second = await dunning.on_subscription_payment_failed("prov-1", "in_1")

        assert first.grace_period_end == _NOW + timedelta(days=7)
        assert second.grace_period_end == first.grace_period_end
        account = await read_account()
        assert account.grace_period_end == _NOW + timedelta(days=7)
        assert account.payment_failure_count == 2
        assert account.subscription_status is SubscriptionStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_full_episode_ends_in_downgrade(
        self,
        dunning: DunningService,
        clock: Clock,
        notifier: RecordingNotifier,
        make_account: MakeAccount,
        read_account: ReadAccount,
    ) -> None:
        await make_account(tier=Tier.BASIC)

        actions = []
        actions.append((await dunning.on_subscription_payment_failed("prov-1")).action)
        clock.advance(days=1)
        actions.append((await dunning.on_subscription_payment_failed("prov-1")).action)
        clock.advance(days=1)
        actions.append((await dunning.on_subscription_payment_failed("prov-1")).action)
        clock.advance(days=6)
        actions.append((await dunning.on_subscription_payment_failed("prov-1")).action)

        assert actions == [
            DunningAction.GRACE_STARTED,
            DunningAction.WARNING_SENT,
            DunningAction.FINAL_WARNING,
            DunningAction.DOWNGRADED,
        ]
        assert notifier.kinds("prov-1") == [
            NotificationKind.PAYMENT_FAILED,
            NotificationKind.PAYMENT_FAILED,
            NotificationKind.PAYMENT_FINAL_WARNING,
            NotificationKind.SUBSCRIPTION_DOWNGRADED,
        ]
        assert [d["attempt_number"] for d in notifier.data_for(NotificationKind.PAYMENT_FAILED)] == [1, 2]
        assert notifier.data_for(NotificationKind.SUBSCRIPTION_DOWNGRADED)[0]["previous_tier"] == "basic"

        account = await read_account()
        assert account.tier is Tier.FREE
        assert account.payment_failure_count == 0
        assert account.grace_period_end is None
        assert account.subscription_status is SubscriptionStatus.CANCELED

    @pytest.mark.asyncio
    async def test_success_resets_episode(
        self,
        dunning: DunningService,
        make_account: MakeAccount,
        read_account: ReadAccount,
    ) -> None:
        await make_account(tier=Tier.PRO)
        await dunning.on_subscription_payment_failed("prov-1")
        await dunning.on_subscription_payment_failed("prov-1")

        assert await dunning.on_subscription_payment_succeeded("prov-1") is True
        assert await dunning.on_subscription_payment_succeeded("prov-1") is False

        account = await read_account()
        assert account.payment_failure_count == 0
        assert account.grace_period_end is None
        assert account.subscription_status is SubscriptionStatus.ACTIVE
        assert account.tier is Tier.PRO

    @pytest.mark.asyncio
    async def test_failure_after_reset_starts_new_grace(
        self,
        dunning: DunningService,
        clock: Clock,
        make_account: MakeAccount,
    ) -> None:
        await make_account(tier=Tier.PRO)
        await dunning.on_subscription_payment_failed("prov-1")
        await dunning.on_subscription_payment_succeeded("prov-1")
        clock.advance(days=30)

        state = await dunning.on_subscription_payment_failed("prov-1")

        assert state.action is DunningAction.GRACE_STARTED
        assert state.grace_period_end == clock.now + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_unknown_provider(self, dunning: DunningService) -> None:
        with pytest.raises(AccountNotFoundError):
            await dunning.on_subscription_payment_failed("ghost")


class TestGracePeriodStatus:
    @pytest.mark.asyncio
    async def test_no_episode(self, dunning: DunningService, make_account: MakeAccount) -> None:
        await make_account()

        status = await dunning.get_grace_period_status("prov-1")

        assert status.in_grace_period is False
        assert status.failure_count == 0
        assert status.days_remaining is None

    @pytest.mark.asyncio
    async def test_days_remaining_rounds_up(
        self,
        dunning: DunningService,
        clock: Clock,
        make_account: MakeAccount,
    ) -> None:
        await make_account(tier=Tier.PRO)
        await dunning.on_subscription_payment_failed("prov-1")
        clock.advance(days=2, hours=12)

        status = await dunning.get_grace_period_status("prov-1")

        assert status.in_grace_period is True
        assert status.failure_count == 1
        assert status.days_remaining == 5

    @pytest.mark.asyncio
    async def test_expired_grace(self, dunning: DunningService, clock: Clock, make_account: MakeAccount) -> None:
        await make_account(tier=Tier.PRO)
        await dunning.on_subscription_payment_failed("prov-1")
        clock.advance(days=8)

        status = await dunning.get_grace_period_status("prov-1")

        assert status.in_grace_period is False
        assert status.days_remaining == 0

    @pytest.mark.asyncio
    async def test_unknown_provider(self, dunning: DunningService) -> None:
        with pytest.raises(AccountNotFoundError):
            await dunning.get_grace_period_status("ghost")
