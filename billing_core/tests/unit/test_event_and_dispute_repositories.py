"""Tests for the webhook event ledger, dispute, payment and notification repositories."""

from __future__ import annotations

import pytest
from billing_core.models.dispute import DisputeDetails
from billing_core.models.webhook import WebhookEventStatus
from billing_core.state.repository import (
    DisputeRepository,
    NotificationLogRepository,
    PaymentRecordRepository,
    ProviderAccountRepository,
    WebhookEventRepository,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# ---------------------------------------------------------------------------
# Webhook event ledger
# ---------------------------------------------------------------------------


class TestWebhookEventClaim:
    @pytest.mark.asyncio
    async def test_first_claim_wins(self, session: AsyncSession) -> None:
        repo = WebhookEventRepository(session)

        assert await repo.claim("evt_1", "invoice.payment_failed", {"id": "evt_1"}) is True
        assert await repo.claim("evt_1", "invoice.payment_failed", {"id": "evt_1"}) is False

        row = await repo.get("evt_1")
        assert row is not None
        assert row.status == WebhookEventStatus.PROCESSING.value
        assert row.attempts == 1

    @pytest.mark.asyncio
    async def test_processed_event_cannot_be_reclaimed(self, session: AsyncSession) -> None:
        repo = WebhookEventRepository(session)
        await repo.claim("evt_1", "charge.dispute.created")
        await repo.mark_status("evt_1", WebhookEventStatus.PROCESSED)

        assert await repo.claim("evt_1", "charge.dispute.created") is False
        row = await repo.get("evt_1")
        assert row is not None
        assert row.processed_at is not None

    @pytest.mark.asyncio
    async def test_failed_event_is_reclaimed(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        async with session_factory() as session:
            await WebhookEventRepository(session).record_failure(
                "evt_1", "invoice.payment_failed", "RuntimeError: boom", {"id": "evt_1"}
            )
            await session.commit()

        async with session_factory() as session:
            repo = WebhookEventRepository(session)
            assert await repo.claim("evt_1", "invoice.payment_failed") is True
            assert await repo.claim("evt_1", "invoice.payment_failed") is False
            row = await repo.get("evt_1")
            assert row is not None
            assert row.status == WebhookEventStatus.PROCESSING.value
            assert row.attempts == 2

    @pytest.mark.asyncio
    async def test_record_failure_counts_attempts(self, session: AsyncSession) -> None:
        repo = WebhookEventRepository(session)
        await repo.record_failure("evt_1", "invoice.paid", "first")
        await repo.record_failure("evt_1", "invoice.paid", "second")

        row = await repo.get("evt_1")
        assert row is not None
        assert row.status == WebhookEventStatus.FAILED.value
        assert row.attempts == 2
        assert row.last_error == "second"

    @pytest.mark.asyncio
    async def test_list_failed_includes_unattributed(self, session: AsyncSession) -> None:
        repo = WebhookEventRepository(session)
        await repo.record_failure("evt_failed", "invoice.paid", "boom")
        await repo.claim("evt_unattributed", "invoice.payment_failed")
        await repo.mark_status("evt_unattributed", WebhookEventStatus.UNATTRIBUTED, detail="no account")
        await repo.claim("evt_ok", "invoice.paid")
        await repo.mark_status("evt_ok", WebhookEventStatus.PROCESSED)

        failed = await repo.list_failed()

        assert {row.event_id for row in failed} == {"evt_failed", "evt_unattributed"}
        assert len(await repo.list_failed(limit=1)) == 1


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


def _details(dispute_ref: str = "dp_1", **overrides: object) -> DisputeDetails:
    values: dict[str, object] = {
        "dispute_ref": dispute_ref,
        "charge_ref": "ch_1",
        "amount_cents": 1500,
        "reason": "fraudulent",
    }
    values.update(overrides)
    return DisputeDetails(**values)  # type: ignore[arg-type]


class TestDisputeRepository:
    @pytest.mark.asyncio
    async def test_insert_once(self, session: AsyncSession) -> None:
        await ProviderAccountRepository(session).create("prov-1")
        repo = DisputeRepository(session)

        assert await repo.insert_if_absent(_details(), "prov-1") is True
        assert await repo.insert_if_absent(_details(), "prov-1") is False

        row = await repo.get_by_ref("dp_1")
        assert row is not None
        assert row.provider_id == "prov-1"
        assert row.status == "needs_response"

    @pytest.mark.asyncio
    async def test_unattributed_dispute_is_stored(self, session: AsyncSession) -> None:
        repo = DisputeRepository(session)
        assert await repo.insert_if_absent(_details("dp_orphan"), None) is True
        row = await repo.get_by_ref("dp_orphan")
        assert row is not None
        assert row.provider_id is None

    @pytest.mark.asyncio
    async def test_close_is_conditional(self, session: AsyncSession) -> None:
        await ProviderAccountRepository(session).create("prov-1")
        repo = DisputeRepository(session)
        await repo.insert_if_absent(_details(), "prov-1")

        assert await repo.close("dp_1", "won") is True
        assert await repo.close("dp_1", "lost") is False
        assert await repo.close("dp_unknown", "won") is False

        row = await repo.get_by_ref("dp_1")
        assert row is not None
        assert row.status == "won"
        assert row.resolved_at is not None

    @pytest.mark.asyncio
    async def test_count_open(self, session: AsyncSession) -> None:
        await ProviderAccountRepository(session).create("prov-1")
        repo = DisputeRepository(session)
        await repo.insert_if_absent(_details("dp_1"), "prov-1")
        await repo.insert_if_absent(_details("dp_2"), "prov-1")
        await repo.insert_if_absent(_details("dp_3", status="warning_needs_response"), "prov-1")

        assert await repo.count_open("prov-1") == 3
        await repo.close("dp_1", "lost")
        await repo.close("dp_2", "charge_refunded")
        assert await repo.count_open("prov-1") == 1


# ---------------------------------------------------------------------------
# Payment records and notification log
# ---------------------------------------------------------------------------


class TestPaymentRecordRepository:
    @pytest.mark.asyncio
    async def test_duplicate_reference_is_ignored(self, session: AsyncSession) -> None:
        await ProviderAccountRepository(session).create("prov-1")
        repo = PaymentRecordRepository(session)

        first = await repo.record("prov-1", "subscription", amount_cents=4900, invoice_ref="in_1", charge_ref="ch_1")
        second = await repo.record("prov-1", "subscription", amount_cents=4900, invoice_ref="in_1", charge_ref="ch_1")

        assert first is True
        assert second is False

    @pytest.mark.asyncio
    async def test_lookup_by_references(self, session: AsyncSession) -> None:
        await ProviderAccountRepository(session).create("prov-1")
        repo = PaymentRecordRepository(session)
        await repo.record("prov-1", "lead_fee", amount_cents=1500, payment_intent_ref="pi_1", charge_ref="ch_1")

        by_charge = await repo.find_by_charge_ref("ch_1")
        by_intent = await repo.find_by_payment_intent_ref("pi_1")

        assert by_charge is not None and by_charge.provider_id == "prov-1"
        assert by_intent is not None and by_intent.kind == "lead_fee"
        assert await repo.find_by_charge_ref("ch_missing") is None


class TestNotificationLogRepository:
    @pytest.mark.asyncio
    async def test_records_in_order(self, session: AsyncSession) -> None:
        repo = NotificationLogRepository(session)
        await repo.record("payment.failed", "prov-1", {"attempt_number": 1}, "in_1")
        await repo.record("payment.final_warning", "prov-1", {}, "in_2")
        await repo.record("dispute.admin_alert", "billing-operators")

        rows = await repo.list_for_recipient("prov-1")

        assert [row.kind for row in rows] == ["payment.failed", "payment.final_warning"]
        assert rows[0].data == {"attempt_number": 1}
