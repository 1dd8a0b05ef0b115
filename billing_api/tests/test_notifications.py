"""Tests for the notification bus, background delivery, post-commit queue and HTTP dispatcher."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable

import httpx
import pytest
from billing_core.models.account import AccountSnapshot, Tier
from billing_core.models.charge import OutcomeKind
from billing_core.models.webhook import IngressStatus
from billing_core.state.repository import NotificationLogRepository
from fakes import VALID_SIGNATURE, FakeGateway, RecordingNotifier
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_api.config import BillingSettings
from billing_api.dependencies import build_services, dispose_services, init_services
from billing_api.services.notification_dispatcher import NotificationDispatcher
from billing_api.services.notifications import (
    Notification,
    NotificationBus,
    NotificationKind,
    PendingNotifications,
    build_notification_bus,
)

# ---------------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------------


class TestNotificationBus:
    @pytest.mark.asyncio
    async def test_dispatches_to_kind_and_wildcard_handlers(self) -> None:
        bus = NotificationBus()
        received: list[tuple[str, Notification]] = []

        async def on_failed(n: Notification) -> None:
            received.append(("failed", n))

        async def on_all(n: Notification) -> None:
            received.append(("all", n))

        bus.register_handler(on_failed, kind=NotificationKind.PAYMENT_FAILED)
        bus.register_handler(on_all)

        await bus.notify("prov-1", NotificationKind.PAYMENT_FAILED, {"attempt_number": 1}, correlation_id="in_1")
        await bus.notify("prov-1", NotificationKind.DISPUTE_OPENED)
        await bus.drain()

        assert [tag for tag, _ in received] == ["failed", "all", "all"]
        assert received[0][1].data == {"attempt_number": 1}
        assert received[0][1].correlation_id == "in_1"
        assert bus.handler_count == 2

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self) -> None:
        bus = NotificationBus()
        received: list[Notification] = []

        async def broken(n: Notification) -> None:
            raise RuntimeError("boom")

        async def healthy(n: Notification) -> None:
            received.append(n)

        bus.register_handler(broken)
        bus.register_handler(healthy)

        await bus.notify("prov-1", NotificationKind.LEAD_CHARGE_SUCCEEDED)
        await bus.drain()

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_log_handler_persists(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        bus = build_notification_bus(session_factory)

        await bus.notify("prov-1", NotificationKind.PAYMENT_FAILED, {"attempt_number": 2}, correlation_id="in_7")
        await bus.drain()

        async with session_factory() as session:
            rows = await NotificationLogRepository(session).list_for_recipient("prov-1")
        assert len(rows) == 1
        assert rows[0].kind == "payment.failed"
        assert rows[0].data == {"attempt_number": 2}
        assert rows[0].correlation_id == "in_7"

    @pytest.mark.asyncio
    async def test_notify_returns_before_handlers_finish(self) -> None:
        bus = NotificationBus()
        release = asyncio.Event()
        received: list[Notification] = []

        async def slow(n: Notification) -> None:
            await release.wait()
            received.append(n)

        bus.register_handler(slow)

        await asyncio.wait_for(bus.notify("prov-1", NotificationKind.PAYMENT_FAILED), timeout=1)

        assert bus.in_flight == 1
        assert received == []
        release.set()
        await bus.drain()
        assert len(received) == 1
        assert bus.in_flight == 0

    @pytest.mark.asyncio
    async def test_drain_cancels_after_timeout(self) -> None:
        bus = NotificationBus()

        async def stuck(n: Notification) -> None:
            await asyncio.Event().wait()

        bus.register_handler(stuck)
        await bus.notify("prov-1", NotificationKind.SUBSCRIPTION_DOWNGRADED)

        await bus.drain(timeout=0.01)

        assert bus.in_flight == 0


# ---------------------------------------------------------------------------
# Background delivery from the billing services
# ---------------------------------------------------------------------------


def _gated_bus() -> tuple[NotificationBus, asyncio.Event, list[Notification]]:
    bus = NotificationBus()
    release = asyncio.Event()
    delivered: list[Notification] = []

    async def slow_renderer(n: Notification) -> None:
        await release.wait()
        delivered.append(n)

    bus.register_handler(slow_renderer)
    return bus, release, delivered


class TestBackgroundDelivery:
    @pytest.mark.asyncio
    async def test_webhook_processing_does_not_wait_for_delivery(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        make_account: Callable[..., Awaitable[AccountSnapshot]],
    ) -> None:
        await make_account(tier=Tier.PRO)
        bus, release, delivered = _gated_bus()
        services = build_services(BillingSettings(_env_file=None), session_factory, gateway=FakeGateway(), notifier=bus)
        payload = json.dumps(
            {
                "id": "evt_1",
                "type": "invoice.payment_failed",
                "data": {"object": {"id": "in_1", "customer": "cus_prov-1", "subscription": "sub_1"}},
            }
        ).encode()

        result = await asyncio.wait_for(services.ingress.handle(payload, VALID_SIGNATURE), timeout=1)

        assert result.status is IngressStatus.PROCESSED
        assert delivered == []
        assert bus.in_flight == 1
        release.set()
        await bus.drain()
        assert [n.kind for n in delivered] == [NotificationKind.PAYMENT_FAILED]

    @pytest.mark.asyncio
    async def test_lead_charge_does_not_wait_for_delivery(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        make_account: Callable[..., Awaitable[AccountSnapshot]],
    ) -> None:
        await make_account(tier=Tier.FREE)
        bus, release, delivered = _gated_bus()
        services = build_services(BillingSettings(_env_file=None), session_factory, gateway=FakeGateway(), notifier=bus)

        outcome = await asyncio.wait_for(
            services.lead_charges.attempt_lead_charge("prov-1", "lead-1", Tier.FREE),
            timeout=1,
        )

        assert outcome.kind is OutcomeKind.CHARGED
        assert delivered == []
        release.set()
        await bus.drain()
        assert [n.kind for n in delivered] == [NotificationKind.LEAD_CHARGE_SUCCEEDED]

    @pytest.mark.asyncio
    async def test_dispose_services_drains_deliveries(
        self,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        bus, release, delivered = _gated_bus()
        init_services(BillingSettings(_env_file=None), session_factory, gateway=FakeGateway(), notifier=bus)
        await bus.notify("prov-1", NotificationKind.DISPUTE_OPENED)
        release.set()

        await dispose_services()

        assert len(delivered) == 1
        assert bus.in_flight == 0


# ---------------------------------------------------------------------------
# Post-commit queue
# ---------------------------------------------------------------------------


class TestPendingNotifications:
    @pytest.mark.asyncio
    async def test_flush_delivers_in_order_and_empties(self) -> None:
        notifier = RecordingNotifier()
        pending = PendingNotifications()
        pending.add("prov-1", NotificationKind.DISPUTE_OPENED, {"dispute_ref": "dp_1"})
        pending.add("ops", NotificationKind.DISPUTE_ADMIN_ALERT)

        await pending.flush(notifier)

        assert notifier.kinds() == [NotificationKind.DISPUTE_OPENED, NotificationKind.DISPUTE_ADMIN_ALERT]
        assert len(pending) == 0

    @pytest.mark.asyncio
    async def test_flush_survives_failing_port(self) -> None:
        notifier = RecordingNotifier()
        notifier.fail = True
        pending = PendingNotifications()
        pending.add("prov-1", NotificationKind.PAYMENT_FAILED)

        await pending.flush(notifier)

        assert len(pending) == 0

    def test_clear(self) -> None:
        pending = PendingNotifications()
        pending.add("prov-1", NotificationKind.PAYMENT_FAILED)
        pending.clear()
        assert len(pending) == 0


# ---------------------------------------------------------------------------
# HTTP dispatcher
# ---------------------------------------------------------------------------


def _notification() -> Notification:
    return Notification(
        kind=NotificationKind.SUBSCRIPTION_DOWNGRADED,
        recipient_ref="prov-1",
        correlation_id="in_1",
        data={"previous_tier": "pro"},
    )


class TestNotificationDispatcher:
    @pytest.mark.asyncio
    async def test_signed_delivery(self) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(202)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dispatcher = NotificationDispatcher("https://notify.test/hooks", "secret", http_client=client)

        result = await dispatcher.deliver(_notification())

        assert result == {"status": "delivered", "status_code": 202, "attempts": 1}
        request = captured[0]
        body = request.content.decode()
        assert json.loads(body)["kind"] == "subscription.downgraded"
        assert request.headers["X-Billing-Notification"] == "subscription.downgraded"
        assert request.headers["X-Billing-Delivery"] == "in_1"
        assert NotificationDispatcher.verify_signature(body, "secret", request.headers["X-Billing-Signature"])
        await client.aclose()

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self) -> None:
        statuses = iter([503, 500, 200])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(next(statuses))

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dispatcher = NotificationDispatcher("https://notify.test/hooks", http_client=client, backoff_base=0)

        result = await dispatcher.deliver(_notification())

        assert result["status"] == "delivered"
        assert result["attempts"] == 3
        await client.aclose()

    @pytest.mark.asyncio
    async def test_connection_errors_exhaust_retries(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dispatcher = NotificationDispatcher(
            "https://notify.test/hooks",
            http_client=client,
            max_retries=2,
            backoff_base=0,
        )

        result = await dispatcher.deliver(_notification())

        assert result["status"] == "failed"
        assert result["attempts"] == 2
        assert "refused" in result["error"]
        await client.aclose()

    def test_unsigned_when_no_secret(self) -> None:
        assert NotificationDispatcher.sign("{}", "") == ""
