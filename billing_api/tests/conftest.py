"""Shared fixtures for billing API tests.

Provides an in-memory SQLite state store, the test doubles from
``fakes``, the four billing services wired together, and a FastAPI app
whose dependencies point at those services.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import pytest
import pytest_asyncio
from billing_core.models.account import AccountSnapshot
from billing_core.models.dunning import DunningPolicy
from billing_core.state.database import create_tables, get_session_factory
from billing_core.state.repository import ProviderAccountRepository
from billing_core.state.sqlite_adapter import get_local_engine
from fakes import OPERATOR_CHANNEL, REVIEW_CHANNEL, Clock, FakeGateway, RecordingNotifier
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from billing_api.dependencies import (
    get_db_session,
    get_dispute_service,
    get_dunning_service,
    get_ingress_service,
    get_lead_charge_service,
)
from billing_api.main import create_app
from billing_api.services.dispute_service import DisputeService
from billing_api.services.dunning_service import DunningService
from billing_api.services.lead_charge_service import LeadChargeService
from billing_api.services.webhook_ingress_service import WebhookIngressService

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = get_local_engine(":memory:")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return get_session_factory(engine)


@pytest.fixture
def make_account(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[AccountSnapshot]]:
    """Return a coroutine function that commits a new provider account."""

    async def _make(provider_id: str = "prov-1", **kwargs: Any) -> AccountSnapshot:
        kwargs.setdefault("gateway_customer_ref", f"cus_{provider_id}")
        async with session_factory() as session:
            snapshot = await ProviderAccountRepository(session).create(provider_id, **kwargs)
            await session.commit()
        return snapshot

    return _make


@pytest.fixture
def read_account(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[str], Awaitable[AccountSnapshot]]:
    """Return a coroutine function that reads the committed account state."""

    async def _read(provider_id: str = "prov-1") -> AccountSnapshot:
        async with session_factory() as session:
            snapshot = await ProviderAccountRepository(session).get(provider_id)
        assert snapshot is not None
        return snapshot

    return _read


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> Clock:
    return Clock(datetime(2026, 5, 1, 9, 0, tzinfo=UTC))


@pytest.fixture
def lead_charges(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: FakeGateway,
    notifier: RecordingNotifier,
) -> LeadChargeService:
    return LeadChargeService(session_factory, gateway, notifier)


@pytest.fixture
def dunning(
    session_factory: async_sessionmaker[AsyncSession],
    notifier: RecordingNotifier,
    clock: Clock,
) -> DunningService:
    return DunningService(
        session_factory,
        notifier,
        policy=DunningPolicy(max_attempts=3, grace_period_days=7),
        clock=clock,
    )


@pytest.fixture
def disputes(
    session_factory: async_sessionmaker[AsyncSession],
    notifier: RecordingNotifier,
) -> DisputeService:
    return DisputeService(
        session_factory,
        notifier,
        operator_channel=OPERATOR_CHANNEL,
        review_channel=REVIEW_CHANNEL,
    )


@pytest.fixture
def ingress(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: FakeGateway,
    notifier: RecordingNotifier,
    lead_charges: LeadChargeService,
    dunning: DunningService,
    disputes: DisputeService,
) -> WebhookIngressService:
    return WebhookIngressService(
        session_factory,
        gateway,
        notifier,
        lead_charges=lead_charges,
        dunning=dunning,
        disputes=disputes,
        review_channel=REVIEW_CHANNEL,
    )


# ---------------------------------------------------------------------------
# FastAPI app (async httpx)
# ---------------------------------------------------------------------------


@pytest.fixture
def app(
    session_factory: async_sessionmaker[AsyncSession],
    lead_charges: LeadChargeService,
    dunning: DunningService,
    disputes: DisputeService,
    ingress: WebhookIngressService,
) -> FastAPI:
    """Create the app with its dependencies bound to the test services.

    The lifespan does not run under ``ASGITransport``, so nothing here
    touches the global engine or service singletons.
    """
    application = create_app()

    async def _override_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_lead_charge_service] = lambda: lead_charges
    application.dependency_overrides[get_dunning_service] = lambda: dunning
    application.dependency_overrides[get_dispute_service] = lambda: disputes
    application.dependency_overrides[get_ingress_service] = lambda: ingress
    return application


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Yield an async httpx client bound to the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
