"""FastAPI dependency injection for settings, database sessions, and billing services."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Annotated

from billing_core.gateway.base import PaymentGateway
from billing_core.gateway.stripe_gateway import StripeGateway
from billing_core.models.dunning import DunningPolicy
from billing_core.state.database import get_engine
from billing_core.state.database import get_session_factory as _make_session_factory
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from billing_api.config import BillingSettings, load_settings
from billing_api.services.dispute_service import DisputeService
from billing_api.services.dunning_service import DunningService
from billing_api.services.lead_charge_service import LeadChargeService
from billing_api.services.notification_dispatcher import NotificationDispatcher
from billing_api.services.notifications import NotificationBus, NotificationPort, build_notification_bus
from billing_api.services.webhook_ingress_service import WebhookIngressService

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: BillingSettings | None = None


def get_settings() -> BillingSettings:
    """Return the cached :class:`BillingSettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_settings()
    return _settings_cache


SettingsDep = Annotated[BillingSettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: BillingSettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = _make_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    The billing services open their own short transactions, so they take
    the factory rather than a request-scoped session.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on exception."""
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Billing services
# ---------------------------------------------------------------------------


@dataclass
class BillingServices:
    """The wired-up billing engines shared by every request."""

    gateway: PaymentGateway
    notifier: NotificationPort
    lead_charges: LeadChargeService
    dunning: DunningService
    disputes: DisputeService
    ingress: WebhookIngressService
    dispatcher: NotificationDispatcher | None = None
    drain_seconds: float | None = None


_services: BillingServices | None = None


def build_services(
    settings: BillingSettings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    gateway: PaymentGateway | None = None,
    notifier: NotificationPort | None = None,
) -> BillingServices:
    """Wire the gateway, the notification bus and the four billing engines.

    Parameters
    ----------
    settings:
        Service configuration.
    session_factory:
        Factory shared by every engine.
    gateway:
        Gateway override (tests); defaults to :class:`StripeGateway`.
    notifier:
        Notification port override (tests); defaults to a bus that logs to
        ``notification_log`` and forwards to the external renderer when
        ``notification_endpoint_url`` is set.
    """
    if gateway is None:
        gateway = StripeGateway(
            settings.stripe_secret_key.get_secret_value(),
            settings.stripe_webhook_secret.get_secret_value(),
            webhook_tolerance_seconds=settings.webhook_tolerance_seconds,
            timeout_seconds=settings.gateway_timeout_seconds,
        )

    dispatcher: NotificationDispatcher | None = None
    if notifier is None:
        if settings.notification_endpoint_url:
            dispatcher = NotificationDispatcher(
                settings.notification_endpoint_url,
                settings.notification_signing_secret.get_secret_value(),
                timeout_seconds=settings.notification_timeout_seconds,
                max_retries=settings.notification_max_retries,
            )
        notifier = build_notification_bus(session_factory=session_factory, dispatcher=dispatcher)

    lead_charges = LeadChargeService(session_factory, gateway, notifier)
    dunning = DunningService(
        session_factory,
        notifier,
        policy=DunningPolicy(
            max_attempts=settings.dunning_max_attempts,
            grace_period_days=settings.dunning_grace_period_days,
        ),
        transition_max_attempts=settings.transition_max_attempts,
    )
    disputes = DisputeService(
        session_factory,
        notifier,
        operator_channel=settings.operator_channel,
        review_channel=settings.review_channel,
        transition_max_attempts=settings.transition_max_attempts,
    )
    ingress = WebhookIngressService(
        session_factory,
        gateway,
        notifier,
        lead_charges=lead_charges,
        dunning=dunning,
        disputes=disputes,
        review_channel=settings.review_channel,
    )
    return BillingServices(
        gateway=gateway,
        notifier=notifier,
        lead_charges=lead_charges,
        dunning=dunning,
        disputes=disputes,
        ingress=ingress,
        dispatcher=dispatcher,
        drain_seconds=settings.notification_drain_seconds,
    )


def init_services(
    settings: BillingSettings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    gateway: PaymentGateway | None = None,
    notifier: NotificationPort | None = None,
) -> BillingServices:
    """Create and cache the global :class:`BillingServices`."""
    global _services  # noqa: PLW0603
    _services = build_services(settings, session_factory, gateway=gateway, notifier=notifier)
    return _services


async def dispose_services() -> None:
    """Let queued notifications finish, then close the dispatcher's HTTP pool."""
    global _services  # noqa: PLW0603
    if _services is not None:
        if isinstance(_services.notifier, NotificationBus):
            await _services.notifier.drain(_services.drain_seconds)
        if _services.dispatcher is not None:
            await _services.dispatcher.close()
        _services = None


def get_services() -> BillingServices:
    """Return the cached :class:`BillingServices` singleton."""
    if _services is None:
        raise RuntimeError(
            "Billing services have not been initialised. Ensure init_services() is called during application startup."
        )
    return _services


def get_lead_charge_service() -> LeadChargeService:
    return get_services().lead_charges


def get_dunning_service() -> DunningService:
    return get_services().dunning


def get_dispute_service() -> DisputeService:
    return get_services().disputes


def get_ingress_service() -> WebhookIngressService:
    return get_services().ingress


LeadChargeServiceDep = Annotated[LeadChargeService, Depends(get_lead_charge_service)]
DunningServiceDep = Annotated[DunningService, Depends(get_dunning_service)]
DisputeServiceDep = Annotated[DisputeService, Depends(get_dispute_service)]
IngressServiceDep = Annotated[WebhookIngressService, Depends(get_ingress_service)]
