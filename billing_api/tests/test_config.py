"""Tests for environment-driven settings and service wiring."""

from __future__ import annotations

import pytest
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_api.config import BillingSettings, PlatformEnv
from billing_api.dependencies import build_services
from billing_api.services.notifications import NotificationBus


class TestBillingSettings:
    def test_defaults(self) -> None:
        settings = BillingSettings(_env_file=None)
        assert settings.platform_env is PlatformEnv.DEV
        assert settings.dunning_max_attempts == 3
        assert settings.dunning_grace_period_days == 7
        assert settings.notification_drain_seconds == 15.0

    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BILLING_DUNNING_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("BILLING_STRIPE_SECRET_KEY", "sk_test_env")
        settings = BillingSettings(_env_file=None)
        assert settings.dunning_max_attempts == 5
        assert settings.stripe_secret_key.get_secret_value() == "sk_test_env"

    def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValidationError):
            BillingSettings(_env_file=None, dunning_max_attempts=0)

    def test_production_requires_stripe_secrets(self) -> None:
        with pytest.raises(ValidationError):
            BillingSettings(_env_file=None, platform_env="production")

    def test_production_with_secrets(self) -> None:
        settings = BillingSettings(
            _env_file=None,
            platform_env="production",
            stripe_secret_key="sk_live_x",
            stripe_webhook_secret="whsec_x",
        )
        assert settings.platform_env is PlatformEnv.PRODUCTION


@pytest.mark.asyncio
async def test_build_services_uses_configured_policy(session_factory: async_sessionmaker[AsyncSession]) -> None:
    settings = BillingSettings(_env_file=None, dunning_max_attempts=4, dunning_grace_period_days=10)

    services = build_services(settings, session_factory)

    assert services.dunning.policy.max_attempts == 4
    assert services.dunning.policy.grace_period_days == 10
    assert isinstance(services.notifier, NotificationBus)
    assert services.dispatcher is None
