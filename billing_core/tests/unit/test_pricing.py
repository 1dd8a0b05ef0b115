"""Tests for tier pricing and the lead credit allowance."""

from __future__ import annotations

import pytest
from billing_core.errors import ConfigurationError, ErrorKind
from billing_core.models.account import Tier
from billing_core.pricing import DEFAULT_TIER_PRICING, UNLIMITED_CREDITS, TierPricing, pricing_for_tier


class TestDefaultPricing:
    def test_free_tier_charges_every_lead(self) -> None:
        pricing = pricing_for_tier(Tier.FREE)
        assert pricing.lead_fee_cents == 1500
        assert pricing.requires_payment(0) is True

    def test_basic_tier_includes_twenty_credits(self) -> None:
        pricing = pricing_for_tier("basic")
        assert pricing.lead_fee_cents == 1000
        assert pricing.requires_payment(19) is False
        assert pricing.requires_payment(20) is True
        assert pricing.requires_payment(35) is True

    @pytest.mark.parametrize("tier", [Tier.PRO, Tier.ENTERPRISE])
    def test_unlimited_tiers_never_charge(self, tier: Tier) -> None:
        pricing = pricing_for_tier(tier)
        assert pricing.unlimited is True
        assert pricing.never_charges is True
        assert pricing.requires_payment(10_000) is False

    def test_every_tier_has_an_entry(self) -> None:
        assert set(DEFAULT_TIER_PRICING) == set(Tier)


class TestPricingLookup:
    def test_unknown_tier_is_a_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            pricing_for_tier("platinum")
        assert exc_info.value.kind is ErrorKind.CONFIGURATION
        assert "platinum" in exc_info.value.message

    def test_tier_missing_from_custom_table(self) -> None:
        table = {Tier.FREE: TierPricing(Tier.FREE, lead_fee_cents=500, monthly_lead_credits=0)}
        with pytest.raises(ConfigurationError):
            pricing_for_tier(Tier.BASIC, table)

    def test_zero_fee_tier_never_charges(self) -> None:
        pricing = TierPricing(Tier.BASIC, lead_fee_cents=0, monthly_lead_credits=5)
        assert pricing.never_charges is True
        assert pricing.requires_payment(50) is False

    def test_unlimited_sentinel(self) -> None:
        pricing = TierPricing(Tier.PRO, lead_fee_cents=900, monthly_lead_credits=UNLIMITED_CREDITS)
        assert pricing.has_credit_remaining(1_000_000) is True
        assert pricing.never_charges is True
