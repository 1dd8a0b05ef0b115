"""Per-lead fee and monthly lead credit allowance by subscription tier.

Four tiers control lead pricing:

* **Free** -- every claimed lead is charged at the full per-lead fee.
* **Basic** -- 20 leads per month included, then a reduced per-lead fee.
* **Pro** / **Enterprise** -- unlimited leads included in the subscription.

The table is static configuration, not persisted state.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from billing_core.errors import ConfigurationError
from billing_core.models.account import Tier

# Sentinel credit allowance meaning "no monthly limit".
UNLIMITED_CREDITS = -1


@dataclass(frozen=True)
class TierPricing:
    """Lead pricing for a single tier."""

    tier: Tier
    lead_fee_cents: int
    monthly_lead_credits: int

    @property
    def unlimited(self) -> bool:
        return self.monthly_lead_credits == UNLIMITED_CREDITS

    @property
    def never_charges(self) -> bool:
        """True when no amount of usage can make a lead payable."""
        return self.lead_fee_cents == 0 or self.unlimited

    def has_credit_remaining(self, credits_used: int) -> bool:
        if self.unlimited:
            return True
        return credits_used < self.monthly_lead_credits

    def requires_payment(self, credits_used: int) -> bool:
        """Return whether the next lead claim must be paid for."""
        if self.never_charges:
            return False
        return not self.has_credit_remaining(credits_used)


DEFAULT_TIER_PRICING: Mapping[Tier, TierPricing] = {
    Tier.FREE: TierPricing(Tier.FREE, lead_fee_cents=1500, monthly_lead_credits=0),
    Tier.BASIC: TierPricing(Tier.BASIC, lead_fee_cents=1000, monthly_lead_credits=20),
    Tier.PRO: TierPricing(Tier.PRO, lead_fee_cents=0, monthly_lead_credits=UNLIMITED_CREDITS),
    Tier.ENTERPRISE: TierPricing(Tier.ENTERPRISE, lead_fee_cents=0, monthly_lead_credits=UNLIMITED_CREDITS),
}


def pricing_for_tier(
    tier: Tier | str,
    table: Mapping[Tier, TierPricing] = DEFAULT_TIER_PRICING,
) -> TierPricing:
    """Look up the pricing entry for *tier*.

    Raises
    ------
    ConfigurationError
        If *tier* is not a known tier or has no entry in *table*.
    """
    try:
        resolved = Tier(tier)
    except ValueError:
        raise ConfigurationError(f"Unknown subscription tier: {tier!r}") from None

    pricing = table.get(resolved)
    if pricing is None:
        raise ConfigurationError(f"No lead pricing configured for tier '{resolved.value}'")
    return pricing
