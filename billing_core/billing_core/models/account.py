"""Provider account billing state.

``AccountSnapshot`` is an immutable read of the ``provider_accounts`` row
including its optimistic-concurrency ``version``.  State transitions are
computed from a snapshot and written back only if the version is
unchanged (see ``ProviderAccountRepository.apply_transition``).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Tier(str, Enum):
    """Subscription tier of a provider account."""

    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class SubscriptionStatus(str, Enum):
    """Status of the provider's recurring subscription."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class DisputeStatus(str, Enum):
    """Account-level dispute flag derived from open disputes."""

    NONE = "none"
    UNDER_REVIEW = "under_review"


class AccountSnapshot(BaseModel):
    """Point-in-time view of a provider's billing fields."""

    model_config = ConfigDict(frozen=True)

    provider_id: str = Field(..., min_length=1, description="Provider account identifier.")
    tier: Tier = Field(default=Tier.FREE)
    subscription_status: SubscriptionStatus = Field(default=SubscriptionStatus.ACTIVE)
    gateway_customer_ref: str | None = Field(
        default=None,
        description="Payment gateway customer identifier (Stripe customer id).",
    )
    lead_credits_used_this_period: int = Field(default=0, ge=0)
    payment_failure_count: int = Field(default=0, ge=0)
    grace_period_end: datetime | None = Field(
        default=None,
        description="End of the grace period for the current failure episode.",
    )
    dispute_count: int = Field(default=0, ge=0)
    dispute_status: DisputeStatus = Field(default=DisputeStatus.NONE)
    version: int = Field(default=0, ge=0, description="Optimistic concurrency token.")

    @classmethod
    def from_row(cls, row: Any) -> AccountSnapshot:
        """Build a snapshot from a ``ProviderAccountTable`` row."""
        return cls(
            provider_id=row.id,
            tier=Tier(row.tier),
            subscription_status=SubscriptionStatus(row.subscription_status),
            gateway_customer_ref=row.gateway_customer_ref,
            lead_credits_used_this_period=row.lead_credits_used_this_period,
            payment_failure_count=row.payment_failure_count,
            grace_period_end=row.grace_period_end,
            dispute_count=row.dispute_count,
            dispute_status=DisputeStatus(row.dispute_status),
            version=row.version,
        )
