"""Dunning state returned by the subscription failure state machine."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class DunningAction(str, Enum):
    """The transition taken for a single payment failure."""

    GRACE_STARTED = "grace_started"
    WARNING_SENT = "warning_sent"
    FINAL_WARNING = "final_warning"
    DOWNGRADED = "downgraded"


class DunningPolicy(BaseModel):
    """Retry schedule configuration."""

    max_attempts: int = Field(default=3, ge=1)
    grace_period_days: int = Field(default=7, ge=0)


class DunningState(BaseModel):
    """Account dunning state after a failure has been applied."""

    provider_id: str
    action: DunningAction
    failure_count: int
    max_attempts: int
    grace_period_end: datetime | None = None
    in_grace_period: bool = False
    downgraded: bool = False
    previous_tier: str | None = Field(default=None, description="Tier before a downgrade.")


class GracePeriodStatus(BaseModel):
    """Dashboard view of an ongoing failure episode."""

    provider_id: str
    in_grace_period: bool
    failure_count: int
    grace_period_end: datetime | None = None
    days_remaining: int | None = None
