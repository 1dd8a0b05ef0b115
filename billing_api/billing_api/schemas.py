"""Shared Pydantic request and response models for the billing endpoints.

Domain results (``LeadChargeOutcome``, ``LeadFeeQuote``,
``GracePeriodStatus``, ``IngressResult``) are returned as-is; this module
holds only the HTTP-specific shapes.
"""

from __future__ import annotations

from billing_core.models.account import Tier
from billing_core.models.webhook import FailedWebhookEvent
from pydantic import BaseModel, Field


class LeadChargeRequest(BaseModel):
    """Request body for ``POST /leads/{lead_id}/charge``."""

    provider_id: str = Field(..., min_length=1, description="Provider claiming the lead.")
    tier: Tier | str = Field(
        ...,
        description="Provider's subscription tier at claim time.",
    )


class FailedEventListResponse(BaseModel):
    """Response body for ``GET /billing/webhooks/failed``."""

    events: list[FailedWebhookEvent] = Field(default_factory=list)
    count: int = 0


class ErrorResponse(BaseModel):
    """Body of every billing error response."""

    detail: str
    error: str
    retryable: bool = False
    decline_reason: str | None = None
