"""Provider billing status endpoints."""

from __future__ import annotations

from billing_core.models.dunning import GracePeriodStatus
from fastapi import APIRouter

from billing_api.dependencies import DunningServiceDep

router = APIRouter(prefix="/billing", tags=["billing"])


@router.get("/providers/{provider_id}/grace-period", response_model=GracePeriodStatus)
async def get_grace_period(provider_id: str, service: DunningServiceDep) -> GracePeriodStatus:
    """Return the provider's current payment-failure episode, if any."""
    return await service.get_grace_period_status(provider_id)
