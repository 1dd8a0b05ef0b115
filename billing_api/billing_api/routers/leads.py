"""Lead fee endpoints: charge a provider for a claimed lead and quote the fee."""

from __future__ import annotations

import logging

from billing_core.models.charge import LeadChargeOutcome, LeadFeeQuote
from fastapi import APIRouter, Query

from billing_api.dependencies import LeadChargeServiceDep
from billing_api.schemas import LeadChargeRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/leads", tags=["leads"])


@router.post("/{lead_id}/charge", response_model=LeadChargeOutcome)
async def charge_lead(
    lead_id: str,
    body: LeadChargeRequest,
    service: LeadChargeServiceDep,
) -> LeadChargeOutcome:
    """Charge the provider for a claimed lead.

    Safe to retry: a lead already paid for returns the original charge
    with ``replayed`` set.  Failures map to HTTP errors in the app's
    billing error handler (402 for card problems, 503 for a provider
    outage that can be retried).
    """
    return await service.attempt_lead_charge(body.provider_id, lead_id, body.tier)


@router.get("/fee", response_model=LeadFeeQuote)
async def quote_lead_fee(
    service: LeadChargeServiceDep,
    provider_id: str = Query(..., min_length=1, description="Provider to quote for."),
) -> LeadFeeQuote:
    """Return what claiming the next lead would cost the provider."""
    return await service.quote_lead_fee(provider_id)
