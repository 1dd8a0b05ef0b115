"""Payment-provider webhook receiver and failed-event monitoring."""

from __future__ import annotations

import logging

from billing_core.errors import BillingError
from billing_core.models.webhook import IngressResult
from fastapi import APIRouter, HTTPException, Query, Request

from billing_api.dependencies import IngressServiceDep
from billing_api.schemas import FailedEventListResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing/webhooks", tags=["webhooks"])

_SIGNATURE_HEADER = "stripe-signature"


@router.post("", response_model=IngressResult)
async def receive_webhook(request: Request, ingress: IngressServiceDep) -> IngressResult:
    """Receive a Stripe webhook delivery.

    The signature is verified against the raw body before anything else.
    Duplicates, ignored types and unattributed events are acknowledged with
    HTTP 200 so the provider stops redelivering them.  A processing failure
    propagates as HTTP 500, which makes the provider retry later.
    """
    body = await request.body()
    signature = request.headers.get(_SIGNATURE_HEADER, "")
    if not signature:
        raise HTTPException(status_code=400, detail="Missing Stripe-Signature header")

    try:
        result = await ingress.handle(body, signature)
    except BillingError:
        raise
    except Exception:
        # Already recorded as failed by the ingress; a 5xx makes the provider redeliver.
        raise HTTPException(status_code=500, detail="Webhook processing failed") from None
    request.state.event_id = result.event_id
    return result


@router.get("/failed", response_model=FailedEventListResponse)
async def list_failed_webhooks(
    ingress: IngressServiceDep,
    limit: int = Query(default=50, ge=1, le=500),
) -> FailedEventListResponse:
    """List events that failed processing or need manual attribution."""
    events = await ingress.list_failed_events(limit)
    return FailedEventListResponse(events=events, count=len(events))
