"""
Entitlement Endpoints

User-facing entitlement operations. Every route acts on the caller only.
"""

import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from enhpix.src.entitlements.container import EntitlementContainer
from enhpix.src.entitlements.domain.usage import ConsumeReason
from .dependencies import get_container, get_current_user_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/entitlements", tags=["entitlements"])

CONSUME_STATUS_CODES = {
    ConsumeReason.GRANTED: 200,
    ConsumeReason.QUOTA_EXHAUSTED: 402,
    ConsumeReason.SUBSCRIPTION_CANCELLED: 403,
}


# ============================================================================
# Request Models
# ============================================================================

class CancelSubscriptionRequest(BaseModel):
    """Request for subscription cancellation."""
    reason: Optional[str] = None


# ============================================================================
# Endpoints
# ============================================================================

@router.post("/consume")
async def consume_credit(
    user_id: str = Depends(get_current_user_id),
    container: EntitlementContainer = Depends(get_container),
):
    """
    Consume one image credit before an enhancement job is admitted.

    200 when granted, 402 when the monthly quota is used up, 403 when the
    subscription is cancelled.
    """
    result = await container.ledger.try_consume(user_id)
    return JSONResponse(status_code=CONSUME_STATUS_CODES[result.reason], content=result.to_dict())


@router.get("/usage")
async def get_usage(
    user_id: str = Depends(get_current_user_id),
    container: EntitlementContainer = Depends(get_container),
) -> Dict:
    usage = await container.ledger.get_usage(user_id)
    return usage.to_dict()


@router.get("/verify")
async def verify_plan(
    user_id: str = Depends(get_current_user_id),
    container: EntitlementContainer = Depends(get_container),
) -> Dict:
    """Compare the caller's plan with Stripe without changing anything."""
    result = await container.reconciler.verify(user_id)
    return result.to_dict()


@router.post("/reconcile")
async def reconcile_plan(
    user_id: str = Depends(get_current_user_id),
    container: EntitlementContainer = Depends(get_container),
) -> Dict:
    """Verify the caller's plan and correct the mirror if it drifted."""
    return await container.reconciler.reconcile(user_id)


@router.post("/cancel")
async def cancel_subscription(
    request: Optional[CancelSubscriptionRequest] = None,
    user_id: str = Depends(get_current_user_id),
    container: EntitlementContainer = Depends(get_container),
) -> Dict:
    """Cancel the caller's subscription at the end of the billing period."""
    reason = request.reason if request else None
    return await container.lifecycle.cancel_subscription(user_id, reason=reason)
