"""
Admin Endpoints

Operator tools: manual plan correction, batch reconciliation, the list of
users whose webhook events were skipped, and draining queued side effects.
"""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from enhpix.src.entitlements.container import EntitlementContainer
from enhpix.src.entitlements.shared.config import PlanTier
from .dependencies import get_container, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin/entitlements",
    tags=["entitlements-admin"],
    dependencies=[Depends(require_admin)],
)


class CorrectPlanRequest(BaseModel):
    """Request for a manual plan correction."""
    tier: PlanTier
    credits: int = Field(ge=0)


@router.post("/{user_id}/correct")
async def correct_user_plan(
    user_id: str,
    request: CorrectPlanRequest,
    container: EntitlementContainer = Depends(get_container),
) -> Dict:
    logger.info(f"[RECONCILE] Admin correction for {user_id}: {request.tier.value}/{request.credits}")
    return await container.reconciler.correct_user_plan(user_id, request.tier.value, request.credits)


@router.post("/reconcile-all")
async def reconcile_all(container: EntitlementContainer = Depends(get_container)) -> Dict:
    return await container.reconciler.reconcile_all()


@router.get("/candidates")
async def reconciliation_candidates(
    limit: int = Query(100, ge=1, le=1000),
    container: EntitlementContainer = Depends(get_container),
) -> List[Dict]:
    """Users referenced by skipped webhook events, newest first."""
    return await container.reconciler.reconciliation_candidates(limit)


@router.post("/tasks/run")
async def run_tasks(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    container: EntitlementContainer = Depends(get_container),
) -> Dict:
    return await container.task_queue.run_pending(limit)
