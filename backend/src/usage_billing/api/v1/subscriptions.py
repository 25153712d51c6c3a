"""Subscription plan change and grace period API endpoints."""
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status

from usage_billing.api.deps import get_current_user, get_grace_period_service, get_proration_service
from usage_billing.schemas.subscription import (
    GracePeriodStatus,
    PendingPlanChange,
    PlanChangeOutcome,
    PlanChangeRequest,
    ProrationPreview,
)
from usage_billing.services.grace_period_service import GracePeriodService
from usage_billing.services.proration_service import ProrationService

router = APIRouter(prefix="/subscription", tags=["subscriptions"])


@router.get("/proration-preview", response_model=ProrationPreview)
async def get_proration_preview(
    new_plan_id: UUID = Query(..., description="Plan to switch to"),
    user_id: UUID = Depends(get_current_user),
    proration: ProrationService = Depends(get_proration_service),
) -> ProrationPreview:
    """Preview the charge and timing of a plan change without applying it."""
    return await proration.get_proration_preview(user_id, new_plan_id)


@router.post("/change-plan", response_model=PlanChangeOutcome)
async def change_plan(
    body: PlanChangeRequest,
    user_id: UUID = Depends(get_current_user),
    proration: ProrationService = Depends(get_proration_service),
) -> PlanChangeOutcome:
    """
    Change the caller's plan.

    Upgrades apply immediately and queue a payment for the price difference.
    Downgrades are scheduled for the end of the current billing period.
    """
    return await proration.apply_proration(user_id, body.new_plan_id)


@router.get("/pending-change", response_model=PendingPlanChange | None)
async def get_pending_change(
    user_id: UUID = Depends(get_current_user),
    proration: ProrationService = Depends(get_proration_service),
) -> PendingPlanChange | None:
    return await proration.get_pending_plan_change(user_id)


@router.delete("/pending-change", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_pending_change(
    user_id: UUID = Depends(get_current_user),
    proration: ProrationService = Depends(get_proration_service),
) -> Response:
    await proration.cancel_pending_plan_change(user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/grace-period", response_model=GracePeriodStatus)
async def get_grace_period(
    user_id: UUID = Depends(get_current_user),
    grace: GracePeriodService = Depends(get_grace_period_service),
) -> GracePeriodStatus:
    return await grace.get_grace_period_status(user_id)
