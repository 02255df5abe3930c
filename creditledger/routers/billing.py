from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from creditledger.deps import get_proration_service
from creditledger.schemas.billing import ProrationBreakdown, ProrationDetails, StripeProrationPreview
from creditledger.services.proration import ProrationService, format_proration_breakdown

router = APIRouter()


class ProrationResponse(BaseModel):
    proration: ProrationDetails
    breakdown: ProrationBreakdown


@router.get("/subscriptions/{subscription_id}/proration", response_model=ProrationResponse)
async def proration(
    subscription_id: str,
    new_plan_id: str = Query(..., min_length=1),
    service: ProrationService = Depends(get_proration_service),
):
    """What changing to `new_plan_id` right now would cost or credit."""
    details = await service.calculate_proration(subscription_id, new_plan_id)
    return ProrationResponse(proration=details, breakdown=format_proration_breakdown(details))


@router.get("/subscriptions/{subscription_id}/proration/stripe-preview", response_model=StripeProrationPreview)
async def stripe_proration_preview(
    subscription_id: str,
    new_plan_id: str = Query(..., min_length=1),
    service: ProrationService = Depends(get_proration_service),
):
    return await service.get_stripe_proration_preview(subscription_id, new_plan_id)
