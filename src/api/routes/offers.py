"""
Offer endpoints
===============

POST /api/v1/offers/respond -- captain accepts or declines an offer
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_db, get_notification_client
from src.api.middleware import limiter
from src.api.schemas import OfferRespondRequest, OfferRespondResponse, RideResponse
from src.domain.enums import OfferStatus
from src.infrastructure.notifications import NotificationClient
from src.services.offers import OfferLifecycleManager

router = APIRouter(prefix="/offers", tags=["offers"])

_MESSAGES = {
    OfferStatus.ACCEPTED: "Ride accepted. Head to the pickup point.",
    OfferStatus.DECLINED: "Offer declined",
    OfferStatus.EXPIRED: "Offer expired",
}


@router.post(
    "/respond",
    response_model=OfferRespondResponse,
    summary="Accept or decline a ride offer",
    description=(
        "Idempotent: answering an offer that is already closed returns its "
        "current status with already_resolved=true and changes nothing."
    ),
)
@limiter.limit("100/minute")
async def respond(
    request: Request,
    body: OfferRespondRequest,
    db: AsyncSession = Depends(get_db),
    notifier: NotificationClient = Depends(get_notification_client),
):
    outcome = await OfferLifecycleManager(db, notifier).respond(
        body.offer_id, body.captain_id, body.response, body.decline_reason
    )
    message = _MESSAGES.get(outcome.action, outcome.action.value)
    if outcome.already_resolved:
        message = f"Offer already {outcome.action.value}"
    return OfferRespondResponse(
        success=outcome.success,
        offer_id=body.offer_id,
        action=outcome.action.value,
        already_resolved=outcome.already_resolved,
        message=message,
        ride=RideResponse.from_entity(outcome.ride)
        if outcome.action == OfferStatus.ACCEPTED and outcome.ride
        else None,
        captains_tried=outcome.captains_tried,
        max_captains=outcome.max_captains,
    )
