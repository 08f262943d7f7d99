"""
Cancellation endpoint
=====================

POST /api/v1/cancellations -- cancel a ride as rider or captain
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_db, get_notification_client
from src.api.middleware import limiter
from src.api.schemas import CancellationRequest, CancellationResponse
from src.infrastructure.notifications import NotificationClient
from src.services.cancellation import CancellationEngine

router = APIRouter(prefix="/cancellations", tags=["cancellations"])


@router.post(
    "",
    response_model=CancellationResponse,
    summary="Cancel a ride",
    description=(
        "Charges the fee of the penalty rule covering the ride's status and "
        "the time since it was matched.  Repeated captain cancellations can "
        "trigger a cooldown."
    ),
)
@limiter.limit("100/minute")
async def cancel_ride(
    request: Request,
    body: CancellationRequest,
    db: AsyncSession = Depends(get_db),
    notifier: NotificationClient = Depends(get_notification_client),
):
    result = await CancellationEngine(db, notifier).cancel_ride(
        body.ride_id,
        body.cancelled_by,
        user_id=body.user_id,
        captain_id=body.captain_id,
        reason=body.reason,
    )
    return CancellationResponse(
        success=result.success,
        ride_id=result.ride_id,
        cancellation_fee=result.cancellation_fee,
        penalty_type=result.penalty_type,
        message=result.message,
        cooldown_until=result.cooldown_until,
    )
