"""
Dispatch endpoint
=================

POST /api/v1/dispatch/match -- run one matching attempt for a ride
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_db, get_notification_client
from src.api.middleware import limiter
from src.api.schemas import (
    CandidateSummary,
    MatchedCaptain,
    MatchRequestBody,
    MatchResponse,
    VehicleInfo,
)
from src.infrastructure.notifications import NotificationClient
from src.services.dispatch import DispatchOrchestrator, MatchRequest, MatchResult

router = APIRouter(prefix="/dispatch", tags=["dispatch"])


@router.post(
    "/match",
    response_model=MatchResponse,
    summary="Find and offer the best captain for a ride",
    description=(
        "One matching attempt.  When nobody is in range the response carries "
        "retry=true and the radius the next attempt will use; call again to "
        "continue the search (or pass auto_retry=true)."
    ),
)
@limiter.limit("100/minute")
async def match(
    request: Request,
    body: MatchRequestBody,
    db: AsyncSession = Depends(get_db),
    notifier: NotificationClient = Depends(get_notification_client),
):
    orchestrator = DispatchOrchestrator(db, notifier)
    match_request = MatchRequest(
        ride_id=body.ride_id,
        pickup_lat=body.pickup_lat,
        pickup_lng=body.pickup_lng,
        vehicle_type=body.vehicle_type,
        city=body.city,
        estimated_fare=body.estimated_fare,
        estimated_distance_km=body.estimated_distance_km,
        estimated_duration_mins=body.estimated_duration_mins,
    )
    if body.auto_retry:
        result = await orchestrator.match_with_retries(match_request)
    else:
        result = await orchestrator.match_ride(match_request)
    return to_response(result)


def to_response(result: MatchResult) -> MatchResponse:
    captain = None
    if result.captain is not None:
        c = result.captain
        captain = MatchedCaptain(
            id=c.captain_id,
            name=c.name,
            phone=c.phone,
            rating=c.rating,
            acceptance_rate=c.acceptance_rate,
            vehicle=VehicleInfo(
                id=c.vehicle_id,
                make=c.vehicle_make,
                model=c.vehicle_model,
                registration_number=c.registration_number,
            ),
            eta_mins=c.eta_mins,
            distance_km=round(c.distance_km, 2),
            score=c.score,
        )
    return MatchResponse(
        ride_id=result.ride_id,
        matched=result.matched,
        message=result.message,
        offer_id=result.offer.id if result.offer else None,
        captain=captain,
        otp=result.otp,
        expires_at=result.expires_at,
        retry=result.retry,
        current_radius_km=result.current_radius_km,
        next_radius_km=result.next_radius_km,
        matching_attempts=result.matching_attempts,
        other_candidates=[
            CandidateSummary(
                captain_id=c.captain_id,
                distance_km=round(c.distance_km, 2),
                eta_mins=c.eta_mins,
                score=c.score,
            )
            for c in result.other_candidates
        ],
    )
