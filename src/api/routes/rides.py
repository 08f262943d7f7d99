"""
Ride endpoints
==============

POST /api/v1/rides                     -- create a ride request
GET  /api/v1/rides/{ride_id}           -- ride status, assignment and search progress
POST /api/v1/rides/{ride_id}/reassign  -- put a matched ride back in the pool
POST /api/v1/rides/{ride_id}/arrived   -- captain reached the pickup
POST /api/v1/rides/{ride_id}/start     -- OTP-verified trip start
POST /api/v1/rides/{ride_id}/complete  -- trip finished
"""

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_db, get_notification_client
from src.api.middleware import limiter
from src.api.schemas import (
    CaptainActionRequest,
    ReassignRequest,
    ReassignResponse,
    RideCreateRequest,
    RideResponse,
    StartTripRequest,
)
from src.infrastructure.notifications import NotificationClient
from src.services.reassignment import ReassignmentService
from src.services.rides import RideService
from src.services.trips import TripService

router = APIRouter(prefix="/rides", tags=["rides"])


@router.post(
    "",
    status_code=201,
    response_model=RideResponse,
    summary="Create a ride request",
    responses={200: {"description": "Existing ride returned for a replayed idempotency key."}},
)
@limiter.limit("100/minute")
async def create_ride(
    request: Request,
    response: Response,
    body: RideCreateRequest,
    db: AsyncSession = Depends(get_db),
):
    ride, created = await RideService(db).create_ride(**body.model_dump())
    if not created:
        response.status_code = 200
    return RideResponse.from_entity(ride)


@router.get(
    "/{ride_id}",
    response_model=RideResponse,
    summary="Get ride status",
)
@limiter.limit("100/minute")
async def get_ride(
    request: Request,
    ride_id: int,
    db: AsyncSession = Depends(get_db),
    notifier: NotificationClient = Depends(get_notification_client),
):
    ride = await RideService(db, notifier).get_ride(ride_id)
    return RideResponse.from_entity(ride)


@router.post(
    "/{ride_id}/reassign",
    response_model=ReassignResponse,
    summary="Reassign a ride after the captain dropped out",
)
@limiter.limit("100/minute")
async def reassign_ride(
    request: Request,
    ride_id: int,
    body: ReassignRequest,
    db: AsyncSession = Depends(get_db),
    notifier: NotificationClient = Depends(get_notification_client),
):
    result = await ReassignmentService(db, notifier).reassign(
        ride_id, body.reason, body.captain_id, body.cancellation_reason
    )
    return ReassignResponse(
        ride_id=result.ride_id,
        reassigned=result.reassigned,
        cancelled=result.cancelled,
        reassignment_count=result.reassignment_count,
        message=result.message,
        current_radius_km=result.current_radius_km,
        excluded_captain_ids=result.excluded_captain_ids or [],
    )


@router.post("/{ride_id}/arrived", response_model=RideResponse, summary="Captain arrived")
@limiter.limit("100/minute")
async def captain_arrived(
    request: Request,
    ride_id: int,
    body: CaptainActionRequest,
    db: AsyncSession = Depends(get_db),
    notifier: NotificationClient = Depends(get_notification_client),
):
    ride = await TripService(db, notifier).mark_arrived(ride_id, body.captain_id)
    return RideResponse.from_entity(ride)


@router.post("/{ride_id}/start", response_model=RideResponse, summary="Start the trip")
@limiter.limit("100/minute")
async def start_trip(
    request: Request,
    ride_id: int,
    body: StartTripRequest,
    db: AsyncSession = Depends(get_db),
    notifier: NotificationClient = Depends(get_notification_client),
):
    ride = await TripService(db, notifier).start_trip(ride_id, body.captain_id, body.otp)
    return RideResponse.from_entity(ride)


@router.post("/{ride_id}/complete", response_model=RideResponse, summary="Complete the trip")
@limiter.limit("100/minute")
async def complete_trip(
    request: Request,
    ride_id: int,
    body: CaptainActionRequest,
    db: AsyncSession = Depends(get_db),
    notifier: NotificationClient = Depends(get_notification_client),
):
    ride = await TripService(db, notifier).complete_trip(ride_id, body.captain_id)
    return RideResponse.from_entity(ride)
