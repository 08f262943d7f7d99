"""
Captain endpoints
=================

POST  /api/v1/captains                         -- register a captain with a vehicle
GET   /api/v1/captains/nearby                  -- online captains near a point
GET   /api/v1/captains/{captain_id}            -- profile and vehicles
PUT   /api/v1/captains/{captain_id}/location   -- location feed
PATCH /api/v1/captains/{captain_id}/availability -- go online / offline
GET   /api/v1/captains/{captain_id}/metrics    -- performance counters
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_db
from src.api.middleware import limiter
from src.api.schemas import (
    AvailabilityRequest,
    CaptainCreateRequest,
    CaptainMetricsResponse,
    CaptainResponse,
    LocationUpdateRequest,
    NearbyCaptainInfo,
    NearbyCaptainsResponse,
    VehicleInfo,
)
from src.domain.enums import VehicleType
from src.domain.errors import NotFoundError
from src.infrastructure.repositories import CaptainRepository
from src.services.captains import CaptainService, VehicleSpec

router = APIRouter(prefix="/captains", tags=["captains"])


async def _captain_response(db: AsyncSession, captain) -> CaptainResponse:
    vehicles = await CaptainRepository(db).list_vehicles(captain.id)
    response = CaptainResponse.model_validate(captain)
    response.vehicles = [VehicleInfo.model_validate(v) for v in vehicles]
    return response


@router.post("", status_code=201, response_model=CaptainResponse, summary="Register a captain")
@limiter.limit("100/minute")
async def register_captain(
    request: Request,
    body: CaptainCreateRequest,
    db: AsyncSession = Depends(get_db),
):
    captain, _ = await CaptainService(db).register(
        name=body.name,
        user_id=body.user_id,
        phone=body.phone,
        is_verified=body.is_verified,
        rating=body.rating,
        lat=body.current_lat,
        lng=body.current_lng,
        vehicle=VehicleSpec(**body.vehicle.model_dump()),
    )
    return await _captain_response(db, captain)


@router.get(
    "/nearby",
    response_model=NearbyCaptainsResponse,
    summary="Online captains near a point, nearest first",
)
@limiter.limit("300/minute")
async def nearby_captains(
    request: Request,
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_km: Optional[float] = Query(None, gt=0, le=50),
    vehicle_type: Optional[VehicleType] = None,
    db: AsyncSession = Depends(get_db),
):
    found = await CaptainService(db).nearby(lat, lng, radius_km, vehicle_type)
    return NearbyCaptainsResponse(
        captains=[NearbyCaptainInfo.from_nearby(c) for c in found]
    )


@router.get("/{captain_id}", response_model=CaptainResponse, summary="Get a captain")
@limiter.limit("100/minute")
async def get_captain(
    request: Request,
    captain_id: int,
    db: AsyncSession = Depends(get_db),
):
    captain = await CaptainRepository(db).get_by_id(captain_id)
    if captain is None:
        raise NotFoundError(
            f"Captain {captain_id} not found", public_message="Captain not found"
        )
    return await _captain_response(db, captain)


@router.put(
    "/{captain_id}/location",
    response_model=CaptainResponse,
    summary="Report the captain's current location",
)
@limiter.limit("600/minute")
async def update_location(
    request: Request,
    captain_id: int,
    body: LocationUpdateRequest,
    db: AsyncSession = Depends(get_db),
):
    captain = await CaptainService(db).update_location(captain_id, body.lat, body.lng)
    return await _captain_response(db, captain)


@router.patch(
    "/{captain_id}/availability",
    response_model=CaptainResponse,
    summary="Go online or offline",
)
@limiter.limit("100/minute")
async def set_availability(
    request: Request,
    captain_id: int,
    body: AvailabilityRequest,
    db: AsyncSession = Depends(get_db),
):
    captain = await CaptainService(db).set_availability(captain_id, body.online)
    return await _captain_response(db, captain)


@router.get(
    "/{captain_id}/metrics",
    response_model=CaptainMetricsResponse,
    summary="Captain performance counters",
)
@limiter.limit("100/minute")
async def get_metrics(
    request: Request,
    captain_id: int,
    db: AsyncSession = Depends(get_db),
):
    metrics = await CaptainService(db).get_metrics(captain_id)
    return CaptainMetricsResponse.model_validate(metrics)
