"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from src.domain.entities import Ride
from src.domain.enums import (
    CancelledBy,
    CaptainStatus,
    OfferResponse,
    PenaltyType,
    ReassignmentReason,
    RideStatus,
    VehicleType,
)
from src.domain.matching import NearbyCaptain
from src.domain.policies import DEFAULT_CITY, MatchingConfig


# ── Requests ──────────────────────────────────────────────────────────


class RideCreateRequest(BaseModel):
    rider_id: int
    vehicle_type: VehicleType
    pickup_lat: float = Field(..., ge=-90, le=90)
    pickup_lng: float = Field(..., ge=-180, le=180)
    drop_lat: float = Field(..., ge=-90, le=90)
    drop_lng: float = Field(..., ge=-180, le=180)
    pickup_address: Optional[str] = Field(None, max_length=255)
    drop_address: Optional[str] = Field(None, max_length=255)
    city: str = Field(DEFAULT_CITY, min_length=1, max_length=100)
    estimated_fare: float = Field(0.0, ge=0)
    estimated_distance_km: float = Field(0.0, ge=0)
    estimated_duration_mins: float = Field(0.0, ge=0)
    idempotency_key: Optional[str] = Field(
        None,
        max_length=64,
        description="Client-generated UUID to prevent duplicate rides on retries.",
    )


class MatchRequestBody(BaseModel):
    ride_id: int
    pickup_lat: float = Field(..., ge=-90, le=90)
    pickup_lng: float = Field(..., ge=-180, le=180)
    vehicle_type: VehicleType
    city: Optional[str] = Field(None, max_length=100)
    estimated_fare: float = Field(0.0, ge=0)
    estimated_distance_km: float = Field(0.0, ge=0)
    estimated_duration_mins: float = Field(0.0, ge=0)
    auto_retry: bool = Field(
        False,
        description="Retry internally (bounded) instead of returning retry=true.",
    )


class CancellationRequest(BaseModel):
    ride_id: int
    cancelled_by: CancelledBy
    user_id: Optional[int] = None
    captain_id: Optional[int] = None
    reason: Optional[str] = Field(None, max_length=255)


class OfferRespondRequest(BaseModel):
    offer_id: int
    captain_id: int
    response: OfferResponse
    decline_reason: Optional[str] = Field(None, max_length=255)


class ReassignRequest(BaseModel):
    reason: ReassignmentReason
    captain_id: Optional[int] = None
    cancellation_reason: Optional[str] = Field(None, max_length=255)


class CaptainActionRequest(BaseModel):
    captain_id: int


class StartTripRequest(BaseModel):
    captain_id: int
    otp: str = Field(..., pattern=r"^\d{4}$")


class VehicleCreate(BaseModel):
    vehicle_type: VehicleType
    make: str = Field(..., min_length=1, max_length=60)
    model: str = Field(..., min_length=1, max_length=60)
    registration_number: str = Field(..., min_length=1, max_length=32)


class CaptainCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    user_id: Optional[int] = None
    phone: Optional[str] = Field(None, max_length=32)
    is_verified: bool = False
    rating: float = Field(5.0, ge=0, le=5)
    current_lat: Optional[float] = Field(None, ge=-90, le=90)
    current_lng: Optional[float] = Field(None, ge=-180, le=180)
    vehicle: VehicleCreate


class LocationUpdateRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class AvailabilityRequest(BaseModel):
    online: bool


class MatchingConfigBody(BaseModel):
    initial_radius_km: float = 1.5
    max_radius_km: float = 5.0
    radius_expansion_step_km: float = 1.0
    offer_timeout_seconds: int = 15
    max_offers_per_ride: int = 5
    max_retry_attempts: int = 3
    score_weight_eta: float = 0.40
    score_weight_acceptance: float = 0.25
    score_weight_rating: float = 0.20
    score_weight_cancellation: float = 0.15
    captain_delay_threshold_minutes: int = 3


class PenaltyRuleCreate(BaseModel):
    city: str = Field(DEFAULT_CITY, min_length=1, max_length=100)
    cancelled_by: CancelledBy
    ride_status: RideStatus
    min_time_after_match_seconds: int = 0
    max_time_after_match_seconds: Optional[int] = None
    penalty_amount: float = 0.0
    penalty_type: PenaltyType = PenaltyType.FEE
    cooldown_minutes: Optional[int] = None


# ── Responses ─────────────────────────────────────────────────────────


class RideResponse(BaseModel):
    id: int
    rider_id: Optional[int] = None
    city: str
    vehicle_type: VehicleType
    status: RideStatus
    pickup_lat: float
    pickup_lng: float
    drop_lat: float
    drop_lng: float
    estimated_fare: float
    captain_id: Optional[int] = None
    vehicle_id: Optional[int] = None
    otp: Optional[str] = None
    excluded_captain_ids: list[int] = []
    current_radius_km: Optional[float] = None
    matching_attempts: int = 0
    reassignment_count: int = 0
    matched_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancellation_fee: float = 0.0
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[CancelledBy] = None
    cancelled_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, ride: Ride) -> "RideResponse":
        return cls(
            id=ride.id,
            rider_id=ride.rider_id,
            city=ride.city,
            vehicle_type=ride.vehicle_type,
            status=ride.status,
            pickup_lat=ride.pickup.latitude,
            pickup_lng=ride.pickup.longitude,
            drop_lat=ride.drop.latitude,
            drop_lng=ride.drop.longitude,
            estimated_fare=ride.estimated_fare,
            captain_id=ride.captain_id,
            vehicle_id=ride.vehicle_id,
            otp=ride.otp,
            excluded_captain_ids=list(ride.excluded_captain_ids),
            current_radius_km=ride.current_radius_km,
            matching_attempts=ride.matching_attempts,
            reassignment_count=ride.reassignment_count,
            matched_at=ride.matched_at,
            started_at=ride.started_at,
            completed_at=ride.completed_at,
            cancellation_fee=ride.cancellation_fee,
            cancellation_reason=ride.cancellation_reason,
            cancelled_by=ride.cancelled_by,
            cancelled_at=ride.cancelled_at,
        )


class VehicleInfo(BaseModel):
    id: int
    vehicle_type: Optional[VehicleType] = None
    make: Optional[str] = None
    model: Optional[str] = None
    registration_number: Optional[str] = None

    model_config = {"from_attributes": True}


class MatchedCaptain(BaseModel):
    id: int
    name: Optional[str] = None
    phone: Optional[str] = None
    rating: float
    acceptance_rate: float
    vehicle: VehicleInfo
    eta_mins: int
    distance_km: float
    score: float


class CandidateSummary(BaseModel):
    captain_id: int
    distance_km: float
    eta_mins: int
    score: float


class MatchResponse(BaseModel):
    ride_id: int
    matched: bool
    message: str
    offer_id: Optional[int] = None
    captain: Optional[MatchedCaptain] = None
    otp: Optional[str] = None
    expires_at: Optional[datetime] = None
    retry: bool = False
    current_radius_km: Optional[float] = None
    next_radius_km: Optional[float] = None
    matching_attempts: int = 0
    other_candidates: list[CandidateSummary] = []


class CancellationResponse(BaseModel):
    success: bool
    ride_id: int
    cancellation_fee: float
    penalty_type: PenaltyType
    message: str
    cooldown_until: Optional[datetime] = None


class OfferRespondResponse(BaseModel):
    success: bool
    offer_id: int
    action: str
    already_resolved: bool = False
    message: str
    ride: Optional[RideResponse] = None
    captains_tried: int = 0
    max_captains: int = 0


class ReassignResponse(BaseModel):
    ride_id: int
    reassigned: bool
    cancelled: bool
    reassignment_count: int
    message: str
    current_radius_km: Optional[float] = None
    excluded_captain_ids: list[int] = []


class CaptainResponse(BaseModel):
    id: int
    user_id: Optional[int] = None
    name: str
    phone: Optional[str] = None
    status: CaptainStatus
    is_verified: bool
    rating: Optional[float] = None
    current_lat: Optional[float] = None
    current_lng: Optional[float] = None
    location_updated_at: Optional[datetime] = None
    vehicles: list[VehicleInfo] = []

    model_config = {"from_attributes": True}


class CaptainMetricsResponse(BaseModel):
    captain_id: int
    acceptance_rate: float
    cancellation_rate: float
    total_offers_received: int
    total_offers_accepted: int
    total_offers_declined: int
    total_offers_expired: int
    avg_response_time_seconds: float
    total_rides_completed: int
    total_rides_cancelled: int
    daily_cancellation_count: int
    cooldown_until: Optional[datetime] = None

    model_config = {"from_attributes": True}


class NearbyCaptainInfo(BaseModel):
    id: int
    lat: float
    lng: float
    distance_km: float
    vehicle_type: VehicleType
    rating: Optional[float] = None
    last_updated: Optional[datetime] = None

    @classmethod
    def from_nearby(cls, captain: NearbyCaptain) -> "NearbyCaptainInfo":
        return cls(
            id=captain.captain_id,
            lat=captain.location.latitude,
            lng=captain.location.longitude,
            distance_km=captain.distance_km,
            vehicle_type=captain.vehicle_type,
            rating=captain.rating,
            last_updated=captain.location_updated_at,
        )


class NearbyCaptainsResponse(BaseModel):
    captains: list[NearbyCaptainInfo]


class MatchingConfigResponse(MatchingConfigBody):
    city: str

    @classmethod
    def from_config(cls, config: MatchingConfig) -> "MatchingConfigResponse":
        return cls(
            city=config.city,
            initial_radius_km=config.initial_radius_km,
            max_radius_km=config.max_radius_km,
            radius_expansion_step_km=config.radius_expansion_step_km,
            offer_timeout_seconds=config.offer_timeout_seconds,
            max_offers_per_ride=config.max_offers_per_ride,
            max_retry_attempts=config.max_retry_attempts,
            score_weight_eta=config.weights.eta,
            score_weight_acceptance=config.weights.acceptance,
            score_weight_rating=config.weights.rating,
            score_weight_cancellation=config.weights.cancellation,
            captain_delay_threshold_minutes=config.captain_delay_threshold_minutes,
        )


class PenaltyRuleResponse(PenaltyRuleCreate):
    id: Optional[int] = None

    model_config = {"from_attributes": True}


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    detail: str
