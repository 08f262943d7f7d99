"""
SQLAlchemy ORM models  (PostgreSQL in production, SQLite in tests).

Tables
------
* ``captains``               -- captain profile, availability and location
* ``vehicles``               -- vehicles owned by captains
* ``captain_metrics``        -- per-captain performance counters
* ``rides``                  -- ride requests and their matching progress
* ``ride_offers``            -- time-boxed offers of one ride to one captain
* ``matching_config``        -- per-city matching knobs
* ``cancellation_penalties`` -- cancellation fee / cooldown matrix

Indexes
-------
* **B-Tree** on ``captains.status``, ``(vehicles.vehicle_type, is_active)``
  for the online working-set query, on ``rides.status`` and on
  ``(ride_offers.response_status, expires_at)`` for the expiry sweep.
* **Partial unique** on ``ride_offers.ride_id WHERE response_status =
  'pending'``: at most one live offer per ride, enforced by the store.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
    text,
)

from .database import Base
from src.domain.enums import (
    CancelledBy,
    CaptainStatus,
    OfferStatus,
    PenaltyType,
    RideStatus,
    VehicleType,
)


def _enum(enum_cls):
    """Store enum *values* (``"on_ride"``) as plain strings."""
    return Enum(
        enum_cls,
        values_callable=lambda e: [m.value for m in e],
        native_enum=False,
        length=32,
    )


class CaptainModel(Base):
    __tablename__ = "captains"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=True, unique=True)
    name = Column(String(120), nullable=False)
    phone = Column(String(32), nullable=True)
    status = Column(_enum(CaptainStatus), default=CaptainStatus.OFFLINE, nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)
    current_lat = Column(Float, nullable=True)
    current_lng = Column(Float, nullable=True)
    location_updated_at = Column(DateTime(timezone=True), nullable=True)
    rating = Column(Float, default=5.0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (Index("idx_captains_status", "status"),)


class VehicleModel(Base):
    __tablename__ = "vehicles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    captain_id = Column(Integer, ForeignKey("captains.id"), nullable=False)
    vehicle_type = Column(_enum(VehicleType), nullable=False)
    make = Column(String(60), nullable=False)
    model = Column(String(60), nullable=False)
    registration_number = Column(String(32), unique=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_vehicles_type_active", "vehicle_type", "is_active"),
        Index("idx_vehicles_captain", "captain_id"),
    )


class CaptainMetricsModel(Base):
    __tablename__ = "captain_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    captain_id = Column(
        Integer, ForeignKey("captains.id"), unique=True, nullable=False
    )
    acceptance_rate = Column(Float, default=100.0, nullable=False)
    cancellation_rate = Column(Float, default=0.0, nullable=False)
    total_offers_received = Column(Integer, default=0, nullable=False)
    total_offers_accepted = Column(Integer, default=0, nullable=False)
    total_offers_declined = Column(Integer, default=0, nullable=False)
    total_offers_expired = Column(Integer, default=0, nullable=False)
    avg_response_time_seconds = Column(Float, default=0.0, nullable=False)
    total_rides_completed = Column(Integer, default=0, nullable=False)
    total_rides_cancelled = Column(Integer, default=0, nullable=False)
    daily_cancellation_count = Column(Integer, default=0, nullable=False)
    daily_cancellation_reset_at = Column(Date, nullable=True)
    cooldown_until = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class RideModel(Base):
    __tablename__ = "rides"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rider_id = Column(Integer, nullable=True)
    city = Column(String(100), default="default", nullable=False)
    vehicle_type = Column(_enum(VehicleType), nullable=False)

    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    pickup_address = Column(String(255), nullable=True)
    drop_lat = Column(Float, nullable=False)
    drop_lng = Column(Float, nullable=False)
    drop_address = Column(String(255), nullable=True)

    # opaque pricing inputs
    estimated_fare = Column(Float, default=0.0, nullable=False)
    estimated_distance_km = Column(Float, default=0.0, nullable=False)
    estimated_duration_mins = Column(Float, default=0.0, nullable=False)

    status = Column(_enum(RideStatus), default=RideStatus.PENDING, nullable=False)

    # matching progress
    excluded_captain_ids = Column(JSON, default=list, nullable=False)
    current_radius_km = Column(Float, nullable=True)
    matching_attempts = Column(Integer, default=0, nullable=False)
    reassignment_count = Column(Integer, default=0, nullable=False)

    # assignment
    captain_id = Column(Integer, ForeignKey("captains.id"), nullable=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=True)
    otp = Column(String(8), nullable=True)
    matched_at = Column(DateTime(timezone=True), nullable=True)
    last_offer_sent_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # cancellation
    cancellation_fee = Column(Float, default=0.0, nullable=False)
    cancellation_reason = Column(String(255), nullable=True)
    cancelled_by = Column(_enum(CancelledBy), nullable=True)
    cancelled_by_user_id = Column(Integer, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    idempotency_key = Column(String(64), unique=True, nullable=True)
    version = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_rides_status", "status"),
        Index("idx_rides_captain", "captain_id"),
        Index("idx_rides_idempotency", "idempotency_key"),
    )


class RideOfferModel(Base):
    __tablename__ = "ride_offers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ride_id = Column(Integer, ForeignKey("rides.id"), nullable=False)
    captain_id = Column(Integer, ForeignKey("captains.id"), nullable=False)
    sent_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    response_status = Column(
        _enum(OfferStatus), default=OfferStatus.PENDING, nullable=False
    )
    responded_at = Column(DateTime(timezone=True), nullable=True)
    decline_reason = Column(String(255), nullable=True)
    offer_sequence = Column(Integer, default=1, nullable=False)
    distance_to_pickup_km = Column(Float, nullable=True)
    eta_minutes = Column(Integer, nullable=True)
    estimated_earnings = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_ride_offers_ride", "ride_id"),
        Index("idx_ride_offers_status_expiry", "response_status", "expires_at"),
        Index(
            "uq_ride_offers_one_pending",
            "ride_id",
            unique=True,
            postgresql_where=text("response_status = 'pending'"),
            sqlite_where=text("response_status = 'pending'"),
        ),
    )


class MatchingConfigModel(Base):
    __tablename__ = "matching_config"

    id = Column(Integer, primary_key=True, autoincrement=True)
    city = Column(String(100), unique=True, nullable=False)
    initial_radius_km = Column(Float, default=1.5, nullable=False)
    max_radius_km = Column(Float, default=5.0, nullable=False)
    radius_expansion_step_km = Column(Float, default=1.0, nullable=False)
    offer_timeout_seconds = Column(Integer, default=15, nullable=False)
    max_offers_per_ride = Column(Integer, default=5, nullable=False)
    max_retry_attempts = Column(Integer, default=3, nullable=False)
    score_weight_eta = Column(Float, default=0.40, nullable=False)
    score_weight_acceptance = Column(Float, default=0.25, nullable=False)
    score_weight_rating = Column(Float, default=0.20, nullable=False)
    score_weight_cancellation = Column(Float, default=0.15, nullable=False)
    captain_delay_threshold_minutes = Column(Integer, default=3, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class CancellationPenaltyModel(Base):
    __tablename__ = "cancellation_penalties"

    id = Column(Integer, primary_key=True, autoincrement=True)
    city = Column(String(100), default="default", nullable=False)
    cancelled_by = Column(_enum(CancelledBy), nullable=False)
    ride_status = Column(_enum(RideStatus), nullable=False)
    min_time_after_match_seconds = Column(Integer, default=0, nullable=False)
    max_time_after_match_seconds = Column(Integer, nullable=True)
    penalty_amount = Column(Float, default=0.0, nullable=False)
    penalty_type = Column(_enum(PenaltyType), default=PenaltyType.FEE, nullable=False)
    cooldown_minutes = Column(Integer, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index(
            "idx_penalties_lookup", "cancelled_by", "ride_status", "city"
        ),
    )
