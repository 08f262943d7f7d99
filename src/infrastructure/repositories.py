"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work), hands out
domain entities and persists them with **guarded** updates:

* rides     -- ``WHERE id = ? AND version = ?`` (optimistic concurrency);
* captains  -- ``WHERE id = ? AND status IN (expected prior statuses)``;
* offers    -- ``WHERE id = ? AND response_status = 'pending'``.

A guarded update that matches no row means another request got there first.
Reads used on write paths also take ``SELECT ... FOR UPDATE`` so PostgreSQL
serialises the read-select-write sequence (SQLite ignores the clause).
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

from pydantic import ValidationError as SchemaError
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    CancellationPenaltyModel,
    CaptainMetricsModel,
    CaptainModel,
    MatchingConfigModel,
    RideModel,
    RideOfferModel,
    VehicleModel,
)
from src.config import settings
from src.domain.entities import CaptainMetrics, Location, Offer, Ride
from src.domain.enums import (
    CancelledBy,
    CaptainStatus,
    OfferStatus,
    RideStatus,
    VehicleType,
)
from src.domain.errors import ConcurrentModification
from src.domain.matching import CaptainSnapshot
from src.domain.policies import DEFAULT_CITY, MatchingConfig, PenaltyRule
from src.domain.timeutils import as_utc

logger = logging.getLogger(__name__)

_NO_SYNC = {"synchronize_session": False}


class RideRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_ride(
        self,
        *,
        rider_id: int | None,
        vehicle_type: VehicleType,
        pickup_lat: float,
        pickup_lng: float,
        drop_lat: float,
        drop_lng: float,
        city: str = DEFAULT_CITY,
        pickup_address: str | None = None,
        drop_address: str | None = None,
        estimated_fare: float = 0.0,
        estimated_distance_km: float = 0.0,
        estimated_duration_mins: float = 0.0,
        idempotency_key: str | None = None,
    ) -> RideModel:
        ride = RideModel(
            rider_id=rider_id,
            vehicle_type=vehicle_type,
            city=city,
            pickup_lat=pickup_lat,
            pickup_lng=pickup_lng,
            pickup_address=pickup_address,
            drop_lat=drop_lat,
            drop_lng=drop_lng,
            drop_address=drop_address,
            estimated_fare=estimated_fare,
            estimated_distance_km=estimated_distance_km,
            estimated_duration_mins=estimated_duration_mins,
            idempotency_key=idempotency_key,
            status=RideStatus.PENDING,
            excluded_captain_ids=[],
            matching_attempts=0,
            reassignment_count=0,
            cancellation_fee=0.0,
            version=0,
        )
        self.session.add(ride)
        await self.session.flush()
        return ride

    async def get_by_idempotency_key(self, key: str) -> Optional[RideModel]:
        result = await self.session.execute(
            select(RideModel).where(RideModel.idempotency_key == key)
        )
        return result.scalar_one_or_none()

    async def get(self, ride_id: int, *, for_update: bool = False) -> Optional[Ride]:
        query = (
            select(RideModel)
            .where(RideModel.id == ride_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        row = result.scalar_one_or_none()
        return _ride_to_entity(row) if row else None

    async def save(self, ride: Ride) -> None:
        """Persist *ride* only if nobody changed it since it was loaded."""
        result = await self.session.execute(
            update(RideModel)
            .where(RideModel.id == ride.id, RideModel.version == ride.version)
            .values(**_ride_values(ride), version=ride.version + 1)
            .execution_options(**_NO_SYNC)
        )
        if result.rowcount != 1:
            raise ConcurrentModification(
                f"Ride {ride.id} changed since version {ride.version}"
            )
        ride.version += 1


class CaptainRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_captain(
        self,
        *,
        name: str,
        user_id: int | None = None,
        phone: str | None = None,
        is_verified: bool = False,
        status: CaptainStatus = CaptainStatus.OFFLINE,
        rating: float = 5.0,
        current_lat: float | None = None,
        current_lng: float | None = None,
    ) -> CaptainModel:
        """Create a captain together with its (neutral) metrics row."""
        captain = CaptainModel(
            name=name,
            user_id=user_id,
            phone=phone,
            is_verified=is_verified,
            status=status,
            rating=rating,
            current_lat=current_lat,
            current_lng=current_lng,
        )
        self.session.add(captain)
        await self.session.flush()
        self.session.add(_new_metrics_row(captain.id))
        await self.session.flush()
        return captain

    async def add_vehicle(
        self,
        *,
        captain_id: int,
        vehicle_type: VehicleType,
        make: str,
        model: str,
        registration_number: str,
        is_active: bool = True,
    ) -> VehicleModel:
        vehicle = VehicleModel(
            captain_id=captain_id,
            vehicle_type=vehicle_type,
            make=make,
            model=model,
            registration_number=registration_number,
            is_active=is_active,
        )
        self.session.add(vehicle)
        await self.session.flush()
        return vehicle

    async def get_by_id(self, captain_id: int) -> Optional[CaptainModel]:
        result = await self.session.execute(
            select(CaptainModel)
            .where(CaptainModel.id == captain_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_vehicle(self, vehicle_id: int) -> Optional[VehicleModel]:
        return await self.session.get(VehicleModel, vehicle_id)

    async def get_vehicle_by_registration(
        self, registration_number: str
    ) -> Optional[VehicleModel]:
        result = await self.session.execute(
            select(VehicleModel).where(
                VehicleModel.registration_number == registration_number
            )
        )
        return result.scalar_one_or_none()

    async def list_vehicles(self, captain_id: int) -> list[VehicleModel]:
        result = await self.session.execute(
            select(VehicleModel)
            .where(VehicleModel.captain_id == captain_id)
            .order_by(VehicleModel.id)
        )
        return list(result.scalars().all())

    async def get_working_set(
        self, vehicle_type: Optional[VehicleType] = None
    ) -> list[CaptainSnapshot]:
        """Online, verified captains with a located, active vehicle of the type.

        Without *vehicle_type* every active vehicle is returned.
        """
        filters = [
            CaptainModel.status == CaptainStatus.ONLINE,
            CaptainModel.is_verified.is_(True),
            CaptainModel.current_lat.is_not(None),
            CaptainModel.current_lng.is_not(None),
            VehicleModel.is_active.is_(True),
        ]
        if vehicle_type is not None:
            filters.append(VehicleModel.vehicle_type == vehicle_type)
        result = await self.session.execute(
            select(CaptainModel, VehicleModel, CaptainMetricsModel)
            .join(VehicleModel, VehicleModel.captain_id == CaptainModel.id)
            .outerjoin(
                CaptainMetricsModel,
                CaptainMetricsModel.captain_id == CaptainModel.id,
            )
            .where(*filters)
            .order_by(CaptainModel.id, VehicleModel.id)
            .execution_options(populate_existing=True)
        )
        return [
            _snapshot(captain, vehicle, metrics)
            for captain, vehicle, metrics in result.all()
        ]

    async def transition_status(
        self,
        captain_id: int,
        expected: Iterable[CaptainStatus],
        new_status: CaptainStatus,
    ) -> bool:
        """Conditional availability flip.  ``False`` means the guard failed."""
        result = await self.session.execute(
            update(CaptainModel)
            .where(
                CaptainModel.id == captain_id,
                CaptainModel.status.in_(list(expected)),
            )
            .values(status=new_status)
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount == 1

    async def update_location(
        self, captain_id: int, lat: float, lng: float, now: datetime
    ) -> bool:
        result = await self.session.execute(
            update(CaptainModel)
            .where(CaptainModel.id == captain_id)
            .values(current_lat=lat, current_lng=lng, location_updated_at=now)
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount == 1


class OfferRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, offer: Offer) -> Offer:
        row = RideOfferModel(
            ride_id=offer.ride_id,
            captain_id=offer.captain_id,
            sent_at=offer.sent_at,
            expires_at=offer.expires_at,
            response_status=OfferStatus.PENDING,
            offer_sequence=offer.offer_sequence,
            distance_to_pickup_km=offer.distance_to_pickup_km,
            eta_minutes=offer.eta_minutes,
            estimated_earnings=offer.estimated_earnings,
        )
        self.session.add(row)
        await self.session.flush()
        offer.id = row.id
        return offer

    async def get(self, offer_id: int) -> Optional[Offer]:
        result = await self.session.execute(
            select(RideOfferModel)
            .where(RideOfferModel.id == offer_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return _offer_to_entity(row) if row else None

    async def get_pending_for_ride(self, ride_id: int) -> Optional[Offer]:
        result = await self.session.execute(
            select(RideOfferModel)
            .where(
                RideOfferModel.ride_id == ride_id,
                RideOfferModel.response_status == OfferStatus.PENDING,
            )
            .order_by(RideOfferModel.offer_sequence.desc())
            .execution_options(populate_existing=True)
        )
        row = result.scalars().first()
        return _offer_to_entity(row) if row else None

    async def list_for_ride(self, ride_id: int) -> list[Offer]:
        result = await self.session.execute(
            select(RideOfferModel)
            .where(RideOfferModel.ride_id == ride_id)
            .order_by(RideOfferModel.offer_sequence)
            .execution_options(populate_existing=True)
        )
        return [_offer_to_entity(r) for r in result.scalars().all()]

    async def list_overdue(self, now: datetime, limit: int = 100) -> list[Offer]:
        result = await self.session.execute(
            select(RideOfferModel)
            .where(
                RideOfferModel.response_status == OfferStatus.PENDING,
                RideOfferModel.expires_at <= now,
            )
            .order_by(RideOfferModel.expires_at)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return [_offer_to_entity(r) for r in result.scalars().all()]

    async def next_sequence(self, ride_id: int) -> int:
        result = await self.session.execute(
            select(func.coalesce(func.max(RideOfferModel.offer_sequence), 0)).where(
                RideOfferModel.ride_id == ride_id
            )
        )
        return int(result.scalar() or 0) + 1

    async def resolve(self, offer: Offer) -> bool:
        """Write a terminal status; ``False`` if the offer was no longer pending."""
        result = await self.session.execute(
            update(RideOfferModel)
            .where(
                RideOfferModel.id == offer.id,
                RideOfferModel.response_status == OfferStatus.PENDING,
            )
            .values(
                response_status=offer.response_status,
                responded_at=offer.responded_at,
                decline_reason=offer.decline_reason,
            )
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount == 1


class MetricsRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, captain_id: int) -> Optional[CaptainMetrics]:
        result = await self.session.execute(
            select(CaptainMetricsModel)
            .where(CaptainMetricsModel.captain_id == captain_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return _metrics_to_entity(row) if row else None

    async def get_for_update(self, captain_id: int) -> CaptainMetrics:
        """Lock the captain's metrics row, creating it if it is missing."""
        result = await self.session.execute(
            select(CaptainMetricsModel)
            .where(CaptainMetricsModel.captain_id == captain_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = _new_metrics_row(captain_id)
            self.session.add(row)
            await self.session.flush()
        return _metrics_to_entity(row)

    async def save(self, metrics: CaptainMetrics) -> None:
        await self.session.execute(
            update(CaptainMetricsModel)
            .where(CaptainMetricsModel.captain_id == metrics.captain_id)
            .values(
                acceptance_rate=metrics.acceptance_rate,
                cancellation_rate=metrics.cancellation_rate,
                total_offers_received=metrics.total_offers_received,
                total_offers_accepted=metrics.total_offers_accepted,
                total_offers_declined=metrics.total_offers_declined,
                total_offers_expired=metrics.total_offers_expired,
                avg_response_time_seconds=metrics.avg_response_time_seconds,
                total_rides_completed=metrics.total_rides_completed,
                total_rides_cancelled=metrics.total_rides_cancelled,
                daily_cancellation_count=metrics.daily_cancellation_count,
                daily_cancellation_reset_at=metrics.daily_cancellation_reset_at,
                cooldown_until=metrics.cooldown_until,
            )
            .execution_options(**_NO_SYNC)
        )


class ConfigRepository:
    """Reads operator-editable rows fresh on every call; nothing is cached."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_matching_config(self, city: str = DEFAULT_CITY) -> MatchingConfig:
        result = await self.session.execute(
            select(MatchingConfigModel).where(
                MatchingConfigModel.city.in_([city, DEFAULT_CITY]),
                MatchingConfigModel.is_active.is_(True),
            )
        )
        rows = sorted(
            result.scalars().all(), key=lambda r: r.city == DEFAULT_CITY
        )
        for row in rows:
            try:
                return MatchingConfig.from_row(row)
            except SchemaError:
                logger.warning(
                    "Rejected invalid matching_config row for city=%s", row.city,
                    exc_info=True,
                )
        return MatchingConfig.from_settings(settings)

    async def get_matching_config_row(self, city: str) -> Optional[MatchingConfigModel]:
        result = await self.session.execute(
            select(MatchingConfigModel).where(MatchingConfigModel.city == city)
        )
        return result.scalar_one_or_none()

    async def upsert_matching_config(self, config: MatchingConfig) -> MatchingConfigModel:
        row = await self.get_matching_config_row(config.city)
        if row is None:
            row = MatchingConfigModel(city=config.city)
            self.session.add(row)
        row.initial_radius_km = config.initial_radius_km
        row.max_radius_km = config.max_radius_km
        row.radius_expansion_step_km = config.radius_expansion_step_km
        row.offer_timeout_seconds = config.offer_timeout_seconds
        row.max_offers_per_ride = config.max_offers_per_ride
        row.max_retry_attempts = config.max_retry_attempts
        row.score_weight_eta = config.weights.eta
        row.score_weight_acceptance = config.weights.acceptance
        row.score_weight_rating = config.weights.rating
        row.score_weight_cancellation = config.weights.cancellation
        row.captain_delay_threshold_minutes = config.captain_delay_threshold_minutes
        row.is_active = True
        await self.session.flush()
        return row

    async def get_penalty_rules(
        self,
        city: str,
        cancelled_by: CancelledBy,
        ride_status: RideStatus,
    ) -> list[PenaltyRule]:
        result = await self.session.execute(
            select(CancellationPenaltyModel)
            .where(
                CancellationPenaltyModel.cancelled_by == cancelled_by,
                CancellationPenaltyModel.ride_status == ride_status,
                CancellationPenaltyModel.city.in_([city, DEFAULT_CITY]),
                CancellationPenaltyModel.is_active.is_(True),
            )
            .order_by(CancellationPenaltyModel.id)
        )
        return _valid_rules(result.scalars().all())

    async def list_penalty_rules(self) -> list[PenaltyRule]:
        result = await self.session.execute(
            select(CancellationPenaltyModel)
            .where(CancellationPenaltyModel.is_active.is_(True))
            .order_by(CancellationPenaltyModel.city, CancellationPenaltyModel.id)
        )
        return _valid_rules(result.scalars().all())

    async def add_penalty_rule(self, rule: PenaltyRule) -> PenaltyRule:
        row = CancellationPenaltyModel(
            city=rule.city,
            cancelled_by=rule.cancelled_by,
            ride_status=rule.ride_status,
            min_time_after_match_seconds=rule.min_time_after_match_seconds,
            max_time_after_match_seconds=rule.max_time_after_match_seconds,
            penalty_amount=rule.penalty_amount,
            penalty_type=rule.penalty_type,
            cooldown_minutes=rule.cooldown_minutes,
            is_active=True,
        )
        self.session.add(row)
        await self.session.flush()
        return PenaltyRule.model_validate(row)


# ── Row <-> entity mapping ────────────────────────────────────────────


def _valid_rules(rows) -> list[PenaltyRule]:
    rules: list[PenaltyRule] = []
    for row in rows:
        try:
            rules.append(PenaltyRule.model_validate(row))
        except SchemaError:
            logger.warning(
                "Rejected invalid cancellation_penalties row id=%s", row.id,
                exc_info=True,
            )
    return rules


def _new_metrics_row(captain_id: int) -> CaptainMetricsModel:
    return CaptainMetricsModel(
        captain_id=captain_id,
        acceptance_rate=100.0,
        cancellation_rate=0.0,
        total_offers_received=0,
        total_offers_accepted=0,
        total_offers_declined=0,
        total_offers_expired=0,
        avg_response_time_seconds=0.0,
        total_rides_completed=0,
        total_rides_cancelled=0,
        daily_cancellation_count=0,
    )


def _ride_to_entity(row: RideModel) -> Ride:
    return Ride(
        id=row.id,
        rider_id=row.rider_id,
        city=row.city or DEFAULT_CITY,
        vehicle_type=VehicleType(row.vehicle_type),
        pickup=Location(row.pickup_lat, row.pickup_lng),
        drop=Location(row.drop_lat, row.drop_lng),
        status=RideStatus(row.status),
        estimated_fare=row.estimated_fare or 0.0,
        estimated_distance_km=row.estimated_distance_km or 0.0,
        estimated_duration_mins=row.estimated_duration_mins or 0.0,
        excluded_captain_ids=list(row.excluded_captain_ids or []),
        current_radius_km=row.current_radius_km,
        matching_attempts=row.matching_attempts or 0,
        reassignment_count=row.reassignment_count or 0,
        captain_id=row.captain_id,
        vehicle_id=row.vehicle_id,
        otp=row.otp,
        matched_at=as_utc(row.matched_at),
        last_offer_sent_at=as_utc(row.last_offer_sent_at),
        started_at=as_utc(row.started_at),
        completed_at=as_utc(row.completed_at),
        cancellation_fee=row.cancellation_fee or 0.0,
        cancellation_reason=row.cancellation_reason,
        cancelled_by=CancelledBy(row.cancelled_by) if row.cancelled_by else None,
        cancelled_by_user_id=row.cancelled_by_user_id,
        cancelled_at=as_utc(row.cancelled_at),
        version=row.version or 0,
    )


def _ride_values(ride: Ride) -> dict:
    return {
        "status": ride.status,
        "excluded_captain_ids": list(ride.excluded_captain_ids),
        "current_radius_km": ride.current_radius_km,
        "matching_attempts": ride.matching_attempts,
        "reassignment_count": ride.reassignment_count,
        "captain_id": ride.captain_id,
        "vehicle_id": ride.vehicle_id,
        "otp": ride.otp,
        "matched_at": ride.matched_at,
        "last_offer_sent_at": ride.last_offer_sent_at,
        "started_at": ride.started_at,
        "completed_at": ride.completed_at,
        "cancellation_fee": ride.cancellation_fee,
        "cancellation_reason": ride.cancellation_reason,
        "cancelled_by": ride.cancelled_by,
        "cancelled_by_user_id": ride.cancelled_by_user_id,
        "cancelled_at": ride.cancelled_at,
    }


def _offer_to_entity(row: RideOfferModel) -> Offer:
    return Offer(
        id=row.id,
        ride_id=row.ride_id,
        captain_id=row.captain_id,
        sent_at=as_utc(row.sent_at),
        expires_at=as_utc(row.expires_at),
        response_status=OfferStatus(row.response_status),
        responded_at=as_utc(row.responded_at),
        decline_reason=row.decline_reason,
        offer_sequence=row.offer_sequence,
        distance_to_pickup_km=row.distance_to_pickup_km,
        eta_minutes=row.eta_minutes,
        estimated_earnings=row.estimated_earnings,
    )


def _metrics_to_entity(row: CaptainMetricsModel) -> CaptainMetrics:
    return CaptainMetrics(
        captain_id=row.captain_id,
        acceptance_rate=row.acceptance_rate,
        cancellation_rate=row.cancellation_rate,
        total_offers_received=row.total_offers_received,
        total_offers_accepted=row.total_offers_accepted,
        total_offers_declined=row.total_offers_declined,
        total_offers_expired=row.total_offers_expired,
        avg_response_time_seconds=row.avg_response_time_seconds,
        total_rides_completed=row.total_rides_completed,
        total_rides_cancelled=row.total_rides_cancelled,
        daily_cancellation_count=row.daily_cancellation_count,
        daily_cancellation_reset_at=row.daily_cancellation_reset_at,
        cooldown_until=as_utc(row.cooldown_until),
    )


def _snapshot(
    captain: CaptainModel,
    vehicle: VehicleModel,
    metrics: Optional[CaptainMetricsModel],
) -> CaptainSnapshot:
    location = None
    if captain.current_lat is not None and captain.current_lng is not None:
        location = Location(captain.current_lat, captain.current_lng)
    return CaptainSnapshot(
        captain_id=captain.id,
        user_id=captain.user_id,
        name=captain.name,
        phone=captain.phone,
        status=CaptainStatus(captain.status),
        is_verified=bool(captain.is_verified),
        location=location,
        rating=captain.rating,
        vehicle_id=vehicle.id,
        vehicle_type=VehicleType(vehicle.vehicle_type),
        vehicle_active=bool(vehicle.is_active),
        vehicle_make=vehicle.make,
        vehicle_model=vehicle.model,
        registration_number=vehicle.registration_number,
        acceptance_rate=metrics.acceptance_rate if metrics else None,
        cancellation_rate=metrics.cancellation_rate if metrics else None,
        cooldown_until=as_utc(metrics.cooldown_until) if metrics else None,
        location_updated_at=as_utc(captain.location_updated_at),
    )
