"""Captain onboarding, location feed and availability."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.domain.entities import CaptainMetrics, Location
from src.domain.enums import CaptainStatus, VehicleType
from src.domain.errors import InvalidStateError, NotFoundError, ValidationError
from src.domain.matching import NearbyCaptain, nearby_captains
from src.domain.timeutils import utcnow
from src.infrastructure.database import unit_of_work
from src.infrastructure.models import CaptainModel, VehicleModel
from src.infrastructure.repositories import CaptainRepository, MetricsRepository

logger = logging.getLogger(__name__)


@dataclass
class VehicleSpec:
    vehicle_type: VehicleType
    make: str
    model: str
    registration_number: str


class CaptainService:
    def __init__(
        self, session: AsyncSession, clock: Callable[[], datetime] = utcnow
    ):
        self.session = session
        self.captains = CaptainRepository(session)
        self.metrics = MetricsRepository(session)
        self.clock = clock

    async def register(
        self,
        *,
        name: str,
        vehicle: VehicleSpec,
        user_id: Optional[int] = None,
        phone: Optional[str] = None,
        is_verified: bool = False,
        rating: float = 5.0,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
    ) -> tuple[CaptainModel, VehicleModel]:
        async with unit_of_work(self.session):
            if await self.captains.get_vehicle_by_registration(
                vehicle.registration_number
            ):
                raise ValidationError(
                    f"Vehicle {vehicle.registration_number} already registered",
                    public_message="Vehicle already registered",
                )
            captain = await self.captains.create_captain(
                name=name,
                user_id=user_id,
                phone=phone,
                is_verified=is_verified,
                rating=rating,
                current_lat=lat,
                current_lng=lng,
            )
            car = await self.captains.add_vehicle(
                captain_id=captain.id,
                vehicle_type=vehicle.vehicle_type,
                make=vehicle.make,
                model=vehicle.model,
                registration_number=vehicle.registration_number,
            )
        logger.info("Registered captain %s with %s %s", captain.id, vehicle.vehicle_type.value, car.id)
        return captain, car

    async def update_location(
        self, captain_id: int, lat: float, lng: float
    ) -> CaptainModel:
        async with unit_of_work(self.session):
            if not await self.captains.update_location(
                captain_id, lat, lng, self.clock()
            ):
                raise NotFoundError(
                    f"Captain {captain_id} not found", public_message="Captain not found"
                )
            captain = await self.captains.get_by_id(captain_id)
        return captain

    async def set_availability(self, captain_id: int, online: bool) -> CaptainModel:
        now = self.clock()
        async with unit_of_work(self.session):
            captain = await self.captains.get_by_id(captain_id)
            if captain is None:
                raise NotFoundError(
                    f"Captain {captain_id} not found", public_message="Captain not found"
                )
            if captain.status == CaptainStatus.ON_RIDE:
                raise InvalidStateError(
                    f"Captain {captain_id} is on a ride",
                    public_message="Captain is on a ride",
                )

            if online:
                if not captain.is_verified:
                    raise InvalidStateError(
                        f"Captain {captain_id} is not verified",
                        public_message="Captain is not verified",
                    )
                metrics = await self.metrics.get(captain_id)
                if metrics and metrics.in_cooldown(now):
                    raise InvalidStateError(
                        f"Captain {captain_id} in cooldown until {metrics.cooldown_until}",
                        public_message="Captain is in cooldown",
                    )
                target = CaptainStatus.ONLINE
            else:
                target = CaptainStatus.OFFLINE

            if not await self.captains.transition_status(
                captain_id, [CaptainStatus.ONLINE, CaptainStatus.OFFLINE], target
            ):
                raise InvalidStateError(
                    f"Captain {captain_id} changed status concurrently",
                    public_message="Captain is on a ride",
                )
            captain = await self.captains.get_by_id(captain_id)
        logger.info("Captain %s is now %s", captain_id, target.value)
        return captain

    async def get_metrics(self, captain_id: int) -> CaptainMetrics:
        async with unit_of_work(self.session):
            metrics = await self.metrics.get(captain_id)
        if metrics is None:
            raise NotFoundError(
                f"No metrics for captain {captain_id}", public_message="Captain not found"
            )
        return metrics

    async def nearby(
        self,
        lat: float,
        lng: float,
        radius_km: Optional[float] = None,
        vehicle_type: Optional[VehicleType] = None,
    ) -> list[NearbyCaptain]:
        radius = radius_km if radius_km is not None else settings.nearby_default_radius_km
        async with unit_of_work(self.session):
            working_set = await self.captains.get_working_set(vehicle_type)
        found = nearby_captains(
            working_set, Location(lat, lng), radius, settings.nearby_max_results
        )
        logger.debug(
            "%d of %d online captains within %.1f km of (%.5f, %.5f)",
            len(found), len(working_set), radius, lat, lng,
        )
        return found
