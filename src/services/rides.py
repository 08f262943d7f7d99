"""Ride intake and reads."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.domain.entities import Ride
from src.domain.enums import VehicleType
from src.domain.errors import NotFoundError
from src.domain.policies import DEFAULT_CITY
from src.domain.timeutils import utcnow
from src.infrastructure.database import unit_of_work
from src.infrastructure.notifications import NotificationClient
from src.infrastructure.repositories import RideRepository
from src.services.offers import OfferLifecycleManager

logger = logging.getLogger(__name__)


class RideService:
    def __init__(
        self,
        session: AsyncSession,
        notifier: Optional[NotificationClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.rides = RideRepository(session)
        self.lifecycle = OfferLifecycleManager(session, notifier, clock)
        self.clock = clock

    async def create_ride(
        self,
        *,
        rider_id: int,
        vehicle_type: VehicleType,
        pickup_lat: float,
        pickup_lng: float,
        drop_lat: float,
        drop_lng: float,
        city: str = DEFAULT_CITY,
        pickup_address: Optional[str] = None,
        drop_address: Optional[str] = None,
        estimated_fare: float = 0.0,
        estimated_distance_km: float = 0.0,
        estimated_duration_mins: float = 0.0,
        idempotency_key: Optional[str] = None,
    ) -> tuple[Ride, bool]:
        """Create a ``pending`` ride.  Returns ``(ride, created)``."""
        async with unit_of_work(self.session):
            # ── Idempotency guard ─────────────────────────────────────
            if idempotency_key:
                existing = await self.rides.get_by_idempotency_key(idempotency_key)
                if existing:
                    logger.info(
                        "Ride %s replayed for idempotency key %s",
                        existing.id, idempotency_key,
                    )
                    return await self.rides.get(existing.id), False

            row = await self.rides.create_ride(
                rider_id=rider_id,
                vehicle_type=vehicle_type,
                pickup_lat=pickup_lat,
                pickup_lng=pickup_lng,
                drop_lat=drop_lat,
                drop_lng=drop_lng,
                city=city,
                pickup_address=pickup_address,
                drop_address=drop_address,
                estimated_fare=estimated_fare,
                estimated_distance_km=estimated_distance_km,
                estimated_duration_mins=estimated_duration_mins,
                idempotency_key=idempotency_key,
            )
            ride = await self.rides.get(row.id)
        logger.info("Ride %s created for rider %s", ride.id, rider_id)
        return ride, True

    async def get_ride(self, ride_id: int) -> Ride:
        """Read a ride, first expiring its offer if the captain ran out of time."""
        async with unit_of_work(self.session):
            ride = await self.rides.get(ride_id, for_update=True)
            if ride is None:
                raise NotFoundError(
                    f"Ride {ride_id} not found", public_message="Ride not found"
                )
            if await self.lifecycle.expire_if_overdue(ride_id, self.clock()):
                ride = await self.rides.get(ride_id)
        return ride
