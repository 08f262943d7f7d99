"""Trip progress after acceptance: arrival, OTP-verified start, completion."""

from __future__ import annotations

import hmac
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.domain.entities import Ride
from src.domain.enums import CaptainStatus, RideStatus
from src.domain.errors import InvalidStateError, NotFoundError, ValidationError
from src.domain.timeutils import utcnow
from src.infrastructure.database import unit_of_work
from src.infrastructure.notifications import NotificationClient, get_notifier
from src.infrastructure.repositories import (
    CaptainRepository,
    MetricsRepository,
    RideRepository,
)

logger = logging.getLogger(__name__)


class TripService:
    def __init__(
        self,
        session: AsyncSession,
        notifier: Optional[NotificationClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.rides = RideRepository(session)
        self.captains = CaptainRepository(session)
        self.metrics = MetricsRepository(session)
        self.notifier = notifier or get_notifier()
        self.clock = clock

    async def mark_arrived(self, ride_id: int, captain_id: int) -> Ride:
        async with unit_of_work(self.session):
            ride = await self._load_for_captain(ride_id, captain_id)
            ride.transition_to(RideStatus.WAITING_FOR_RIDER)
            await self.rides.save(ride)

        await self.notifier.send(
            [ride.rider_id],
            "Your captain has arrived",
            f"Share OTP {ride.otp} to start the trip",
            data={"type": "captain_arrived", "ride_id": ride.id},
        )
        return ride

    async def start_trip(self, ride_id: int, captain_id: int, otp: str) -> Ride:
        now = self.clock()
        async with unit_of_work(self.session):
            ride = await self._load_for_captain(ride_id, captain_id)
            if ride.status != RideStatus.WAITING_FOR_RIDER:
                raise InvalidStateError(
                    f"Ride {ride_id} is {ride.status.value}; cannot start",
                    public_message=f"Trip cannot start in status: {ride.status.value}",
                )
            if not ride.otp or not hmac.compare_digest(ride.otp, otp):
                raise ValidationError(
                    f"Wrong OTP for ride {ride_id}", public_message="Invalid OTP"
                )
            ride.transition_to(RideStatus.IN_PROGRESS)
            ride.started_at = now
            await self.rides.save(ride)
        logger.info("Ride %s started by captain %s", ride_id, captain_id)
        return ride

    async def complete_trip(self, ride_id: int, captain_id: int) -> Ride:
        now = self.clock()
        async with unit_of_work(self.session):
            ride = await self._load_for_captain(ride_id, captain_id)
            ride.transition_to(RideStatus.COMPLETED)
            ride.completed_at = now
            await self.rides.save(ride)

            await self.captains.transition_status(
                captain_id, [CaptainStatus.ON_RIDE], CaptainStatus.ONLINE
            )
            m = await self.metrics.get_for_update(captain_id)
            m.record_completion()
            await self.metrics.save(m)
        logger.info("Ride %s completed by captain %s", ride_id, captain_id)

        await self.notifier.send(
            [ride.rider_id],
            "Trip completed",
            "Thanks for riding with us!",
            data={"type": "ride_completed", "ride_id": ride.id},
        )
        return ride

    async def _load_for_captain(self, ride_id: int, captain_id: int) -> Ride:
        ride = await self.rides.get(ride_id, for_update=True)
        if ride is None:
            raise NotFoundError(
                f"Ride {ride_id} not found", public_message="Ride not found"
            )
        if ride.captain_id != captain_id:
            raise InvalidStateError(
                f"Captain {captain_id} is not assigned to ride {ride_id}",
                public_message="Captain not assigned to this ride",
            )
        return ride
