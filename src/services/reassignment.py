"""
Reassignment after the assigned captain drops out.

Puts a matched ride back into the candidate pool: the current captain is
excluded for good, the search radius grows one step and the ride returns to
``searching`` for the caller to re-run dispatch.  Past the retry budget the
ride is cancelled by the system instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.domain.enums import (
    REASSIGNABLE_STATUSES,
    CancelledBy,
    CaptainStatus,
    OfferStatus,
    ReassignmentReason,
)
from src.domain.errors import InvalidStateError, NotFoundError
from src.domain.timeutils import utcnow
from src.infrastructure.database import unit_of_work
from src.infrastructure.notifications import NotificationClient, get_notifier
from src.infrastructure.repositories import (
    CaptainRepository,
    ConfigRepository,
    MetricsRepository,
    OfferRepository,
    RideRepository,
)
from src.services.cancellation import expire_pending_offers, record_captain_cancellation

logger = logging.getLogger(__name__)

SYSTEM_CANCELLATION_REASON = "No captains available after multiple attempts"


@dataclass
class ReassignmentResult:
    ride_id: int
    reassigned: bool
    cancelled: bool
    reassignment_count: int
    message: str
    current_radius_km: Optional[float] = None
    excluded_captain_ids: Optional[list[int]] = None


class ReassignmentService:
    def __init__(
        self,
        session: AsyncSession,
        notifier: Optional[NotificationClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.rides = RideRepository(session)
        self.captains = CaptainRepository(session)
        self.offers = OfferRepository(session)
        self.metrics = MetricsRepository(session)
        self.configs = ConfigRepository(session)
        self.notifier = notifier or get_notifier()
        self.clock = clock

    async def reassign(
        self,
        ride_id: int,
        reason: ReassignmentReason,
        captain_id: Optional[int] = None,
        cancellation_reason: Optional[str] = None,
    ) -> ReassignmentResult:
        now = self.clock()
        async with unit_of_work(self.session):
            ride = await self.rides.get(ride_id, for_update=True)
            if ride is None:
                raise NotFoundError(
                    f"Ride {ride_id} not found", public_message="Ride not found"
                )
            if ride.status not in REASSIGNABLE_STATUSES:
                raise InvalidStateError(
                    f"Ride {ride_id} is {ride.status.value}; cannot reassign",
                    public_message=f"Ride cannot be reassigned in status: {ride.status.value}",
                )
            old_captain = ride.captain_id
            if captain_id is not None and captain_id != old_captain:
                raise InvalidStateError(
                    f"Captain {captain_id} is not assigned to ride {ride_id}",
                    public_message="Captain not assigned to this ride",
                )

            config = await self.configs.get_matching_config(ride.city)
            if reason == ReassignmentReason.CAPTAIN_DELAY:
                threshold = config.captain_delay_threshold_minutes * 60
                if ride.seconds_since_match(now) < threshold:
                    raise InvalidStateError(
                        f"Ride {ride_id} matched {ride.seconds_since_match(now)}s ago, "
                        f"delay threshold is {threshold}s",
                        public_message="Captain delay threshold not reached",
                    )

            if old_captain is not None:
                ride.exclude_captain(old_captain)
            ride.reassignment_count += 1

            offer_status = (
                OfferStatus.DECLINED
                if reason == ReassignmentReason.CAPTAIN_CANCELLED
                else OfferStatus.EXPIRED
            )
            await expire_pending_offers(
                self.offers, self.metrics, ride_id, now,
                status=offer_status, count_outcome=True,
                reason=cancellation_reason,
            )

            if ride.reassignment_count > config.max_retry_attempts:
                ride.cancel(CancelledBy.SYSTEM, SYSTEM_CANCELLATION_REASON, now)
                await self.rides.save(ride)
                if old_captain is not None:
                    await self.captains.transition_status(
                        old_captain, [CaptainStatus.ON_RIDE], CaptainStatus.ONLINE
                    )
                logger.warning(
                    "Ride %s cancelled by system after %d reassignments",
                    ride_id, ride.reassignment_count,
                )
                result = ReassignmentResult(
                    ride_id=ride_id,
                    reassigned=False,
                    cancelled=True,
                    reassignment_count=ride.reassignment_count,
                    message=SYSTEM_CANCELLATION_REASON,
                    excluded_captain_ids=list(ride.excluded_captain_ids),
                )
            else:
                if old_captain is not None:
                    if reason == ReassignmentReason.CAPTAIN_CANCELLED:
                        await record_captain_cancellation(
                            self.captains, self.metrics, old_captain, now,
                            settings.default_cooldown_minutes,
                        )
                    else:
                        await self.captains.transition_status(
                            old_captain, [CaptainStatus.ON_RIDE], CaptainStatus.ONLINE
                        )
                ride.release_to_pool()
                current = (
                    ride.current_radius_km
                    if ride.current_radius_km is not None
                    else config.initial_radius_km
                )
                ride.set_radius(config.next_radius(current), config.max_radius_km)
                await self.rides.save(ride)
                logger.info(
                    "Ride %s back in pool (%s), radius %.1fkm, reassignment %d",
                    ride_id, reason.value, ride.current_radius_km,
                    ride.reassignment_count,
                )
                result = ReassignmentResult(
                    ride_id=ride_id,
                    reassigned=True,
                    cancelled=False,
                    reassignment_count=ride.reassignment_count,
                    message="Finding a new captain",
                    current_radius_km=ride.current_radius_km,
                    excluded_captain_ids=list(ride.excluded_captain_ids),
                )

        await self.notifier.send(
            [ride.rider_id],
            "Ride Cancelled" if result.cancelled else "Finding a new captain",
            result.message,
            data={"type": "ride_reassigned", "ride_id": ride_id},
        )
        return result
