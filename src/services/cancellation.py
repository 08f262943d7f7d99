"""
Cancellation & Penalty Engine
=============================

Cancels a ride on behalf of the rider or the captain, charging the fee (or
applying the cooldown) of the single penalty rule that covers the ride's
status and the seconds elapsed since it was matched.

Everything below happens in one transaction:

* ride -> ``cancelled`` with fee, reason, actor and timestamp;
* pending offers for the ride -> ``expired`` (cleanup, not counted against
  the captain);
* rider cancellation frees the assigned captain;
* captain cancellation frees the captain and counts the cancellation.  At
  the daily limit a ``cooldown`` rule also suspends the captain and takes
  them offline.

The other party is notified after commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.domain.entities import Ride
from src.domain.enums import (
    CANCELLABLE_STATUSES,
    CancelledBy,
    CaptainStatus,
    OfferStatus,
    PenaltyType,
    RideStatus,
)
from src.domain.errors import InvalidStateError, NotFoundError, ValidationError
from src.domain.policies import PenaltyRule, select_penalty_rule
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
from src.services.offers import close_offer

logger = logging.getLogger(__name__)

DEFAULT_CANCELLATION_REASON = "User cancelled"


@dataclass
class CancellationResult:
    success: bool
    ride_id: int
    cancellation_fee: float
    penalty_type: PenaltyType
    message: str
    cooldown_until: Optional[datetime] = None


async def record_captain_cancellation(
    captains: CaptainRepository,
    metrics: MetricsRepository,
    captain_id: int,
    now: datetime,
    cooldown_minutes: Optional[int],
) -> Optional[datetime]:
    """
    Count a captain-initiated cancellation and free (or suspend) the captain.

    A cooldown starts only when *cooldown_minutes* is given and today's
    count has reached ``daily_cancellation_limit``.  Returns the cooldown end
    when one was started.
    """
    m = await metrics.get_for_update(captain_id)
    count = m.record_cancellation(now.date())

    cooldown_until = None
    if cooldown_minutes is not None and count >= settings.daily_cancellation_limit:
        cooldown_until = m.start_cooldown(now, cooldown_minutes)
        await captains.transition_status(
            captain_id,
            [CaptainStatus.ON_RIDE, CaptainStatus.ONLINE],
            CaptainStatus.OFFLINE,
        )
        logger.warning(
            "Captain %s reached %d cancellations today; cooldown until %s",
            captain_id, count, cooldown_until.isoformat(),
        )
    else:
        await captains.transition_status(
            captain_id, [CaptainStatus.ON_RIDE], CaptainStatus.ONLINE
        )
    await metrics.save(m)
    return cooldown_until


async def expire_pending_offers(
    offers: OfferRepository,
    metrics: MetricsRepository,
    ride_id: int,
    now: datetime,
    status: OfferStatus = OfferStatus.EXPIRED,
    count_outcome: bool = False,
    reason: Optional[str] = None,
) -> int:
    closed = 0
    for offer in await offers.list_for_ride(ride_id):
        if offer.is_pending and await close_offer(
            offers, metrics, offer, status, now,
            reason=reason, count_outcome=count_outcome,
        ):
            closed += 1
    return closed


class CancellationEngine:
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

    async def cancel_ride(
        self,
        ride_id: int,
        cancelled_by: CancelledBy,
        user_id: Optional[int] = None,
        captain_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> CancellationResult:
        if cancelled_by == CancelledBy.SYSTEM:
            raise ValidationError(
                "System cancellations are issued by reassignment only",
                public_message="cancelled_by must be rider or captain",
            )

        now = self.clock()
        async with unit_of_work(self.session):
            ride = await self.rides.get(ride_id, for_update=True)
            if ride is None:
                raise NotFoundError(
                    f"Ride {ride_id} not found", public_message="Ride not found"
                )
            if ride.status not in CANCELLABLE_STATUSES:
                raise InvalidStateError(
                    f"Ride {ride_id} is {ride.status.value}; cannot cancel",
                    public_message=f"Ride cannot be cancelled in status: {ride.status.value}",
                )

            assigned = ride.captain_id
            if cancelled_by == CancelledBy.CAPTAIN:
                if assigned is None:
                    raise InvalidStateError(
                        f"Ride {ride_id} has no captain to cancel it",
                        public_message="No captain assigned to this ride",
                    )
                if captain_id is not None and captain_id != assigned:
                    raise InvalidStateError(
                        f"Captain {captain_id} is not assigned to ride {ride_id}",
                        public_message="Captain not assigned to this ride",
                    )

            elapsed = ride.seconds_since_match(now)
            rule = await self._penalty_rule(ride, cancelled_by, elapsed)
            fee = rule.penalty_amount if rule else 0.0
            penalty_type = rule.penalty_type if rule else PenaltyType.FEE
            logger.info(
                "Cancelling ride %s (%s by %s, %ds after match): rule=%s fee=%.2f",
                ride_id, ride.status.value, cancelled_by.value, elapsed,
                rule.id if rule else None, fee,
            )

            await expire_pending_offers(self.offers, self.metrics, ride_id, now)

            ride.cancel(
                cancelled_by,
                reason or DEFAULT_CANCELLATION_REASON,
                now,
                fee=fee,
                user_id=user_id,
            )
            await self.rides.save(ride)

            cooldown_until = None
            if cancelled_by == CancelledBy.CAPTAIN:
                assert assigned is not None
                cooldown_minutes = None
                if penalty_type == PenaltyType.COOLDOWN:
                    cooldown_minutes = (
                        rule.cooldown_minutes
                        if rule and rule.cooldown_minutes
                        else settings.default_cooldown_minutes
                    )
                cooldown_until = await record_captain_cancellation(
                    self.captains, self.metrics, assigned, now, cooldown_minutes
                )
            elif assigned is not None:
                await self.captains.transition_status(
                    assigned, [CaptainStatus.ON_RIDE], CaptainStatus.ONLINE
                )

        await self._notify_other_party(ride, cancelled_by, assigned)

        if fee > 0:
            message = f"Ride cancelled. Cancellation fee: ₹{fee:.0f}"
        else:
            message = "Ride cancelled successfully"
        return CancellationResult(
            success=True,
            ride_id=ride_id,
            cancellation_fee=fee,
            penalty_type=penalty_type,
            message=message,
            cooldown_until=cooldown_until,
        )

    async def _penalty_rule(
        self, ride: Ride, cancelled_by: CancelledBy, elapsed: int
    ) -> Optional[PenaltyRule]:
        # a re-matching ride is charged like a ride that was never matched
        status = (
            RideStatus.PENDING if ride.status == RideStatus.SEARCHING else ride.status
        )
        rules = await self.configs.get_penalty_rules(ride.city, cancelled_by, status)
        return select_penalty_rule(
            rules,
            city=ride.city,
            cancelled_by=cancelled_by,
            ride_status=status,
            elapsed_seconds=elapsed,
        )

    async def _notify_other_party(
        self, ride: Ride, cancelled_by: CancelledBy, captain_id: Optional[int]
    ) -> None:
        if cancelled_by == CancelledBy.CAPTAIN:
            await self.notifier.send(
                [ride.rider_id],
                "Captain Cancelled",
                "Your captain cancelled the ride. Please request again.",
                data={"type": "ride_cancelled", "ride_id": ride.id},
            )
        elif captain_id is not None:
            captain = await self.captains.get_by_id(captain_id)
            if captain is not None:
                await self.notifier.send(
                    [captain.user_id],
                    "Ride Cancelled",
                    "The rider cancelled the ride.",
                    data={"type": "ride_cancelled", "ride_id": ride.id},
                )
