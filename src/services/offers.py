"""
Offer Lifecycle Manager
=======================

Processes the captain's answer to a live offer, or its timeout.

Transitions
-----------
``pending -> accepted | declined | expired``, exactly once.  The terminal
write is a guarded update (``WHERE response_status = 'pending'``); only the
request that wins it touches the captain's metrics, so a duplicated or late
response is a no-op and never double-counts.

Side effects
------------
* accept   -- ride ``matched -> captain_arriving``; acceptance rate and
  running average response time updated; rider notified after commit.
* decline / expire -- captain appended to the ride's exclusion set, ride
  back to ``searching`` with its assignment cleared, captain back to
  ``online``.  The caller re-invokes the dispatch orchestrator.

Expiry is detected lazily (on a response, on a ride read, at the start of a
new match attempt) and optionally by the background sweeper.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.domain.entities import Offer, Ride
from src.domain.enums import (
    CaptainStatus,
    OfferResponse,
    OfferStatus,
    RideStatus,
)
from src.domain.errors import ConcurrentModification, InvalidStateError, NotFoundError
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

logger = logging.getLogger(__name__)

DEFAULT_DECLINE_REASON = "No reason provided"


@dataclass
class OfferOutcome:
    offer: Offer
    action: OfferStatus
    ride: Optional[Ride] = None
    already_resolved: bool = False
    captains_tried: int = 0
    max_captains: int = 0

    @property
    def success(self) -> bool:
        return not self.already_resolved and self.action in (
            OfferStatus.ACCEPTED,
            OfferStatus.DECLINED,
        )


async def close_offer(
    offers: OfferRepository,
    metrics: MetricsRepository,
    offer: Offer,
    status: OfferStatus,
    now: datetime,
    reason: Optional[str] = None,
    count_outcome: bool = True,
) -> bool:
    """
    Write a terminal status on *offer*; ``False`` if it was already closed.

    ``count_outcome=False`` is used for administrative cleanup (a cancelled
    ride) where the captain did nothing that should move their rates.
    """
    if not offer.is_pending:
        return False
    offer.resolve(status, now, reason)
    if not await offers.resolve(offer):
        return False
    if count_outcome:
        m = await metrics.get_for_update(offer.captain_id)
        m.reset_daily_if_stale(now.date())
        m.record_offer_outcome(status, offer.response_seconds())
        await metrics.save(m)
    return True


class OfferLifecycleManager:
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

    # ── Public API ────────────────────────────────────────────────────

    async def respond(
        self,
        offer_id: int,
        captain_id: int,
        response: OfferResponse,
        decline_reason: Optional[str] = None,
    ) -> OfferOutcome:
        now = self.clock()
        async with unit_of_work(self.session):
            offer = await self.offers.get(offer_id)
            if offer is None:
                raise NotFoundError(
                    f"Offer {offer_id} not found", public_message="Offer not found"
                )
            if offer.captain_id != captain_id:
                raise InvalidStateError(
                    f"Offer {offer_id} belongs to captain {offer.captain_id}, "
                    f"not {captain_id}",
                    public_message="Offer not assigned to this captain",
                )

            if not offer.is_pending:
                logger.info(
                    "Offer %s already %s; ignoring %s from captain %s",
                    offer_id, offer.response_status.value, response.value, captain_id,
                )
                return OfferOutcome(
                    offer=offer, action=offer.response_status, already_resolved=True
                )

            if offer.is_overdue(now):
                outcome = await self._release(offer, OfferStatus.EXPIRED, now)
            elif response == OfferResponse.ACCEPT:
                outcome = await self._accept(offer, now)
            else:
                outcome = await self._release(
                    offer,
                    OfferStatus.DECLINED,
                    now,
                    reason=decline_reason or DEFAULT_DECLINE_REASON,
                )

        if outcome.action == OfferStatus.ACCEPTED and outcome.ride:
            await self._notify_rider_accepted(outcome.ride, captain_id)
        logger.info(
            "Offer %s for ride %s -> %s (captain %s)",
            offer_id, offer.ride_id, outcome.action.value, captain_id,
        )
        return outcome

    async def expire_offer(self, offer_id: int) -> bool:
        """Expire *offer_id* if it is still pending and overdue."""
        now = self.clock()
        async with unit_of_work(self.session):
            offer = await self.offers.get(offer_id)
            if offer is None or not offer.is_overdue(now):
                return False
            outcome = await self._release(offer, OfferStatus.EXPIRED, now)
        return not outcome.already_resolved

    async def expire_overdue(self, limit: int = 100) -> int:
        """Sweep: expire every overdue pending offer, one transaction each."""
        now = self.clock()
        async with unit_of_work(self.session):
            overdue = await self.offers.list_overdue(now, limit)

        expired = 0
        for offer in overdue:
            try:
                async with unit_of_work(self.session):
                    outcome = await self._release(offer, OfferStatus.EXPIRED, now)
            except ConcurrentModification:
                logger.info("Offer %s changed during sweep; skipped", offer.id)
                continue
            if not outcome.already_resolved:
                expired += 1
        if expired:
            logger.info("Offer sweep: %d offers expired", expired)
        return expired

    async def expire_if_overdue(self, ride_id: int, now: datetime) -> bool:
        """
        Lazy expiry inside the caller's transaction.

        Returns ``True`` when an overdue offer for *ride_id* was expired (and
        the ride released back to ``searching``).
        """
        offer = await self.offers.get_pending_for_ride(ride_id)
        if offer is None or not offer.is_overdue(now):
            return False
        outcome = await self._release(offer, OfferStatus.EXPIRED, now)
        return not outcome.already_resolved

    # ── Internals ─────────────────────────────────────────────────────

    async def _accept(self, offer: Offer, now: datetime) -> OfferOutcome:
        ride = await self.rides.get(offer.ride_id, for_update=True)
        if (
            ride is None
            or ride.status != RideStatus.MATCHED
            or ride.captain_id != offer.captain_id
        ):
            raise InvalidStateError(
                f"Ride {offer.ride_id} no longer awaits captain {offer.captain_id}",
                public_message="Ride is no longer available",
            )

        if not await close_offer(
            self.offers, self.metrics, offer, OfferStatus.ACCEPTED, now
        ):
            raise ConcurrentModification(f"Offer {offer.id} resolved concurrently")

        ride.transition_to(RideStatus.CAPTAIN_ARRIVING)
        await self.rides.save(ride)
        return OfferOutcome(offer=offer, action=OfferStatus.ACCEPTED, ride=ride)

    async def _release(
        self,
        offer: Offer,
        status: OfferStatus,
        now: datetime,
        reason: Optional[str] = None,
    ) -> OfferOutcome:
        if not await close_offer(
            self.offers, self.metrics, offer, status, now, reason=reason
        ):
            return OfferOutcome(offer=offer, action=offer.response_status, already_resolved=True)

        ride = await self.rides.get(offer.ride_id, for_update=True)
        if ride is None:
            raise NotFoundError(f"Ride {offer.ride_id} missing for offer {offer.id}")

        if ride.status not in (RideStatus.COMPLETED, RideStatus.CANCELLED):
            ride.exclude_captain(offer.captain_id)
            if (
                ride.status == RideStatus.MATCHED
                and ride.captain_id == offer.captain_id
            ):
                ride.release_to_pool()
                await self.captains.transition_status(
                    offer.captain_id, [CaptainStatus.ON_RIDE], CaptainStatus.ONLINE
                )
            await self.rides.save(ride)

        config = await self.configs.get_matching_config(ride.city)
        return OfferOutcome(
            offer=offer,
            action=status,
            ride=ride,
            captains_tried=len(ride.excluded_captain_ids),
            max_captains=config.max_offers_per_ride,
        )

    async def _notify_rider_accepted(self, ride: Ride, captain_id: int) -> None:
        captain = await self.captains.get_by_id(captain_id)
        vehicle = (
            await self.captains.get_vehicle(ride.vehicle_id) if ride.vehicle_id else None
        )
        body = f"{captain.name if captain else 'Your captain'} is on the way"
        if vehicle:
            body += f"\n{vehicle.make} {vehicle.model} - {vehicle.registration_number}"
        await self.notifier.send(
            [ride.rider_id],
            "Ride Confirmed!",
            body,
            data={"type": "ride_accepted", "ride_id": ride.id},
        )
