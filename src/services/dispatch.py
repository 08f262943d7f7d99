"""
Dispatch Orchestrator
=====================

One invocation = one matching attempt for one ride.  The orchestrator is
reactive: it never schedules its own retry.  When nothing is found it
returns ``retry=True`` together with the radius the next attempt will use,
or an exhaustion result once the search is bounded out.

Algorithm per invocation
------------------------
1. Load the ride (``FOR UPDATE``); lazily expire an overdue pending offer.
   The ride must be ``pending`` or ``searching``.
2. ``matching_attempts += 1``; from the second attempt on, widen the radius
   by ``radius_expansion_step_km`` (capped at ``max_radius_km``).
3. Locate + score candidates, keep the top ``max_offers_per_ride``.
4. Walk the ranking and claim the first captain with a guarded
   ``online -> on_ride`` update.  A captain claimed by a concurrent dispatch
   fails the guard and the next one is tried.
5. Claimed: write the assignment (version-guarded), create the offer,
   count it in the captain's metrics, commit, then notify the captain.
   Nobody claimable: persist radius/attempts, status ``searching`` and
   report ``retry`` or exhaustion.

Atomicity
---------
Steps 4-5 share one transaction.  If the ride write loses its version
check the captain flip is rolled back with it, so a captain can never be
``on_ride`` without the matching ride being ``matched``.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.domain.entities import Location, Offer, Ride
from src.domain.enums import MATCHABLE_STATUSES, CaptainStatus, RideStatus, VehicleType
from src.domain.errors import InvalidStateError, NotFoundError
from src.domain.matching import CaptainCandidate, locate_candidates, rank_candidates
from src.domain.policies import MatchingConfig
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
from src.services.offers import OfferLifecycleManager

logger = logging.getLogger(__name__)

MSG_MATCHED = "Captain found"
MSG_RETRY = "No captains in range, expanding search radius"
MSG_EXHAUSTED = "No captains available nearby. Please try again later."


@dataclass
class MatchRequest:
    ride_id: int
    pickup_lat: float
    pickup_lng: float
    vehicle_type: VehicleType
    city: Optional[str] = None
    estimated_fare: float = 0.0
    estimated_distance_km: float = 0.0
    estimated_duration_mins: float = 0.0


@dataclass
class MatchResult:
    ride_id: int
    matched: bool
    message: str
    retry: bool = False
    current_radius_km: Optional[float] = None
    next_radius_km: Optional[float] = None
    matching_attempts: int = 0
    offer: Optional[Offer] = None
    captain: Optional[CaptainCandidate] = None
    otp: Optional[str] = None
    other_candidates: list[CaptainCandidate] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return not self.matched and not self.retry

    @property
    def expires_at(self) -> Optional[datetime]:
        return self.offer.expires_at if self.offer else None


def generate_otp() -> str:
    """Four-digit trip-start code."""
    return str(1000 + secrets.randbelow(9000))


class DispatchOrchestrator:
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
        self.lifecycle = OfferLifecycleManager(session, self.notifier, clock)

    # ── Public API ────────────────────────────────────────────────────

    async def match_ride(self, request: MatchRequest) -> MatchResult:
        now = self.clock()
        async with unit_of_work(self.session):
            ride = await self._load_matchable_ride(request.ride_id, now)
            config = await self.configs.get_matching_config(
                request.city or ride.city
            )

            radius = self._advance_search(ride, config)
            pickup = Location(request.pickup_lat, request.pickup_lng)

            if len(ride.excluded_captain_ids) >= config.max_offers_per_ride:
                logger.info(
                    "Ride %s: %d captains already tried, offer budget spent",
                    ride.id, len(ride.excluded_captain_ids),
                )
                ranked: list[CaptainCandidate] = []
                budget_spent = True
            else:
                ranked = await self._ranked_candidates(
                    ride, pickup, request.vehicle_type, radius, config, now
                )
                budget_spent = False

            winner = await self._claim_first(ranked)
            if winner is None:
                result = await self._no_match(ride, config, radius, budget_spent)
            else:
                result = await self._assign(ride, winner, config, request, now)
                result.other_candidates = [
                    c for c in ranked if c.captain_id != winner.captain_id
                ]

        if result.matched:
            await self._notify_captain(result)
        return result

    async def match_with_retries(
        self,
        request: MatchRequest,
        max_rounds: Optional[int] = None,
        delay_seconds: float = 0.0,
    ) -> MatchResult:
        """
        Optional bounded internal retry loop.

        Repeats ``match_ride`` while it asks for a retry, at most
        ``max_rounds`` times (defaults to the configured retry budget).
        """
        rounds = max_rounds or settings.default_max_retry_attempts
        result = await self.match_ride(request)
        for _ in range(rounds - 1):
            if not result.retry:
                break
            if delay_seconds:
                await asyncio.sleep(delay_seconds)
            result = await self.match_ride(request)
        return result

    # ── Internals ─────────────────────────────────────────────────────

    async def _load_matchable_ride(self, ride_id: int, now: datetime) -> Ride:
        ride = await self.rides.get(ride_id, for_update=True)
        if ride is None:
            raise NotFoundError(f"Ride {ride_id} not found", public_message="Ride not found")

        if ride.status == RideStatus.MATCHED and await self.lifecycle.expire_if_overdue(
            ride.id, now
        ):
            ride = await self.rides.get(ride_id, for_update=True)
            assert ride is not None

        if ride.status not in MATCHABLE_STATUSES:
            raise InvalidStateError(
                f"Ride {ride_id} is {ride.status.value}; cannot match",
                public_message=f"Ride cannot be matched in status: {ride.status.value}",
            )
        return ride

    @staticmethod
    def _advance_search(ride: Ride, config: MatchingConfig) -> float:
        ride.matching_attempts += 1
        radius = (
            ride.current_radius_km
            if ride.current_radius_km is not None
            else config.initial_radius_km
        )
        if ride.matching_attempts > 1:
            radius = config.next_radius(radius)
            logger.info(
                "Ride %s: expanding radius to %.1fkm (attempt %d)",
                ride.id, radius, ride.matching_attempts,
            )
        return ride.set_radius(radius, config.max_radius_km)

    async def _ranked_candidates(
        self,
        ride: Ride,
        pickup: Location,
        vehicle_type: VehicleType,
        radius: float,
        config: MatchingConfig,
        now: datetime,
    ) -> list[CaptainCandidate]:
        working_set = await self.captains.get_working_set(vehicle_type)
        found = locate_candidates(
            working_set, pickup, vehicle_type, ride.excluded_captain_ids, radius, now
        )
        ranked = rank_candidates(found, config.weights, radius)
        top = ranked[: config.max_offers_per_ride]
        logger.info(
            "Ride %s: %d candidates within %.1fkm, kept top %d",
            ride.id, len(ranked), radius, len(top),
        )
        return top

    async def _claim_first(
        self, ranked: list[CaptainCandidate]
    ) -> Optional[CaptainCandidate]:
        for candidate in ranked:
            if await self.captains.transition_status(
                candidate.captain_id, [CaptainStatus.ONLINE], CaptainStatus.ON_RIDE
            ):
                return candidate
            logger.info(
                "Captain %s no longer online (claimed concurrently); trying next",
                candidate.captain_id,
            )
        return None

    async def _no_match(
        self,
        ride: Ride,
        config: MatchingConfig,
        radius: float,
        budget_spent: bool,
    ) -> MatchResult:
        ride.transition_to(RideStatus.SEARCHING)
        await self.rides.save(ride)

        retry = (
            not budget_spent
            and not config.radius_saturated(radius)
            and ride.matching_attempts < config.max_retry_attempts
        )
        if retry:
            return MatchResult(
                ride_id=ride.id,
                matched=False,
                retry=True,
                message=MSG_RETRY,
                current_radius_km=radius,
                next_radius_km=config.next_radius(radius),
                matching_attempts=ride.matching_attempts,
            )

        logger.info(
            "Ride %s: search exhausted at %.1fkm after %d attempts",
            ride.id, radius, ride.matching_attempts,
        )
        return MatchResult(
            ride_id=ride.id,
            matched=False,
            retry=False,
            message=MSG_EXHAUSTED,
            current_radius_km=radius,
            matching_attempts=ride.matching_attempts,
        )

    async def _assign(
        self,
        ride: Ride,
        winner: CaptainCandidate,
        config: MatchingConfig,
        request: MatchRequest,
        now: datetime,
    ) -> MatchResult:
        otp = generate_otp()
        ride.assign(winner.captain_id, winner.vehicle_id, otp, now)
        await self.rides.save(ride)

        fare = request.estimated_fare or ride.estimated_fare
        offer = await self.offers.create(
            Offer(
                ride_id=ride.id,
                captain_id=winner.captain_id,
                sent_at=now,
                expires_at=now + timedelta(seconds=config.offer_timeout_seconds),
                offer_sequence=await self.offers.next_sequence(ride.id),
                distance_to_pickup_km=round(winner.distance_km, 1),
                eta_minutes=winner.eta_mins,
                estimated_earnings=round(fare * settings.captain_earnings_share),
            )
        )

        metrics = await self.metrics.get_for_update(winner.captain_id)
        metrics.record_offer_sent()
        await self.metrics.save(metrics)

        logger.info(
            "Matched ride %s with captain %s (score %.3f, %.2fkm)",
            ride.id, winner.captain_id, winner.score, winner.distance_km,
        )
        return MatchResult(
            ride_id=ride.id,
            matched=True,
            message=MSG_MATCHED,
            current_radius_km=ride.current_radius_km,
            matching_attempts=ride.matching_attempts,
            offer=offer,
            captain=winner,
            otp=otp,
        )

    async def _notify_captain(self, result: MatchResult) -> None:
        assert result.captain is not None and result.offer is not None
        await self.notifier.send(
            [result.captain.user_id],
            "New Ride Request!",
            f"Pickup {result.offer.distance_to_pickup_km} km away\n"
            f"Earning: ₹{result.offer.estimated_earnings:.0f}",
            data={
                "type": "ride_request",
                "ride_id": result.ride_id,
                "offer_id": result.offer.id,
            },
        )
