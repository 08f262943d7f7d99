"""
Domain entities with business logic.

Patterns used
-------------
- **State Pattern** on ``Ride`` and ``Offer``: every status change goes
  through ``transition_to`` / ``resolve`` so illegal moves raise instead of
  being written.
- ``Ride`` owns the monotonic matching progress (exclusion set, search
  radius, attempt counter).
- ``CaptainMetrics`` owns the counter arithmetic that feeds the scorer and
  the cooldown rule.

Entities are plain dataclasses; repositories translate them to and from
ORM rows and persist them with guarded (optimistic) updates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

from .enums import (
    RIDE_TRANSITIONS,
    CancelledBy,
    OfferStatus,
    RideStatus,
    VehicleType,
)
from .errors import InvalidStateTransition


# ── Value Object ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float


# ── Entities ──────────────────────────────────────────────────────────


@dataclass
class Ride:
    id: Optional[int] = None
    rider_id: Optional[int] = None
    city: str = "default"
    vehicle_type: VehicleType = VehicleType.CAB
    pickup: Location = field(default_factory=lambda: Location(0, 0))
    drop: Location = field(default_factory=lambda: Location(0, 0))
    status: RideStatus = RideStatus.PENDING
    estimated_fare: float = 0.0
    estimated_distance_km: float = 0.0
    estimated_duration_mins: float = 0.0

    # matching progress
    excluded_captain_ids: list[int] = field(default_factory=list)
    current_radius_km: Optional[float] = None
    matching_attempts: int = 0
    reassignment_count: int = 0

    # assignment
    captain_id: Optional[int] = None
    vehicle_id: Optional[int] = None
    otp: Optional[str] = None
    matched_at: Optional[datetime] = None
    last_offer_sent_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # cancellation
    cancellation_fee: float = 0.0
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[CancelledBy] = None
    cancelled_by_user_id: Optional[int] = None
    cancelled_at: Optional[datetime] = None

    version: int = 0

    def transition_to(self, new_status: RideStatus) -> None:
        """Move to *new_status* if the transition is legal, else raise."""
        allowed = RIDE_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise InvalidStateTransition(
                f"Cannot transition ride {self.id} from {self.status.value} "
                f"to {new_status.value}"
            )
        self.status = new_status

    def exclude_captain(self, captain_id: int) -> None:
        """Add *captain_id* to the exclusion set.  The set never shrinks."""
        if captain_id not in self.excluded_captain_ids:
            self.excluded_captain_ids = [*self.excluded_captain_ids, captain_id]

    def set_radius(self, radius_km: float, max_radius_km: float) -> float:
        """Widen the search radius, never shrinking it or exceeding the cap."""
        target = min(radius_km, max_radius_km)
        if self.current_radius_km is not None:
            target = max(target, min(self.current_radius_km, max_radius_km))
        self.current_radius_km = target
        return target

    def assign(
        self, captain_id: int, vehicle_id: int, otp: str, now: datetime
    ) -> None:
        self.transition_to(RideStatus.MATCHED)
        self.captain_id = captain_id
        self.vehicle_id = vehicle_id
        self.otp = otp
        self.matched_at = now
        self.last_offer_sent_at = now

    def release_to_pool(self) -> None:
        """Drop the current assignment and make the ride re-matchable."""
        self.transition_to(RideStatus.SEARCHING)
        self.captain_id = None
        self.vehicle_id = None
        self.otp = None
        self.matched_at = None

    def seconds_since_match(self, now: datetime) -> int:
        if self.matched_at is None:
            return 0
        return max(0, int((now - self.matched_at).total_seconds()))

    def cancel(
        self,
        cancelled_by: CancelledBy,
        reason: str,
        now: datetime,
        fee: float = 0.0,
        user_id: Optional[int] = None,
    ) -> None:
        self.transition_to(RideStatus.CANCELLED)
        self.cancelled_by = cancelled_by
        self.cancellation_reason = reason
        self.cancellation_fee = fee
        self.cancelled_by_user_id = user_id
        self.cancelled_at = now


@dataclass
class Offer:
    id: Optional[int] = None
    ride_id: int = 0
    captain_id: int = 0
    sent_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    response_status: OfferStatus = OfferStatus.PENDING
    responded_at: Optional[datetime] = None
    decline_reason: Optional[str] = None
    offer_sequence: int = 1
    distance_to_pickup_km: Optional[float] = None
    eta_minutes: Optional[int] = None
    estimated_earnings: Optional[float] = None

    @property
    def is_pending(self) -> bool:
        return self.response_status == OfferStatus.PENDING

    def is_overdue(self, now: datetime) -> bool:
        return (
            self.is_pending
            and self.expires_at is not None
            and self.expires_at <= now
        )

    def resolve(
        self, status: OfferStatus, now: datetime, reason: Optional[str] = None
    ) -> None:
        """pending -> accepted | declined | expired, exactly once."""
        if not self.is_pending:
            raise InvalidStateTransition(
                f"Offer {self.id} already {self.response_status.value}"
            )
        if status == OfferStatus.PENDING:
            raise InvalidStateTransition("Offer cannot be re-opened")
        self.response_status = status
        self.responded_at = now
        if status == OfferStatus.DECLINED:
            self.decline_reason = reason

    def response_seconds(self) -> float:
        if self.sent_at is None or self.responded_at is None:
            return 0.0
        return max(0.0, (self.responded_at - self.sent_at).total_seconds())


@dataclass
class CaptainMetrics:
    captain_id: int
    acceptance_rate: float = 100.0
    cancellation_rate: float = 0.0
    total_offers_received: int = 0
    total_offers_accepted: int = 0
    total_offers_declined: int = 0
    total_offers_expired: int = 0
    avg_response_time_seconds: float = 0.0
    total_rides_completed: int = 0
    total_rides_cancelled: int = 0
    daily_cancellation_count: int = 0
    daily_cancellation_reset_at: Optional[date] = None
    cooldown_until: Optional[datetime] = None

    def in_cooldown(self, now: datetime) -> bool:
        return self.cooldown_until is not None and self.cooldown_until > now

    def reset_daily_if_stale(self, today: date) -> None:
        if (
            self.daily_cancellation_reset_at is None
            or self.daily_cancellation_reset_at < today
        ):
            self.daily_cancellation_count = 0
            self.daily_cancellation_reset_at = today

    def record_offer_sent(self) -> None:
        self.total_offers_received += 1

    def record_offer_outcome(
        self, status: OfferStatus, response_seconds: float = 0.0
    ) -> None:
        if status == OfferStatus.ACCEPTED:
            self.total_offers_accepted += 1
            # running average over accepted offers
            n = self.total_offers_accepted
            self.avg_response_time_seconds = round(
                (self.avg_response_time_seconds * (n - 1) + response_seconds) / n,
                2,
            )
        elif status == OfferStatus.DECLINED:
            self.total_offers_declined += 1
        elif status == OfferStatus.EXPIRED:
            self.total_offers_expired += 1
        else:
            raise InvalidStateTransition("Pending is not an offer outcome")
        self._recompute_acceptance_rate()

    def record_cancellation(self, today: date) -> int:
        """Count a captain-initiated cancellation; returns today's count."""
        self.reset_daily_if_stale(today)
        self.daily_cancellation_count += 1
        self.total_rides_cancelled += 1
        self._recompute_cancellation_rate()
        return self.daily_cancellation_count

    def record_completion(self) -> None:
        self.total_rides_completed += 1
        self._recompute_cancellation_rate()

    def start_cooldown(self, now: datetime, minutes: int) -> datetime:
        """Extend the cooldown to ``now + minutes``; a later end is kept."""
        until = now + timedelta(minutes=minutes)
        if self.cooldown_until is None or until > self.cooldown_until:
            self.cooldown_until = until
        return self.cooldown_until

    def _recompute_acceptance_rate(self) -> None:
        received = max(self.total_offers_received, 1)
        rate = self.total_offers_accepted / received * 100
        self.acceptance_rate = round(min(100.0, max(0.0, rate)), 2)

    def _recompute_cancellation_rate(self) -> None:
        finished = self.total_rides_completed + self.total_rides_cancelled
        if finished == 0:
            self.cancellation_rate = 0.0
            return
        self.cancellation_rate = round(
            self.total_rides_cancelled / finished * 100, 2
        )
