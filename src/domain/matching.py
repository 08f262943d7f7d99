"""
Candidate Location & Scoring
============================

1. **Locate**  -- from the working set of online captains, keep those that
   are verified, drive an active vehicle of the requested type, are not
   excluded for this ride, are not cooling down, have a known location and
   sit within the current search radius (Haversine).
2. **Score**   -- weighted sum of four normalised factors::

     score = w_eta          * (1 - min(distance / radius, 1))
           + w_acceptance   * acceptance_rate / 100
           + w_rating       * rating / 5
           + w_cancellation * (1 - cancellation_rate / 100)

   Captains without history are scored with neutral values
   (acceptance 100, cancellation 0, rating 5).
3. **Rank**    -- score desc, then distance asc, then captain id asc.  The
   ordering is total, so identical inputs always rank identically.

The same working set also backs a read-only "captains near a point" view
(`nearby_captains`), sorted by distance and capped.

Complexity
----------
Let N = captains in the working set.

* Locate:  O(N)            -- one Haversine call per captain
* Rank:    O(K log K)      -- K = captains within the radius
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from .distance import eta_minutes, haversine_km
from .entities import Location
from .enums import CaptainStatus, VehicleType
from .policies import ScoreWeights

NEUTRAL_ACCEPTANCE_RATE = 100.0
NEUTRAL_CANCELLATION_RATE = 0.0
NEUTRAL_RATING = 5.0


@dataclass(frozen=True)
class CaptainSnapshot:
    """One (captain, active vehicle, metrics) row of the working set."""

    captain_id: int
    user_id: Optional[int]
    name: Optional[str]
    phone: Optional[str]
    status: CaptainStatus
    is_verified: bool
    location: Optional[Location]
    rating: Optional[float]
    vehicle_id: int
    vehicle_type: VehicleType
    vehicle_active: bool
    vehicle_make: Optional[str] = None
    vehicle_model: Optional[str] = None
    registration_number: Optional[str] = None
    acceptance_rate: Optional[float] = None
    cancellation_rate: Optional[float] = None
    cooldown_until: Optional[datetime] = None
    location_updated_at: Optional[datetime] = None


@dataclass
class CaptainCandidate:
    captain_id: int
    user_id: Optional[int]
    name: Optional[str]
    phone: Optional[str]
    location: Location
    distance_km: float
    eta_mins: int
    rating: float
    acceptance_rate: float
    cancellation_rate: float
    vehicle_id: int
    vehicle_make: Optional[str] = None
    vehicle_model: Optional[str] = None
    registration_number: Optional[str] = None
    score: float = 0.0


def _or_neutral(value: Optional[float], neutral: float) -> float:
    return neutral if value is None else float(value)


def is_eligible(
    snap: CaptainSnapshot,
    vehicle_type: VehicleType,
    excluded: set[int],
    now: datetime,
) -> bool:
    """Hard eligibility gates (everything except the radius)."""
    if snap.status != CaptainStatus.ONLINE or not snap.is_verified:
        return False
    if not snap.vehicle_active or snap.vehicle_type != vehicle_type:
        return False
    if snap.location is None:
        return False
    if snap.captain_id in excluded:
        return False
    if snap.cooldown_until is not None and snap.cooldown_until > now:
        return False
    return True


def locate_candidates(
    snapshots: Iterable[CaptainSnapshot],
    pickup: Location,
    vehicle_type: VehicleType,
    excluded: Iterable[int],
    radius_km: float,
    now: datetime,
) -> list[CaptainCandidate]:
    """Return eligible captains within *radius_km* of *pickup* (unscored)."""
    excluded_set = set(excluded)
    found: dict[int, CaptainCandidate] = {}

    for snap in snapshots:
        if not is_eligible(snap, vehicle_type, excluded_set, now):
            continue
        assert snap.location is not None
        distance = haversine_km(
            pickup.latitude,
            pickup.longitude,
            snap.location.latitude,
            snap.location.longitude,
        )
        if distance > radius_km:
            continue

        # a captain with several active vehicles of the type is one candidate
        previous = found.get(snap.captain_id)
        if previous is not None and previous.vehicle_id <= snap.vehicle_id:
            continue

        found[snap.captain_id] = CaptainCandidate(
            captain_id=snap.captain_id,
            user_id=snap.user_id,
            name=snap.name,
            phone=snap.phone,
            location=snap.location,
            distance_km=distance,
            eta_mins=eta_minutes(distance),
            rating=_or_neutral(snap.rating, NEUTRAL_RATING),
            acceptance_rate=_or_neutral(
                snap.acceptance_rate, NEUTRAL_ACCEPTANCE_RATE
            ),
            cancellation_rate=_or_neutral(
                snap.cancellation_rate, NEUTRAL_CANCELLATION_RATE
            ),
            vehicle_id=snap.vehicle_id,
            vehicle_make=snap.vehicle_make,
            vehicle_model=snap.vehicle_model,
            registration_number=snap.registration_number,
        )

    return list(found.values())


def score_candidate(
    candidate: CaptainCandidate, weights: ScoreWeights, radius_km: float
) -> float:
    """Weighted score in [0, 1] for normalised weights.  O(1)."""
    proximity = 1 - min(candidate.distance_km / radius_km, 1.0) if radius_km > 0 else 0.0
    score = (
        weights.eta * proximity
        + weights.acceptance * (candidate.acceptance_rate / 100)
        + weights.rating * (candidate.rating / 5)
        + weights.cancellation * (1 - candidate.cancellation_rate / 100)
    )
    return round(score, 3)


def rank_candidates(
    candidates: Iterable[CaptainCandidate],
    weights: ScoreWeights,
    radius_km: float,
) -> list[CaptainCandidate]:
    """Annotate every candidate with its score and return them best-first."""
    ranked = list(candidates)
    for c in ranked:
        c.score = score_candidate(c, weights, radius_km)
    ranked.sort(key=lambda c: (-c.score, c.distance_km, c.captain_id))
    return ranked


@dataclass
class NearbyCaptain:
    captain_id: int
    location: Location
    distance_km: float
    vehicle_type: VehicleType
    rating: Optional[float]
    location_updated_at: Optional[datetime]


def nearby_captains(
    snapshots: Iterable[CaptainSnapshot],
    point: Location,
    radius_km: float,
    limit: int,
) -> list[NearbyCaptain]:
    """Captains within *radius_km* of *point*, nearest first, at most *limit*.

    Read-only map view: no exclusion or cooldown gate, and one entry per
    captain (its lowest vehicle id).  Distances are rounded to 10 m.
    """
    found: dict[int, NearbyCaptain] = {}
    for snap in sorted(snapshots, key=lambda s: (s.captain_id, s.vehicle_id)):
        if snap.location is None or snap.captain_id in found:
            continue
        distance = round(
            haversine_km(
                point.latitude,
                point.longitude,
                snap.location.latitude,
                snap.location.longitude,
            ),
            2,
        )
        if distance > radius_km:
            continue
        found[snap.captain_id] = NearbyCaptain(
            captain_id=snap.captain_id,
            location=snap.location,
            distance_km=distance,
            vehicle_type=snap.vehicle_type,
            rating=snap.rating,
            location_updated_at=snap.location_updated_at,
        )

    nearest = sorted(found.values(), key=lambda c: (c.distance_km, c.captain_id))
    return nearest[:limit]
