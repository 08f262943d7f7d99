"""
Typed matching / penalty policies.

``MatchingConfig`` and ``PenaltyRule`` rows are operator-editable data, so
they are validated into these models on every request instead of being
trusted raw.  A row that fails validation is rejected with
``pydantic.ValidationError`` and the caller falls back to the next source.

Penalty lookup
--------------
Candidate rules are those matching the actor and the ride status whose
half-open window ``[min, max)`` contains the elapsed seconds since match
(``max = None`` is unbounded).  City-specific rules beat ``default`` rules.
Two rules of the same city can overlap; the narrowest window wins, then the
latest ``min``, then the lowest id, so the choice is always deterministic.
"""

from __future__ import annotations

import math
from typing import Iterable, Optional

from pydantic import BaseModel, Field, model_validator

from .enums import CancelledBy, PenaltyType, RideStatus

DEFAULT_CITY = "default"


class ScoreWeights(BaseModel):
    eta: float = Field(0.40, ge=0)
    acceptance: float = Field(0.25, ge=0)
    rating: float = Field(0.20, ge=0)
    cancellation: float = Field(0.15, ge=0)


class MatchingConfig(BaseModel):
    city: str = DEFAULT_CITY
    initial_radius_km: float = Field(1.5, gt=0)
    max_radius_km: float = Field(5.0, gt=0)
    radius_expansion_step_km: float = Field(1.0, gt=0)
    offer_timeout_seconds: int = Field(15, gt=0)
    max_offers_per_ride: int = Field(5, gt=0)
    max_retry_attempts: int = Field(3, gt=0)
    weights: ScoreWeights = Field(default_factory=ScoreWeights)
    captain_delay_threshold_minutes: int = Field(3, ge=0)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _radius_bounds(self) -> "MatchingConfig":
        if self.max_radius_km < self.initial_radius_km:
            raise ValueError("max_radius_km must be >= initial_radius_km")
        return self

    def next_radius(self, radius_km: float) -> float:
        return min(radius_km + self.radius_expansion_step_km, self.max_radius_km)

    def radius_saturated(self, radius_km: float) -> bool:
        return radius_km >= self.max_radius_km

    @classmethod
    def from_row(cls, row) -> "MatchingConfig":
        return cls(
            city=row.city,
            initial_radius_km=row.initial_radius_km,
            max_radius_km=row.max_radius_km,
            radius_expansion_step_km=row.radius_expansion_step_km,
            offer_timeout_seconds=row.offer_timeout_seconds,
            max_offers_per_ride=row.max_offers_per_ride,
            max_retry_attempts=row.max_retry_attempts,
            weights=ScoreWeights(
                eta=row.score_weight_eta,
                acceptance=row.score_weight_acceptance,
                rating=row.score_weight_rating,
                cancellation=row.score_weight_cancellation,
            ),
            captain_delay_threshold_minutes=row.captain_delay_threshold_minutes,
        )

    @classmethod
    def from_settings(cls, settings) -> "MatchingConfig":
        return cls(
            initial_radius_km=settings.default_initial_radius_km,
            max_radius_km=settings.default_max_radius_km,
            radius_expansion_step_km=settings.default_radius_expansion_step_km,
            offer_timeout_seconds=settings.default_offer_timeout_seconds,
            max_offers_per_ride=settings.default_max_offers_per_ride,
            max_retry_attempts=settings.default_max_retry_attempts,
            weights=ScoreWeights(
                eta=settings.default_score_weight_eta,
                acceptance=settings.default_score_weight_acceptance,
                rating=settings.default_score_weight_rating,
                cancellation=settings.default_score_weight_cancellation,
            ),
            captain_delay_threshold_minutes=(
                settings.default_captain_delay_threshold_minutes
            ),
        )


class PenaltyRule(BaseModel):
    id: Optional[int] = None
    city: str = DEFAULT_CITY
    cancelled_by: CancelledBy
    ride_status: RideStatus
    min_time_after_match_seconds: int = Field(0, ge=0)
    max_time_after_match_seconds: Optional[int] = None
    penalty_amount: float = Field(0.0, ge=0)
    penalty_type: PenaltyType = PenaltyType.FEE
    cooldown_minutes: Optional[int] = Field(None, ge=0)

    model_config = {"frozen": True, "from_attributes": True}

    @model_validator(mode="after")
    def _window(self) -> "PenaltyRule":
        if (
            self.max_time_after_match_seconds is not None
            and self.max_time_after_match_seconds
            <= self.min_time_after_match_seconds
        ):
            raise ValueError("max_time_after_match_seconds must exceed min")
        return self

    @property
    def window_width(self) -> float:
        if self.max_time_after_match_seconds is None:
            return math.inf
        return self.max_time_after_match_seconds - self.min_time_after_match_seconds

    def covers(self, elapsed_seconds: int) -> bool:
        if elapsed_seconds < self.min_time_after_match_seconds:
            return False
        upper = self.max_time_after_match_seconds
        return upper is None or elapsed_seconds < upper


def select_penalty_rule(
    rules: Iterable[PenaltyRule],
    *,
    city: str,
    cancelled_by: CancelledBy,
    ride_status: RideStatus,
    elapsed_seconds: int,
) -> Optional[PenaltyRule]:
    """Return the single applicable rule, or ``None`` when nothing matches."""
    matching = [
        r
        for r in rules
        if r.cancelled_by == cancelled_by
        and r.ride_status == ride_status
        and r.city in (city, DEFAULT_CITY)
        and r.covers(elapsed_seconds)
    ]
    if not matching:
        return None

    def rank(rule: PenaltyRule):
        city_rank = 0 if rule.city == city and city != DEFAULT_CITY else 1
        return (
            city_rank,
            rule.window_width,
            -rule.min_time_after_match_seconds,
            rule.id if rule.id is not None else math.inf,
        )

    return min(matching, key=rank)
