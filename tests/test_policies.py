"""Matching config validation and penalty-rule selection."""

import pydantic
import pytest
from sqlalchemy import update

from src.domain.enums import CancelledBy, PenaltyType, RideStatus
from src.domain.policies import MatchingConfig, PenaltyRule, select_penalty_rule
from src.infrastructure.models import CancellationPenaltyModel, MatchingConfigModel
from src.infrastructure.repositories import ConfigRepository


def rule(id, min_s=0, max_s=None, city="default", amount=0.0, **kw) -> PenaltyRule:
    return PenaltyRule(
        id=id,
        city=city,
        cancelled_by=kw.pop("cancelled_by", CancelledBy.RIDER),
        ride_status=kw.pop("ride_status", RideStatus.MATCHED),
        min_time_after_match_seconds=min_s,
        max_time_after_match_seconds=max_s,
        penalty_amount=amount,
        **kw,
    )


def pick(rules, elapsed, city="default", **kw):
    return select_penalty_rule(
        rules,
        city=city,
        cancelled_by=kw.get("cancelled_by", CancelledBy.RIDER),
        ride_status=kw.get("ride_status", RideStatus.MATCHED),
        elapsed_seconds=elapsed,
    )


class TestMatchingConfig:
    def test_defaults(self):
        config = MatchingConfig()
        assert config.initial_radius_km == 1.5
        assert config.next_radius(1.5) == 2.5
        assert config.next_radius(4.5) == 5.0
        assert config.radius_saturated(5.0)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"initial_radius_km": 0},
            {"max_radius_km": 1.0, "initial_radius_km": 2.0},
            {"offer_timeout_seconds": 0},
            {"max_offers_per_ride": -1},
        ],
    )
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(pydantic.ValidationError):
            MatchingConfig(**overrides)


class TestPenaltySelection:
    def test_half_open_windows(self):
        rules = [rule(1, 0, 120, amount=0), rule(2, 120, None, amount=15)]
        assert pick(rules, 119).id == 1
        assert pick(rules, 120).id == 2
        assert pick(rules, 10_000).id == 2

    def test_no_rule_matches(self):
        assert pick([rule(1, 0, 60)], 61) is None
        assert pick([rule(1)], 0, ride_status=RideStatus.PENDING) is None

    def test_city_rule_beats_default(self):
        rules = [rule(1, amount=10), rule(2, city="mumbai", amount=30)]
        assert pick(rules, 5, city="mumbai").id == 2
        assert pick(rules, 5, city="delhi").id == 1

    def test_overlap_prefers_narrowest_window(self):
        rules = [rule(1, 0, None, amount=10), rule(2, 60, 180, amount=20)]
        assert pick(rules, 90).id == 2
        assert pick(rules, 30).id == 1

    def test_equal_width_overlap_prefers_later_min_then_id(self):
        rules = [rule(4, 0, 100), rule(3, 50, 150), rule(2, 50, 150)]
        assert pick(rules, 75).id == 2

    def test_window_must_be_positive(self):
        with pytest.raises(pydantic.ValidationError):
            rule(1, 120, 60)

    def test_negative_amount_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            rule(1, amount=-5)


class TestConfigRepository:
    @pytest.mark.asyncio
    async def test_city_falls_back_to_default(self, db_session):
        config = await ConfigRepository(db_session).get_matching_config("pune")
        assert config.city == "default"
        assert config.offer_timeout_seconds == 15

    @pytest.mark.asyncio
    async def test_city_override(self, db_session):
        repo = ConfigRepository(db_session)
        await repo.upsert_matching_config(MatchingConfig(city="pune", initial_radius_km=2.0))
        await db_session.commit()

        config = await repo.get_matching_config("pune")
        assert config.city == "pune"
        assert config.initial_radius_km == 2.0

    @pytest.mark.asyncio
    async def test_invalid_row_falls_back(self, db_session):
        await db_session.execute(
            update(MatchingConfigModel)
            .where(MatchingConfigModel.city == "default")
            .values(initial_radius_km=-1.0)
        )
        await db_session.commit()

        config = await ConfigRepository(db_session).get_matching_config()
        assert config.initial_radius_km == 1.5

    @pytest.mark.asyncio
    async def test_invalid_penalty_rows_are_skipped(self, db_session):
        await db_session.execute(
            update(CancellationPenaltyModel)
            .where(CancellationPenaltyModel.ride_status == RideStatus.CAPTAIN_ARRIVING)
            .values(penalty_amount=-25)
        )
        await db_session.commit()

        rules = await ConfigRepository(db_session).get_penalty_rules(
            "default", CancelledBy.RIDER, RideStatus.CAPTAIN_ARRIVING
        )
        assert rules == []

    @pytest.mark.asyncio
    async def test_default_matrix_installed(self, db_session):
        rules = await ConfigRepository(db_session).list_penalty_rules()
        assert len(rules) == 7
        cooldown = [r for r in rules if r.penalty_type == PenaltyType.COOLDOWN]
        assert cooldown and all(r.cooldown_minutes == 30 for r in cooldown)
