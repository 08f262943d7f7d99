"""
Default matching config and cancellation penalty matrix.

Migration ``001`` inserts the same rows; this module lets ``seed.py`` and the
test-suite (which builds tables from metadata) install them too.
"""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.domain.enums import CancelledBy, PenaltyType, RideStatus
from src.domain.policies import DEFAULT_CITY, MatchingConfig, PenaltyRule

from .models import CancellationPenaltyModel
from .repositories import ConfigRepository

_R, _C = CancelledBy.RIDER, CancelledBy.CAPTAIN

DEFAULT_PENALTY_RULES: list[PenaltyRule] = [
    PenaltyRule(cancelled_by=_R, ride_status=RideStatus.PENDING,
                min_time_after_match_seconds=0, penalty_amount=0),
    PenaltyRule(cancelled_by=_R, ride_status=RideStatus.MATCHED,
                min_time_after_match_seconds=0, max_time_after_match_seconds=120,
                penalty_amount=0),
    PenaltyRule(cancelled_by=_R, ride_status=RideStatus.MATCHED,
                min_time_after_match_seconds=120, max_time_after_match_seconds=300,
                penalty_amount=15),
    PenaltyRule(cancelled_by=_R, ride_status=RideStatus.CAPTAIN_ARRIVING,
                min_time_after_match_seconds=0, penalty_amount=25),
    PenaltyRule(cancelled_by=_R, ride_status=RideStatus.WAITING_FOR_RIDER,
                min_time_after_match_seconds=0, penalty_amount=25),
    PenaltyRule(cancelled_by=_C, ride_status=RideStatus.MATCHED,
                min_time_after_match_seconds=0, penalty_amount=0,
                penalty_type=PenaltyType.WARNING),
    PenaltyRule(cancelled_by=_C, ride_status=RideStatus.CAPTAIN_ARRIVING,
                min_time_after_match_seconds=0, penalty_amount=0,
                penalty_type=PenaltyType.COOLDOWN, cooldown_minutes=30),
]


async def install_reference_data(session: AsyncSession) -> bool:
    """Insert the ``default`` config and penalty matrix if absent.  Idempotent."""
    repo = ConfigRepository(session)
    installed = False
    if await repo.get_matching_config_row(DEFAULT_CITY) is None:
        await repo.upsert_matching_config(MatchingConfig.from_settings(settings))
        installed = True

    result = await session.execute(
        select(func.count()).select_from(CancellationPenaltyModel)
    )
    if not result.scalar():
        for rule in DEFAULT_PENALTY_RULES:
            await repo.add_penalty_rule(rule)
        installed = True
    return installed
