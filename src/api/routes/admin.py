"""
Admin / observability endpoints
===============================

GET  /api/v1/admin/health                 -- simple health check
GET  /api/v1/admin/matching-config/{city} -- effective matching config
PUT  /api/v1/admin/matching-config/{city} -- create or replace a city's config
GET  /api/v1/admin/penalties              -- active cancellation penalty rules
POST /api/v1/admin/penalties              -- add a penalty rule
"""

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError as SchemaError
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_db
from src.api.middleware import limiter
from src.api.schemas import (
    HealthResponse,
    MatchingConfigBody,
    MatchingConfigResponse,
    PenaltyRuleCreate,
    PenaltyRuleResponse,
)
from src.domain.errors import ValidationError
from src.domain.policies import MatchingConfig, PenaltyRule, ScoreWeights
from src.infrastructure.repositories import ConfigRepository

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get(
    "/matching-config/{city}",
    response_model=MatchingConfigResponse,
    summary="Effective matching config for a city",
    description="Falls back to the `default` row, then to built-in defaults.",
)
@limiter.limit("100/minute")
async def get_matching_config(
    request: Request,
    city: str,
    db: AsyncSession = Depends(get_db),
):
    config = await ConfigRepository(db).get_matching_config(city)
    return MatchingConfigResponse.from_config(config)


@router.put(
    "/matching-config/{city}",
    response_model=MatchingConfigResponse,
    summary="Create or replace a city's matching config",
)
@limiter.limit("30/minute")
async def put_matching_config(
    request: Request,
    city: str,
    body: MatchingConfigBody,
    db: AsyncSession = Depends(get_db),
):
    try:
        config = MatchingConfig(
            city=city,
            initial_radius_km=body.initial_radius_km,
            max_radius_km=body.max_radius_km,
            radius_expansion_step_km=body.radius_expansion_step_km,
            offer_timeout_seconds=body.offer_timeout_seconds,
            max_offers_per_ride=body.max_offers_per_ride,
            max_retry_attempts=body.max_retry_attempts,
            weights=ScoreWeights(
                eta=body.score_weight_eta,
                acceptance=body.score_weight_acceptance,
                rating=body.score_weight_rating,
                cancellation=body.score_weight_cancellation,
            ),
            captain_delay_threshold_minutes=body.captain_delay_threshold_minutes,
        )
    except SchemaError as exc:
        raise ValidationError(f"Rejected matching config for {city}: {exc}") from exc

    await ConfigRepository(db).upsert_matching_config(config)
    return MatchingConfigResponse.from_config(config)


@router.get(
    "/penalties",
    response_model=list[PenaltyRuleResponse],
    summary="List active cancellation penalty rules",
)
@limiter.limit("100/minute")
async def list_penalties(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    rules = await ConfigRepository(db).list_penalty_rules()
    return [PenaltyRuleResponse.model_validate(r) for r in rules]


@router.post(
    "/penalties",
    status_code=201,
    response_model=PenaltyRuleResponse,
    summary="Add a cancellation penalty rule",
)
@limiter.limit("30/minute")
async def add_penalty(
    request: Request,
    body: PenaltyRuleCreate,
    db: AsyncSession = Depends(get_db),
):
    try:
        rule = PenaltyRule(**body.model_dump())
    except SchemaError as exc:
        raise ValidationError(f"Rejected penalty rule: {exc}") from exc

    saved = await ConfigRepository(db).add_penalty_rule(rule)
    return PenaltyRuleResponse.model_validate(saved)


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health():
    return HealthResponse()
