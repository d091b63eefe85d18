"""User progress, reward and achievement endpoints."""

import logging

from fastapi import APIRouter, Depends, Query, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.config import settings
from app.dependencies import get_current_user_id, get_engine, get_idempotency_key
from app.models.common import ApiErrorResponse
from app.models.progress import (
    ActionRequest,
    ActionResponse,
    DailyBonusResponse,
    ProgressResponse,
    SpendCoinsRequest,
    SpendCoinsResponse,
)
from app.services.progress_service import ProgressEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["Users"])
limiter = Limiter(key_func=get_remote_address)


@router.get(
    "/me/progress",
    response_model=ProgressResponse,
    responses={401: {"model": ApiErrorResponse}, 503: {"model": ApiErrorResponse}},
    summary="Get current user's progress",
)
@limiter.limit(settings.RATE_LIMIT)
def user_progress(
    request: Request,
    daily_bonus: bool = Query(True, alias="dailyBonus", description="Grant today's login bonus if due"),
    user_id: str = Depends(get_current_user_id),
    engine: ProgressEngine = Depends(get_engine),
) -> ProgressResponse:
    """Return coins, XP, level and unlocked achievements.

    By default the daily login bonus is evaluated first; pass
    ``dailyBonus=false`` for a read without side effects.
    """
    return engine.query_progress(user_id, daily_bonus=daily_bonus)


@router.post(
    "/me/daily-bonus",
    response_model=DailyBonusResponse,
    responses={401: {"model": ApiErrorResponse}},
    summary="Claim today's login bonus",
)
@limiter.limit(settings.RATE_LIMIT)
def daily_bonus(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    engine: ProgressEngine = Depends(get_engine),
) -> DailyBonusResponse:
    """Grant the daily bonus at most once per calendar day."""
    return engine.claim_daily_bonus(user_id)


@router.post(
    "/me/actions",
    response_model=ActionResponse,
    responses={
        400: {"model": ApiErrorResponse},
        409: {"model": ApiErrorResponse},
        503: {"model": ApiErrorResponse},
    },
    summary="Record a rewarded action",
)
@limiter.limit(settings.RATE_LIMIT)
def post_action(
    request: Request,
    body: ActionRequest,
    user_id: str = Depends(get_current_user_id),
    idempotency_key: str | None = Depends(get_idempotency_key),
    engine: ProgressEngine = Depends(get_engine),
) -> ActionResponse:
    """Credit coins and XP for an action and return newly unlocked achievements.

    Send an ``Idempotency-Key`` header to make retries safe: a repeated key
    returns the first response without crediting the action again.
    """
    return engine.apply_action(user_id, body.action, body.amount, idempotency_key=idempotency_key)


@router.post(
    "/me/spend-coins",
    response_model=SpendCoinsResponse,
    responses={400: {"model": ApiErrorResponse}, 409: {"model": ApiErrorResponse}},
    summary="Spend coins",
)
@limiter.limit(settings.RATE_LIMIT)
def spend_coins_endpoint(
    request: Request,
    body: SpendCoinsRequest,
    user_id: str = Depends(get_current_user_id),
    idempotency_key: str | None = Depends(get_idempotency_key),
    engine: ProgressEngine = Depends(get_engine),
) -> SpendCoinsResponse:
    """Deduct coins from the current user's balance."""
    return engine.spend_coins(user_id, body.amount, idempotency_key=idempotency_key)


@router.get(
    "/me/achievements",
    summary="Get achievement progress for current user",
)
@limiter.limit(settings.RATE_LIMIT)
def user_achievements(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    engine: ProgressEngine = Depends(get_engine),
) -> dict:
    """Return every achievement with its state and progress towards the target."""
    statuses = engine.achievement_statuses(user_id)
    return {
        "achievements": [s.model_dump(by_alias=True, mode="json") for s in statuses],
        "unlockedCount": sum(1 for s in statuses if s.unlocked_at is not None),
        "total": len(statuses),
    }
