"""Achievement catalogue endpoints."""

from fastapi import APIRouter, Depends, Query, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.config import settings
from app.dependencies import get_current_user_id, get_engine
from app.models.common import ApiErrorResponse
from app.models.progress import AchievementDefinition
from app.services.progress_service import ProgressEngine

router = APIRouter(prefix="/achievements", tags=["Achievements"])
limiter = Limiter(key_func=get_remote_address)


@router.get(
    "",
    summary="List all achievement definitions",
)
@limiter.limit(settings.RATE_LIMIT)
def list_achievements(
    request: Request,
    sort: str = Query("registry", pattern="^(registry|rarity)$", description="registry or rarity order"),
    user_id: str = Depends(get_current_user_id),
    engine: ProgressEngine = Depends(get_engine),
) -> dict:
    """Return the static achievement catalogue."""
    definitions = engine.registry.by_rarity() if sort == "rarity" else engine.registry.all()
    return {
        "definitions": [d.model_dump(by_alias=True, mode="json") for d in definitions],
        "total": len(definitions),
    }


@router.get(
    "/{code}",
    response_model=AchievementDefinition,
    responses={404: {"model": ApiErrorResponse}},
    summary="Get one achievement definition",
)
@limiter.limit(settings.RATE_LIMIT)
def get_achievement(
    request: Request,
    code: str,
    user_id: str = Depends(get_current_user_id),
    engine: ProgressEngine = Depends(get_engine),
) -> AchievementDefinition:
    return engine.registry.by_code(code)
