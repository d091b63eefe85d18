"""Administrative endpoints, authenticated with ``X-API-Key`` in ``app.main``."""

import logging

from fastapi import APIRouter, Depends, Request, Response, status
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.config import settings
from app.dependencies import get_engine
from app.errors import UserNotFoundError
from app.models.common import ApiErrorResponse
from app.models.progress import RecoverRewardsResponse
from app.services import auth_service
from app.services.progress_service import ProgressEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])
limiter = Limiter(key_func=get_remote_address)


def _require_user(user_id: str) -> None:
    if not auth_service.user_exists(user_id):
        raise UserNotFoundError(f"User {user_id} not found")


@router.delete(
    "/users/{user_id}/progress",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ApiErrorResponse}},
    summary="Reset a user's progress and achievements",
)
@limiter.limit(settings.RATE_LIMIT)
def reset_progress(
    request: Request,
    user_id: str,
    engine: ProgressEngine = Depends(get_engine),
) -> Response:
    """Delete the progress record and unlock ledger of *user_id*."""
    _require_user(user_id)
    engine.reset_progress(user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/users/{user_id}/achievements/recover",
    response_model=RecoverRewardsResponse,
    responses={404: {"model": ApiErrorResponse}},
    summary="Credit rewards of unlocks whose reward was never applied",
)
@limiter.limit(settings.RATE_LIMIT)
def recover_rewards(
    request: Request,
    user_id: str,
    engine: ProgressEngine = Depends(get_engine),
) -> RecoverRewardsResponse:
    _require_user(user_id)
    return RecoverRewardsResponse(user_id=user_id, rewards_applied=engine.recover_rewards(user_id))
