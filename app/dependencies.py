"""Shared FastAPI dependencies."""

import logging
from functools import lru_cache

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.db.progress_store import build_store
from app.errors import UnauthenticatedError
from app.services.auth_service import verify_token
from app.services.progress_service import ProgressEngine

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


async def get_token_claims(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> dict:
    """Verify the Bearer token and return decoded claims."""
    if credentials is None:
        raise UnauthenticatedError("Missing Bearer token")
    claims = verify_token(credentials.credentials)
    if claims is None:
        raise UnauthenticatedError("Invalid or expired token")
    return claims


async def get_current_user_id(
    claims: dict = Depends(get_token_claims),
) -> str:
    """Extract the user ID from verified token claims.

    Standard dependency for all protected endpoints.
    """
    return claims["uid"]


@lru_cache(maxsize=1)
def get_engine() -> ProgressEngine:
    """Return the process-wide engine. Tests override this dependency."""
    return ProgressEngine(build_store())


async def get_idempotency_key(
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
) -> str | None:
    """Read the optional ``Idempotency-Key`` header used to deduplicate retries."""
    return idempotency_key
