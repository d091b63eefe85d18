"""Error taxonomy for the progress engine.

Services raise these; ``app.main`` renders them with the same
``{"detail": {"error": {"code", "message"}}}`` body the endpoints use for
``HTTPException``.
"""

from fastapi import status


class ProgressEngineError(Exception):
    """Base class for errors surfaced to API callers."""

    code = "internal_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable = False

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.code.replace("_", " ").capitalize()
        super().__init__(self.message)


class UnauthenticatedError(ProgressEngineError):
    """No resolvable identity on the request."""

    code = "unauthenticated"
    status_code = status.HTTP_401_UNAUTHORIZED


class UserNotFoundError(ProgressEngineError):
    """The referenced user does not exist in the identity provider."""

    code = "user_not_found"
    status_code = status.HTTP_404_NOT_FOUND


class AchievementNotFoundError(ProgressEngineError):
    code = "achievement_not_found"
    status_code = status.HTTP_404_NOT_FOUND


class InvalidRequestError(ProgressEngineError):
    """Malformed input, rejected before any mutation."""

    code = "invalid_request"
    status_code = status.HTTP_400_BAD_REQUEST


class InsufficientCoinsError(InvalidRequestError):
    code = "insufficient_coins"


class IdempotencyConflictError(ProgressEngineError):
    """A request with the same idempotency key is still being processed."""

    code = "request_in_progress"
    status_code = status.HTTP_409_CONFLICT
    retryable = True


class StorageUnavailableError(ProgressEngineError):
    """The persistence backend could not be reached. Nothing was applied."""

    code = "storage_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True
