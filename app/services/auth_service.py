"""Identity resolution backed by Firebase Admin SDK.

When ``FIREBASE_CREDENTIALS`` is set, ID tokens are verified against
Firebase. Otherwise the service runs in **mock auth mode** for local
development and testing: any non-empty Bearer token is accepted and the
token value itself is the user ID.
"""

import logging

from firebase_admin import auth as firebase_auth
from firebase_admin.exceptions import FirebaseError

from app.db.firestore import get_firebase_app, is_mock_mode

logger = logging.getLogger(__name__)


def verify_token(token: str) -> dict | None:
    """Verify a Bearer token and return decoded claims.

    Returns a dict with ``uid``, ``email``, and ``name`` keys, or *None*
    when the token is invalid / expired.
    """
    if is_mock_mode():
        return _verify_mock_token(token)

    try:
        decoded = firebase_auth.verify_id_token(token, app=get_firebase_app())
    except (ValueError, FirebaseError) as e:
        logger.warning("Firebase token verification failed: %s", e)
        return None
    return {
        "uid": decoded["uid"],
        "email": decoded.get("email", ""),
        "name": decoded.get("name", ""),
    }


def _verify_mock_token(token: str) -> dict | None:
    """Accept any non-empty token in mock mode. The value *is* the uid."""
    if not token:
        return None
    return {"uid": token, "email": f"{token}@mock.local", "name": ""}


def user_exists(uid: str) -> bool:
    """Return *True* if *uid* is a known account.

    Every uid exists in mock mode.
    """
    if is_mock_mode():
        return True
    try:
        firebase_auth.get_user(uid, app=get_firebase_app())
    except firebase_auth.UserNotFoundError:
        return False
    return True
