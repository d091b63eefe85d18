"""Firebase Admin SDK and Firestore client initialisation.

Lazy-initialised on first use. Without ``FIREBASE_CREDENTIALS`` the service
runs in **mock mode**: tokens are not verified against Firebase and progress
lives in process memory.

``FIREBASE_CREDENTIALS`` accepts either a file path to a service-account JSON
file or the raw JSON string itself.
"""

import json
import logging
import threading

import firebase_admin
from firebase_admin import credentials, firestore

from app.config import settings

logger = logging.getLogger(__name__)

_firebase_app: firebase_admin.App | None = None
_firestore_client = None  # google.cloud.firestore_v1.client.Client | None
_mock_mode: bool = False
_initialized: bool = False
_init_lock = threading.Lock()


def _load_credentials(value: str) -> credentials.Certificate:
    """Build a Certificate from a file path or inline JSON string."""
    stripped = value.strip()
    if stripped.startswith("{"):
        return credentials.Certificate(json.loads(stripped))
    return credentials.Certificate(stripped)


def _connect(raw_credentials: str) -> tuple[firebase_admin.App, object]:
    app = firebase_admin.initialize_app(_load_credentials(raw_credentials))
    return app, firestore.client(app=app)


def _ensure_initialized() -> None:
    """Resolve the backend once. Endpoints run in a threadpool, so guard it."""
    global _firebase_app, _firestore_client, _mock_mode, _initialized
    if _initialized:
        return
    with _init_lock:
        if _initialized:
            return
        if not settings.FIREBASE_CREDENTIALS:
            _mock_mode = True
            logger.warning(
                "FIREBASE_CREDENTIALS not set, progress is kept in memory and tokens are not verified."
            )
        else:
            try:
                _firebase_app, _firestore_client = _connect(settings.FIREBASE_CREDENTIALS)
                logger.info("Firestore progress backend ready (project=%s)", _firebase_app.project_id)
            except (ValueError, OSError) as e:
                _mock_mode = True
                logger.warning("Failed to initialise Firebase (%s), falling back to mock mode.", e)
        _initialized = True


def is_mock_mode() -> bool:
    """Return *True* when running without real Firebase credentials."""
    _ensure_initialized()
    return _mock_mode


def get_firebase_app() -> firebase_admin.App | None:
    """Return the initialised Firebase app (or *None* in mock mode)."""
    _ensure_initialized()
    return _firebase_app


def get_firestore_client():
    """Return the Firestore client (or *None* in mock mode)."""
    _ensure_initialized()
    return _firestore_client


def storage_backend_name() -> str:
    """Return ``"memory"`` or ``"firestore"`` for health reporting."""
    return "memory" if is_mock_mode() else "firestore"
