"""FastAPI application initialization and configuration."""

import logging
import time

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from app.api.v1.endpoints.achievements import router as achievements_router
from app.api.v1.endpoints.admin import router as admin_router
from app.api.v1.endpoints.users import limiter, router as users_router
from app.config import settings
from app.db.firestore import storage_backend_name
from app.errors import ProgressEngineError
from app.models.common import HealthResponse

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Life Dashboard Progress API",
    description="Coins, XP, levels, daily login bonus and achievements for the life dashboard.",
    version="1.0.0",
    docs_url="/api/v1/docs",
    redoc_url="/api/v1/redoc",
    openapi_url="/api/v1/openapi.json",
)

# --- Middleware ---

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)


# Request logging
@app.middleware("http")
async def log_requests(request: Request, call_next) -> Response:
    """Log every incoming request and its duration."""
    start = time.perf_counter()
    response: Response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s -> %s (%.1fms)",
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


# Admin endpoints use the shared API key; user endpoints use Bearer auth via Depends.
_API_KEY_PREFIXES = ("/api/v1/admin",)


@app.middleware("http")
async def api_key_auth(request: Request, call_next) -> Response:
    """Validate the API key for administrative endpoints."""
    if not any(request.url.path.startswith(prefix) for prefix in _API_KEY_PREFIXES):
        return await call_next(request)

    api_key = request.headers.get("X-API-Key")
    if api_key != settings.API_KEY:
        logger.warning("Unauthorized admin request from %s", request.client.host if request.client else "unknown")
        return JSONResponse(
            status_code=401,
            content={"detail": {"error": {"code": "unauthorized", "message": "Invalid or missing API key"}}},
        )
    return await call_next(request)


# --- Error handling ---

@app.exception_handler(ProgressEngineError)
async def progress_engine_error_handler(request: Request, exc: ProgressEngineError) -> JSONResponse:
    """Render engine errors in the ``{"detail": {"error": ...}}`` shape."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    headers = {"Retry-After": str(settings.STORAGE_RETRY_AFTER_SECONDS)} if exc.retryable else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": {"error": {"code": exc.code, "message": exc.message}}},
        headers=headers,
    )


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
async def health() -> HealthResponse:
    """Liveness check, no authentication required."""
    return HealthResponse(status="healthy", storage=storage_backend_name())


# Register routes
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(achievements_router, prefix="/api/v1", tags=["Achievements"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])

logger.info("Life Dashboard Progress API started (debug=%s)", settings.DEBUG)
