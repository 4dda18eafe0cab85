"""
api/main.py -- FastAPI application entry point for TeamHarbour Auth.

Exposes AuthService over HTTP: admin bootstrap, login, invite onboarding,
refresh-token rotation, logout and password changes.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware        -- adds CORS headers for the configured front-end origins
  2. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan opens the UserStore and builds the AuthService on startup, and closes
the store on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import AuthError, ErrorKind
from auth.service import AuthService
from auth.store import UserStore
from core.config import get_settings

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("teamharbour.api")

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Own the UserStore for the lifetime of the server.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Route handlers reach the service through app.state.auth_service.
    """
    settings = get_settings()
    logger.info("TeamHarbour Auth starting up")
    app.state.settings = settings
    app.state.user_store = UserStore(settings.database_url)
    app.state.auth_service = AuthService(app.state.user_store, settings)
    logger.info("Auth initialized (admin_exists=%s)", app.state.user_store.has_admin())

    yield

    app.state.user_store.close()
    logger.info("TeamHarbour Auth shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="TeamHarbour Auth API",
    description="Authentication, invite onboarding and session management for TeamHarbour.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them: CORS -> SlowAPI.
# allow_credentials is required for the browser to send the refresh cookie.
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Error mapping
#
# Every failure leaves the API as {"error": {"code", "message", "detail"}},
# whatever raised it. Codes are the ErrorKind values plus "rate_limited".
# ---------------------------------------------------------------------------


def _error_response(
    status: int,
    code: str,
    message: str,
    detail: str | dict | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status, content=body.model_dump(), headers=headers)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Translate a typed AuthService failure using its kind and status code.

    AuthService has already logged the cause of an InternalError, so only the
    generic message goes out.
    """
    if exc.kind is ErrorKind.internal_error:
        return _error_response(exc.status_code, exc.kind.value, "An unexpected error occurred.")
    return _error_response(exc.status_code, exc.kind.value, exc.message, exc.detail or None)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with a Retry-After hint in seconds."""
    wait = int(getattr(exc, "retry_after", 60))
    return _error_response(
        429,
        "rate_limited",
        "Too many authentication attempts. Please try again later.",
        detail=str(exc.detail),
        headers={"Retry-After": str(wait)},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 listing each failing field as "<field>: <message>"."""
    errors = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err["loc"] if part != "body")
        errors.append(f"{field}: {err['msg']}" if field else err["msg"])
    return _error_response(
        422, ErrorKind.validation_failed.value, "Validation failed.", detail={"errors": errors}
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Pass through the {"code", "message"} dicts raised by auth/dependencies.py."""
    headers = getattr(exc, "headers", None)
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=headers)
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail), headers=headers)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort: log the traceback, answer with a bare 500."""
    logger.exception("Unhandled error during %s %s", request.method, request.url.path)
    return _error_response(500, ErrorKind.internal_error.value, "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health
#
# Registered on the app itself and exempt from rate limiting so health checks never
# see a 429.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health() -> HealthResponse:
    return HealthResponse(version=API_VERSION)
