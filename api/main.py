"""
api/main.py -- FastAPI application entry point for the authgate auth service.

The auth service is the session-issuing authority: it registers users, opens,
rotates and revokes sessions, and answers the gateway's remote validation
calls. It is the only process that writes session state.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests      -- one access-log line per request with latency
  2. SlowAPIMiddleware -- enforces per-route rate limits from api.limiter

Lifespan builds the collaborators once (store -> issuer -> orchestrator) and
disposes of the store on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import HealthResponse, error_body
from api.routes.v1.auth import router as auth_router
from auth.errors import AuthError, StoreFailureError
from auth.sessions import SessionOrchestrator
from auth.store import CredentialStore
from auth.tokens import JwtConfig, TokenIssuer
from core.config import get_settings
from core.logging import configure_logging

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

configure_logging(get_settings().log_level)
logger = logging.getLogger("authgate.api")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Wire store, issuer and orchestrator into app.state for the server lifetime.

    The JwtConfig is built once from Settings and handed to the issuer; no
    module holds the signing secret globally.
    """
    settings = get_settings()
    logger.info("authgate auth service starting up")
    app.state.store = CredentialStore(settings.auth_db_url)
    app.state.issuer = TokenIssuer(JwtConfig.from_settings(settings))
    app.state.orchestrator = SessionOrchestrator(app.state.store, app.state.issuer)
    logger.info(
        "Auth initialized (issuer=%s, access_ttl=%dm, refresh_ttl=%dd)",
        settings.jwt_issuer,
        settings.access_token_expire_minutes,
        settings.refresh_token_expire_days,
    )

    yield

    app.state.store.close()
    logger.info("authgate auth service shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="authgate auth service",
    description="Issues, rotates and revokes sessions; validates access tokens for the gateway.",
    version=VERSION,
    lifespan=lifespan,
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
# Exception handlers
#
# All handlers return the same ApiResponse envelope so clients (and the
# gateway) can parse failures without inspecting status codes first.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render any domain error with its own status code and error list.

    StoreFailureError is logged with its cause; the client only sees the
    generic message the error was raised with.
    """
    if isinstance(exc, StoreFailureError):
        logger.error("Store failure on %s %s", request.method, request.url.path, exc_info=exc.__cause__)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.errors))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a Retry-After header when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=error_body("Too many requests.", ["rate_limited"]),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with one field-level message per validation failure."""
    errors = [f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}" for err in exc.errors()]
    return JSONResponse(status_code=422, content=error_body("Invalid request data.", errors))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Wrap framework-raised HTTP errors (404 route not found, 405, ...) in the envelope."""
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail), [f"http_{exc.status_code}"]),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=error_body("An unexpected error occurred.", ["internal_error"]))


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit -- load balancer health checks must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and a database round-trip status."""
    try:
        database = "ok" if request.app.state.store.ping() else "error"
    except StoreFailureError:
        database = "error"
    return HealthResponse(version=VERSION, components={"app": "ok", "database": database})
