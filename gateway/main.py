"""
gateway/main.py -- FastAPI application for the authgate edge service.

Every request to a downstream service enters here. The edge verifies the
bearer credential (locally when it can, otherwise via the auth service),
replaces any client-supplied identity headers with verified ones and proxies
the request to DOWNSTREAM_URL.

Run with:      uvicorn asgi:gateway

Middleware stack (outermost to innermost):
  1. log_requests        -- one access-log line per request with latency
  2. SlowAPIMiddleware   -- default per-IP limit on every route except /health
  3. EdgeAuthMiddleware  -- strip, verify, attach identity (gateway/verifier.py)

Routes:
  GET  /health       -- liveness (public, not rate limited)
  GET  /auth-status  -- identity as seen by the edge (401 when anonymous)
  ANY  /{path}       -- reverse proxy to the downstream service
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import requests
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.concurrency import run_in_threadpool

from api.models import error_body
from auth.tokens import JwtConfig, TokenIssuer
from core.config import get_settings
from core.logging import configure_logging
from gateway.proxy import ReverseProxy
from gateway.transforms import build_downstream_response_headers, build_upstream_headers
from gateway.verifier import EdgeAuthMiddleware, EdgeVerifier

configure_logging(get_settings().log_level)
logger = logging.getLogger("authgate.gateway")

_PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def gateway_rate_limit() -> str:
    return get_settings().gateway_rate_limit


limiter = Limiter(key_func=get_remote_address, default_limits=[gateway_rate_limit], storage_uri="memory://")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the verifier and proxy clients once; close their sessions on shutdown.

    The gateway gets its own TokenIssuer from the shared JwtConfig. It is
    only used to verify, never to issue.
    """
    settings = get_settings()
    app.state.verifier = EdgeVerifier(
        issuer=TokenIssuer(JwtConfig.from_settings(settings)),
        endpoint=settings.auth_validation_endpoint,
        timeout=settings.validation_timeout_seconds,
        fail_open=settings.edge_fail_open,
    )
    app.state.proxy = ReverseProxy(settings.downstream_url, timeout=settings.proxy_timeout_seconds)
    logger.info(
        "authgate gateway starting up (downstream=%s, fail_open=%s)",
        settings.downstream_url,
        settings.edge_fail_open,
    )
    if settings.edge_fail_open:
        logger.warning("EDGE_FAIL_OPEN is enabled: unverifiable credentials are forwarded without identity")

    yield

    app.state.verifier.close()
    app.state.proxy.close()
    logger.info("authgate gateway shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="authgate gateway",
    description="Edge verifier and identity-propagating reverse proxy.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)

# add_middleware() wraps outermost-last: register innermost first.
app.add_middleware(EdgeAuthMiddleware)
app.add_middleware(SlowAPIMiddleware)
app.state.limiter = limiter


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


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(status_code=429, content=error_body("Too many requests.", ["rate_limited"]))
    response.headers["Retry-After"] = str(retry_after)
    return response


# ---------------------------------------------------------------------------
# Gateway endpoints
# ---------------------------------------------------------------------------


@limiter.exempt
@app.get("/health")
async def health() -> dict:
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "authgate-gateway",
    }


@app.get("/auth-status")
async def auth_status(request: Request) -> JSONResponse:
    """Report the identity the edge resolved for this request."""
    identity = getattr(request.state, "identity", None)
    if identity is None:
        return JSONResponse(status_code=401, content=error_body("Authentication required.", ["unauthorized"]))
    return JSONResponse(
        content={
            "isAuthenticated": True,
            "userId": identity.user_id,
            "username": identity.username,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    )


# ---------------------------------------------------------------------------
# Reverse proxy (catch-all, registered last)
# ---------------------------------------------------------------------------


@app.api_route("/{path:path}", methods=_PROXY_METHODS, include_in_schema=False)
async def proxy(request: Request, path: str) -> Response:
    """Forward the request downstream with verified identity headers."""
    reverse_proxy: ReverseProxy = request.app.state.proxy
    headers = build_upstream_headers(request.headers, getattr(request.state, "identity", None))
    body = await request.body()
    try:
        upstream = await run_in_threadpool(
            reverse_proxy.forward, request.method, path, request.url.query, headers, body
        )
    except requests.RequestException as exc:
        logger.warning("Downstream request %s /%s failed: %s", request.method, path, exc.__class__.__name__)
        return JSONResponse(status_code=502, content=error_body("Downstream service unavailable.", ["bad_gateway"]))
    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        headers=build_downstream_response_headers(upstream.headers),
    )
