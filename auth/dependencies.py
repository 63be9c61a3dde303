"""
auth/dependencies.py -- FastAPI Depends() helpers for the auth service.

Bearer access tokens are the only way to authenticate against the session
management endpoints. Verification is local (signature + claims); there is no
lookup, so a valid access token stays valid until it expires even after its
refresh token has been revoked. Access TTLs are kept short for that reason.

bearer_token() is the soft variant (returns None when absent).
get_current_claims() wraps it and raises InvalidTokenError if unauthenticated;
the app-level AuthError handler renders that as a 401 envelope.

Layer rule: auth/dependencies.py may import from fastapi (for Request) because
this module is part of the FastAPI dependency injection system. No imports
from api/ or gateway/.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import InvalidTokenError
from auth.models import TokenClaims
from auth.sessions import SessionOrchestrator

BEARER_PREFIX = "Bearer "


def parse_bearer(authorization: str | None) -> str | None:
    """Return the token from an "Authorization: Bearer <token>" value, else None."""
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        return None
    token = authorization[len(BEARER_PREFIX) :].strip()
    return token or None


def bearer_token(request: Request) -> str | None:
    return parse_bearer(request.headers.get("Authorization"))


def get_orchestrator(request: Request) -> SessionOrchestrator:
    return request.app.state.orchestrator


def get_current_claims(request: Request) -> TokenClaims:
    """Require a valid Bearer access token and return its claims.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: TokenClaims = Depends(get_current_claims)): ...
    """
    token = bearer_token(request)
    claims = get_orchestrator(request).issuer.decode_access_token(token) if token else None
    if claims is None:
        raise InvalidTokenError("Authentication required.", errors=["Invalid user"])
    return claims
