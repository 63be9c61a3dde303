"""
api/routes/v1/auth.py -- Session management REST endpoints.

Routes (all under /api/v1):
  POST /auth/register              -- create account, open first session
  POST /auth/login                 -- username or email + password; new session
  POST /auth/refresh               -- rotate refresh token; new token pair
  POST /auth/revoke                -- revoke one of the caller's refresh tokens (requires auth)
  POST /auth/revoke-all            -- revoke all of the caller's refresh tokens (requires auth)
  GET  /auth/me                    -- current user info (requires auth)
  POST /auth/change-password       -- replace password, end all sessions (requires auth)
  POST /auth/reset-password        -- issue temporary password out of band
  POST /auth/validate              -- is the Bearer access token valid?
  POST /auth/validate-with-claims  -- validity plus identity; called by the gateway

Every handler returns the ApiResponse envelope. Failures are raised as
auth.errors.AuthError subclasses and rendered by the handler in api/main.py,
so no route builds an error response itself.

Security:
  [H2] POST /login and POST /reset-password are rate-limited per IP.
  [C1] Login failures are indistinguishable (SessionOrchestrator.login).
  [M5] Cache-Control: no-store on every response that carries tokens.
  Reset-password answers identically whether or not the email exists, and
  never echoes the temporary password.
  IDOR guard: /revoke passes the caller's user id; other users' tokens read
  as "not found".
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter, login_rate_limit
from api.models import (
    ApiResponse,
    AuthResponse,
    ChangePasswordRequest,
    LoginRequest,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenValidationResult,
    UserInfo,
)
from auth.dependencies import bearer_token, get_current_claims, get_orchestrator
from auth.errors import AuthError
from auth.models import TokenClaims
from auth.sessions import SessionOrchestrator

# Auth policy:
# - POST /auth/register, /login, /refresh, /reset-password: public
# - POST /auth/validate, /validate-with-claims: public, token comes in the header
# - POST /auth/revoke, /revoke-all, /change-password, GET /auth/me: Bearer access token
router = APIRouter()


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"  # [M5]


def _require_bearer(request: Request) -> str:
    token = bearer_token(request)
    if token is None:
        raise AuthError("Invalid token format.", errors=["Invalid token format"])
    return token


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=ApiResponse[AuthResponse])
def register(
    body: RegisterRequest,
    response: Response,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> ApiResponse[AuthResponse]:
    """Create an account and return its first token pair."""
    session = orchestrator.register(body.username, body.email, body.password)
    _no_store(response)
    return ApiResponse[AuthResponse](
        success=True,
        message="Registration successful.",
        data=AuthResponse.from_session(session),
    )


@limiter.limit(login_rate_limit)  # [H2] -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=ApiResponse[AuthResponse])
def login(
    request: Request,
    body: LoginRequest,
    response: Response,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> ApiResponse[AuthResponse]:
    """Authenticate with username or email; ends every previous session of the user."""
    session = orchestrator.login(body.username_or_email, body.password)
    _no_store(response)
    return ApiResponse[AuthResponse](
        success=True,
        message="Login successful.",
        data=AuthResponse.from_session(session),
    )


@router.post("/auth/refresh", response_model=ApiResponse[AuthResponse])
def refresh(
    body: RefreshTokenRequest,
    response: Response,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> ApiResponse[AuthResponse]:
    """Rotate a refresh token. The presented token is dead once this returns."""
    session = orchestrator.refresh(body.refresh_token)
    _no_store(response)
    return ApiResponse[AuthResponse](
        success=True,
        message="Token refreshed.",
        data=AuthResponse.from_session(session),
    )


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/auth/reset-password", response_model=ApiResponse[bool])
def reset_password(
    request: Request,
    body: ResetPasswordRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> ApiResponse[bool]:
    """Start a password reset. Same answer for known and unknown emails."""
    orchestrator.reset_password(body.email)
    return ApiResponse[bool](
        success=True,
        message="If the email is registered, a temporary password has been sent.",
        data=True,
    )


@router.post("/auth/validate", response_model=ApiResponse[bool])
def validate(
    request: Request,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> ApiResponse[bool]:
    """Report whether the Bearer access token is valid."""
    is_valid = orchestrator.validate(_require_bearer(request))
    return ApiResponse[bool](
        success=True,
        message="Token is valid." if is_valid else "Token is invalid.",
        data=is_valid,
    )


@router.post("/auth/validate-with-claims", response_model=ApiResponse[TokenValidationResult])
def validate_with_claims(
    request: Request,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> ApiResponse[TokenValidationResult]:
    """Validate the Bearer access token and return the identity it proves.

    This is the gateway's remote validation entry point. An invalid token is
    still a successful call: success=true, data.isValid=false.
    """
    result = orchestrator.validate_with_claims(_require_bearer(request))
    return ApiResponse[TokenValidationResult](
        success=True,
        message="Token is valid." if result.is_valid else "Token is invalid.",
        data=TokenValidationResult.from_result(result),
    )


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/revoke", response_model=ApiResponse[bool])
def revoke(
    body: RefreshTokenRequest,
    claims: TokenClaims = Depends(get_current_claims),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> ApiResponse[bool]:
    """Revoke one of the caller's refresh tokens. Idempotent."""
    orchestrator.revoke(body.refresh_token, user_id=claims.user_id)
    return ApiResponse[bool](success=True, message="Token revoked.", data=True)


@router.post("/auth/revoke-all", response_model=ApiResponse[bool])
def revoke_all(
    claims: TokenClaims = Depends(get_current_claims),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> ApiResponse[bool]:
    """Revoke every refresh token of the caller (log out everywhere)."""
    orchestrator.revoke_all(claims.user_id)
    return ApiResponse[bool](success=True, message="All tokens revoked.", data=True)


@router.get("/auth/me", response_model=ApiResponse[UserInfo])
def me(
    claims: TokenClaims = Depends(get_current_claims),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> ApiResponse[UserInfo]:
    """Return the profile of the currently authenticated user."""
    user = orchestrator.get_user_info(claims.user_id)
    return ApiResponse[UserInfo](success=True, message="User info retrieved.", data=UserInfo.from_user(user))


@router.post("/auth/change-password", response_model=ApiResponse[bool])
def change_password(
    body: ChangePasswordRequest,
    claims: TokenClaims = Depends(get_current_claims),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> ApiResponse[bool]:
    """Change the caller's password. Every refresh token of the caller is revoked."""
    orchestrator.change_password(claims.user_id, body.current_password, body.new_password)
    return ApiResponse[bool](success=True, message="Password changed.", data=True)
