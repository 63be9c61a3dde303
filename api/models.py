"""
API request and response models for the authgate auth service.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

Wire format: every response is wrapped in ApiResponse
    {"success": bool, "message": str, "data": ..., "errors": [...]}
and JSON field names are camelCase (usernameOrEmail, refreshToken, isValid).
Python code uses snake_case; the alias generator bridges the two, and
populate_by_name lets tests build models with either spelling.
"""

from __future__ import annotations

from datetime import datetime
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from auth.models import AuthSession, User, ValidationResult

DataT = TypeVar("DataT")

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

_REQUEST_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)
_RESPONSE_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class ApiResponse(BaseModel, Generic[DataT]):
    """Uniform envelope for success and error responses alike."""

    model_config = _RESPONSE_CONFIG

    success: bool
    message: str
    data: Optional[DataT] = None
    errors: Optional[list[str]] = None


def error_body(message: str, errors: list[str] | None = None) -> dict:
    """Serialized failure envelope, for exception handlers and middleware."""
    return ApiResponse[None](success=False, message=message, errors=errors).model_dump(by_alias=True)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = _REQUEST_CONFIG

    username: str = Field(min_length=3, max_length=100)
    email: str = Field(min_length=3, max_length=100, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=6, max_length=72)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = _REQUEST_CONFIG

    username_or_email: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=1, max_length=72)


class RefreshTokenRequest(BaseModel):
    """Request body for POST /refresh and POST /revoke."""

    model_config = _REQUEST_CONFIG

    refresh_token: str = Field(min_length=1, max_length=128)


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/change-password."""

    model_config = _REQUEST_CONFIG

    current_password: str = Field(min_length=1, max_length=72)
    new_password: str = Field(min_length=6, max_length=72)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset-password."""

    model_config = _REQUEST_CONFIG

    email: str = Field(min_length=3, max_length=100, pattern=EMAIL_PATTERN)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class UserInfo(BaseModel):
    """Public view of a user. Never includes the password hash."""

    model_config = _RESPONSE_CONFIG

    id: int
    username: str
    email: str
    created_at: Optional[str] = None
    last_login_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> UserInfo:
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            created_at=user.created_at,
            last_login_at=user.last_login,
        )


class AuthResponse(BaseModel):
    """Token pair plus user summary, returned by register, login and refresh."""

    model_config = _RESPONSE_CONFIG

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: UserInfo

    @classmethod
    def from_session(cls, session: AuthSession) -> AuthResponse:
        return cls(
            access_token=session.access_token,
            refresh_token=session.refresh_token,
            token_type=session.token_type,
            expires_at=session.expires_at,
            user=UserInfo.from_user(session.user),
        )


class TokenValidationResult(BaseModel):
    """Data for POST /validate-with-claims. Consumed by the gateway."""

    model_config = _RESPONSE_CONFIG

    is_valid: bool
    user_id: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def from_result(cls, result: ValidationResult) -> TokenValidationResult:
        return cls(
            is_valid=result.is_valid,
            user_id=result.user_id,
            username=result.username,
            email=result.email,
        )


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
