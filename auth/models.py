"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and the
session orchestrator do the work; these types only own the domain shape.

Timestamps are ISO 8601 strings in UTC (same as the persisted columns) except
on the ephemeral types (TokenClaims, AuthSession) which carry datetimes.

Layer rule: no imports from api/ or gateway/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class RevocationReason(str, Enum):
    """Why a refresh token stopped being usable. Stored verbatim in the DB."""

    NEW_LOGIN = "New login"
    ROTATION = "Token rotation"
    MANUAL = "Manual revocation"
    REVOKE_ALL = "Revoke all tokens"


@dataclass
class User:
    """An identity that can hold sessions.

    hashed_password is a bcrypt hash; the plaintext is never stored. Users are
    deactivated (is_active=False), not deleted.
    """

    username: str
    email: str
    hashed_password: str
    id: int | None = None
    is_active: bool = True
    created_at: str | None = None
    last_login: str | None = None


@dataclass
class RefreshToken:
    """A long-lived, opaque session credential and its lifecycle state.

    Lifecycle: active -> rotated | revoked | expired. All three end states are
    terminal for this record -- is_revoked never goes back to False.

    family_id groups every record produced from one login by successive
    rotations (the session lineage). replaced_by points at the token value
    that superseded this one on rotation.
    """

    token: str
    user_id: int
    expires_at: str
    family_id: str
    id: int | None = None
    is_revoked: bool = False
    revoked_reason: str | None = None
    revoked_at: str | None = None
    replaced_by: str | None = None
    created_at: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return datetime.fromisoformat(self.expires_at) <= now

    def is_active(self, now: datetime | None = None) -> bool:
        return not self.is_revoked and not self.is_expired(now)


@dataclass(frozen=True)
class TokenClaims:
    """Verified identity carried by an access token."""

    user_id: int
    username: str
    email: str
    issuer: str
    audience: str
    expires_at: datetime
    token_id: str = ""


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating an access token for a remote caller.

    Identity fields are strings because they end up in HTTP headers.
    """

    is_valid: bool
    user_id: str | None = None
    username: str | None = None
    email: str | None = None

    @classmethod
    def invalid(cls) -> ValidationResult:
        return cls(is_valid=False)

    @classmethod
    def from_claims(cls, claims: TokenClaims) -> ValidationResult:
        return cls(
            is_valid=True,
            user_id=str(claims.user_id),
            username=claims.username,
            email=claims.email,
        )


@dataclass
class AuthSession:
    """What register, login and refresh hand back to the caller."""

    access_token: str
    refresh_token: str
    expires_at: datetime
    user: User
    token_type: str = field(default="bearer")
