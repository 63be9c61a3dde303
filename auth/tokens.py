"""
auth/tokens.py -- Token Issuer: access-token JWTs and opaque refresh secrets.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with the configured secret
       and carry sub, user_id, username, email, iss, aud, iat, exp and a
       random jti. Verification requires signature, issuer, audience and
       expiry (zero leeway). Every failure returns False / None -- the caller
       turns that into a 401, or into an anonymous request at the edge.

  Algorithm pinning: decode() is always called with algorithms=[HS256] and the
       header is checked before any claim is trusted, so "alg": "none" or an
       asymmetric algorithm can never be smuggled in.

  Refresh tokens: 64 bytes from secrets.token_bytes, base64-encoded. They
       carry no identity -- the binding to a user lives in the stored record,
       so a leaked refresh token reveals nothing by itself.

  No module-level secret: JwtConfig is an immutable value built from Settings
       at startup and handed to every TokenIssuer explicitly. The auth service
       and the gateway construct their own issuers from the same config.

Layer rule: no imports from api/ or gateway/. Import from core/ is allowed.
"""

from __future__ import annotations

import base64
import logging
import secrets
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from jose import JWTError, jwt

from auth.models import TokenClaims

if TYPE_CHECKING:
    from auth.models import User
    from core.config import Settings

logger = logging.getLogger("authgate.tokens")

REFRESH_TOKEN_BYTES = 64


@dataclass(frozen=True)
class JwtConfig:
    """Immutable signing configuration shared by issuer and verifiers."""

    secret_key: str
    issuer: str
    audience: str
    access_token_minutes: int = 15
    refresh_token_days: int = 7
    algorithm: str = "HS256"

    @classmethod
    def from_settings(cls, settings: Settings) -> JwtConfig:
        return cls(
            secret_key=settings.secret_key,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_token_minutes=settings.access_token_expire_minutes,
            refresh_token_days=settings.refresh_token_expire_days,
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    """Mints and verifies tokens. Holds no state beyond its config and clock.

    Usage:
        issuer = TokenIssuer(JwtConfig.from_settings(get_settings()))
        token = issuer.issue_access_token(user)
        claims = issuer.decode_access_token(token)
    """

    def __init__(self, config: JwtConfig, clock: Callable[[], datetime] | None = None) -> None:
        self.config = config
        self._clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Issuing
    # ------------------------------------------------------------------

    def access_token_expiry(self) -> datetime:
        return self._clock() + timedelta(minutes=self.config.access_token_minutes)

    def refresh_token_expiry(self) -> datetime:
        return self._clock() + timedelta(days=self.config.refresh_token_days)

    def issue_access_token(self, user: User) -> str:
        """Encode a signed JWT for user. user.id must already be assigned."""
        now = self._clock()
        payload = {
            "sub": str(user.id),
            "user_id": str(user.id),
            "username": user.username,
            "email": user.email,
            "iss": self.config.issuer,
            "aud": self.config.audience,
            "iat": now,
            "exp": now + timedelta(minutes=self.config.access_token_minutes),
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self.config.secret_key, algorithm=self.config.algorithm)

    def issue_refresh_token(self) -> str:
        """Return a fresh opaque refresh secret (512 bits of entropy)."""
        return base64.b64encode(secrets.token_bytes(REFRESH_TOKEN_BYTES)).decode("ascii")

    # ------------------------------------------------------------------
    # Verifying
    # ------------------------------------------------------------------

    def verify_access_token(self, token: str) -> bool:
        """Return True only if signature, issuer, audience and expiry all check out."""
        return self.decode_access_token(token) is not None

    def decode_access_token(self, token: str) -> TokenClaims | None:
        """Fully verify token and return its claims, or None on any failure."""
        if not self._has_expected_algorithm(token):
            return None
        try:
            payload = jwt.decode(
                token,
                self.config.secret_key,
                algorithms=[self.config.algorithm],
                audience=self.config.audience,
                issuer=self.config.issuer,
                options={"leeway": 0},
            )
        except JWTError as exc:
            logger.debug("Access token rejected: %s", exc)
            return None
        return _claims_from_payload(payload)

    def extract_claims_ignoring_expiry(self, token: str) -> TokenClaims | None:
        """Recover identity from an authentic but possibly expired token.

        Only the signature (and the pinned algorithm) is checked. Never use
        the result to authorize a request -- it exists for controlled refresh
        flows that need to know who an expired token belonged to.
        """
        if not self._has_expected_algorithm(token):
            return None
        try:
            payload = jwt.decode(
                token,
                self.config.secret_key,
                algorithms=[self.config.algorithm],
                options={"verify_exp": False, "verify_aud": False, "verify_iss": False},
            )
        except JWTError as exc:
            logger.debug("Access token signature rejected: %s", exc)
            return None
        return _claims_from_payload(payload)

    def _has_expected_algorithm(self, token: str) -> bool:
        try:
            header = jwt.get_unverified_header(token)
        except JWTError:
            return False
        return header.get("alg") == self.config.algorithm


def _claims_from_payload(payload: dict[str, Any]) -> TokenClaims | None:
    """Map a decoded payload onto TokenClaims. Missing or ill-typed claims -> None."""
    try:
        user_id = int(payload["user_id"])
        username = payload["username"]
        email = payload["email"]
        exp = payload["exp"]
    except (KeyError, TypeError, ValueError):
        return None
    if not isinstance(username, str) or not isinstance(email, str) or not isinstance(exp, (int, float)):
        return None
    audience = payload.get("aud", "")
    if isinstance(audience, list):
        audience = audience[0] if audience else ""
    return TokenClaims(
        user_id=user_id,
        username=username,
        email=email,
        issuer=str(payload.get("iss", "")),
        audience=str(audience),
        expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        token_id=str(payload.get("jti", "")),
    )
