"""
auth/sessions.py -- Session Orchestrator: the only writer of session state.

Owns the lifecycle of a session lineage:

    register / login ──> active ──refresh──> rotated  (successor is active)
                           │
                           ├── revoke / revoke_all / new login ──> revoked
                           └── TTL elapsed (detected at use) ───> expired

All three end states are terminal for that record. Rotation appends a new
record to the same lineage (family_id) and points the old record at it.

Anti-enumeration rules enforced here:
  - login answers "unknown user", "inactive user" and "wrong password" with the
    same InvalidCredentialsError, and always spends one bcrypt check [C1].
  - reset_password returns the same way whether or not the email exists, and
    spends one bcrypt hash either way.
  - refresh answers "unknown", "revoked" and "expired" with one InvalidTokenError.

Layer rule: no imports from api/ or gateway/.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Callable

from auth.errors import (
    ConflictError,
    InactiveUserError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from auth.models import AuthSession, RefreshToken, RevocationReason, User, ValidationResult
from auth.passwords import generate_temporary_password, hash_password, verify_password, verify_password_or_dummy
from auth.store import CredentialStore, iso_timestamp
from auth.tokens import TokenIssuer

logger = logging.getLogger("authgate.auth")

# Receives (user, temporary_password). Must deliver out of band (email, SMS,
# operator console); the password never travels back through the API.
PasswordResetDelivery = Callable[[User, str], None]

_INVALID_CREDENTIALS = "Invalid username/email or password."
_INVALID_TOKEN = "Invalid refresh token."

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_LENGTH = 72  # bcrypt ignores anything past 72 bytes


def log_reset_delivery(user: User, temporary_password: str) -> None:
    """Default delivery: record that a reset happened. The password is dropped."""
    logger.warning(
        "Temporary password issued for user_id=%s but no delivery channel is configured",
        user.id,
    )


class SessionOrchestrator:
    """Register, log in, rotate, revoke and validate sessions.

    Collaborators are passed in explicitly so the API layer, the CLI and the
    tests can each wire their own store and issuer.
    """

    def __init__(
        self,
        store: CredentialStore,
        issuer: TokenIssuer,
        reset_delivery: PasswordResetDelivery = log_reset_delivery,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.reset_delivery = reset_delivery

    # ------------------------------------------------------------------
    # Session creation
    # ------------------------------------------------------------------

    def register(self, username: str, email: str, password: str) -> AuthSession:
        """Create an active user and open their first session.

        Raises ValidationError for malformed input and ConflictError if the
        username or the email is already taken.
        """
        problems = []
        if len(username.strip()) < MIN_USERNAME_LENGTH:
            problems.append(f"username: must be at least {MIN_USERNAME_LENGTH} characters")
        if not _EMAIL_RE.match(email):
            problems.append("email: not a valid email address")
        problems.extend(_password_problems("password", password))
        if problems:
            raise ValidationError("Invalid registration data.", errors=problems)
        if self.store.user_exists(username, email):
            raise ConflictError("Username or email already exists.", errors=["User already exists"])
        # user_id is filled in by the store once the user row exists. A
        # concurrent registration of the same name still ends in ConflictError.
        record = self._new_refresh_record(0, family_id=uuid.uuid4().hex)
        user_id = self.store.create_user_with_session(
            User(username=username, email=email, hashed_password=hash_password(password)),
            record,
        )
        logger.info("Registered user_id=%s", user_id)
        return self._session_for(self._require_user(user_id), record.token)

    def login(self, username_or_email: str, password: str) -> AuthSession:
        """Authenticate and open a new session, ending every previous one.

        Raises InvalidCredentialsError for every failure mode, identically.
        """
        user = self.store.get_user_by_login(username_or_email)
        password_ok = verify_password_or_dummy(password, user.hashed_password if user else None)
        if user is None or not user.is_active or not password_ok:
            logger.info("Login failed")
            raise InvalidCredentialsError(_INVALID_CREDENTIALS, errors=["Invalid credentials"])

        record = self._new_refresh_record(user.id, family_id=uuid.uuid4().hex)
        revoked = self.store.start_session(user.id, record, RevocationReason.NEW_LOGIN.value)
        logger.info("Login user_id=%s (revoked %d previous session token(s))", user.id, revoked)
        return self._session_for(self._require_user(user.id), record.token)

    def refresh(self, refresh_token: str) -> AuthSession:
        """Rotate a refresh token: retire it and hand back a fresh pair.

        Raises InvalidTokenError if the token is unknown, revoked or expired
        (or loses a concurrent rotation race), InactiveUserError if its owner
        is deactivated.
        """
        current = self.store.get_refresh_token(refresh_token)
        if current is None or not current.is_active():
            raise InvalidTokenError(_INVALID_TOKEN, errors=["Invalid refresh token"])

        user = self.store.get_user(current.user_id)
        if user is None or not user.is_active:
            raise InactiveUserError("User is not active.", errors=["User is not active"])

        successor = self._new_refresh_record(user.id, family_id=current.family_id)
        if not self.store.rotate_refresh_token(refresh_token, successor, RevocationReason.ROTATION.value):
            logger.warning("Refresh token for user_id=%s was rotated concurrently; rejecting replay", user.id)
            raise InvalidTokenError(_INVALID_TOKEN, errors=["Invalid refresh token"])

        logger.info("Rotated refresh token for user_id=%s", user.id)
        return self._session_for(user, successor.token)

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, refresh_token: str, user_id: int | None = None) -> None:
        """Revoke one refresh token. Revoking a revoked token is a no-op.

        When user_id is given, tokens owned by anyone else are reported as
        NotFoundError, exactly like unknown tokens [IDOR guard].
        """
        record = self.store.get_refresh_token(refresh_token)
        if record is None or (user_id is not None and record.user_id != user_id):
            raise NotFoundError("Token not found.", errors=["Token not found"])
        if self.store.revoke_refresh_token(refresh_token, RevocationReason.MANUAL.value):
            logger.info("Revoked refresh token id=%s for user_id=%s", record.id, record.user_id)

    def revoke_all(self, user_id: int) -> int:
        """Revoke every active refresh token of a user. Always succeeds."""
        count = self.store.revoke_all_for_user(user_id, RevocationReason.REVOKE_ALL.value)
        logger.info("Revoked %d refresh token(s) for user_id=%s", count, user_id)
        return count

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    def get_user_info(self, user_id: int) -> User:
        """Return the active user with this id. Raises NotFoundError otherwise."""
        user = self.store.get_user(user_id)
        if user is None or not user.is_active:
            raise NotFoundError("User not found.", errors=["User not found"])
        return user

    def change_password(self, user_id: int, current_password: str, new_password: str) -> None:
        """Replace the password and end every session of the user."""
        problems = _password_problems("newPassword", new_password)
        if problems:
            raise ValidationError("Invalid password.", errors=problems)
        user = self.get_user_info(user_id)
        if not verify_password(current_password, user.hashed_password):
            raise InvalidCredentialsError("Current password is incorrect.", errors=["Current password is incorrect"])
        self.store.update_password(user_id, hash_password(new_password))
        self.revoke_all(user_id)
        logger.info("Password changed for user_id=%s", user_id)

    def reset_password(self, email: str) -> None:
        """Issue a temporary password if email belongs to an active user.

        Returns normally either way so callers cannot discover which accounts exist.
        """
        user = self.store.get_user_by_email(email)
        temporary = generate_temporary_password()
        hashed = hash_password(temporary)  # paid on every branch [C1]
        if user is None or not user.is_active:
            logger.info("Password reset requested for an unknown or inactive account")
            return
        self.store.update_password(user.id, hashed)
        self.revoke_all(user.id)
        self.reset_delivery(user, temporary)
        logger.info("Password reset for user_id=%s", user.id)

    # ------------------------------------------------------------------
    # Validation and audit
    # ------------------------------------------------------------------

    def validate(self, access_token: str) -> bool:
        return self.issuer.verify_access_token(access_token)

    def validate_with_claims(self, access_token: str) -> ValidationResult:
        claims = self.issuer.decode_access_token(access_token)
        if claims is None:
            return ValidationResult.invalid()
        return ValidationResult.from_claims(claims)

    def lineage(self, refresh_token: str) -> list[RefreshToken]:
        """Return the whole rotation history of the session refresh_token belongs to."""
        record = self.store.get_refresh_token(refresh_token)
        if record is None:
            raise NotFoundError("Token not found.", errors=["Token not found"])
        return self.store.get_lineage(record.family_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _new_refresh_record(self, user_id: int, family_id: str) -> RefreshToken:
        return RefreshToken(
            token=self.issuer.issue_refresh_token(),
            user_id=user_id,
            expires_at=iso_timestamp(self.issuer.refresh_token_expiry()),
            family_id=family_id,
        )

    def _session_for(self, user: User, refresh_token: str) -> AuthSession:
        return AuthSession(
            access_token=self.issuer.issue_access_token(user),
            refresh_token=refresh_token,
            expires_at=self.issuer.access_token_expiry(),
            user=user,
        )

    def _require_user(self, user_id: int) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found.", errors=["User not found"])
        return user


def _password_problems(field_name: str, password: str) -> list[str]:
    if len(password) < MIN_PASSWORD_LENGTH:
        return [f"{field_name}: must be at least {MIN_PASSWORD_LENGTH} characters"]
    if len(password.encode("utf-8")) > MAX_PASSWORD_LENGTH:
        return [f"{field_name}: must be at most {MAX_PASSWORD_LENGTH} bytes"]
    return []
