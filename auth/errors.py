"""
auth/errors.py -- Error taxonomy for the session lifecycle.

Every failure the orchestrator reports to a caller is one of these classes.
Each carries the HTTP status and the stable error code the API layer uses to
build the response envelope, so routes never translate errors by hand.

Business-rule failures (conflict, bad credentials, bad token, ...) and
infrastructure failures (StoreFailureError) are separate branches: a broken
database must never look like "wrong password" to a client, and vice versa.

Layer rule: no imports from api/ or gateway/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for errors mapped to an API envelope.

    message is safe to show to clients. errors is an optional list of
    field-level or machine-readable messages.
    """

    status_code: int = 400
    error_code: str = "bad_request"

    def __init__(self, message: str, *, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.errors = errors or [self.error_code]


class ValidationError(AuthError):
    """Malformed caller input (422)."""

    status_code = 422
    error_code = "validation_error"


class ConflictError(AuthError):
    """Username or email already registered (409)."""

    status_code = 409
    error_code = "conflict"


class InvalidCredentialsError(AuthError):
    """Unknown user, inactive user or wrong password -- deliberately one error (401)."""

    status_code = 401
    error_code = "invalid_credentials"


class InvalidTokenError(AuthError):
    """Refresh token unknown, revoked or expired, or access token unverifiable (401)."""

    status_code = 401
    error_code = "invalid_token"


class InactiveUserError(AuthError):
    """The token is fine but its owner has been deactivated (403)."""

    status_code = 403
    error_code = "inactive_user"


class NotFoundError(AuthError):
    """Targeted lookup of a token or user found nothing (404)."""

    status_code = 404
    error_code = "not_found"


class StoreFailureError(AuthError):
    """The credential store failed (500). The message never includes driver detail."""

    status_code = 500
    error_code = "store_failure"


class UpstreamUnavailableError(AuthError):
    """The gateway could not reach the auth service to validate a credential (503)."""

    status_code = 503
    error_code = "upstream_unavailable"
