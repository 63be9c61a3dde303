"""
gateway/verifier.py -- Edge Verifier: turns a bearer credential into a trusted
identity before any request reaches a downstream service.

Per request (EdgeAuthMiddleware):
  0. Strip inbound X-User-Id / X-Username / X-User-Email, always.
  1. Bearer token verifies locally (own TokenIssuer, same JwtConfig as the
     auth service)? Use those claims, no network call.
  2. No bearer token? Forward anonymously.
  3. Otherwise ask the auth service (POST validate-with-claims). A valid
     answer attaches the identity headers to the request.

When step 3 cannot produce an identity, EDGE_FAIL_OPEN decides:
  fail-closed (default): 401 for an invalid credential, 503 when the auth
      service cannot be reached. Downstream never sees a request whose
      credential was presented but not verified.
  fail-open: forward without identity headers and log a warning. Downstream
      cannot tell "no credential" from "bad credential" -- only choose this
      when every downstream route treats missing headers as anonymous.

Nothing is cached between requests: a token revoked at the auth service is
rejected on the very next request that needs remote validation. The remote
call is bounded by a timeout and never retried inline.
"""

from __future__ import annotations

import logging

import requests
from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import Headers
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from api.models import ApiResponse, TokenValidationResult, error_body
from auth.dependencies import parse_bearer
from auth.errors import InvalidTokenError, UpstreamUnavailableError
from auth.models import ValidationResult
from auth.tokens import TokenIssuer
from gateway.transforms import raw_identity_headers, strip_identity_headers

logger = logging.getLogger("authgate.gateway")


class EdgeVerifier:
    """Resolves bearer tokens to identities, locally or via the auth service.

    Usage:
        verifier = EdgeVerifier(issuer, "http://auth:8000/api/v1/auth/validate-with-claims")
        identity = verifier.verify_locally(token) or verifier.verify_remotely(token)
    """

    def __init__(
        self,
        issuer: TokenIssuer | None,
        endpoint: str,
        timeout: float = 5.0,
        fail_open: bool = False,
        session: requests.Session | None = None,
    ) -> None:
        self.issuer = issuer
        self.endpoint = endpoint
        self.timeout = timeout
        self.fail_open = fail_open
        self._session = session or requests.Session()
        # The auth service is a fixed internal address; no redirect is legitimate.
        self._session.max_redirects = 0

    def verify_locally(self, token: str) -> ValidationResult | None:
        """Return the identity if this gateway can verify token itself, else None."""
        if self.issuer is None:
            return None
        claims = self.issuer.decode_access_token(token)
        return ValidationResult.from_claims(claims) if claims is not None else None

    def verify_remotely(self, token: str) -> ValidationResult:
        """Ask the auth service to validate token. Blocking; run in a threadpool.

        Returns an invalid result when the auth service answers that the token
        is not valid (including 4xx answers). Raises UpstreamUnavailableError
        on transport errors, timeouts, 5xx answers and unparseable bodies.
        """
        try:
            resp = self._session.post(
                self.endpoint,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout,
                allow_redirects=False,
            )
        except requests.RequestException as exc:
            raise UpstreamUnavailableError(f"Auth service unreachable: {exc.__class__.__name__}") from exc

        if resp.status_code >= 500:
            raise UpstreamUnavailableError(f"Auth service answered {resp.status_code}")
        if not resp.ok:
            logger.warning("Token validation failed: %d", resp.status_code)
            return ValidationResult.invalid()

        try:
            envelope = ApiResponse[TokenValidationResult].model_validate(resp.json())
        except (ValueError, PydanticValidationError) as exc:
            raise UpstreamUnavailableError("Auth service returned an unreadable body") from exc

        data = envelope.data
        if not envelope.success or data is None or not data.is_valid:
            return ValidationResult.invalid()
        return ValidationResult(
            is_valid=True,
            user_id=data.user_id,
            username=data.username,
            email=data.email,
        )

    def close(self) -> None:
        self._session.close()


class EdgeAuthMiddleware:
    """Pure ASGI middleware running the Edge Verifier on every HTTP request.

    Websocket scopes only get their identity headers stripped.

    The verifier is read from app.state.verifier at request time so the
    lifespan (or a test) decides how it is wired. The resolved identity is
    stored in request.state.identity for the proxy transform and for
    /auth-status.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "websocket":
            # No bearer verification on websockets: identity headers are
            # dropped and the connection continues anonymously.
            await self.app({**scope, "headers": strip_identity_headers(scope["headers"])}, receive, send)
            return
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        verifier: EdgeVerifier = scope["app"].state.verifier
        headers = strip_identity_headers(scope["headers"])
        token = parse_bearer(Headers(raw=headers).get("authorization"))

        identity: ValidationResult | None = None
        if token is not None:
            identity = verifier.verify_locally(token)
            if identity is None:
                try:
                    identity = await self._verify_remotely(verifier, token)
                except (InvalidTokenError, UpstreamUnavailableError) as exc:
                    if not verifier.fail_open:
                        response = JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.errors))
                        await response(scope, receive, send)
                        return
        headers.extend(raw_identity_headers(identity))

        state = dict(scope.get("state") or {})
        state["identity"] = identity
        await self.app({**scope, "headers": headers, "state": state}, receive, send)

    @staticmethod
    async def _verify_remotely(verifier: EdgeVerifier, token: str) -> ValidationResult:
        try:
            result = await run_in_threadpool(verifier.verify_remotely, token)
        except UpstreamUnavailableError as exc:
            logger.warning("Error occurred during token validation: %s", exc.message)
            raise
        if not result.is_valid:
            logger.warning("Invalid token detected")
            raise InvalidTokenError("Invalid or expired access token.", errors=["Invalid token"])
        logger.info("Token validation successful for user: %s", result.user_id)
        return result
