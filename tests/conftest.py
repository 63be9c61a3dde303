"""
tests/conftest.py -- Shared test fixtures for authgate.

This module provides:
  - jwt_config / issuer: a TokenIssuer with a fixed test key
  - store / orchestrator: isolated in-memory CredentialStore per test
  - api_client: TestClient for the auth service with a patched lifespan
  - make_gateway: factory yielding a TestClient for the edge service with a
    mocked auth-service session and a recording downstream proxy

Design: The API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

DEBUG and the rate limits must be set before any api/gateway import so
get_settings() auto-generates SECRET_KEY instead of raising ValueError and so
the limiters never trip during a test run.
"""

from __future__ import annotations

import json
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from unittest.mock import MagicMock

# CRITICAL: Set before any core/api/gateway import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("GATEWAY_RATE_LIMIT", "1000/minute")

import pytest
import requests
from fastapi.testclient import TestClient

from api.main import app
from auth.models import User
from auth.sessions import SessionOrchestrator
from auth.store import CredentialStore
from auth.tokens import JwtConfig, TokenIssuer
from gateway.main import app as gateway_app
from gateway.verifier import EdgeVerifier

TEST_SECRET = "test-secret-key-with-at-least-32-characters!"
VALIDATION_ENDPOINT = "http://auth.test/api/v1/auth/validate-with-claims"


# ---------------------------------------------------------------------------
# Domain fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def jwt_config() -> JwtConfig:
    return JwtConfig(secret_key=TEST_SECRET, issuer="authgate-test", audience="authgate-test-clients")


@pytest.fixture
def issuer(jwt_config: JwtConfig) -> TokenIssuer:
    return TokenIssuer(jwt_config)


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:")
    yield s
    s.close()


@dataclass
class RecordingDelivery:
    """Stands in for the email channel; keeps (user, password) pairs."""

    sent: list[tuple[User, str]] = field(default_factory=list)

    def __call__(self, user: User, temporary_password: str) -> None:
        self.sent.append((user, temporary_password))


@pytest.fixture
def delivery() -> RecordingDelivery:
    return RecordingDelivery()


@pytest.fixture
def orchestrator(store: CredentialStore, issuer: TokenIssuer, delivery: RecordingDelivery) -> SessionOrchestrator:
    return SessionOrchestrator(store, issuer, reset_delivery=delivery)


# ---------------------------------------------------------------------------
# Auth service client
# ---------------------------------------------------------------------------


def _patch_auth_lifespan(orchestrator: SessionOrchestrator):
    """Return a lifespan that wires a pre-built orchestrator into app.state."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = orchestrator.store
        app.state.issuer = orchestrator.issuer
        app.state.orchestrator = orchestrator
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, SessionOrchestrator, RecordingDelivery], None, None]:
    """Yield (client, orchestrator, delivery) for auth service integration tests.

    One TestClient per test module for speed. Tests use unique usernames so
    they do not depend on each other's data.
    """
    store = CredentialStore("sqlite:///file:test_auth_api?mode=memory&cache=shared&uri=true")
    config = JwtConfig(secret_key=TEST_SECRET, issuer="authgate-test", audience="authgate-test-clients")
    delivery = RecordingDelivery()
    orchestrator = SessionOrchestrator(store, TokenIssuer(config), reset_delivery=delivery)

    app.router.lifespan_context = _patch_auth_lifespan(orchestrator)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, orchestrator, delivery

    store.close()


# ---------------------------------------------------------------------------
# Gateway client
# ---------------------------------------------------------------------------


def _json_response(status_code: int, payload: object) -> requests.Response:
    """Build a real requests.Response carrying a JSON body."""
    resp = requests.Response()
    resp.status_code = status_code
    resp._content = json.dumps(payload).encode("utf-8")
    resp.headers["Content-Type"] = "application/json"
    return resp


class RecordingProxy:
    """Downstream stand-in: records what the edge forwarded and answers 200."""

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.error: Exception | None = None

    def forward(self, method: str, path: str, query: str, headers: dict[str, str], body: bytes) -> requests.Response:
        self.calls.append({"method": method, "path": path, "query": query, "headers": headers, "body": body})
        if self.error is not None:
            raise self.error
        return _json_response(200, {"downstream": "ok"})

    @property
    def last_headers(self) -> dict[str, str]:
        """Forwarded headers with lower-cased names."""
        return {k.lower(): v for k, v in self.calls[-1]["headers"].items()}

    def close(self) -> None:
        pass


@dataclass
class GatewayHarness:
    client: TestClient
    verifier: EdgeVerifier
    session: MagicMock
    proxy: RecordingProxy


@pytest.fixture
def make_gateway(jwt_config: JwtConfig) -> Generator[Callable[..., GatewayHarness], None, None]:
    """Factory: make_gateway(fail_open=False, local=True) -> GatewayHarness.

    local=False builds a verifier without an issuer, forcing every bearer
    token through the (mocked) remote validation call.
    """
    clients: list[TestClient] = []

    def _make(fail_open: bool = False, local: bool = True) -> GatewayHarness:
        session = MagicMock()
        verifier = EdgeVerifier(
            issuer=TokenIssuer(jwt_config) if local else None,
            endpoint=VALIDATION_ENDPOINT,
            timeout=1.0,
            fail_open=fail_open,
            session=session,
        )
        proxy = RecordingProxy()

        @asynccontextmanager
        async def test_lifespan(app):
            app.state.verifier = verifier
            app.state.proxy = proxy
            yield

        gateway_app.router.lifespan_context = test_lifespan
        client = TestClient(gateway_app, raise_server_exceptions=True)
        client.__enter__()
        clients.append(client)
        return GatewayHarness(client=client, verifier=verifier, session=session, proxy=proxy)

    yield _make

    for client in clients:
        client.__exit__(None, None, None)
