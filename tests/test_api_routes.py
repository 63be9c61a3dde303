"""
tests/test_api_routes.py -- Integration tests for the /api/v1/auth/* routes.

Runs through the real ASGI stack (middleware, exception handlers, response
models) with the module-scoped api_client fixture. Each test registers its own
user under a unique name so tests stay independent while sharing one DB.

Covers:
  - Envelope shape and camelCase field names
  - Register -> login -> refresh -> change password walk-through
  - 401 / 409 / 422 / 400 / 404 status mapping
  - Cache-Control: no-store on token responses
  - Reset password never reveals whether the email exists
  - validate and validate-with-claims (the gateway's entry point)
  - Store faults become a generic 500 store_failure envelope
"""

from __future__ import annotations

import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import IntegrityError, OperationalError

from auth.store import CredentialStore


def _unique() -> str:
    return uuid.uuid4().hex[:10]


def _register(client: TestClient, name: str | None = None, password: str = "pw123456") -> dict:
    name = name or f"user_{_unique()}"
    resp = client.post(
        "/api/v1/auth/register",
        json={"username": name, "email": f"{name}@x.com", "password": password},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class TestEnvelope:
    def test_register_returns_camel_case_envelope(self, api_client) -> None:
        client, _, _ = api_client
        name = f"user_{_unique()}"
        resp = client.post(
            "/api/v1/auth/register",
            json={"username": name, "email": f"{name}@x.com", "password": "pw123456"},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert set(body) == {"success", "message", "data", "errors"}
        assert body["success"] is True
        data = body["data"]
        assert {"accessToken", "refreshToken", "tokenType", "expiresAt", "user"} <= set(data)
        assert data["tokenType"] == "bearer"
        assert data["user"]["username"] == name
        assert "hashedPassword" not in data["user"]
        assert resp.headers["cache-control"] == "no-store"

    def test_error_envelope_shape(self, api_client) -> None:
        client, _, _ = api_client
        resp = client.post("/api/v1/auth/refresh", json={"refreshToken": "never-issued"})
        assert resp.status_code == 401
        body = resp.json()
        assert body["success"] is False
        assert body["data"] is None
        assert body["errors"] == ["Invalid refresh token"]

    def test_unknown_route_is_enveloped(self, api_client) -> None:
        client, _, _ = api_client
        resp = client.get("/api/v1/nope")
        assert resp.status_code == 404
        assert resp.json()["success"] is False


class TestSessionWalkthrough:
    def test_full_lifecycle(self, api_client) -> None:
        client, _, _ = api_client
        name = f"alice_{_unique()}"
        registered = _register(client, name)

        login = client.post("/api/v1/auth/login", json={"usernameOrEmail": name, "password": "pw123456"})
        assert login.status_code == 200
        tokens = login.json()["data"]
        assert login.headers["cache-control"] == "no-store"

        # Login ended the registration session
        resp = client.post("/api/v1/auth/refresh", json={"refreshToken": registered["refreshToken"]})
        assert resp.status_code == 401

        refreshed = client.post("/api/v1/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert refreshed.status_code == 200
        current = refreshed.json()["data"]
        assert current["refreshToken"] != tokens["refreshToken"]

        replay = client.post("/api/v1/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert replay.status_code == 401

        wrong = client.post(
            "/api/v1/auth/change-password",
            json={"currentPassword": "not-it", "newPassword": "newpass123"},
            headers=_bearer(current["accessToken"]),
        )
        assert wrong.status_code == 401

        changed = client.post(
            "/api/v1/auth/change-password",
            json={"currentPassword": "pw123456", "newPassword": "newpass123"},
            headers=_bearer(current["accessToken"]),
        )
        assert changed.status_code == 200
        assert changed.json()["data"] is True

        resp = client.post("/api/v1/auth/refresh", json={"refreshToken": current["refreshToken"]})
        assert resp.status_code == 401

        relogin = client.post(
            "/api/v1/auth/login", json={"usernameOrEmail": f"{name}@x.com", "password": "newpass123"}
        )
        assert relogin.status_code == 200


class TestLoginAndRegister:
    def test_wrong_password_and_unknown_user_look_the_same(self, api_client) -> None:
        client, _, _ = api_client
        name = f"user_{_unique()}"
        _register(client, name)
        wrong = client.post("/api/v1/auth/login", json={"usernameOrEmail": name, "password": "nope-nope"})
        unknown = client.post(
            "/api/v1/auth/login", json={"usernameOrEmail": f"ghost_{_unique()}", "password": "nope-nope"}
        )
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()

    def test_duplicate_username_conflicts(self, api_client) -> None:
        client, _, _ = api_client
        name = f"user_{_unique()}"
        _register(client, name)
        resp = client.post(
            "/api/v1/auth/register",
            json={"username": name, "email": f"other_{_unique()}@x.com", "password": "pw123456"},
        )
        assert resp.status_code == 409
        assert resp.json()["errors"] == ["User already exists"]

    def test_duplicate_email_conflicts(self, api_client) -> None:
        client, _, _ = api_client
        name = f"user_{_unique()}"
        _register(client, name)
        resp = client.post(
            "/api/v1/auth/register",
            json={"username": f"other_{_unique()}", "email": f"{name}@x.com", "password": "pw123456"},
        )
        assert resp.status_code == 409

    @pytest.mark.parametrize(
        "payload",
        [
            {"username": "ab", "email": "ab@x.com", "password": "pw123456"},
            {"username": "valid_name", "email": "not-an-email", "password": "pw123456"},
            {"username": "valid_name", "email": "v@x.com", "password": "123"},
            {"username": "valid_name", "email": "v@x.com"},
        ],
    )
    def test_register_validation_errors(self, api_client, payload: dict) -> None:
        client, _, _ = api_client
        resp = client.post("/api/v1/auth/register", json=payload)
        assert resp.status_code == 422
        body = resp.json()
        assert body["success"] is False
        assert body["errors"]


class TestAuthenticatedRoutes:
    def test_me_returns_current_user(self, api_client) -> None:
        client, _, _ = api_client
        name = f"user_{_unique()}"
        data = _register(client, name)
        resp = client.get("/api/v1/auth/me", headers=_bearer(data["accessToken"]))
        assert resp.status_code == 200
        user = resp.json()["data"]
        assert user["username"] == name
        assert user["email"] == f"{name}@x.com"
        assert "createdAt" in user

    def test_me_requires_token(self, api_client) -> None:
        client, _, _ = api_client
        assert client.get("/api/v1/auth/me").status_code == 401
        assert client.get("/api/v1/auth/me", headers=_bearer("garbage")).status_code == 401

    def test_revoke_own_token_is_idempotent(self, api_client) -> None:
        client, _, _ = api_client
        data = _register(client)
        for _ in range(2):
            resp = client.post(
                "/api/v1/auth/revoke",
                json={"refreshToken": data["refreshToken"]},
                headers=_bearer(data["accessToken"]),
            )
            assert resp.status_code == 200
        assert client.post("/api/v1/auth/refresh", json={"refreshToken": data["refreshToken"]}).status_code == 401

    def test_revoke_someone_elses_token_is_not_found(self, api_client) -> None:
        client, orchestrator, _ = api_client
        victim = _register(client)
        attacker = _register(client)
        resp = client.post(
            "/api/v1/auth/revoke",
            json={"refreshToken": victim["refreshToken"]},
            headers=_bearer(attacker["accessToken"]),
        )
        assert resp.status_code == 404
        assert orchestrator.store.get_refresh_token(victim["refreshToken"]).is_revoked is False

    def test_revoke_all_ends_every_session(self, api_client) -> None:
        client, _, _ = api_client
        data = _register(client)
        resp = client.post("/api/v1/auth/revoke-all", headers=_bearer(data["accessToken"]))
        assert resp.status_code == 200
        assert client.post("/api/v1/auth/refresh", json={"refreshToken": data["refreshToken"]}).status_code == 401


class TestResetPassword:
    def test_known_and_unknown_email_answer_identically(self, api_client) -> None:
        client, _, delivery = api_client
        name = f"user_{_unique()}"
        _register(client, name)
        sent_before = len(delivery.sent)

        known = client.post("/api/v1/auth/reset-password", json={"email": f"{name}@x.com"})
        unknown = client.post("/api/v1/auth/reset-password", json={"email": f"ghost_{_unique()}@x.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()
        assert len(delivery.sent) == sent_before + 1
        _, temporary = delivery.sent[-1]
        assert temporary not in known.text

    def test_temporary_password_logs_in(self, api_client) -> None:
        client, _, delivery = api_client
        name = f"user_{_unique()}"
        _register(client, name)
        client.post("/api/v1/auth/reset-password", json={"email": f"{name}@x.com"})
        _, temporary = delivery.sent[-1]
        resp = client.post("/api/v1/auth/login", json={"usernameOrEmail": name, "password": temporary})
        assert resp.status_code == 200


class TestValidation:
    def test_validate_valid_and_invalid(self, api_client) -> None:
        client, _, _ = api_client
        data = _register(client)
        good = client.post("/api/v1/auth/validate", headers=_bearer(data["accessToken"]))
        bad = client.post("/api/v1/auth/validate", headers=_bearer("garbage"))
        assert good.status_code == bad.status_code == 200
        assert good.json()["data"] is True
        assert bad.json()["data"] is False

    def test_validate_with_claims_returns_identity(self, api_client) -> None:
        client, _, _ = api_client
        name = f"user_{_unique()}"
        data = _register(client, name)
        resp = client.post("/api/v1/auth/validate-with-claims", headers=_bearer(data["accessToken"]))
        assert resp.status_code == 200
        result = resp.json()["data"]
        assert result["isValid"] is True
        assert result["userId"] == str(data["user"]["id"])
        assert result["username"] == name
        assert result["email"] == f"{name}@x.com"

    def test_validate_with_claims_invalid_token(self, api_client) -> None:
        client, _, _ = api_client
        resp = client.post("/api/v1/auth/validate-with-claims", headers=_bearer("garbage"))
        assert resp.status_code == 200
        result = resp.json()["data"]
        assert result["isValid"] is False
        assert result["userId"] is None

    def test_missing_bearer_is_bad_request(self, api_client) -> None:
        client, _, _ = api_client
        resp = client.post("/api/v1/auth/validate-with-claims", headers={"Authorization": "Basic abc"})
        assert resp.status_code == 400
        assert resp.json()["errors"] == ["Invalid token format"]


def _disk_failure(conn, record):
    raise OperationalError("INSERT INTO refresh_tokens", {}, Exception("disk I/O error at /var/lib/authgate/auth.db"))


class TestStoreFailure:
    def test_store_fault_during_login_is_generic_500(self, api_client, monkeypatch) -> None:
        """A database fault during login returns a 500 envelope with no driver detail."""
        client, _, _ = api_client
        name = f"user_{_unique()}"
        _register(client, name)
        monkeypatch.setattr(CredentialStore, "_insert_refresh_token", staticmethod(_disk_failure))

        resp = client.post("/api/v1/auth/login", json={"usernameOrEmail": name, "password": "pw123456"})
        assert resp.status_code == 500
        body = resp.json()
        assert body["success"] is False
        assert body["errors"] == ["store_failure"]
        assert "disk I/O" not in resp.text
        assert "/var/lib" not in resp.text

    def test_store_fault_during_refresh_is_not_a_conflict(self, api_client, monkeypatch) -> None:
        """A constraint violation while rotating is reported as store_failure, not 409."""
        client, _, _ = api_client
        data = _register(client)

        def _fk_violation(conn, record):
            raise IntegrityError("INSERT INTO refresh_tokens", {}, Exception("FOREIGN KEY constraint failed"))

        monkeypatch.setattr(CredentialStore, "_insert_refresh_token", staticmethod(_fk_violation))
        resp = client.post("/api/v1/auth/refresh", json={"refreshToken": data["refreshToken"]})
        assert resp.status_code == 500
        assert resp.json()["errors"] == ["store_failure"]
        assert "FOREIGN KEY" not in resp.text
