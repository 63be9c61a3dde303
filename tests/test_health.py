"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and components fields
  - components.database reports 'ok' when the store answers, 'error' when not
  - No authentication required
"""

from __future__ import annotations

from unittest.mock import patch

from auth.errors import StoreFailureError


def test_health_returns_200_with_components(api_client):
    """Health endpoint returns 200 with status, version, and components."""
    client, _, _ = api_client
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert "version" in data
    assert data["components"]["app"] == "ok"
    assert data["components"]["database"] == "ok"


def test_health_reports_database_error(api_client):
    """A failing store shows up as components.database == 'error', still 200."""
    client, orchestrator, _ = api_client
    with patch.object(orchestrator.store, "ping", side_effect=StoreFailureError("down")):
        resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json()["components"]["database"] == "error"


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without any authentication headers."""
    client, _, _ = api_client
    # Explicitly make request with no auth headers
    resp = client.get("/api/v1/health", headers={})
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"
