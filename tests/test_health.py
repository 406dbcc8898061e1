"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and components fields
  - components.database reports 'ok' while the store answers
  - 503 with status 'degraded' when the store does not
  - No authentication required
"""

from __future__ import annotations

from api.main import APP_VERSION


def test_health_returns_200_with_components(api_client):
    """Health endpoint returns 200 with status, version, and components."""
    resp = api_client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["version"] == APP_VERSION
    assert data["components"]["database"] == "ok"


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without any authentication headers."""
    resp = api_client.get("/api/v1/health", headers={})
    assert resp.status_code == 200


def test_health_degraded_when_store_down(api_client, monkeypatch):
    """A failing credential store turns the health check into a 503."""
    monkeypatch.setattr(api_client.app.state.user_store, "ping", lambda: False)
    resp = api_client.get("/api/v1/health")
    assert resp.status_code == 503
    data = resp.json()
    assert data["status"] == "degraded"
    assert data["components"]["database"] == "unavailable"


def test_docs_require_auth(api_client):
    """Swagger UI is behind the same bearer auth as the API."""
    assert api_client.get("/docs").status_code == 401
