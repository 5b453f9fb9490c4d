"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, schema_version and components
  - No authentication required
  - A broken database reports degraded rather than failing
"""

from __future__ import annotations

from database.migrations import EXPECTED_VERSION


def test_health_returns_200_with_components(api_client):
    """Health endpoint returns 200 with status, version and components."""
    resp = api_client.client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert "version" in data
    assert data["schema_version"] == EXPECTED_VERSION
    assert data["components"] == {"app": "ok", "database": "ok"}


def test_health_no_auth_required(api_client):
    api_client.client.cookies.clear()
    resp = api_client.client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


def test_health_reports_degraded_without_database(api_client):
    api_client.client.app.state.migration_runner = None
    resp = api_client.client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "degraded"
    assert data["components"]["database"] == "error"
    assert data["schema_version"] is None
