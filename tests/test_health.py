"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and components fields
  - components.database reports 'ok' when both stores answer
  - No authentication required
  - Unknown routes use the structured error envelope
"""

from __future__ import annotations

from api.main import __version__


def test_health_returns_200_with_components(api_ctx):
    """Health endpoint returns 200 with status, version, and components."""
    resp = api_ctx.client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["version"] == __version__
    assert data["components"] == {"app": "ok", "database": "ok"}


def test_health_no_auth_required(api_ctx):
    """Health endpoint is accessible without any authentication headers."""
    resp = api_ctx.client.get("/api/v1/health", headers={})
    assert resp.status_code == 200


def test_unknown_route_uses_error_envelope(api_ctx):
    resp = api_ctx.client.get("/api/v1/does-not-exist")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "HTTP_404"
