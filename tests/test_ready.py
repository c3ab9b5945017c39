"""
Tests for /health, /ready and /version.
"""
from __future__ import annotations

from unittest.mock import patch


def test_ready_ok(app_client):
    """Test /ready returns ok when all services are healthy."""
    _app, client = app_client

    with patch("app.routes.core._ping_redis", return_value=True):
        res = client.get("/ready")
        assert res.status_code == 200

        body = res.get_json()
        assert body["status"] == "ok"
        assert body["checks"] == {"db": "ok", "redis": "ok"}


def test_ready_degraded_when_db_down(app_client):
    _app, client = app_client

    with patch("app.routes.core.ping_db", return_value=False):
        res = client.get("/ready")
        assert res.status_code == 503
        assert res.get_json()["checks"]["db"] == "error"


def test_health_and_version(app_client):
    _app, client = app_client

    res = client.get("/health")
    assert res.status_code == 200
    assert res.get_json()["status"] == "ok"
    assert res.headers["X-Request-ID"]

    res = client.get("/version")
    assert res.get_json()["env"] == "test"


def test_unknown_endpoint_uses_error_envelope(app_client):
    _app, client = app_client

    res = client.get("/nope")
    assert res.status_code == 404
    assert res.get_json()["error"]["code"] == "NOT_FOUND"
