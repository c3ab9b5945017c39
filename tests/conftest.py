from __future__ import annotations

import pytest

from cache_layer import cache_clear


@pytest.fixture()
def app_client(tmp_path, monkeypatch):
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'test.db'}")
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("AUTH_ALLOW_TEST_TOKENS", "1")
    monkeypatch.setenv("EMAIL_PROVIDER", "console")
    monkeypatch.setenv("NOTIFY_DISPATCH", "inline")
    monkeypatch.setenv("SEED_DEMO_DATA", "1")
    monkeypatch.setenv("OTP_RESEND_COOLDOWN_SECONDS", "0")
    monkeypatch.setenv("RATE_LIMIT_LOGIN", "1000")
    monkeypatch.setenv("EXIT_TEAM_EMAIL", "exitteam@example.com")
    monkeypatch.setenv("ADMIN_BOOTSTRAP_USERNAME", "")
    monkeypatch.setenv("ADMIN_BOOTSTRAP_PASSWORD", "")
    cache_clear()

    from app import create_app

    app = create_app()
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield app, client
    cache_clear()
