from __future__ import annotations

import json
from unittest.mock import patch

import pytest
from sqlalchemy import select

from auth import SessionAuthenticator, TestTokenAuthenticator, build_authenticator
from cache_layer import cache_clear
from config import Config
from db import SessionLocal
from models import AccessLog, Admin, Otp, Verifier
from passwords import hash_password
from utils import iso_utc_now


def _api(client, payload: dict):
    return client.post("/api", data=json.dumps(payload), content_type="text/plain; charset=utf-8")


def _register(client, email="checks@acme-verify.com", password="Str0ng!Pass"):
    return _api(client, {"action": "VERIFIER_REGISTER", "data": {"companyName": "Acme Verify", "email": email, "password": password}})


def test_register_then_login_and_me(app_client):
    _app, client = app_client

    res = _register(client)
    assert res.status_code == 200
    reg = res.get_json()["data"]
    assert reg["me"]["role"] == "VERIFIER"
    assert reg["me"]["verifierId"].startswith("VRF-")

    res = _api(client, {"action": "VERIFIER_LOGIN", "data": {"email": "CHECKS@acme-verify.com", "password": "Str0ng!Pass"}})
    assert res.status_code == 200
    token = res.get_json()["data"]["sessionToken"]

    res = client.get("/api/me", headers={"Authorization": f"Bearer {token}"})
    me = res.get_json()["data"]["me"]
    assert me["email"] == "checks@acme-verify.com"
    assert me["name"] == "Acme Verify"

    res = _api(client, {"action": "LOGOUT", "token": token, "data": {}})
    assert res.get_json()["data"]["revoked"] is True
    res = _api(client, {"action": "GET_ME", "token": token, "data": {}})
    assert res.status_code == 401


def test_register_rejects_duplicates_weak_passwords_and_free_mail(app_client):
    _app, client = app_client

    assert _register(client).status_code == 200
    res = _register(client)
    assert res.status_code == 409

    res = _register(client, email="someone@gmail.com")
    assert res.status_code == 400
    assert "company email" in res.get_json()["error"]["message"]

    res = _register(client, email="new@acme-verify.com", password="password")
    assert res.status_code == 400
    assert "Password must include" in res.get_json()["error"]["message"]


def test_failed_login_is_logged(app_client):
    _app, client = app_client
    _register(client)

    res = _api(client, {"action": "VERIFIER_LOGIN", "data": {"email": "checks@acme-verify.com", "password": "Wr0ng!Pass"}})
    assert res.status_code == 401

    with SessionLocal() as db:
        statuses = db.execute(select(AccessLog.status).where(AccessLog.action == "LOGIN")).scalars().all()
    assert statuses == ["FAILURE"]


def test_disabled_verifier_session_is_forbidden(app_client):
    _app, client = app_client
    token = _register(client).get_json()["data"]["sessionToken"]

    with SessionLocal() as db:
        ver = db.execute(select(Verifier)).scalar_one()
        ver.isActive = False
        db.commit()

    res = _api(client, {"action": "GET_ME", "token": token, "data": {}})
    assert res.status_code == 403


def test_otp_login_creates_verifier(app_client):
    _app, client = app_client

    with patch("services.otp.generate_otp", return_value="123456"):
        res = client.post("/api/auth/send-otp", json={"email": "hr@globex-checks.com"})
    assert res.status_code == 200
    assert res.get_json()["data"]["sent"] is True

    res = client.post("/api/auth/verify-otp", json={"email": "hr@globex-checks.com", "otp": "000000"})
    assert res.status_code == 401
    assert "2 attempt(s) remaining" in res.get_json()["error"]["message"]

    res = client.post("/api/auth/verify-otp", json={"email": "hr@globex-checks.com", "otp": "123456"})
    assert res.status_code == 200
    me = res.get_json()["data"]["me"]
    assert me["companyName"] == "GLOBEX-CHECKS"
    assert me["isEmailVerified"] is True

    with SessionLocal() as db:
        assert db.execute(select(Otp)).scalars().all() == []

    # Codes are single use.
    res = client.post("/api/auth/verify-otp", json={"email": "hr@globex-checks.com", "otp": "123456"})
    assert res.status_code == 401


def test_otp_locks_after_max_attempts(app_client):
    _app, client = app_client

    with patch("services.otp.generate_otp", return_value="123456"):
        client.post("/api/auth/send-otp", json={"email": "hr@globex-checks.com"})

    for _ in range(3):
        client.post("/api/auth/verify-otp", json={"email": "hr@globex-checks.com", "otp": "999999"})
    res = client.post("/api/auth/verify-otp", json={"email": "hr@globex-checks.com", "otp": "123456"})
    assert res.status_code == 401
    assert "request a new OTP" in res.get_json()["error"]["message"]


def test_otp_send_reports_delivery_failure(app_client):
    _app, client = app_client

    with patch("services.notifier.send_email", return_value={"ok": False, "provider": "console", "messageId": "", "error": "down"}):
        res = client.post("/api/auth/send-otp", json={"email": "hr@globex-checks.com"})
    assert res.status_code == 503
    assert res.get_json()["error"]["code"] == "UNAVAILABLE"

    with SessionLocal() as db:
        assert db.execute(select(Otp)).scalars().all() == []


def test_admin_login(app_client):
    _app, client = app_client
    now = iso_utc_now()
    with SessionLocal() as db:
        db.add(
            Admin(
                adminId="ADM-00001",
                username="hradmin",
                email="hr.admin@company.com",
                fullName="HR Admin",
                passwordHash=hash_password("Adm1n!Pass"),
                role="HR_MANAGER",
                permissionsCsv="view_appeals,view_reports",
                isActive=True,
                createdAt=now,
                updatedAt=now,
            )
        )
        db.commit()

    res = client.post("/api/admin/login", json={"username": "hradmin", "password": "nope"})
    assert res.status_code == 401

    res = client.post("/api/admin/login", json={"username": "HRADMIN", "password": "Adm1n!Pass"})
    assert res.status_code == 200
    data = res.get_json()["data"]
    assert data["me"]["role"] == "HR_MANAGER"
    assert data["me"]["capabilities"] == ["view_appeals", "view_reports"]

    res = client.get("/api/admin/dashboard", headers={"Authorization": f"Bearer {data['sessionToken']}"})
    assert res.status_code == 200

    res = client.post(
        "/api/admin/appeals/APL-2024-00001/respond",
        json={"decision": "approved", "hrResponse": "Long enough response"},
        headers={"Authorization": f"Bearer {data['sessionToken']}"},
    )
    assert res.status_code == 403


def test_unknown_action_and_bad_body(app_client):
    _app, client = app_client

    res = _api(client, {"action": "DROP_TABLES", "token": "TEST:ADMIN:ADM-1", "data": {}})
    assert res.status_code == 400

    res = client.post("/api", data="not json", content_type="text/plain")
    assert res.status_code == 400


def test_test_tokens_require_explicit_opt_in(app_client, monkeypatch):
    monkeypatch.setenv("AUTH_ALLOW_TEST_TOKENS", "0")
    assert type(build_authenticator(Config())) is SessionAuthenticator

    monkeypatch.setenv("AUTH_ALLOW_TEST_TOKENS", "1")
    assert isinstance(build_authenticator(Config()), TestTokenAuthenticator)

    monkeypatch.setenv("APP_ENV", "production")
    with pytest.raises(RuntimeError):
        Config().validate()


def test_session_authenticator_ignores_test_tokens(app_client):
    cache_clear()
    with SessionLocal() as db:
        assert SessionAuthenticator().authenticate(db, "TEST:ADMIN:ADM-1").valid is False
