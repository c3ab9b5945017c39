from __future__ import annotations

import csv
import io
import json

from db import SessionLocal
from models import EmailLog
from utils import iso_utc_now


VERIFIER = "TEST:VERIFIER:VRF-T1"
ADMIN = "TEST:ADMIN:ADM-1"


def _api(client, payload: dict):
    return client.post("/api", data=json.dumps(payload), content_type="text/plain; charset=utf-8")


def _submit(client, **overrides):
    data = {
        "employeeId": "6002057",
        "name": "Rajesh Kumar",
        "entityName": "TVS Credit",
        "designation": "Assistant Manager",
        "dateOfJoining": "2020-03-15",
        "dateOfLeaving": "2024-01-20",
        "exitReason": "Resigned",
        "consentGiven": True,
    }
    data.update(overrides)
    return _api(client, {"action": "VERIFICATION_SUBMIT", "token": VERIFIER, "data": data})


def test_dashboard_counts_and_trend(app_client):
    _app, client = app_client
    _submit(client)
    _submit(client, designation="Manager")

    res = client.get("/api/admin/dashboard", headers={"Authorization": f"Bearer {ADMIN}"})
    assert res.status_code == 200
    data = res.get_json()["data"]

    assert data["summary"]["totalVerifications"] == 2
    assert data["summary"]["recentVerifications"] == 2
    assert data["summary"]["totalEmployees"] == 2
    assert data["summary"]["pendingAppeals"] == 0
    assert data["breakdowns"]["verificationStatus"] == {"matched": 1, "partial_match": 1}

    trend = data["trends"]["verifications"]
    assert len(trend) == 7
    assert trend[-1]["count"] == 2
    assert sum(t["count"] for t in trend) == 2
    assert [a["type"] for a in data["recentActivities"]] == ["verification", "verification"]


def test_dashboard_requires_admin(app_client):
    _app, client = app_client

    assert client.get("/api/admin/dashboard").status_code == 401
    assert client.get("/api/admin/dashboard", headers={"Authorization": f"Bearer {VERIFIER}"}).status_code == 403


def test_export_csv(app_client):
    _app, client = app_client
    _submit(client)

    res = client.get("/api/admin/export?format=csv", headers={"Authorization": f"Bearer {ADMIN}"})
    assert res.status_code == 200
    assert res.mimetype == "text/csv"

    rows = list(csv.DictReader(io.StringIO(res.get_data(as_text=True))))
    assert len(rows) == 1
    assert rows[0]["S.No"] == "1"
    assert rows[0]["Employee ID"] == "6002057"
    assert rows[0]["Employee Name"] == "Rajesh Kumar"
    assert rows[0]["Date of Joining"] == "15/03/2020"
    assert rows[0]["Last Working Day"] == "20/01/2024"
    assert rows[0]["Status"] == "matched"
    assert rows[0]["Match Score"] == "100"

    res = client.get("/api/admin/export", headers={"Authorization": f"Bearer {ADMIN}"})
    assert res.get_json()["data"]["total"] == 1

    res = client.get("/api/admin/export?format=xlsx", headers={"Authorization": f"Bearer {ADMIN}"})
    assert res.status_code == 400


def test_access_logs_filters(app_client):
    _app, client = app_client
    _api(client, {"action": "VERIFIER_LOGIN", "data": {"email": "nobody@acme-verify.com", "password": "Wr0ng!Pass"}})
    _api(
        client,
        {"action": "VERIFIER_REGISTER", "data": {"companyName": "Acme", "email": "ok@acme-verify.com", "password": "Str0ng!Pass"}},
    )

    res = client.get("/api/admin/logs?status=FAILURE", headers={"Authorization": f"Bearer {ADMIN}"})
    items = res.get_json()["data"]["items"]
    assert [i["email"] for i in items] == ["nobody@acme-verify.com"]
    assert items[0]["failureReason"] == "unknown email"

    res = client.get("/api/admin/logs?role=VERIFIER", headers={"Authorization": f"Bearer {ADMIN}"})
    assert res.get_json()["data"]["pagination"]["total"] == 2


def test_email_stats(app_client):
    _app, client = app_client
    now = iso_utc_now()
    with SessionLocal() as db:
        for provider, status, ms in [("brevo", "sent", 100), ("brevo", "failed", 300), ("sendgrid", "sent", 200)]:
            db.add(EmailLog(provider=provider, emailType="otp", recipient="someone@acme.com", subject="x", status=status, responseTimeMs=ms, createdAt=now))
        db.commit()

    res = client.get("/api/admin/email-stats?days=7", headers={"Authorization": f"Bearer {ADMIN}"})
    data = res.get_json()["data"]

    brevo = data["comparison"]["brevo"]
    assert (brevo["totalEmails"], brevo["successCount"], brevo["failureCount"]) == (2, 1, 1)
    assert brevo["successRate"] == 50.0
    assert (brevo["avgResponseTime"], brevo["minResponseTime"], brevo["maxResponseTime"]) == (200, 100, 300)
    assert data["comparison"]["sendgrid"]["successCount"] == 1
    assert data["recommendation"] == "insufficient_data"
    assert all(r["recipient"] == "som****" for r in data["recentLogs"])
