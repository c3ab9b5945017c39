from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import requests
from sqlalchemy import select

from db import SessionLocal
from models import EmailLog
from services.email_provider import BREVO_URL, SENDGRID_URL, send_email
from services.notifier import KIND_APPEAL_RESOLVED, Notification, Notifier, queue_after_commit, render


def _cfg(**overrides):
    base = dict(
        EMAIL_PROVIDER="fallback",
        BREVO_API_KEY="brevo-key",
        SENDGRID_API_KEY="sg-key",
        EMAIL_HTTP_TIMEOUT_SECONDS=5,
        FROM_EMAIL="noreply@company.com",
        COMPANY_NAME="Verification Portal",
        SUPPORT_EMAIL="hr@company.com",
    )
    base.update(overrides)
    return SimpleNamespace(**base)


def _resp(status: int, body: dict | None = None, headers: dict | None = None):
    r = MagicMock()
    r.status_code = status
    r.text = "error" if status >= 300 else ""
    r.json.return_value = body or {}
    r.headers = headers or {}
    return r


def test_fallback_uses_sendgrid_when_brevo_fails(app_client):
    calls = []

    def _post(url, **kwargs):
        calls.append(url)
        if url == BREVO_URL:
            return _resp(500)
        return _resp(202, headers={"X-Message-Id": "sg-123"})

    with patch("services.email_provider.requests.post", side_effect=_post):
        res = send_email(_cfg(), to="a@acme.com", subject="Hi", html="<p>Hi</p>", email_type="otp", session_factory=SessionLocal)

    assert calls == [BREVO_URL, SENDGRID_URL]
    assert res == {"ok": True, "provider": "sendgrid", "messageId": "sg-123", "error": ""}

    with SessionLocal() as db:
        logs = db.execute(select(EmailLog).order_by(EmailLog.id)).scalars().all()
    assert [(l.provider, l.status) for l in logs] == [("brevo", "failed"), ("sendgrid", "sent")]


def test_single_provider_failure_is_reported_not_raised(app_client):
    with patch("services.email_provider.requests.post", side_effect=requests.ConnectionError("no route")):
        res = send_email(_cfg(EMAIL_PROVIDER="brevo"), to="a@acme.com", subject="Hi", html="<p>Hi</p>")

    assert res["ok"] is False
    assert res["provider"] == "brevo"
    assert "no route" in res["error"]


def test_missing_api_key_fails_without_http_call():
    with patch("services.email_provider.requests.post") as post:
        res = send_email(_cfg(EMAIL_PROVIDER="sendgrid", SENDGRID_API_KEY=""), to="a@acme.com", subject="Hi", html="x")
    post.assert_not_called()
    assert res["ok"] is False


def test_notify_never_raises():
    notifier = Notifier(_cfg(), mode="inline")
    with patch("services.notifier.send_email", side_effect=RuntimeError("boom")):
        assert notifier.notify(KIND_APPEAL_RESOLVED, "a@acme.com", {"status": "approved"}) == {"delivered": False}
    assert notifier.notify(KIND_APPEAL_RESOLVED, "", {}) == {"delivered": False}


def test_render_escapes_user_content():
    subject, html, text, email_type = render(
        _cfg(), KIND_APPEAL_RESOLVED, {"appealId": "APL-2024-00001", "status": "rejected", "hrResponse": "<script>x</script>"}
    )
    assert email_type == "appeal_response"
    assert "rejected" in subject
    assert "<script>" not in html
    assert "&lt;script&gt;" in html


def test_queued_notifications_fire_only_after_commit(app_client):
    notifier = MagicMock()

    with SessionLocal() as db:
        db.execute(select(EmailLog.id)).all()
        queue_after_commit(db, notifier, KIND_APPEAL_RESOLVED, "a@acme.com", {"appealId": "APL-1"})
        notifier.dispatch.assert_not_called()
        db.commit()
    notifier.dispatch.assert_called_once()
    sent = notifier.dispatch.call_args[0][0]
    assert (sent.kind, sent.recipient, sent.payload) == (KIND_APPEAL_RESOLVED, "a@acme.com", {"appealId": "APL-1"})

    notifier.reset_mock()
    with SessionLocal() as db:
        db.execute(select(EmailLog.id)).all()
        queue_after_commit(db, notifier, KIND_APPEAL_RESOLVED, "a@acme.com", {})
        db.rollback()
        db.commit()
    notifier.dispatch.assert_not_called()


def test_thread_dispatch_returns_before_delivery():
    notifier = Notifier(_cfg(), mode="thread")
    started = MagicMock()

    with patch("services.notifier.threading.Thread") as thread_cls:
        thread_cls.return_value.start = started
        notifier.dispatch(Notification(kind=KIND_APPEAL_RESOLVED, recipient="a@acme.com"))

    started.assert_called_once()
    assert thread_cls.call_args.kwargs["daemon"] is True
