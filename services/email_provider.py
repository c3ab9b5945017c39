"""
Transactional email over HTTPS (Brevo / SendGrid).

EMAIL_PROVIDER:
  - brevo:    Brevo only
  - sendgrid: SendGrid only
  - ab_test:  pick Brevo or SendGrid at random per message
  - fallback: Brevo first, SendGrid once if Brevo fails
  - console:  log the message instead of sending (local/dev)

Every attempt is recorded in `email_logs`.
"""
from __future__ import annotations

import logging
import random
import time
from typing import Any, Optional

import requests

from models import EmailLog
from utils import iso_utc_now


log = logging.getLogger("email")

BREVO_URL = "https://api.brevo.com/v3/smtp/email"
SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"

EMAIL_TYPES = {"otp", "welcome", "verification_report", "appeal_notification", "appeal_response", "other"}


class EmailSendError(Exception):
    pass


def _send_via_brevo(cfg, *, to: str, subject: str, html: str, text: str) -> str:
    if not cfg.BREVO_API_KEY:
        raise EmailSendError("Brevo API key not configured")
    payload: dict[str, Any] = {
        "sender": {"name": cfg.COMPANY_NAME, "email": cfg.FROM_EMAIL},
        "to": [{"email": to}],
        "subject": subject,
        "htmlContent": html,
    }
    if text:
        payload["textContent"] = text
    resp = requests.post(
        BREVO_URL,
        json=payload,
        headers={"api-key": cfg.BREVO_API_KEY, "accept": "application/json"},
        timeout=cfg.EMAIL_HTTP_TIMEOUT_SECONDS,
    )
    if resp.status_code >= 300:
        raise EmailSendError(f"Brevo HTTP {resp.status_code}: {resp.text[:200]}")
    try:
        message_id = str((resp.json() or {}).get("messageId") or "")
    except ValueError:
        message_id = ""
    return message_id or f"brevo-{int(time.time() * 1000)}"


def _send_via_sendgrid(cfg, *, to: str, subject: str, html: str, text: str) -> str:
    if not cfg.SENDGRID_API_KEY:
        raise EmailSendError("SendGrid API key not configured")
    content = []
    if text:
        content.append({"type": "text/plain", "value": text})
    content.append({"type": "text/html", "value": html})
    resp = requests.post(
        SENDGRID_URL,
        json={
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": cfg.FROM_EMAIL, "name": cfg.COMPANY_NAME},
            "subject": subject,
            "content": content,
        },
        headers={"Authorization": f"Bearer {cfg.SENDGRID_API_KEY}"},
        timeout=cfg.EMAIL_HTTP_TIMEOUT_SECONDS,
    )
    if resp.status_code >= 300:
        raise EmailSendError(f"SendGrid HTTP {resp.status_code}: {resp.text[:200]}")
    return str(resp.headers.get("X-Message-Id") or "") or f"sg-{int(time.time() * 1000)}"


def _send_via_console(cfg, *, to: str, subject: str, html: str, text: str) -> str:
    log.info("console email to=%s subject=%s body=%s", to, subject, (text or html)[:500])
    return f"console-{int(time.time() * 1000)}"


_SENDERS = {
    "brevo": _send_via_brevo,
    "sendgrid": _send_via_sendgrid,
    "console": _send_via_console,
}


def select_provider(mode: str) -> str:
    mode = str(mode or "brevo").strip().lower()
    if mode == "ab_test":
        return random.choice(["brevo", "sendgrid"])
    if mode in {"sendgrid", "console"}:
        return mode
    return "brevo"


def _log_email(session_factory, **fields) -> None:
    if session_factory is None:
        return
    try:
        with session_factory() as db:
            db.add(EmailLog(createdAt=iso_utc_now(), **fields))
            db.commit()
    except Exception:
        log.exception("failed to write email log provider=%s", fields.get("provider"))


def send_email(
    cfg,
    *,
    to: str,
    subject: str,
    html: str,
    text: str = "",
    email_type: str = "other",
    session_factory: Optional[Any] = None,
) -> dict[str, Any]:
    """Send one message; returns {ok, provider, messageId, error}. Provider errors are not raised."""
    email_type = email_type if email_type in EMAIL_TYPES else "other"
    mode = str(getattr(cfg, "EMAIL_PROVIDER", "brevo") or "brevo").lower()
    providers = [select_provider(mode)]
    if mode == "fallback":
        providers.append("sendgrid")

    last_error = ""
    for provider in providers:
        started = time.monotonic()
        try:
            message_id = _SENDERS[provider](cfg, to=to, subject=subject, html=html, text=text)
        except (EmailSendError, requests.RequestException) as e:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            last_error = str(e)
            log.warning("email send failed provider=%s type=%s error=%s", provider, email_type, last_error)
            _log_email(
                session_factory,
                provider=provider,
                emailType=email_type,
                recipient=to,
                subject=subject,
                status="failed",
                responseTimeMs=elapsed_ms,
                messageId="",
                error=last_error[:1000],
            )
            continue

        elapsed_ms = int((time.monotonic() - started) * 1000)
        log.info("email sent provider=%s type=%s ms=%s", provider, email_type, elapsed_ms)
        _log_email(
            session_factory,
            provider=provider,
            emailType=email_type,
            recipient=to,
            subject=subject,
            status="sent",
            responseTimeMs=elapsed_ms,
            messageId=message_id,
            error="",
        )
        return {"ok": True, "provider": provider, "messageId": message_id, "error": ""}

    return {"ok": False, "provider": providers[-1], "messageId": "", "error": last_error}
