"""
Best-effort notifications decoupled from the request/response path.

Actions call `queue_after_commit()`; the message is held on the SQLAlchemy
session and only handed to the dispatcher once the transaction commits, so a
rolled-back action never notifies. Delivery failures are logged and dropped.

NOTIFY_DISPATCH:
  - thread: daemon thread per message (default)
  - celery: `app.tasks.notifications.send_notification_task`
  - inline: deliver inside the commit hook (tests)
"""
from __future__ import annotations

import html
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from sqlalchemy import event

from services.email_provider import send_email


log = logging.getLogger("notify")

KIND_OTP = "otp"
KIND_WELCOME = "welcome"
KIND_APPEAL_CREATED = "appeal_created"
KIND_APPEAL_RESOLVED = "appeal_resolved"

_PENDING_KEY = "pending_notifications"


@dataclass
class Notification:
    kind: str
    recipient: str
    payload: dict[str, Any] = field(default_factory=dict)


def _e(value: Any) -> str:
    return html.escape(str(value or ""))


def _layout(cfg, title: str, body_html: str) -> str:
    return (
        "<div style=\"font-family:Arial,sans-serif;max-width:600px;margin:0 auto\">"
        f"<h2 style=\"color:#1e3a8a\">{_e(title)}</h2>"
        f"{body_html}"
        "<hr style=\"border:none;border-top:1px solid #e5e7eb\"/>"
        f"<p style=\"color:#6b7280;font-size:12px\">{_e(cfg.COMPANY_NAME)} &middot; {_e(cfg.SUPPORT_EMAIL)}</p>"
        "</div>"
    )


def render(cfg, kind: str, payload: dict[str, Any]) -> tuple[str, str, str, str]:
    """Returns (subject, html, text, email_type)."""
    p = payload or {}
    if kind == KIND_OTP:
        minutes = max(1, int(p.get("ttlSeconds") or 300) // 60)
        subject = f"Your OTP Code - {cfg.COMPANY_NAME}"
        body = (
            f"<p>Your one-time password is:</p><p style=\"font-size:28px;letter-spacing:6px\"><b>{_e(p.get('otp'))}</b></p>"
            f"<p>This code expires in {minutes} minutes. Do not share it with anyone.</p>"
        )
        text = f"Your OTP code is {p.get('otp')}. It expires in {minutes} minutes."
        return subject, _layout(cfg, "Login verification", body), text, "otp"

    if kind == KIND_WELCOME:
        subject = f"Welcome to {cfg.COMPANY_NAME}"
        body = f"<p>Hello {_e(p.get('companyName'))},</p><p>Your verifier account has been created.</p>"
        return subject, _layout(cfg, "Welcome", body), f"Your verifier account for {p.get('companyName')} has been created.", "welcome"

    if kind == KIND_APPEAL_CREATED:
        subject = f"New verification appeal {p.get('appealId')} - {p.get('employeeId')}"
        rows = "".join(
            f"<li>{_e(f.get('fieldName'))}: verifier <b>{_e(f.get('verifierValue'))}</b> / company <b>{_e(f.get('companyValue'))}</b></li>"
            for f in (p.get("mismatchedFields") or [])
        )
        body = (
            f"<p>Verifier <b>{_e(p.get('verifierName'))}</b> ({_e(p.get('verifierEmail'))}) raised an appeal "
            f"for employee <b>{_e(p.get('employeeId'))}</b> (verification {_e(p.get('verificationId'))}).</p>"
            f"<p><b>Comments:</b> {_e(p.get('comments'))}</p>"
            f"<ul>{rows}</ul>"
        )
        text = f"Appeal {p.get('appealId')} raised for employee {p.get('employeeId')}: {p.get('comments')}"
        return subject, _layout(cfg, "Verification appeal received", body), text, "appeal_notification"

    if kind == KIND_APPEAL_RESOLVED:
        status = str(p.get("status") or "").lower()
        subject = f"Your appeal {p.get('appealId')} has been {status}"
        body = (
            f"<p>Your appeal for employee <b>{_e(p.get('employeeId'))}</b> (verification {_e(p.get('verificationId'))}) "
            f"has been <b>{_e(status)}</b>.</p>"
            f"<p><b>HR response:</b> {_e(p.get('hrResponse'))}</p>"
        )
        text = f"Your appeal {p.get('appealId')} has been {status}. HR response: {p.get('hrResponse')}"
        return subject, _layout(cfg, "Appeal update", body), text, "appeal_response"

    raise ValueError(f"Unknown notification kind: {kind}")


class Notifier:
    def __init__(self, cfg, *, session_factory: Optional[Callable[[], Any]] = None, mode: str = "thread"):
        self.cfg = cfg
        self.session_factory = session_factory
        self.mode = str(mode or "thread").lower()

    def notify(self, kind: str, recipient: str, payload: Optional[dict[str, Any]] = None) -> dict[str, bool]:
        """Deliver now. Never raises."""
        if not recipient:
            log.warning("notification skipped kind=%s reason=no-recipient", kind)
            return {"delivered": False}
        try:
            subject, body_html, text, email_type = render(self.cfg, kind, payload or {})
            res = send_email(
                self.cfg,
                to=recipient,
                subject=subject,
                html=body_html,
                text=text,
                email_type=email_type,
                session_factory=self.session_factory,
            )
        except Exception:
            log.exception("notification failed kind=%s to=%s", kind, recipient)
            return {"delivered": False}

        if not res.get("ok"):
            log.error("notification not delivered kind=%s to=%s error=%s", kind, recipient, res.get("error"))
        return {"delivered": bool(res.get("ok"))}

    def dispatch(self, notification: Notification) -> None:
        """Hand off without waiting for delivery."""
        if self.mode == "inline":
            self.notify(notification.kind, notification.recipient, notification.payload)
            return

        if self.mode == "celery":
            try:
                from app.tasks.notifications import send_notification_task

                send_notification_task.delay(notification.kind, notification.recipient, notification.payload)
            except Exception:
                log.exception("notification enqueue failed kind=%s to=%s", notification.kind, notification.recipient)
            return

        t = threading.Thread(
            target=self.notify,
            args=(notification.kind, notification.recipient, notification.payload),
            name=f"notify-{notification.kind}",
            daemon=True,
        )
        t.start()


def queue_after_commit(db, notifier: Optional[Notifier], kind: str, recipient: str, payload: Optional[dict[str, Any]] = None) -> None:
    if notifier is None:
        log.warning("notification dropped kind=%s reason=no-notifier", kind)
        return
    db.info.setdefault(_PENDING_KEY, []).append((notifier, Notification(kind=kind, recipient=recipient, payload=dict(payload or {}))))


def _flush_pending(session) -> None:
    pending = session.info.pop(_PENDING_KEY, None) or []
    for notifier, notification in pending:
        try:
            notifier.dispatch(notification)
        except Exception:
            log.exception("notification dispatch failed kind=%s", notification.kind)


def _discard_pending(session) -> None:
    session.info.pop(_PENDING_KEY, None)


def install_session_hooks(session_factory) -> None:
    """Attach commit/rollback hooks once per session factory."""
    if not event.contains(session_factory, "after_commit", _flush_pending):
        event.listen(session_factory, "after_commit", _flush_pending)
    if not event.contains(session_factory, "after_soft_rollback", _on_soft_rollback):
        event.listen(session_factory, "after_soft_rollback", _on_soft_rollback)


def _on_soft_rollback(session, previous_transaction) -> None:
    if previous_transaction.parent is None:
        _discard_pending(session)
