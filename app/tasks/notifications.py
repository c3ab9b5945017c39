"""
Worker-side delivery for notifications enqueued by services.notifier.
"""
from __future__ import annotations

import logging

from app.tasks import celery_app
from config import Config
from db import SessionLocal, get_engine, init_engine
from services.notifier import Notifier


log = logging.getLogger("notify")

_notifier: Notifier | None = None


def _worker_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        cfg = Config()
        if get_engine() is None:
            init_engine(cfg.DATABASE_URL, pool_size=cfg.DB_POOL_SIZE, max_overflow=cfg.DB_MAX_OVERFLOW)
        _notifier = Notifier(cfg, session_factory=SessionLocal, mode="inline")
    return _notifier


# Best-effort: a failed delivery is logged by the notifier and not retried.
@celery_app.task(bind=True, ignore_result=True)
def send_notification_task(self, kind: str, recipient: str, payload: dict | None = None):
    res = _worker_notifier().notify(kind, recipient, payload or {})
    log.info("task=%s kind=%s delivered=%s", self.request.id, kind, res.get("delivered"))
    return res
