from __future__ import annotations

import json
import os
from typing import Any, Iterable, Optional

from flask import g, has_request_context
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from db import dialect_insert
from models import AccessLog, AuditLog, IdCounter
from utils import AuthContext, iso_utc_now


def _correlation_id() -> str:
    if not has_request_context():
        return ""
    return str(getattr(g, "request_id", "") or "")


def append_audit(
    db,
    *,
    entityType: str,
    entityId: str,
    action: str,
    fromState: str = "",
    toState: str = "",
    stageTag: str = "",
    remark: str = "",
    actor: Optional[AuthContext] = None,
    at: str = "",
    meta: Optional[dict[str, Any]] = None,
) -> None:
    db.add(
        AuditLog(
            logId=f"LOG-{os.urandom(16).hex()}",
            entityType=str(entityType or ""),
            entityId=str(entityId or ""),
            action=str(action or "").upper(),
            fromState=str(fromState or ""),
            toState=str(toState or ""),
            stageTag=str(stageTag or ""),
            remark=str(remark or ""),
            actorUserId=str(actor.userId if actor else "SYSTEM"),
            actorRole=str(actor.role if actor else "SYSTEM"),
            actorEmail=str(actor.email if actor else ""),
            at=at or iso_utc_now(),
            correlationId=_correlation_id(),
            metaJson=json.dumps(meta or {}),
        )
    )


def append_access_log(
    db,
    *,
    email: str,
    role: str,
    action: str,
    status: str,
    failure_reason: str = "",
    client: Optional[dict[str, str]] = None,
    meta: Optional[dict[str, Any]] = None,
) -> None:
    """Login/logout trail. `client` carries ipAddress/userAgent captured by the route layer."""
    client = client or {}
    db.add(
        AccessLog(
            logId=f"ACC-{os.urandom(16).hex()}",
            email=str(email or ""),
            role=str(role or ""),
            action=str(action or "").upper(),
            status=str(status or "").upper(),
            failureReason=str(failure_reason or ""),
            ipAddress=str(client.get("ipAddress") or "")[:100],
            userAgent=str(client.get("userAgent") or "")[:500],
            metaJson=json.dumps(meta or {}),
            at=iso_utc_now(),
        )
    )


def next_prefixed_id(db, *, counter_key: str, prefix: str, pad: int = 5, existing_ids: Iterable[str] = ()) -> str:
    """
    Allocate the next id of the form `<prefix><n zero-padded>`.

    The counter row is created lazily; on first use it starts after the highest
    existing id so counters can be introduced on populated tables.
    """

    row = db.execute(select(IdCounter).where(IdCounter.key == counter_key).with_for_update()).scalar_one_or_none()
    if not row:
        start = 1
        for existing in existing_ids or []:
            s = str(existing or "")
            if not s.startswith(prefix):
                continue
            try:
                start = max(start, int(s[len(prefix) :]) + 1)
            except ValueError:
                continue
        insert = dialect_insert(db)
        if insert is not None:
            db.execute(insert(IdCounter).values(key=counter_key, nextValue=start).on_conflict_do_nothing(index_elements=["key"]))
        else:
            try:
                with db.begin_nested():
                    db.add(IdCounter(key=counter_key, nextValue=start))
            except IntegrityError:
                # A concurrent first use created the counter.
                pass
        row = db.execute(select(IdCounter).where(IdCounter.key == counter_key).with_for_update()).scalar_one()

    n = int(row.nextValue or 1)
    row.nextValue = n + 1
    return f"{prefix}{str(n).zfill(pad)}"
