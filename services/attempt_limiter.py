"""
Failed identity-validation counter per (verifier, employee) pair.

All writes are single conditional statements so concurrent retries from the
same verifier cannot lose increments. A blocked pair stays blocked until a
fully successful validation resets it; there is no time-based expiry.
"""
from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from db import dialect_insert
from models import VerificationAttempt
from utils import iso_utc_now, normalize_employee_id


log = logging.getLogger("attempts")

DEFAULT_MAX_ATTEMPTS = 3


def blocked_message(contact_email: str) -> str:
    return f"Maximum attempts reached. Please reach out to exit team - {contact_email}"


def _key_filter(verifier_id: str, employee_id: str):
    return (
        VerificationAttempt.verifierId == str(verifier_id or "").strip(),
        VerificationAttempt.employeeId == normalize_employee_id(employee_id),
    )


def _ensure_row(db, verifier_id: str, employee_id: str) -> None:
    now = iso_utc_now()
    values = {
        "verifierId": str(verifier_id or "").strip(),
        "employeeId": normalize_employee_id(employee_id),
        "attemptCount": 0,
        "isBlocked": False,
        "blockedAt": "",
        "lastAttemptAt": now,
        "createdAt": now,
    }

    insert = dialect_insert(db)
    if insert is not None:
        stmt = insert(VerificationAttempt).values(**values).on_conflict_do_nothing(index_elements=["verifierId", "employeeId"])
        db.execute(stmt)
        return

    exists = db.execute(select(VerificationAttempt.id).where(*_key_filter(verifier_id, employee_id))).scalar_one_or_none()
    if exists is not None:
        return
    try:
        with db.begin_nested():
            db.add(VerificationAttempt(**values))
    except IntegrityError:
        # Another request created the row between the select and the insert.
        pass


def get_state(db, verifier_id: str, employee_id: str) -> dict:
    row = db.execute(
        select(VerificationAttempt.attemptCount, VerificationAttempt.isBlocked, VerificationAttempt.blockedAt).where(
            *_key_filter(verifier_id, employee_id)
        )
    ).first()
    if not row:
        return {"attemptCount": 0, "isBlocked": False, "blockedAt": ""}
    return {"attemptCount": int(row[0] or 0), "isBlocked": bool(row[1]), "blockedAt": str(row[2] or "")}


def check_blocked(db, verifier_id: str, employee_id: str) -> bool:
    return bool(get_state(db, verifier_id, employee_id)["isBlocked"])


def record_failure(db, verifier_id: str, employee_id: str, *, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> dict:
    """Atomically count one failure; `justBlocked` is true only for the failure that crossed the threshold."""
    _ensure_row(db, verifier_id, employee_id)
    now = iso_utc_now()

    db.execute(
        update(VerificationAttempt)
        .where(*_key_filter(verifier_id, employee_id))
        .values(attemptCount=VerificationAttempt.attemptCount + 1, lastAttemptAt=now)
        .execution_options(synchronize_session=False)
    )
    res = db.execute(
        update(VerificationAttempt)
        .where(*_key_filter(verifier_id, employee_id))
        .where(VerificationAttempt.isBlocked == False)  # noqa: E712
        .where(VerificationAttempt.attemptCount >= int(max_attempts))
        .values(isBlocked=True, blockedAt=now)
        .execution_options(synchronize_session=False)
    )
    just_blocked = int(res.rowcount or 0) == 1

    state = get_state(db, verifier_id, employee_id)
    if just_blocked:
        log.warning(
            "verification blocked verifier=%s employee=%s attempts=%s",
            verifier_id,
            normalize_employee_id(employee_id),
            state["attemptCount"],
        )
    return {"attemptCount": state["attemptCount"], "isBlocked": state["isBlocked"], "justBlocked": just_blocked}


def reset(db, verifier_id: str, employee_id: str) -> None:
    db.execute(
        update(VerificationAttempt)
        .where(*_key_filter(verifier_id, employee_id))
        .values(attemptCount=0, isBlocked=False, blockedAt="", lastAttemptAt=iso_utc_now())
        .execution_options(synchronize_session=False)
    )


def check_and_record(db, verifier_id: str, employee_id: str, *, success: bool, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> dict:
    """
    Apply one identity-check outcome: success resets the pair, failure counts
    against it. Callers gate on check_blocked() before running the check itself.
    """
    if success:
        reset(db, verifier_id, employee_id)
        return {"blocked": False, "attemptCount": 0, "justBlocked": False}
    if check_blocked(db, verifier_id, employee_id):
        state = get_state(db, verifier_id, employee_id)
        return {"blocked": True, "attemptCount": state["attemptCount"], "justBlocked": False}
    res = record_failure(db, verifier_id, employee_id, max_attempts=max_attempts)
    return {"blocked": res["isBlocked"], "attemptCount": res["attemptCount"], "justBlocked": res["justBlocked"]}
