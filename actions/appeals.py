from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from actions.helpers import append_audit, next_prefixed_id
from auth import capabilities_for_admin
from models import Admin, Appeal, VerificationRecord, Verifier
from services.notifier import KIND_APPEAL_CREATED, KIND_APPEAL_RESOLVED, queue_after_commit
from services.storage import delete_on_rollback
from utils import ApiError, AuthContext, iso_utc_now, normalize_employee_id, parse_pagination, safe_json_string


log = logging.getLogger("appeals")

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
APPEAL_STATUSES = {STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED}
DECISIONS = {STATUS_APPROVED, STATUS_REJECTED}

MAX_COMMENTS_LENGTH = 2000
HR_RESPONSE_MIN_LENGTH = 10
HR_RESPONSE_MAX_LENGTH = 2000


def serialize_appeal(row: Appeal, *, verifier: Verifier | None = None) -> dict:
    out = {
        "appealId": row.appealId,
        "verificationId": row.verificationId,
        "employeeId": row.employeeId,
        "verifierId": row.verifierId,
        "comments": row.comments,
        "mismatchedFields": safe_json_string(row.mismatchedFieldsJson, []),
        "supportingDocument": safe_json_string(row.documentJson, None),
        "status": row.status,
        "hrResponse": row.hrResponse or None,
        "reviewedBy": row.reviewedBy or None,
        "reviewedAt": row.reviewedAt or None,
        "createdAt": row.createdAt,
        "updatedAt": row.updatedAt,
    }
    if verifier is not None:
        out["verifier"] = {"verifierId": verifier.verifierId, "companyName": verifier.companyName, "email": verifier.email}
    return out


def _mismatched_fields(record: VerificationRecord) -> list[dict]:
    out = []
    for c in safe_json_string(record.comparisonResultsJson, []):
        if not isinstance(c, dict) or c.get("isMatch"):
            continue
        out.append(
            {
                "field": c.get("field") or "",
                "fieldName": c.get("label") or c.get("field") or "",
                "verifierValue": c.get("verifierValue") or "",
                "companyValue": c.get("companyValue") or "",
            }
        )
    return out


def _new_appeal_id(db) -> str:
    year = datetime.now(timezone.utc).strftime("%Y")
    prefix = f"APL-{year}-"
    existing = db.execute(select(Appeal.appealId).where(Appeal.appealId.like(f"{prefix}%"))).scalars().all()
    return next_prefixed_id(db, counter_key=f"APPEAL_{year}", prefix=prefix, pad=5, existing_ids=existing)


def _upload_from_request(data: dict, ctx) -> dict | None:
    """Multipart upload from the route, or a base64 `document` object in the JSON body."""
    if ctx is not None and ctx.upload:
        return ctx.upload
    doc = (data or {}).get("document")
    if not isinstance(doc, dict) or not doc.get("base64"):
        return None
    try:
        blob = base64.b64decode(str(doc.get("base64")), validate=True)
    except (binascii.Error, ValueError):
        raise ApiError("BAD_REQUEST", "Invalid document encoding")
    return {"bytes": blob, "filename": str(doc.get("filename") or "document"), "mimeType": str(doc.get("mimeType") or "")}


def _store_document(ctx, upload: dict, *, appeal_id: str) -> tuple[dict | None, str]:
    """Returns (document metadata or None, warning). Storage failures never fail the appeal."""
    store = getattr(ctx, "documents", None)
    if store is None:
        log.warning("appeal %s: document dropped, no document store configured", appeal_id)
        return None, "Document storage is not configured; appeal submitted without the document"
    try:
        meta = store.upload(upload["bytes"], upload["filename"], mime_type=upload.get("mimeType") or "", path_hint=appeal_id)
    except ApiError as e:
        log.warning("appeal %s: document upload failed code=%s message=%s", appeal_id, e.code, e.message)
        return None, f"Supporting document was not saved: {e.message}"
    return meta, ""


def _appeal_exists(db, verification_id: str) -> bool:
    return db.execute(select(Appeal.appealId).where(Appeal.verificationId == verification_id)).scalar_one_or_none() is not None


def _appeal_admin_recipients(db) -> list[str]:
    rows = db.execute(select(Admin).where(Admin.isActive == True)).scalars().all()  # noqa: E712
    return sorted({str(a.email).strip() for a in rows if str(a.email or "").strip() and "view_appeals" in capabilities_for_admin(a)})


def appeal_create(data, auth: AuthContext | None, db, cfg, ctx):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")

    verification_id = str((data or {}).get("verificationId") or "").strip()
    comments = str((data or {}).get("comments") or "").strip()
    if not verification_id:
        raise ApiError("BAD_REQUEST", "Missing verificationId")
    if not comments:
        raise ApiError("BAD_REQUEST", "Missing comments")
    if len(comments) > MAX_COMMENTS_LENGTH:
        raise ApiError("BAD_REQUEST", f"Comments must be at most {MAX_COMMENTS_LENGTH} characters")

    upload = _upload_from_request(data, ctx)

    record = db.execute(select(VerificationRecord).where(VerificationRecord.verificationId == verification_id)).scalar_one_or_none()
    # Someone else's verification is reported as missing.
    if not record or record.verifierId != auth.userId:
        raise ApiError("NOT_FOUND", "Verification not found")

    if _appeal_exists(db, verification_id):
        raise ApiError("CONFLICT", "An appeal has already been submitted for this verification")

    now = iso_utc_now()
    appeal_id = _new_appeal_id(db)
    mismatched = _mismatched_fields(record)
    row = Appeal(
        appealId=appeal_id,
        verificationId=verification_id,
        employeeId=record.employeeId,
        verifierId=auth.userId,
        comments=comments,
        mismatchedFieldsJson=json.dumps(mismatched),
        documentJson="",
        status=STATUS_PENDING,
        hrResponse="",
        reviewedBy="",
        reviewedAt="",
        createdAt=now,
        updatedAt=now,
    )
    db.add(row)
    try:
        db.flush()
    except IntegrityError:
        # Lost a race with a concurrent submission for the same verification.
        raise ApiError("CONFLICT", "An appeal has already been submitted for this verification")

    warning = ""
    if upload:
        meta, warning = _store_document(ctx, upload, appeal_id=appeal_id)
        if meta:
            delete_on_rollback(db, ctx.documents, meta["storageKey"])
            row.documentJson = json.dumps(
                {
                    "filename": meta["filename"],
                    "storageKey": meta["storageKey"],
                    "storageUrl": meta["url"],
                    "mimeType": meta["mimeType"],
                    "size": meta["size"],
                }
            )

    append_audit(
        db,
        entityType="APPEAL",
        entityId=appeal_id,
        action="APPEAL_CREATE",
        toState=STATUS_PENDING,
        stageTag="APPEAL_CREATED",
        actor=auth,
        at=now,
        meta={"verificationId": verification_id, "employeeId": record.employeeId, "mismatchedFields": len(mismatched)},
    )

    payload = {
        "appealId": appeal_id,
        "verificationId": verification_id,
        "employeeId": record.employeeId,
        "comments": comments,
        "mismatchedFields": mismatched,
        "verifierName": auth.name,
        "verifierEmail": auth.email,
    }
    notifier = getattr(ctx, "notifier", None)
    for email in _appeal_admin_recipients(db):
        queue_after_commit(db, notifier, KIND_APPEAL_CREATED, email, payload)

    log.info("appeal %s created verification=%s verifier=%s", appeal_id, verification_id, auth.userId)
    out = serialize_appeal(row)
    if warning:
        out["warning"] = warning
    return out


def appeal_respond(data, auth: AuthContext | None, db, cfg, ctx):
    appeal_id = str((data or {}).get("appealId") or "").strip()
    decision = str((data or {}).get("decision") or (data or {}).get("status") or "").strip().lower()
    hr_response = str((data or {}).get("hrResponse") or "").strip()

    if not appeal_id:
        raise ApiError("BAD_REQUEST", "Missing appealId")
    if decision not in DECISIONS:
        raise ApiError("BAD_REQUEST", "decision must be approved or rejected")
    if len(hr_response) < HR_RESPONSE_MIN_LENGTH:
        raise ApiError("BAD_REQUEST", f"hrResponse must be at least {HR_RESPONSE_MIN_LENGTH} characters")
    if len(hr_response) > HR_RESPONSE_MAX_LENGTH:
        raise ApiError("BAD_REQUEST", f"hrResponse must be at most {HR_RESPONSE_MAX_LENGTH} characters")

    exists = db.execute(select(Appeal.appealId).where(Appeal.appealId == appeal_id)).scalar_one_or_none()
    if not exists:
        raise ApiError("NOT_FOUND", "Appeal not found")

    now = iso_utc_now()
    reviewer = str(auth.userId if auth else "")
    res = db.execute(
        update(Appeal)
        .where(Appeal.appealId == appeal_id)
        .where(Appeal.status == STATUS_PENDING)
        .values(status=decision, hrResponse=hr_response, reviewedBy=reviewer, reviewedAt=now, updatedAt=now)
        .execution_options(synchronize_session=False)
    )
    if int(res.rowcount or 0) != 1:
        raise ApiError("CONFLICT", "This appeal has already been reviewed")

    row = db.execute(select(Appeal).where(Appeal.appealId == appeal_id).execution_options(populate_existing=True)).scalar_one()
    verifier = db.execute(select(Verifier).where(Verifier.verifierId == row.verifierId)).scalar_one_or_none()

    append_audit(
        db,
        entityType="APPEAL",
        entityId=appeal_id,
        action="APPEAL_RESPOND",
        fromState=STATUS_PENDING,
        toState=decision,
        stageTag="APPEAL_RESOLVED",
        remark=hr_response[:500],
        actor=auth,
        at=now,
    )

    if verifier is not None:
        queue_after_commit(
            db,
            getattr(ctx, "notifier", None),
            KIND_APPEAL_RESOLVED,
            verifier.email,
            {
                "appealId": appeal_id,
                "verificationId": row.verificationId,
                "employeeId": row.employeeId,
                "status": decision,
                "hrResponse": hr_response,
            },
        )
    else:
        log.warning("appeal %s resolved but verifier %s no longer exists", appeal_id, row.verifierId)

    log.info("appeal %s %s by %s", appeal_id, decision, reviewer)
    return serialize_appeal(row, verifier=verifier)


def appeals_list(data, auth: AuthContext | None, db, cfg, ctx):
    page, limit = parse_pagination(data)
    status = str((data or {}).get("status") or "").strip().lower()
    employee_id = normalize_employee_id((data or {}).get("employeeId"))
    if status and status not in APPEAL_STATUSES:
        raise ApiError("BAD_REQUEST", f"Invalid status: {status}")

    q = select(Appeal)
    if status:
        q = q.where(Appeal.status == status)
    if employee_id:
        q = q.where(func.upper(Appeal.employeeId) == employee_id)

    total = int(db.execute(select(func.count()).select_from(q.subquery())).scalar_one() or 0)
    rows = db.execute(q.order_by(Appeal.createdAt.desc()).offset((page - 1) * limit).limit(limit)).scalars().all()

    verifier_ids = sorted({r.verifierId for r in rows})
    verifiers = (
        {v.verifierId: v for v in db.execute(select(Verifier).where(Verifier.verifierId.in_(verifier_ids))).scalars().all()}
        if verifier_ids
        else {}
    )
    return {
        "items": [serialize_appeal(r, verifier=verifiers.get(r.verifierId)) for r in rows],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    }


def appeal_get(data, auth: AuthContext | None, db, cfg, ctx):
    appeal_id = str((data or {}).get("appealId") or "").strip()
    if not appeal_id:
        raise ApiError("BAD_REQUEST", "Missing appealId")
    row = db.execute(select(Appeal).where(Appeal.appealId == appeal_id)).scalar_one_or_none()
    if not row:
        raise ApiError("NOT_FOUND", "Appeal not found")

    verifier = db.execute(select(Verifier).where(Verifier.verifierId == row.verifierId)).scalar_one_or_none()
    record = db.execute(select(VerificationRecord).where(VerificationRecord.verificationId == row.verificationId)).scalar_one_or_none()
    out = serialize_appeal(row, verifier=verifier)
    out["verification"] = (
        {
            "verificationId": record.verificationId,
            "overallStatus": record.overallStatus,
            "matchScore": int(record.matchScore or 0),
            "comparisonResults": safe_json_string(record.comparisonResultsJson, []),
            "completedAt": record.completedAt,
        }
        if record
        else None
    )
    return out


def appeals_list_mine(data, auth: AuthContext | None, db, cfg, ctx):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    rows = db.execute(select(Appeal).where(Appeal.verifierId == auth.userId).order_by(Appeal.createdAt.desc())).scalars().all()
    return {"items": [serialize_appeal(r) for r in rows]}


def appeal_document(data, auth: AuthContext | None, db, cfg, ctx):
    """Locate a stored supporting document; verifiers may only fetch documents on their own appeals."""
    storage_key = str((data or {}).get("storageKey") or "").strip().lower()
    if not re.fullmatch(r"[0-9a-f]{32}", storage_key):
        raise ApiError("BAD_REQUEST", "Invalid file id")

    q = select(Appeal).where(Appeal.documentJson.like(f'%"storageKey": "{storage_key}"%'))
    if auth and auth.role == "VERIFIER":
        q = q.where(Appeal.verifierId == auth.userId)
    row = db.execute(q).scalars().first()
    doc = safe_json_string(row.documentJson, None) if row else None
    if not isinstance(doc, dict) or doc.get("storageKey") != storage_key:
        raise ApiError("NOT_FOUND", "File not found")

    store = getattr(ctx, "documents", None)
    path = store.resolve(storage_key) if store is not None else None
    if not path:
        raise ApiError("NOT_FOUND", "File not found")
    return {"path": path, "filename": doc.get("filename") or "document", "mimeType": doc.get("mimeType") or "application/octet-stream"}
