from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import func, select

from actions.helpers import append_audit, next_prefixed_id
from models import Appeal, Employee, VerificationRecord, Verifier
from services import attempt_limiter
from services.field_compare import KIND_DATE, KIND_ENUM, KIND_NAME, FieldComparison, FieldSpec, compare_record, names_match, normalize_text
from utils import ApiError, AuthContext, iso_utc_now, normalize_employee_id, parse_pagination, safe_json_string


log = logging.getLogger("verification")

ENTITIES: dict[str, dict[str, str]] = {
    "TVSCSHIB": {"id": "TVSCSHIB", "name": "TVS Credit Services Limited", "shortName": "TVS Credit"},
    "HIB": {"id": "HIB", "name": "Hinduja Leyland Finance", "shortName": "HIB"},
}

# Fixed at import; every record stores exactly this many comparisons in this order.
COMPARED_FIELDS: tuple[FieldSpec, ...] = (
    FieldSpec("name", "Employee Name", KIND_NAME),
    FieldSpec("entityName", "Entity", KIND_ENUM),
    FieldSpec("designation", "Designation", KIND_ENUM),
    FieldSpec("dateOfJoining", "Date of Joining", KIND_DATE),
    FieldSpec("dateOfLeaving", "Date of Leaving", KIND_DATE),
    FieldSpec("exitReason", "Exit Reason", KIND_ENUM),
)

STATUS_MATCHED = "matched"
STATUS_PARTIAL = "partial_match"
STATUS_MISMATCH = "mismatch"


def canonical_entity(value) -> str:
    """Map an entity code, full name or short name to its code; unknown values pass through trimmed."""
    s = str(value or "").strip()
    n = normalize_text(s)
    for code, ent in ENTITIES.items():
        if n in {normalize_text(code), normalize_text(ent["name"]), normalize_text(ent["shortName"])}:
            return code
    return s


def match_score(matched: int, total: int) -> int:
    """round(100 * matched / total), halves rounded up."""
    if total <= 0:
        return 0
    return (200 * matched + total) // (2 * total)


def aggregate(comparisons: list[FieldComparison], *, identity_ok: bool) -> tuple[str, int]:
    total = len(comparisons)
    matched = sum(1 for c in comparisons if c.isMatch)
    score = match_score(matched, total)
    if not identity_ok or matched == 0:
        return STATUS_MISMATCH, score
    if matched == total:
        return STATUS_MATCHED, score
    return STATUS_PARTIAL, score


def _employee_reference(emp: Employee) -> dict:
    return {
        "name": emp.name,
        "entityName": emp.entityName,
        "designation": emp.designation,
        "dateOfJoining": emp.dateOfJoining,
        "dateOfLeaving": emp.dateOfLeaving,
        "exitReason": emp.exitReason,
    }


def _find_employee(db, employee_id: str):
    emp_id = normalize_employee_id(employee_id)
    if not emp_id:
        return None
    return db.execute(select(Employee).where(func.upper(Employee.employeeId) == emp_id)).scalar_one_or_none()


def _submitted_name(data: dict) -> str:
    return str((data or {}).get("name") or (data or {}).get("employeeName") or "").strip()


def _require_verifier(auth: AuthContext | None) -> str:
    if not auth or not auth.valid or not auth.userId:
        raise ApiError("AUTH_INVALID", "Login required")
    return auth.userId


def entities_list(data, auth: AuthContext | None, db, cfg, ctx):
    return {"items": list(ENTITIES.values())}


def employee_validate(data, auth: AuthContext | None, db, cfg, ctx):
    """
    Identity gate before the full submission: employee id + name (+ entity when given).

    Each failed check counts against the (verifier, employee) pair; reaching the
    limit blocks the pair until a later check fully succeeds, which in practice
    means HR has to intervene.
    """
    verifier_id = _require_verifier(auth)
    employee_id = normalize_employee_id((data or {}).get("employeeId"))
    name = _submitted_name(data)
    entity = str((data or {}).get("entityName") or (data or {}).get("entity") or "").strip()

    if not employee_id:
        raise ApiError("BAD_REQUEST", "Missing employeeId")
    if not name:
        raise ApiError("BAD_REQUEST", "Missing name")

    if attempt_limiter.check_blocked(db, verifier_id, employee_id):
        raise ApiError("BLOCKED", attempt_limiter.blocked_message(cfg.EXIT_TEAM_EMAIL))

    emp = _find_employee(db, employee_id)
    failure: tuple[str, str] | None = None
    if not emp:
        failure = ("NOT_FOUND", "Employee not found")
    elif not names_match(name, emp.name):
        failure = ("BAD_REQUEST", "Employee name does not match our records")
    elif entity and canonical_entity(entity) != canonical_entity(emp.entityName):
        failure = ("BAD_REQUEST", "Employee does not belong to the selected entity")

    if failure is not None:
        remaining = _record_identity_failure(db, cfg, verifier_id, employee_id)
        code, msg = failure
        raise ApiError(code, f"{msg}. {remaining} attempt(s) remaining.")

    attempt_limiter.reset(db, verifier_id, employee_id)

    return {
        "valid": True,
        "blocked": False,
        "employee": {
            "employeeId": emp.employeeId,
            "name": emp.name,
            "entityName": emp.entityName,
        },
    }


def _record_identity_failure(db, cfg, verifier_id: str, employee_id: str) -> int:
    """
    Count one failed identity check for the pair and persist it before the caller
    reports anything; the request wrapper rolls back on errors. Raises BLOCKED
    once the pair is blocked, otherwise returns the attempts left.
    """
    max_attempts = int(cfg.MAX_VERIFICATION_ATTEMPTS)
    outcome = attempt_limiter.check_and_record(db, verifier_id, employee_id, success=False, max_attempts=max_attempts)
    db.commit()
    if outcome["blocked"]:
        raise ApiError("BLOCKED", attempt_limiter.blocked_message(cfg.EXIT_TEAM_EMAIL))
    return max(0, max_attempts - int(outcome["attemptCount"]))


def _missing_fields(data: dict) -> list[str]:
    missing = []
    if not normalize_employee_id((data or {}).get("employeeId")):
        missing.append("employeeId")
    for spec in COMPARED_FIELDS:
        value = _submitted_name(data) if spec.key == "name" else str((data or {}).get(spec.key) or "").strip()
        if not value:
            missing.append(spec.key)
    return missing


def serialize_verification(row: VerificationRecord, *, verifier_name: str = "", appeal: Appeal | None = None) -> dict:
    out = {
        "verificationId": row.verificationId,
        "employeeId": row.employeeId,
        "verifierId": row.verifierId,
        "verifierName": verifier_name,
        "submittedData": safe_json_string(row.submittedDataJson, {}),
        "comparisonResults": safe_json_string(row.comparisonResultsJson, []),
        "overallStatus": row.overallStatus,
        "matchScore": int(row.matchScore or 0),
        "consentGiven": bool(row.consentGiven),
        "reportUrl": row.reportUrl or "",
        "createdAt": row.createdAt,
        "completedAt": row.completedAt,
        "appeal": None,
    }
    if appeal is not None:
        out["appeal"] = {"appealId": appeal.appealId, "status": appeal.status, "hrResponse": appeal.hrResponse or ""}
    return out


def _new_verification_id(db) -> str:
    year = datetime.now(timezone.utc).strftime("%Y")
    prefix = f"VER-{year}-"
    existing = db.execute(select(VerificationRecord.verificationId).where(VerificationRecord.verificationId.like(f"{prefix}%"))).scalars().all()
    return next_prefixed_id(db, counter_key=f"VERIFICATION_{year}", prefix=prefix, pad=5, existing_ids=existing)


def verification_submit(data, auth: AuthContext | None, db, cfg, ctx):
    verifier_id = _require_verifier(auth)

    missing = _missing_fields(data)
    if missing:
        raise ApiError("BAD_REQUEST", f"Missing required fields: {', '.join(missing)}")

    employee_id = normalize_employee_id(data.get("employeeId"))
    if attempt_limiter.check_blocked(db, verifier_id, employee_id):
        raise ApiError("BLOCKED", attempt_limiter.blocked_message(cfg.EXIT_TEAM_EMAIL))

    emp = _find_employee(db, employee_id)
    if not emp:
        remaining = _record_identity_failure(db, cfg, verifier_id, employee_id)
        raise ApiError("NOT_FOUND", f"Employee not found. {remaining} attempt(s) remaining.")

    submitted = {spec.key: str(data.get(spec.key) or "").strip() for spec in COMPARED_FIELDS}
    submitted["name"] = _submitted_name(data)
    submitted["entityName"] = canonical_entity(submitted["entityName"])

    reference = _employee_reference(emp)
    reference["entityName"] = canonical_entity(reference["entityName"])

    comparisons = compare_record(COMPARED_FIELDS, submitted, reference)
    identity_ok = next(c.isMatch for c in comparisons if c.field == "name")
    status, score = aggregate(comparisons, identity_ok=identity_ok)

    results = [c.to_dict() for c in comparisons]
    if identity_ok:
        attempt_limiter.reset(db, verifier_id, employee_id)
    else:
        _record_identity_failure(db, cfg, verifier_id, employee_id)
        # Company values stay hidden when the identity check fails.
        for r in results:
            r["companyValue"] = ""

    now = iso_utc_now()
    verification_id = _new_verification_id(db)
    row = VerificationRecord(
        verificationId=verification_id,
        employeeId=emp.employeeId,
        verifierId=verifier_id,
        submittedDataJson=json.dumps({"employeeId": employee_id, **submitted}),
        comparisonResultsJson=json.dumps(results),
        overallStatus=status,
        matchScore=score,
        consentGiven=bool(data.get("consentGiven", True)),
        reportUrl=f"/api/verifications/{verification_id}/report.pdf",
        createdAt=now,
        completedAt=now,
    )
    db.add(row)

    append_audit(
        db,
        entityType="VERIFICATION",
        entityId=verification_id,
        action="VERIFICATION_SUBMIT",
        toState=status,
        stageTag="VERIFICATION_COMPLETED",
        actor=auth,
        at=now,
        meta={"employeeId": emp.employeeId, "matchScore": score},
    )
    log.info("verification %s employee=%s status=%s score=%s", verification_id, emp.employeeId, status, score)

    return serialize_verification(row, verifier_name=auth.name if auth else "")


def verification_list_mine(data, auth: AuthContext | None, db, cfg, ctx):
    verifier_id = _require_verifier(auth)
    page, limit = parse_pagination(data)

    base = select(VerificationRecord).where(VerificationRecord.verifierId == verifier_id)
    total = int(db.execute(select(func.count()).select_from(base.subquery())).scalar_one() or 0)
    rows = (
        db.execute(base.order_by(VerificationRecord.createdAt.desc()).offset((page - 1) * limit).limit(limit))
        .scalars()
        .all()
    )
    ids = [r.verificationId for r in rows]
    appeals = {a.verificationId: a for a in db.execute(select(Appeal).where(Appeal.verificationId.in_(ids))).scalars().all()} if ids else {}

    return {
        "items": [serialize_verification(r, verifier_name=auth.name, appeal=appeals.get(r.verificationId)) for r in rows],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    }


def load_verification_for(db, auth: AuthContext | None, verification_id: str) -> dict:
    """Verifiers can read only their own records; admins (capability checked upstream) any."""
    vid = str(verification_id or "").strip()
    if not vid:
        raise ApiError("BAD_REQUEST", "Missing verificationId")
    row = db.execute(select(VerificationRecord).where(VerificationRecord.verificationId == vid)).scalar_one_or_none()
    if not row:
        raise ApiError("NOT_FOUND", "Verification not found")
    if auth and auth.role == "VERIFIER" and row.verifierId != auth.userId:
        raise ApiError("FORBIDDEN", "Verification not accessible")

    ver = db.execute(select(Verifier).where(Verifier.verifierId == row.verifierId)).scalar_one_or_none()
    appeal = db.execute(select(Appeal).where(Appeal.verificationId == vid)).scalar_one_or_none()
    return serialize_verification(row, verifier_name=str(ver.companyName if ver else ""), appeal=appeal)


def verification_get(data, auth: AuthContext | None, db, cfg, ctx):
    return load_verification_for(db, auth, (data or {}).get("verificationId"))


def verification_report(data, auth: AuthContext | None, db, cfg, ctx):
    record = load_verification_for(db, auth, (data or {}).get("verificationId"))
    append_audit(
        db,
        entityType="VERIFICATION",
        entityId=record["verificationId"],
        action="VERIFICATION_REPORT_PDF",
        stageTag="REPORT_DOWNLOAD",
        actor=auth,
    )
    return record
