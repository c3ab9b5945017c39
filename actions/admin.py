from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import case, func, select

from models import AccessLog, Appeal, EmailLog, Employee, VerificationRecord, Verifier
from utils import ApiError, AuthContext, iso_utc_now, parse_date_maybe, parse_datetime_maybe, parse_pagination, safe_json_string, to_iso_utc


EXPORT_HEADERS = [
    "S.No",
    "Employee ID",
    "Employee Name",
    "Product",
    "Department",
    "Designation",
    "Date of Joining",
    "Last Working Day",
    "Verified on",
    "Verified by",
    "Verified for",
    "Status",
    "Match Score",
]

TREND_DAYS = 7
RECENT_ACTIVITY_LIMIT = 10


def _count(db, stmt) -> int:
    return int(db.execute(stmt).scalar_one() or 0)


def _breakdown(db, column) -> dict[str, int]:
    rows = db.execute(select(column, func.count()).group_by(column)).all()
    return {str(k or ""): int(n or 0) for k, n in rows}


def _company_names(db, verifier_ids) -> dict[str, Verifier]:
    ids = sorted({v for v in verifier_ids if v})
    if not ids:
        return {}
    return {v.verifierId: v for v in db.execute(select(Verifier).where(Verifier.verifierId.in_(ids))).scalars().all()}


def admin_dashboard(data, auth: AuthContext | None, db, cfg, ctx):
    now = datetime.now(timezone.utc)
    since_30 = to_iso_utc(now - timedelta(days=30))
    today = now.date()
    trend_start = today - timedelta(days=TREND_DAYS - 1)

    total_verifications = _count(db, select(func.count()).select_from(VerificationRecord))
    recent_verifications = _count(db, select(func.count()).select_from(VerificationRecord).where(VerificationRecord.createdAt >= since_30))
    total_appeals = _count(db, select(func.count()).select_from(Appeal))
    pending_appeals = _count(db, select(func.count()).select_from(Appeal).where(Appeal.status == "pending"))
    total_verifiers = _count(db, select(func.count()).select_from(Verifier))
    active_verifiers = _count(
        db, select(func.count()).select_from(Verifier).where(Verifier.lastLoginAt != "").where(Verifier.lastLoginAt >= since_30)
    )
    total_employees = _count(db, select(func.count()).select_from(Employee))

    trend = {(trend_start + timedelta(days=i)).isoformat(): 0 for i in range(TREND_DAYS)}
    created = db.execute(
        select(VerificationRecord.createdAt).where(VerificationRecord.createdAt >= trend_start.isoformat())
    ).scalars().all()
    for ts in created:
        d = parse_date_maybe(ts)
        if d is not None and d.isoformat() in trend:
            trend[d.isoformat()] += 1

    recent_v = db.execute(
        select(VerificationRecord).order_by(VerificationRecord.createdAt.desc()).limit(RECENT_ACTIVITY_LIMIT // 2)
    ).scalars().all()
    recent_a = db.execute(select(Appeal).order_by(Appeal.createdAt.desc()).limit(RECENT_ACTIVITY_LIMIT // 2)).scalars().all()
    verifiers = _company_names(db, [r.verifierId for r in recent_v] + [a.verifierId for a in recent_a])

    def _who(verifier_id: str) -> str:
        v = verifiers.get(verifier_id)
        return v.companyName if v else "Unknown"

    activities = [
        {
            "type": "verification",
            "id": r.verificationId,
            "description": f"Verification for {r.employeeId}",
            "status": r.overallStatus,
            "user": _who(r.verifierId),
            "timestamp": r.createdAt,
        }
        for r in recent_v
    ] + [
        {
            "type": "appeal",
            "id": a.appealId,
            "description": f"Appeal for {a.employeeId}",
            "status": a.status,
            "user": _who(a.verifierId),
            "timestamp": a.createdAt,
        }
        for a in recent_a
    ]
    activities.sort(key=lambda x: str(x["timestamp"] or ""), reverse=True)

    return {
        "summary": {
            "totalVerifications": total_verifications,
            "recentVerifications": recent_verifications,
            "totalAppeals": total_appeals,
            "pendingAppeals": pending_appeals,
            "totalVerifiers": total_verifiers,
            "activeVerifiers": active_verifiers,
            "totalEmployees": total_employees,
        },
        "breakdowns": {
            "verificationStatus": _breakdown(db, VerificationRecord.overallStatus),
            "appealStatus": _breakdown(db, Appeal.status),
        },
        "trends": {"verifications": [{"date": k, "count": v} for k, v in trend.items()]},
        "recentActivities": activities[:RECENT_ACTIVITY_LIMIT],
        "pendingAppealsCount": pending_appeals,
    }


def _dmy(value) -> str:
    d = parse_date_maybe(value)
    return d.strftime("%d/%m/%Y") if d else ""


def _dmy_time(value) -> str:
    dt = parse_datetime_maybe(value)
    return dt.strftime("%d/%m/%Y, %H:%M:%S") if dt else ""


def admin_export(data, auth: AuthContext | None, db, cfg, ctx):
    """All verification records as flat rows; the HTTP layer renders CSV or JSON."""
    records = db.execute(select(VerificationRecord).order_by(VerificationRecord.createdAt.asc())).scalars().all()
    employees = {e.employeeId: e for e in db.execute(select(Employee)).scalars().all()}
    verifiers = _company_names(db, [r.verifierId for r in records])

    rows = []
    for i, r in enumerate(records, start=1):
        emp = employees.get(r.employeeId)
        submitted = safe_json_string(r.submittedDataJson, {})
        ver = verifiers.get(r.verifierId)
        rows.append(
            {
                "S.No": i,
                "Employee ID": r.employeeId,
                "Employee Name": (emp.name if emp else "") or submitted.get("name") or "",
                "Product": (emp.entityName if emp else "") or "N/A",
                "Department": (emp.department if emp else "") or "N/A",
                "Designation": (emp.designation if emp else "") or submitted.get("designation") or "",
                "Date of Joining": _dmy(emp.dateOfJoining) if emp else "",
                "Last Working Day": _dmy(emp.dateOfLeaving) if emp else "",
                "Verified on": _dmy_time(r.completedAt or r.createdAt),
                "Verified by": ver.email if ver else "Unknown",
                "Verified for": ver.companyName if ver else "Unknown",
                "Status": r.overallStatus,
                "Match Score": int(r.matchScore or 0),
            }
        )
    return {"headers": list(EXPORT_HEADERS), "records": rows, "total": len(rows), "exportedAt": iso_utc_now()}


def access_logs_query(data, auth: AuthContext | None, db, cfg, ctx):
    page, limit = parse_pagination(data, default_limit=20)
    status = str((data or {}).get("status") or "").strip().upper()
    role = str((data or {}).get("role") or "").strip().upper()

    q = select(AccessLog)
    if status:
        q = q.where(AccessLog.status == status)
    if role:
        q = q.where(AccessLog.role == role)

    total = _count(db, select(func.count()).select_from(q.subquery()))
    rows = db.execute(q.order_by(AccessLog.at.desc()).offset((page - 1) * limit).limit(limit)).scalars().all()
    items = [
        {
            "logId": r.logId,
            "email": r.email,
            "role": r.role,
            "action": r.action,
            "status": r.status,
            "failureReason": r.failureReason or None,
            "ipAddress": r.ipAddress,
            "userAgent": r.userAgent,
            "at": r.at,
        }
        for r in rows
    ]
    return {"items": items, "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit}}


def _mask_recipient(value: str) -> str:
    s = str(value or "")
    return (s[:3] + "****") if s else ""


def email_stats(data, auth: AuthContext | None, db, cfg, ctx):
    try:
        days = int((data or {}).get("days") or 7)
    except (TypeError, ValueError):
        raise ApiError("BAD_REQUEST", "days must be an integer")
    days = max(1, min(90, days))
    since = to_iso_utc(datetime.now(timezone.utc) - timedelta(days=days))

    rows = db.execute(
        select(
            EmailLog.provider,
            func.count(),
            func.sum(case((EmailLog.status == "sent", 1), else_=0)),
            func.avg(EmailLog.responseTimeMs),
            func.min(EmailLog.responseTimeMs),
            func.max(EmailLog.responseTimeMs),
        )
        .where(EmailLog.createdAt >= since)
        .group_by(EmailLog.provider)
    ).all()

    providers: dict[str, dict] = {}
    for provider, total, sent, avg_ms, min_ms, max_ms in rows:
        total = int(total or 0)
        sent = int(sent or 0)
        providers[str(provider or "")] = {
            "provider": str(provider or ""),
            "totalEmails": total,
            "successCount": sent,
            "failureCount": total - sent,
            "successRate": round(100.0 * sent / total, 1) if total else 0,
            "avgResponseTime": int(round(float(avg_ms or 0))),
            "minResponseTime": int(min_ms or 0),
            "maxResponseTime": int(max_ms or 0),
        }

    comparison = {}
    for name in ("brevo", "sendgrid"):
        comparison[name] = providers.get(name) or {
            "provider": name,
            "totalEmails": 0,
            "successCount": 0,
            "failureCount": 0,
            "successRate": 0,
            "avgResponseTime": 0,
            "minResponseTime": 0,
            "maxResponseTime": 0,
        }

    recommendation = "insufficient_data"
    b, s = comparison["brevo"], comparison["sendgrid"]
    if b["totalEmails"] >= 10 and s["totalEmails"] >= 10:
        b_score = b["successRate"] - b["avgResponseTime"] / 100
        s_score = s["successRate"] - s["avgResponseTime"] / 100
        recommendation = "brevo" if b_score >= s_score else "sendgrid"

    recent = db.execute(select(EmailLog).where(EmailLog.createdAt >= since).order_by(EmailLog.id.desc()).limit(20)).scalars().all()
    return {
        "period": f"Last {days} days",
        "providers": list(providers.values()),
        "comparison": comparison,
        "recommendation": recommendation,
        "recentLogs": [
            {
                "id": r.id,
                "provider": r.provider,
                "emailType": r.emailType,
                "recipient": _mask_recipient(r.recipient),
                "status": r.status,
                "responseTime": int(r.responseTimeMs or 0),
                "createdAt": r.createdAt,
            }
            for r in recent
        ],
    }
