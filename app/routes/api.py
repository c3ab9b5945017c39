from __future__ import annotations

import csv
import io

from flask import Blueprint, Response, current_app, request, send_file

from app.gateway import json_action, request_token, run_action
from services.report_pdf import render_verification_report
from utils import ApiError, err

api_bp = Blueprint("rest_api", __name__)


def _body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _query(*keys: str) -> dict:
    return {k: request.args.get(k) for k in keys if request.args.get(k) not in (None, "")}


def _rest(action: str, data: dict | None = None, *, success_status: int = 200, upload: dict | None = None):
    return json_action(action, data if data is not None else _body(), token=request_token(), upload=upload, success_status=success_status)


# Verifier auth

@api_bp.post("/api/auth/register")
def rest_register():
    return _rest("VERIFIER_REGISTER", success_status=201)


@api_bp.post("/api/auth/login")
def rest_login():
    return _rest("VERIFIER_LOGIN")


@api_bp.post("/api/auth/send-otp")
def rest_send_otp():
    return _rest("OTP_SEND")


@api_bp.post("/api/auth/verify-otp")
def rest_verify_otp():
    return _rest("OTP_VERIFY")


@api_bp.post("/api/auth/logout")
def rest_logout():
    return _rest("LOGOUT", {})


@api_bp.post("/api/admin/login")
def rest_admin_login():
    return _rest("ADMIN_LOGIN")


@api_bp.get("/api/me")
def rest_me():
    return _rest("GET_ME", {})


@api_bp.get("/api/entities")
def rest_entities():
    return _rest("ENTITIES_LIST", {})


# Verification

@api_bp.post("/api/verify/validate-employee")
def rest_validate_employee():
    return _rest("EMPLOYEE_VALIDATE")


@api_bp.post("/api/verify/submit")
def rest_verify_submit():
    return _rest("VERIFICATION_SUBMIT", success_status=201)


@api_bp.get("/api/verifications")
def rest_verifications_mine():
    return _rest("VERIFICATION_LIST_MINE", _query("page", "limit"))


@api_bp.get("/api/verifications/<verification_id>")
def rest_verification_get(verification_id: str):
    return _rest("VERIFICATION_GET", {"verificationId": verification_id})


@api_bp.get("/api/verifications/<verification_id>/report.pdf")
def rest_verification_report(verification_id: str):
    try:
        record = run_action("VERIFICATION_REPORT_PDF", {"verificationId": verification_id}, token=request_token())
    except ApiError as e:
        return err(e.code, e.message, http_status=e.http_status)

    cfg = current_app.config["CFG"]
    pdf = render_verification_report(record, company_name=cfg.COMPANY_NAME, support_email=cfg.SUPPORT_EMAIL)
    return Response(
        pdf,
        mimetype="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="verification-{record["verificationId"]}.pdf"'},
    )


# Appeals

def _appeal_payload() -> tuple[dict, dict | None]:
    """JSON body, or multipart form with an optional `document` file."""
    if request.mimetype == "multipart/form-data":
        data = {k: request.form.get(k) for k in ("verificationId", "comments")}
        up = request.files.get("document") or request.files.get("file")
        upload = None
        if up is not None and str(up.filename or "").strip():
            upload = {"bytes": up.read() or b"", "filename": str(up.filename), "mimeType": str(up.mimetype or "")}
        return data, upload
    return _body(), None


@api_bp.post("/api/appeals")
def rest_appeal_create():
    data, upload = _appeal_payload()
    return _rest("APPEAL_CREATE", data, upload=upload, success_status=201)


@api_bp.get("/api/appeals/mine")
def rest_appeals_mine():
    return _rest("APPEALS_LIST_MINE", {})


@api_bp.get("/api/admin/appeals")
def rest_admin_appeals():
    return _rest("APPEALS_LIST", _query("page", "limit", "status", "employeeId"))


@api_bp.get("/api/admin/appeals/<appeal_id>")
def rest_admin_appeal_get(appeal_id: str):
    return _rest("APPEAL_GET", {"appealId": appeal_id})


@api_bp.post("/api/admin/appeals/<appeal_id>/respond")
def rest_admin_appeal_respond(appeal_id: str):
    return _rest("APPEAL_RESPOND", {**_body(), "appealId": appeal_id})


@api_bp.get("/files/<storage_key>")
def rest_file_get(storage_key: str):
    try:
        doc = run_action("APPEAL_DOCUMENT", {"storageKey": storage_key}, token=request_token())
    except ApiError as e:
        return err(e.code, e.message, http_status=e.http_status)
    return send_file(doc["path"], mimetype=doc["mimeType"], as_attachment=False, download_name=doc["filename"])


# Admin reporting

@api_bp.get("/api/admin/dashboard")
def rest_admin_dashboard():
    return _rest("ADMIN_DASHBOARD", {})


@api_bp.get("/api/admin/export")
def rest_admin_export():
    fmt = str(request.args.get("format") or "json").strip().lower()
    if fmt not in {"json", "csv"}:
        return err("BAD_REQUEST", "format must be json or csv", http_status=400)
    if fmt == "json":
        return _rest("ADMIN_EXPORT", {})

    try:
        out = run_action("ADMIN_EXPORT", {}, token=request_token())
    except ApiError as e:
        return err(e.code, e.message, http_status=e.http_status)

    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=out["headers"])
    writer.writeheader()
    writer.writerows(out["records"])
    return Response(
        buf.getvalue(),
        mimetype="text/csv",
        headers={"Content-Disposition": 'attachment; filename="verifications.csv"'},
    )


@api_bp.get("/api/admin/logs")
def rest_admin_logs():
    return _rest("ACCESS_LOGS_QUERY", _query("page", "limit", "status", "role"))


@api_bp.get("/api/admin/email-stats")
def rest_admin_email_stats():
    return _rest("EMAIL_STATS", _query("days"))
