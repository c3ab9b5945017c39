from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from actions.admin import access_logs_query, admin_dashboard, admin_export, email_stats
from actions.appeals import appeal_create, appeal_document, appeal_get, appeal_respond, appeals_list, appeals_list_mine
from actions.auth_actions import admin_login, get_me, logout, otp_send, otp_verify, verifier_login, verifier_register
from actions.verification import (
    employee_validate,
    entities_list,
    verification_get,
    verification_list_mine,
    verification_report,
    verification_submit,
)
from utils import ApiError, AuthContext


@dataclass
class ActionContext:
    """Per-process collaborators plus per-request client info, handed to every action."""

    notifier: Any = None
    documents: Any = None
    token: str = ""
    client: dict[str, str] = field(default_factory=dict)
    upload: Optional[dict[str, Any]] = None


ACTIONS: dict[str, Callable[..., Any]] = {
    "VERIFIER_REGISTER": verifier_register,
    "VERIFIER_LOGIN": verifier_login,
    "OTP_SEND": otp_send,
    "OTP_VERIFY": otp_verify,
    "ADMIN_LOGIN": admin_login,
    "LOGOUT": logout,
    "GET_ME": get_me,
    "ENTITIES_LIST": entities_list,
    "EMPLOYEE_VALIDATE": employee_validate,
    "VERIFICATION_SUBMIT": verification_submit,
    "VERIFICATION_LIST_MINE": verification_list_mine,
    "VERIFICATION_GET": verification_get,
    "VERIFICATION_REPORT_PDF": verification_report,
    "APPEAL_CREATE": appeal_create,
    "APPEALS_LIST_MINE": appeals_list_mine,
    "APPEALS_LIST": appeals_list,
    "APPEAL_GET": appeal_get,
    "APPEAL_RESPOND": appeal_respond,
    "APPEAL_DOCUMENT": appeal_document,
    "ADMIN_DASHBOARD": admin_dashboard,
    "ADMIN_EXPORT": admin_export,
    "ACCESS_LOGS_QUERY": access_logs_query,
    "EMAIL_STATS": email_stats,
}


def dispatch(action: str, data: dict, auth: Optional[AuthContext], db, cfg, ctx: Optional[ActionContext] = None):
    fn = ACTIONS.get(str(action or "").upper().strip())
    if fn is None:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action}")
    if not isinstance(data, dict):
        raise ApiError("BAD_REQUEST", "data must be an object")
    return fn(data, auth, db, cfg, ctx or ActionContext())
