from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select

from cache_layer import cache_get, cache_invalidate_prefix, cache_set
from models import Admin, Session as DbSession, Verifier
from utils import ApiError, AuthContext, iso_utc_now, new_uuid, normalize_role, parse_datetime_maybe, sha256_hex


log = logging.getLogger("auth")

VERIFIER_ROLE = "VERIFIER"
ADMIN_ROLES = {"ADMIN", "HR_MANAGER", "SUPER_ADMIN"}

CAPABILITIES = [
    "view_appeals",
    "manage_appeals",
    "view_employees",
    "manage_employees",
    "send_emails",
    "view_reports",
    "manage_admins",
]

DEFAULT_ROLE_CAPABILITIES: dict[str, list[str]] = {
    "SUPER_ADMIN": list(CAPABILITIES),
    "ADMIN": ["view_appeals", "manage_appeals", "view_employees", "send_emails", "view_reports"],
    "HR_MANAGER": ["view_appeals", "manage_appeals", "view_employees", "send_emails", "view_reports"],
}


PUBLIC_ACTIONS = {
    "VERIFIER_REGISTER",
    "VERIFIER_LOGIN",
    "OTP_SEND",
    "OTP_VERIFY",
    "ADMIN_LOGIN",
    "ENTITIES_LIST",
}


_ADMINS = sorted(ADMIN_ROLES)

STATIC_RBAC_PERMISSIONS: dict[str, list[str]] = {
    "VERIFIER_REGISTER": ["PUBLIC"],
    "VERIFIER_LOGIN": ["PUBLIC"],
    "OTP_SEND": ["PUBLIC"],
    "OTP_VERIFY": ["PUBLIC"],
    "ADMIN_LOGIN": ["PUBLIC"],
    "ENTITIES_LIST": ["PUBLIC"],
    "LOGOUT": [VERIFIER_ROLE, *_ADMINS],
    "GET_ME": [VERIFIER_ROLE, *_ADMINS],
    # Verification workflow
    "EMPLOYEE_VALIDATE": [VERIFIER_ROLE],
    "VERIFICATION_SUBMIT": [VERIFIER_ROLE],
    "VERIFICATION_LIST_MINE": [VERIFIER_ROLE],
    "VERIFICATION_GET": [VERIFIER_ROLE, *_ADMINS],
    "VERIFICATION_REPORT_PDF": [VERIFIER_ROLE, *_ADMINS],
    # Appeals
    "APPEAL_CREATE": [VERIFIER_ROLE],
    "APPEALS_LIST_MINE": [VERIFIER_ROLE],
    "APPEALS_LIST": _ADMINS,
    "APPEAL_GET": _ADMINS,
    "APPEAL_RESPOND": _ADMINS,
    "APPEAL_DOCUMENT": [VERIFIER_ROLE, *_ADMINS],
    # Admin reporting
    "ADMIN_DASHBOARD": _ADMINS,
    "ADMIN_EXPORT": _ADMINS,
    "ACCESS_LOGS_QUERY": _ADMINS,
    "EMAIL_STATS": _ADMINS,
}

# Admin actions additionally require a capability held by the admin account.
ACTION_CAPABILITIES: dict[str, str] = {
    "APPEALS_LIST": "view_appeals",
    "APPEAL_GET": "view_appeals",
    "APPEAL_RESPOND": "manage_appeals",
    "APPEAL_DOCUMENT": "view_appeals",
    "ADMIN_DASHBOARD": "view_reports",
    "ADMIN_EXPORT": "view_reports",
    "VERIFICATION_GET": "view_reports",
    "VERIFICATION_REPORT_PDF": "view_reports",
    "ACCESS_LOGS_QUERY": "view_reports",
    "EMAIL_STATS": "view_reports",
}


_ADMIN_CACHE_PREFIX = "AUTH:ADMIN:"


def is_public_action(action: str) -> bool:
    return str(action or "").upper() in PUBLIC_ACTIONS


def is_admin_role(role: str) -> bool:
    return normalize_role(role) in ADMIN_ROLES


def capabilities_for_admin(admin: Admin) -> list[str]:
    raw = [c.strip().lower() for c in str(admin.permissionsCsv or "").split(",") if c.strip()]
    if raw:
        return sorted({c for c in raw if c in CAPABILITIES})
    return list(DEFAULT_ROLE_CAPABILITIES.get(normalize_role(admin.role), []))


def _admin_snapshot(db, admin_id: str) -> Optional[dict[str, Any]]:
    key = f"{_ADMIN_CACHE_PREFIX}{admin_id}"
    cached = cache_get(key)
    if cached is False:
        return None
    if isinstance(cached, dict):
        return cached

    row = db.execute(select(Admin).where(Admin.adminId == admin_id)).scalar_one_or_none()
    if not row:
        cache_set(key, False)
        return None
    out = {
        "adminId": row.adminId,
        "role": normalize_role(row.role),
        "isActive": bool(row.isActive),
        "fullName": str(row.fullName or ""),
        "capabilities": capabilities_for_admin(row),
    }
    cache_set(key, out)
    return out


def invalidate_admin_cache(admin_id: str = "") -> int:
    return cache_invalidate_prefix(f"{_ADMIN_CACHE_PREFIX}{admin_id}")


def issue_session_token(db, *, user_id: str, email: str, role: str, session_ttl_minutes: int) -> dict[str, str]:
    token = "ST-" + new_uuid().replace("-", "") + new_uuid().replace("-", "")
    now = datetime.now(timezone.utc)
    expires = now + timedelta(minutes=session_ttl_minutes)

    issued_at = iso_utc_now()
    expires_at = expires.replace(microsecond=(expires.microsecond // 1000) * 1000).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )

    db.add(
        DbSession(
            sessionId="SES-" + new_uuid(),
            tokenHash=sha256_hex(token),
            tokenPrefix=token[:12],
            userId=str(user_id or ""),
            email=str(email or ""),
            role=normalize_role(role),
            issuedAt=issued_at,
            expiresAt=expires_at,
            lastSeenAt=issued_at,
            revokedAt="",
            revokedBy="",
        )
    )
    return {"sessionToken": token, "expiresAt": expires_at}


def revoke_session_token(db, token: str, *, revoked_by: str) -> bool:
    if not token or not isinstance(token, str):
        return False
    ses = db.execute(select(DbSession).where(DbSession.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not ses or ses.revokedAt:
        return False
    ses.revokedAt = iso_utc_now()
    ses.revokedBy = str(revoked_by or "")
    return True


def _invalid() -> AuthContext:
    return AuthContext(valid=False, userId="", email="", role="", expiresAt="")


def validate_session_token(db, token: Any, *, action: str | None = None) -> AuthContext:
    if not token or not isinstance(token, str):
        return _invalid()

    ses = db.execute(select(DbSession).where(DbSession.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not ses:
        return _invalid()

    exp_dt = parse_datetime_maybe(ses.expiresAt)
    if exp_dt and exp_dt < datetime.now(timezone.utc):
        return _invalid()
    if ses.revokedAt:
        return _invalid()

    role_u = normalize_role(ses.role)
    user_id = str(ses.userId or "").strip()
    capabilities: list[str] = []
    name = ""

    if role_u == VERIFIER_ROLE:
        ver = db.execute(select(Verifier).where(Verifier.verifierId == user_id)).scalar_one_or_none()
        if not ver:
            return _invalid()
        if not bool(ver.isActive):
            raise ApiError("FORBIDDEN", "Verifier account is disabled")
        name = str(ver.companyName or "")
    elif role_u in ADMIN_ROLES:
        snap = _admin_snapshot(db, user_id)
        if not snap:
            return _invalid()
        if not snap.get("isActive"):
            raise ApiError("FORBIDDEN", "Admin account is disabled")
        capabilities = list(snap.get("capabilities") or [])
        name = str(snap.get("fullName") or "")
    else:
        return _invalid()

    # Avoid writing on every request: update lastSeenAt at most once per interval.
    try:
        interval_s = int(str(os.getenv("SESSION_LAST_SEEN_UPDATE_SECONDS", "300") or "300"))
    except ValueError:
        interval_s = 300
    last_dt = parse_datetime_maybe(ses.lastSeenAt)
    if interval_s <= 0 or not last_dt or (datetime.now(timezone.utc) - last_dt).total_seconds() >= interval_s:
        ses.lastSeenAt = iso_utc_now()

    return AuthContext(
        valid=True,
        userId=user_id,
        email=str(ses.email or ""),
        role=role_u,
        expiresAt=str(ses.expiresAt or ""),
        capabilities=capabilities,
        name=name,
    )


class SessionAuthenticator:
    """Resolves opaque `ST-` session tokens issued by the login actions."""

    name = "session"

    def authenticate(self, db, token: Any, *, action: str | None = None) -> AuthContext:
        return validate_session_token(db, token, action=action)


class TestTokenAuthenticator(SessionAuthenticator):
    """
    Session authenticator that also accepts `TEST:<ROLE>:<subjectId>[:cap1,cap2]`.

    Only constructed when AUTH_ALLOW_TEST_TOKENS is set, which Config.validate()
    rejects in production.
    """

    name = "session+test"

    def authenticate(self, db, token: Any, *, action: str | None = None) -> AuthContext:
        if not isinstance(token, str) or not token.startswith("TEST:"):
            return super().authenticate(db, token, action=action)

        parts = token.split(":")
        if len(parts) < 3:
            raise ApiError("AUTH_INVALID", "Invalid test token")
        role_u = normalize_role(parts[1])
        subject = parts[2].strip()
        if not subject or (role_u != VERIFIER_ROLE and role_u not in ADMIN_ROLES):
            raise ApiError("AUTH_INVALID", "Invalid test token")

        if len(parts) > 3:
            caps = [c.strip().lower() for c in parts[3].split(",") if c.strip()]
        elif role_u in ADMIN_ROLES:
            caps = list(DEFAULT_ROLE_CAPABILITIES.get(role_u, []))
        else:
            caps = []

        email = ""
        name = ""
        if role_u == VERIFIER_ROLE:
            ver = db.execute(select(Verifier).where(Verifier.verifierId == subject)).scalar_one_or_none()
            if ver:
                email, name = str(ver.email or ""), str(ver.companyName or "")
        else:
            adm = db.execute(select(Admin).where(Admin.adminId == subject)).scalar_one_or_none()
            if adm:
                email, name = str(adm.email or ""), str(adm.fullName or "")

        return AuthContext(valid=True, userId=subject, email=email, role=role_u, expiresAt="", capabilities=caps, name=name)


def build_authenticator(cfg) -> SessionAuthenticator:
    if bool(getattr(cfg, "AUTH_ALLOW_TEST_TOKENS", False)):
        if bool(getattr(cfg, "IS_PRODUCTION", False)):
            raise RuntimeError("Test tokens cannot be enabled in production")
        log.warning("Test token authenticator enabled (AUTH_ALLOW_TEST_TOKENS=1)")
        return TestTokenAuthenticator()
    return SessionAuthenticator()


def assert_permission(role: str, action: str) -> None:
    role_u = normalize_role(role) or ""
    action_u = str(action or "").upper().strip()

    allowed = STATIC_RBAC_PERMISSIONS.get(action_u)
    if not allowed:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")
    if "PUBLIC" in allowed:
        return
    if not role_u or role_u == "PUBLIC":
        raise ApiError("AUTH_INVALID", "Login required")
    if role_u not in allowed:
        raise ApiError("FORBIDDEN", f"Not allowed for role: {role_u}")


def assert_capability(auth: Optional[AuthContext], action: str) -> None:
    """Admin sessions must hold the capability mapped to the action. Verifiers are scoped by ownership instead."""
    if not auth or not auth.valid or not is_admin_role(auth.role):
        return
    cap = ACTION_CAPABILITIES.get(str(action or "").upper().strip())
    if cap and not auth.can(cap):
        raise ApiError("FORBIDDEN", f"Permission {cap} required")


def serialize_auth(auth: AuthContext) -> dict[str, Any]:
    return {
        "valid": bool(auth.valid),
        "expiresAt": auth.expiresAt,
        "me": {
            "userId": auth.userId,
            "email": auth.email,
            "name": auth.name,
            "role": role_or_public(auth),
            "capabilities": list(auth.capabilities or []),
        },
    }


def role_or_public(auth: Optional[AuthContext]) -> str:
    if not auth or not auth.valid:
        return "PUBLIC"
    return normalize_role(auth.role) or "PUBLIC"
