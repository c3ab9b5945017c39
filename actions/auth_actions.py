from __future__ import annotations

import logging

from sqlalchemy import func, select

from actions.helpers import append_access_log, append_audit, next_prefixed_id
from auth import VERIFIER_ROLE, capabilities_for_admin, issue_session_token, revoke_session_token, serialize_auth
from models import Admin, Verifier
from passwords import MAX_PASSWORD_LENGTH, hash_password, verify_password
from services import otp as otp_service
from services.notifier import KIND_OTP, KIND_WELCOME, queue_after_commit
from utils import ApiError, AuthContext, email_domain, iso_utc_now, is_valid_email, normalize_email, normalize_role


log = logging.getLogger("auth")


def _client(ctx) -> dict:
    return dict(getattr(ctx, "client", None) or {})


def _require_company_email(cfg, email: str) -> str:
    email_n = normalize_email(email)
    if not email_n:
        raise ApiError("BAD_REQUEST", "Missing email")
    if not is_valid_email(email_n):
        raise ApiError("BAD_REQUEST", "Invalid email address")
    blocked = {d.strip().lower() for d in (cfg.BLOCKED_EMAIL_DOMAINS or []) if d.strip()}
    if email_domain(email_n) in blocked:
        raise ApiError("BAD_REQUEST", "Please use your company email address")
    return email_n


def _find_verifier(db, email: str):
    return db.execute(select(Verifier).where(func.lower(Verifier.email) == normalize_email(email))).scalar_one_or_none()


def _new_verifier_id(db) -> str:
    existing = db.execute(select(Verifier.verifierId).where(Verifier.verifierId.like("VRF-%"))).scalars().all()
    return next_prefixed_id(db, counter_key="VERIFIER", prefix="VRF-", pad=5, existing_ids=existing)


def _company_from_domain(email: str) -> str:
    domain = email_domain(email)
    return (domain.split(".", 1)[0] if domain else "").upper()


def _verifier_me(ver: Verifier) -> dict:
    return {
        "userId": ver.verifierId,
        "verifierId": ver.verifierId,
        "email": ver.email,
        "name": ver.companyName,
        "companyName": ver.companyName,
        "role": VERIFIER_ROLE,
        "isEmailVerified": bool(ver.isEmailVerified),
        "capabilities": [],
    }


def _login_failed(db, *, email: str, role: str, action: str, reason: str, ctx, message: str = "Invalid credentials"):
    # The failure trail must survive the rollback the request wrapper performs on errors.
    append_access_log(db, email=email, role=role, action=action, status="FAILURE", failure_reason=reason, client=_client(ctx))
    db.commit()
    log.info("login failed action=%s email=%s reason=%s", action, email, reason)
    raise ApiError("AUTH_INVALID", message)


def _open_verifier_session(db, cfg, ver: Verifier, *, action: str, ctx) -> dict:
    now = iso_utc_now()
    ver.lastLoginAt = now
    ver.updatedAt = now
    ses = issue_session_token(
        db, user_id=ver.verifierId, email=ver.email, role=VERIFIER_ROLE, session_ttl_minutes=cfg.SESSION_TTL_MINUTES
    )
    append_access_log(db, email=ver.email, role=VERIFIER_ROLE, action=action, status="SUCCESS", client=_client(ctx))
    return {"sessionToken": ses["sessionToken"], "expiresAt": ses["expiresAt"], "me": _verifier_me(ver)}


def verifier_register(data, auth: AuthContext | None, db, cfg, ctx):
    company = str((data or {}).get("companyName") or "").strip()
    email_n = _require_company_email(cfg, (data or {}).get("email"))
    password = str((data or {}).get("password") or "")
    if not company:
        raise ApiError("BAD_REQUEST", "Missing companyName")
    if len(company) > 200:
        raise ApiError("BAD_REQUEST", "companyName is too long")
    password_hash = hash_password(password)

    if _find_verifier(db, email_n):
        raise ApiError("CONFLICT", "A verifier with this email already exists")

    now = iso_utc_now()
    ver = Verifier(
        verifierId=_new_verifier_id(db),
        companyName=company,
        email=email_n,
        passwordHash=password_hash,
        isEmailVerified=False,
        isActive=True,
        lastLoginAt="",
        createdAt=now,
        updatedAt=now,
    )
    db.add(ver)

    actor = AuthContext(valid=True, userId=ver.verifierId, email=email_n, role=VERIFIER_ROLE, expiresAt="")
    append_audit(db, entityType="VERIFIER", entityId=ver.verifierId, action="VERIFIER_REGISTER", stageTag="AUTH_REGISTER", actor=actor, at=now)

    out = _open_verifier_session(db, cfg, ver, action="REGISTER", ctx=ctx)
    queue_after_commit(db, getattr(ctx, "notifier", None), KIND_WELCOME, email_n, {"companyName": company})
    log.info("verifier registered id=%s email=%s", ver.verifierId, email_n)
    return out


def verifier_login(data, auth: AuthContext | None, db, cfg, ctx):
    email_n = normalize_email((data or {}).get("email"))
    password = str((data or {}).get("password") or "")
    if not email_n:
        raise ApiError("BAD_REQUEST", "Missing email")
    if not password:
        raise ApiError("BAD_REQUEST", "Missing password")
    if len(password) > MAX_PASSWORD_LENGTH:
        raise ApiError("BAD_REQUEST", "Password is too long")

    ver = _find_verifier(db, email_n)
    if not ver:
        _login_failed(db, email=email_n, role=VERIFIER_ROLE, action="LOGIN", reason="unknown email", ctx=ctx)
    if not bool(ver.isActive):
        append_access_log(db, email=email_n, role=VERIFIER_ROLE, action="LOGIN", status="FAILURE", failure_reason="account disabled", client=_client(ctx))
        db.commit()
        raise ApiError("FORBIDDEN", "Verifier account is disabled")
    # OTP-only accounts have no password hash; they must log in with OTP.
    if not ver.passwordHash or not verify_password(password, ver.passwordHash):
        _login_failed(db, email=email_n, role=VERIFIER_ROLE, action="LOGIN", reason="bad password", ctx=ctx)

    return _open_verifier_session(db, cfg, ver, action="LOGIN", ctx=ctx)


def otp_send(data, auth: AuthContext | None, db, cfg, ctx):
    email_n = _require_company_email(cfg, (data or {}).get("email"))

    ver = _find_verifier(db, email_n)
    if ver is not None and not bool(ver.isActive):
        raise ApiError("FORBIDDEN", "Verifier account is disabled")

    code = otp_service.issue_otp(db, email_n, ttl_seconds=cfg.OTP_TTL_SECONDS, cooldown_seconds=cfg.OTP_RESEND_COOLDOWN_SECONDS)

    notifier = getattr(ctx, "notifier", None)
    if notifier is None:
        raise ApiError("UNAVAILABLE", "Email delivery is not configured")
    # The code is useless unless it arrives, so this one is delivered synchronously.
    res = notifier.notify(KIND_OTP, email_n, {"otp": code, "ttlSeconds": cfg.OTP_TTL_SECONDS})
    if not res.get("delivered"):
        raise ApiError("UNAVAILABLE", "Failed to send OTP email. Please try again later.")

    log.info("otp sent email=%s", email_n)
    return {"sent": True, "email": email_n, "expiresInSeconds": int(cfg.OTP_TTL_SECONDS)}


def otp_verify(data, auth: AuthContext | None, db, cfg, ctx):
    email_n = normalize_email((data or {}).get("email"))
    code = str((data or {}).get("otp") or "").strip()
    if not email_n:
        raise ApiError("BAD_REQUEST", "Missing email")
    if not code:
        raise ApiError("BAD_REQUEST", "Missing otp")

    ok_, message = otp_service.verify_otp(db, email_n, code, max_attempts=cfg.OTP_MAX_ATTEMPTS)
    if not ok_:
        _login_failed(db, email=email_n, role=VERIFIER_ROLE, action="OTP_LOGIN", reason=message, ctx=ctx, message=message)

    ver = _find_verifier(db, email_n)
    if ver is None:
        now = iso_utc_now()
        ver = Verifier(
            verifierId=_new_verifier_id(db),
            companyName=_company_from_domain(email_n),
            email=email_n,
            passwordHash="",
            isEmailVerified=True,
            isActive=True,
            lastLoginAt="",
            createdAt=now,
            updatedAt=now,
        )
        db.add(ver)
        append_audit(
            db,
            entityType="VERIFIER",
            entityId=ver.verifierId,
            action="VERIFIER_REGISTER",
            stageTag="AUTH_REGISTER",
            remark="created on first OTP login",
            actor=AuthContext(valid=True, userId=ver.verifierId, email=email_n, role=VERIFIER_ROLE, expiresAt=""),
            at=now,
        )
        log.info("verifier auto-registered id=%s email=%s", ver.verifierId, email_n)
    elif not bool(ver.isActive):
        raise ApiError("FORBIDDEN", "Verifier account is disabled")
    else:
        ver.isEmailVerified = True

    return _open_verifier_session(db, cfg, ver, action="OTP_LOGIN", ctx=ctx)


def admin_login(data, auth: AuthContext | None, db, cfg, ctx):
    username = str((data or {}).get("username") or "").strip()
    password = str((data or {}).get("password") or "")
    if not username:
        raise ApiError("BAD_REQUEST", "Missing username")
    if not password:
        raise ApiError("BAD_REQUEST", "Missing password")
    if len(password) > MAX_PASSWORD_LENGTH:
        raise ApiError("BAD_REQUEST", "Password is too long")

    adm = db.execute(select(Admin).where(func.lower(Admin.username) == username.lower())).scalar_one_or_none()
    if not adm or not verify_password(password, adm.passwordHash):
        _login_failed(db, email=username, role="ADMIN", action="ADMIN_LOGIN", reason="bad credentials", ctx=ctx)
    role = normalize_role(adm.role)
    if not bool(adm.isActive):
        append_access_log(db, email=adm.email or username, role=role, action="ADMIN_LOGIN", status="FAILURE", failure_reason="account disabled", client=_client(ctx))
        db.commit()
        raise ApiError("FORBIDDEN", "Admin account is disabled")

    now = iso_utc_now()
    adm.lastLoginAt = now
    adm.updatedAt = now
    ses = issue_session_token(db, user_id=adm.adminId, email=adm.email, role=role, session_ttl_minutes=cfg.SESSION_TTL_MINUTES)
    append_access_log(db, email=adm.email or username, role=role, action="ADMIN_LOGIN", status="SUCCESS", client=_client(ctx))

    return {
        "sessionToken": ses["sessionToken"],
        "expiresAt": ses["expiresAt"],
        "me": {
            "userId": adm.adminId,
            "adminId": adm.adminId,
            "username": adm.username,
            "email": adm.email,
            "name": adm.fullName,
            "role": role,
            "capabilities": capabilities_for_admin(adm),
        },
    }


def logout(data, auth: AuthContext | None, db, cfg, ctx):
    token = str(getattr(ctx, "token", "") or "")
    revoked = revoke_session_token(db, token, revoked_by=auth.userId if auth else "")
    if auth and auth.valid:
        append_access_log(db, email=auth.email, role=auth.role, action="LOGOUT", status="SUCCESS", client=_client(ctx))
    return {"loggedOut": True, "revoked": bool(revoked)}


def get_me(data, auth: AuthContext | None, db, cfg, ctx):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    return serialize_auth(auth)
