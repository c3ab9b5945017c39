"""
Shared request pipeline for the action API and the REST routes.

One session per request: authenticate -> RBAC -> capability -> action ->
API_CALL audit -> commit. Any error rolls the session back and is recorded
in a separate session as an API_ERROR audit row.
"""
from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Optional

from flask import current_app, g, request
from sqlalchemy.exc import DBAPIError

from actions import ActionContext, dispatch
from auth import assert_capability, assert_permission, is_public_action, role_or_public
from models import AuditLog
from utils import ApiError, AuthContext, err, iso_utc_now, now_monotonic, ok, redact_for_audit


log = logging.getLogger("api")

LOGIN_ACTIONS = {"VERIFIER_LOGIN", "VERIFIER_REGISTER", "OTP_SEND", "OTP_VERIFY", "ADMIN_LOGIN"}


def request_token(body_token: Any = None) -> str:
    if isinstance(body_token, str) and body_token.strip():
        return body_token.strip()
    authz = str(request.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer "):
        return authz.split(" ", 1)[1].strip()
    return str(request.headers.get("X-Session-Token") or "").strip()


def client_info() -> dict[str, str]:
    fwd = str(request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    return {
        "ipAddress": fwd or str(request.remote_addr or ""),
        "userAgent": str(request.headers.get("User-Agent") or ""),
    }


def _check_rate_limit(cfg, action_u: str) -> None:
    limiter = current_app.extensions.get("rate_limiter")
    if limiter is None:
        return
    ip = client_info()["ipAddress"]
    if action_u in LOGIN_ACTIONS:
        limiter.check(f"{ip}:LOGIN", cfg.RATE_LIMIT_LOGIN)
    else:
        limiter.check(f"{ip}:GLOBAL", cfg.RATE_LIMIT_GLOBAL)
        limiter.check(f"{ip}:API:{action_u}", cfg.RATE_LIMIT_DEFAULT)


def _authenticate(db, token: str, action_u: str) -> Optional[AuthContext]:
    authenticator = current_app.extensions["authenticator"]
    if not is_public_action(action_u):
        auth_ctx = authenticator.authenticate(db, token, action=action_u)
        if not auth_ctx.valid:
            raise ApiError("AUTH_INVALID", "Invalid or expired session")
        return auth_ctx
    if not token:
        return None
    try:
        maybe = authenticator.authenticate(db, token, action=action_u)
    except ApiError:
        return None
    return maybe if maybe.valid else None


def _database_error_message(cfg, e: DBAPIError) -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if cfg.IS_PRODUCTION:
        return f"Service temporarily unavailable (requestId: {request_id})" if request_id else "Service temporarily unavailable"
    orig = getattr(e, "orig", None)
    orig_msg = re.sub(r"\s+", " ", str(orig) if orig else "").strip()
    if len(orig_msg) > 300:
        orig_msg = orig_msg[:300] + "..."
    detail = f": {orig_msg}" if orig_msg else ""
    return f"Database error{detail} (requestId: {request_id})" if request_id else f"Database error{detail}"


def run_action(action: str, data: Any, *, token: str = "", upload: Optional[dict[str, Any]] = None) -> Any:
    """Run one action in its own transaction. Returns the action result or raises ApiError."""
    cfg = current_app.config["CFG"]
    session_factory = current_app.extensions["session_factory"]
    action_u = str(action or "").upper().strip()
    data = data if data is not None else {}

    db = None
    auth_ctx: Optional[AuthContext] = None
    try:
        if not action_u:
            raise ApiError("BAD_REQUEST", "Missing action")
        _check_rate_limit(cfg, action_u)

        db = session_factory()
        auth_ctx = _authenticate(db, token, action_u)

        assert_permission(role_or_public(auth_ctx), action_u)
        assert_capability(auth_ctx, action_u)

        ctx = ActionContext(
            notifier=current_app.extensions.get("notifier"),
            documents=current_app.extensions.get("documents"),
            token=token,
            client=client_info(),
            upload=upload,
        )
        out = dispatch(action_u, data, auth_ctx, db, cfg, ctx)

        db.add(
            AuditLog(
                logId=f"LOG-{os.urandom(16).hex()}",
                entityType="API",
                entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
                action=action_u,
                fromState="",
                toState="",
                stageTag="API_CALL",
                remark="",
                actorUserId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
                actorRole=str(auth_ctx.role) if auth_ctx else "PUBLIC",
                actorEmail=str(auth_ctx.email or "") if auth_ctx else "",
                at=iso_utc_now(),
                correlationId=str(getattr(g, "request_id", "") or ""),
                metaJson=json.dumps({"data": redact_for_audit(data)}),
            )
        )
        db.commit()

        latency_ms = int((now_monotonic() - g.start_ts) * 1000)
        log.info(
            "request_id=%s action=%s user=%s role=%s latency_ms=%s",
            g.request_id,
            action_u,
            (auth_ctx.userId if auth_ctx else "PUBLIC"),
            (auth_ctx.role if auth_ctx else "PUBLIC"),
            latency_ms,
        )
        return out
    except ApiError as e:
        if db is not None:
            db.rollback()
        _write_error_audit(action_u, auth_ctx, data, e)
        raise
    except DBAPIError as e:
        if db is not None:
            db.rollback()
        api_err = ApiError("UNAVAILABLE", _database_error_message(cfg, e))
        _write_error_audit(action_u, auth_ctx, data, api_err)
        log.exception("request_id=%s action=%s", getattr(g, "request_id", ""), action_u)
        raise api_err from e
    except Exception as e:
        if db is not None:
            db.rollback()
        request_id = str(getattr(g, "request_id", "") or "").strip()
        msg = f"Unexpected error (requestId: {request_id})" if request_id else "Unexpected error"
        if not cfg.IS_PRODUCTION:
            msg = f"Unexpected error: {type(e).__name__} (requestId: {request_id})"
        api_err = ApiError("INTERNAL", msg)
        _write_error_audit(action_u, auth_ctx, data, api_err)
        log.exception("request_id=%s action=%s", request_id, action_u)
        raise api_err from e
    finally:
        if db is not None:
            db.close()


def json_action(action: str, data: Any, *, token: str = "", upload: Optional[dict[str, Any]] = None, success_status: int = 200):
    """run_action() wrapped in the {ok, data, error} envelope."""
    try:
        out = run_action(action, data, token=token, upload=upload)
    except ApiError as e:
        return err(e.code, e.message, http_status=e.http_status)[0], e.http_status
    return ok(out)[0], success_status


def _write_error_audit(action: str, auth_ctx, data: Any, err_obj: ApiError) -> None:
    session_factory = current_app.extensions.get("session_factory")
    if session_factory is None:
        return
    try:
        with session_factory() as db2:
            db2.add(
                AuditLog(
                    logId=f"LOG-{os.urandom(16).hex()}",
                    entityType="API",
                    entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
                    action=str(action or "").upper() or "UNKNOWN",
                    fromState="",
                    toState="",
                    stageTag="API_ERROR",
                    remark=f"{err_obj.code}: {err_obj.message}",
                    actorUserId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
                    actorRole=str(auth_ctx.role) if auth_ctx else "PUBLIC",
                    actorEmail=str(getattr(auth_ctx, "email", "") or "") if auth_ctx else "",
                    at=iso_utc_now(),
                    correlationId=str(getattr(g, "request_id", "") or ""),
                    metaJson=json.dumps(
                        {
                            "data": redact_for_audit(data or {}) if isinstance(data, (dict, list)) else {},
                            "error": {"code": err_obj.code, "message": err_obj.message},
                        }
                    ),
                )
            )
            db2.commit()
    except Exception:
        log.exception("failed to write error audit action=%s", action)
