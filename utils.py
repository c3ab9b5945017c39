from __future__ import annotations

import hashlib
import json
import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional

from dateutil import parser as date_parser
from flask import jsonify


# Default HTTP status per error code; callers may still pass an explicit http_status.
ERROR_HTTP_STATUS: dict[str, int] = {
    "BAD_REQUEST": 400,
    "AUTH_INVALID": 401,
    "FORBIDDEN": 403,
    "BLOCKED": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "RATE_LIMITED": 429,
    "INTERNAL": 500,
    "UNAVAILABLE": 503,
}


class ApiError(Exception):
    def __init__(self, code: str, message: str, http_status: int | None = None):
        super().__init__(message)
        self.code = str(code or "INTERNAL")
        self.message = str(message or "")
        self.http_status = int(http_status or ERROR_HTTP_STATUS.get(self.code, 400))


@dataclass
class AuthContext:
    valid: bool
    userId: str
    email: str
    role: str
    expiresAt: str
    capabilities: list[str] = field(default_factory=list)
    name: str = ""

    def can(self, capability: str) -> bool:
        return str(capability or "").strip().lower() in {str(c).lower() for c in (self.capabilities or [])}


def ok(data: Any = None):
    return jsonify({"ok": True, "data": data, "error": None}), 200


def err(code: str, message: str, http_status: int = 200):
    return jsonify({"ok": False, "data": None, "error": {"code": code, "message": message}}), http_status


def iso_utc_now() -> str:
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_datetime_maybe(value: Any) -> Optional[datetime]:
    """Parse an ISO-ish timestamp; naive values are treated as UTC."""
    s = str(value or "").strip()
    if not s:
        return None
    try:
        dt = date_parser.isoparse(s)
    except (ValueError, OverflowError):
        try:
            dt = date_parser.parse(s)
        except (ValueError, OverflowError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")
_PARTIAL_DATE_PROBES = (datetime(2000, 1, 1), datetime(2001, 2, 2))


def parse_date_maybe(value: Any) -> Optional[date]:
    """Calendar date of a date/datetime string (time of day dropped). Partial dates give None."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value or "").strip()
    if not s:
        return None
    if _ISO_DATE_RE.match(s):
        try:
            return date_parser.isoparse(s).date()
        except (ValueError, OverflowError):
            return None
    # dateutil fills missing parts from its default; a part that differs between
    # two defaults was not in the input.
    try:
        first, second = (date_parser.parse(s, default=d, dayfirst=False).date() for d in _PARTIAL_DATE_PROBES)
    except (ValueError, OverflowError):
        return None
    return first if first == second else None


def new_uuid() -> str:
    return str(uuid.uuid4())


def now_monotonic() -> float:
    return time.monotonic()


def sha256_hex(value: str) -> str:
    return hashlib.sha256(str(value or "").encode("utf-8")).hexdigest()


def normalize_role(role: Any) -> str:
    return str(role or "").upper().strip()


def normalize_employee_id(value: Any) -> str:
    return str(value or "").strip().upper()


def normalize_email(value: Any) -> str:
    return str(value or "").strip().lower()


_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(str(value or "").strip()))


def email_domain(value: str) -> str:
    s = normalize_email(value)
    return s.split("@", 1)[1] if "@" in s else ""


def parse_json_body(raw: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except Exception:
        raise ApiError("BAD_REQUEST", "Invalid JSON body")
    if not isinstance(body, dict):
        raise ApiError("BAD_REQUEST", "JSON body must be an object")
    return body


def safe_json_string(value: Any, default: Any) -> Any:
    s = str(value or "").strip()
    if not s:
        return default
    try:
        return json.loads(s)
    except Exception:
        return default


def sanitize_filename(name: str) -> str:
    base = str(name or "").replace("\\", "/").split("/")[-1].strip()
    base = re.sub(r"[^A-Za-z0-9._-]+", "_", base)
    base = base.strip("._") or "file"
    return base[:120]


_REDACT_KEYS = {"password", "newpassword", "currentpassword", "otp", "token", "sessiontoken", "idtoken", "file", "filebase64"}


def redact_for_audit(value: Any) -> Any:
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if str(k or "").lower() in _REDACT_KEYS:
                out[k] = "***"
            else:
                out[k] = redact_for_audit(v)
        return out
    if isinstance(value, list):
        return [redact_for_audit(v) for v in value[:50]]
    if isinstance(value, str) and len(value) > 500:
        return value[:500] + "..."
    return value


def parse_pagination(data: dict, *, default_limit: int = 10, max_limit: int = 100) -> tuple[int, int]:
    try:
        page = int((data or {}).get("page") or 1)
    except (TypeError, ValueError):
        page = 1
    try:
        limit = int((data or {}).get("limit") or default_limit)
    except (TypeError, ValueError):
        limit = default_limit
    return max(1, page), max(1, min(max_limit, limit))


class SimpleRateLimiter:
    """Fixed one-minute window counter, per process."""

    def __init__(self):
        self._lock = threading.Lock()
        self._hits: dict[str, tuple[int, int]] = {}

    def check(self, key: str, limit_per_minute: int) -> None:
        window = int(time.time() // 60)
        with self._lock:
            if len(self._hits) > 10_000:
                self._hits = {k: v for k, v in self._hits.items() if v[0] == window}
            prev_window, count = self._hits.get(key, (window, 0))
            if prev_window != window:
                count = 0
            count += 1
            self._hits[key] = (window, count)
        if count > int(limit_per_minute):
            raise ApiError("RATE_LIMITED", "Too many requests. Please try again later.")
