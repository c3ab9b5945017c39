from __future__ import annotations

import re

from werkzeug.security import check_password_hash, generate_password_hash

from utils import ApiError


_HAS_LOWER = re.compile(r"[a-z]")
_HAS_UPPER = re.compile(r"[A-Z]")
_HAS_DIGIT = re.compile(r"\d")
_HAS_SPECIAL = re.compile(r"[^A-Za-z0-9]")

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 256


def validate_password_policy(password: str) -> str:
    pwd = str(password or "")
    if not pwd:
        raise ApiError("BAD_REQUEST", "Missing password")
    if len(pwd) < MIN_PASSWORD_LENGTH:
        raise ApiError("BAD_REQUEST", f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(pwd) > MAX_PASSWORD_LENGTH:
        raise ApiError("BAD_REQUEST", "Password is too long")
    missing = [
        label
        for label, rx in (("uppercase", _HAS_UPPER), ("lowercase", _HAS_LOWER), ("number", _HAS_DIGIT), ("special character", _HAS_SPECIAL))
        if not rx.search(pwd)
    ]
    if missing:
        raise ApiError("BAD_REQUEST", "Password must include " + ", ".join(missing))
    return pwd


def hash_password(password: str) -> str:
    pwd = validate_password_policy(password)
    # Werkzeug 3 defaults to scrypt; pin explicitly for stability.
    return generate_password_hash(pwd, method="scrypt", salt_length=16)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash or len(str(password or "")) > MAX_PASSWORD_LENGTH:
        return False
    try:
        return check_password_hash(str(password_hash), str(password or ""))
    except ValueError:
        return False
