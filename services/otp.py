from __future__ import annotations

import hmac
import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select, update

from models import Otp
from utils import ApiError, iso_utc_now, normalize_email, parse_datetime_maybe, sha256_hex, to_iso_utc


OTP_LENGTH = 6


def generate_otp() -> str:
    return str(secrets.randbelow(9 * 10 ** (OTP_LENGTH - 1)) + 10 ** (OTP_LENGTH - 1))


def _otp_hash(email: str, otp: str) -> str:
    return sha256_hex(f"{normalize_email(email)}:{str(otp or '').strip()}")


def issue_otp(db, email: str, *, ttl_seconds: int, cooldown_seconds: int) -> str:
    """Create or replace the pending OTP for an email. Enforces the resend cooldown."""
    email_n = normalize_email(email)
    now = datetime.now(timezone.utc)

    row = db.execute(select(Otp).where(Otp.email == email_n)).scalar_one_or_none()
    if row and cooldown_seconds > 0:
        last = parse_datetime_maybe(row.lastSentAt)
        if last is not None:
            wait = int(cooldown_seconds - (now - last).total_seconds())
            if wait > 0:
                raise ApiError("RATE_LIMITED", f"Please wait {wait} seconds before requesting a new OTP")

    otp = generate_otp()
    expires_at = to_iso_utc(now + timedelta(seconds=int(ttl_seconds)))
    if row:
        row.otpHash = _otp_hash(email_n, otp)
        row.expiresAt = expires_at
        row.attempts = 0
        row.lastSentAt = iso_utc_now()
    else:
        db.add(
            Otp(
                email=email_n,
                otpHash=_otp_hash(email_n, otp),
                expiresAt=expires_at,
                attempts=0,
                lastSentAt=iso_utc_now(),
                createdAt=iso_utc_now(),
            )
        )
    return otp


def verify_otp(db, email: str, otp: str, *, max_attempts: int) -> tuple[bool, str]:
    """
    Check a submitted code. Returns (ok, message).

    Failures mutate the row (attempt counter / deletion); the caller must commit
    even when reporting the failure.
    """
    email_n = normalize_email(email)
    row = db.execute(select(Otp).where(Otp.email == email_n)).scalar_one_or_none()
    if not row:
        return False, "No OTP found. Please request a new one."

    exp = parse_datetime_maybe(row.expiresAt)
    if exp is None or exp < datetime.now(timezone.utc):
        db.execute(delete(Otp).where(Otp.email == email_n))
        return False, "OTP has expired. Please request a new one."

    if int(row.attempts or 0) >= max_attempts:
        db.execute(delete(Otp).where(Otp.email == email_n))
        return False, "Maximum attempts exceeded. Please request a new OTP."

    db.execute(
        update(Otp)
        .where(Otp.email == email_n)
        .values(attempts=Otp.attempts + 1)
        .execution_options(synchronize_session=False)
    )

    if not hmac.compare_digest(str(row.otpHash or ""), _otp_hash(email_n, otp)):
        remaining = max(0, max_attempts - int(row.attempts or 0) - 1)
        return False, f"Invalid OTP. {remaining} attempt(s) remaining."

    db.execute(delete(Otp).where(Otp.email == email_n))
    return True, ""
