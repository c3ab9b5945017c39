from __future__ import annotations

import os


def _env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, "") or "").strip() or default)
    except Exception:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = str(os.getenv(name, "") or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def _env_list(name: str, default: list[str] | None = None) -> list[str]:
    raw = str(os.getenv(name, "") or "").strip()
    if not raw:
        return list(default or [])
    return [x.strip() for x in raw.split(",") if x.strip()]


EMAIL_PROVIDERS = {"brevo", "sendgrid", "ab_test", "fallback", "console"}
NOTIFY_DISPATCH_MODES = {"thread", "celery", "inline"}


class Config:
    """Process configuration, read once from the environment in create_app()."""

    def __init__(self):
        self.ENV = _env_str("APP_ENV", "development").lower()
        self.IS_PRODUCTION = self.ENV in {"prod", "production"}
        self.APP_VERSION = _env_str("APP_VERSION", "1.0.0")
        self.LOG_LEVEL = _env_str("LOG_LEVEL", "INFO").upper()

        self.HOST = _env_str("HOST", "127.0.0.1")
        self.PORT = _env_int("PORT", 5002)

        self.DATABASE_URL = _env_str("DATABASE_URL", "sqlite:///./verification.db")
        self.DB_POOL_SIZE = max(1, _env_int("DB_POOL_SIZE", 5))
        self.DB_MAX_OVERFLOW = max(0, _env_int("DB_MAX_OVERFLOW", 10))

        self.ALLOWED_ORIGINS = _env_list("ALLOWED_ORIGINS", ["http://localhost:3000"])

        self.SESSION_TTL_MINUTES = max(5, _env_int("SESSION_TTL_MINUTES", 8 * 60))
        # Test tokens are an alternate authenticator for local/CI runs only.
        self.AUTH_ALLOW_TEST_TOKENS = _env_bool("AUTH_ALLOW_TEST_TOKENS", False)

        self.UPLOAD_DIR = _env_str("UPLOAD_DIR", "./uploads")
        self.MAX_UPLOAD_MB = max(1, _env_int("MAX_UPLOAD_MB", 5))
        self.PUBLIC_BASE_URL = _env_str("PUBLIC_BASE_URL", "").rstrip("/")

        self.MAX_VERIFICATION_ATTEMPTS = max(1, _env_int("MAX_VERIFICATION_ATTEMPTS", 3))
        self.EXIT_TEAM_EMAIL = _env_str("EXIT_TEAM_EMAIL", "exitteam@company.com")

        self.OTP_TTL_SECONDS = max(60, _env_int("OTP_TTL_SECONDS", 300))
        self.OTP_MAX_ATTEMPTS = max(1, _env_int("OTP_MAX_ATTEMPTS", 3))
        self.OTP_RESEND_COOLDOWN_SECONDS = max(0, _env_int("OTP_RESEND_COOLDOWN_SECONDS", 60))
        self.BLOCKED_EMAIL_DOMAINS = _env_list(
            "BLOCKED_EMAIL_DOMAINS",
            ["gmail.com", "yahoo.com", "hotmail.com", "outlook.com", "aol.com", "icloud.com"],
        )

        self.EMAIL_PROVIDER = _env_str("EMAIL_PROVIDER", "brevo").lower()
        self.BREVO_API_KEY = _env_str("BREVO_API_KEY", "")
        self.SENDGRID_API_KEY = _env_str("SENDGRID_API_KEY", "")
        self.EMAIL_HTTP_TIMEOUT_SECONDS = max(1, _env_int("EMAIL_HTTP_TIMEOUT_SECONDS", 10))
        self.FROM_EMAIL = _env_str("FROM_EMAIL", "noreply@company.com")
        self.COMPANY_NAME = _env_str("COMPANY_NAME", "Employee Verification Portal")
        self.SUPPORT_EMAIL = _env_str("SUPPORT_EMAIL", "hr@company.com")

        self.NOTIFY_DISPATCH = _env_str("NOTIFY_DISPATCH", "thread").lower()
        self.REDIS_URL = _env_str("REDIS_URL", "")

        self.RATE_LIMIT_GLOBAL = max(1, _env_int("RATE_LIMIT_GLOBAL", 600))
        self.RATE_LIMIT_DEFAULT = max(1, _env_int("RATE_LIMIT_DEFAULT", 120))
        self.RATE_LIMIT_LOGIN = max(1, _env_int("RATE_LIMIT_LOGIN", 20))

        self.ENABLE_COMPRESSION = _env_bool("ENABLE_COMPRESSION", True)
        self.COMPRESSION_MIN_SIZE = max(0, _env_int("COMPRESSION_MIN_SIZE", 500))
        self.COMPRESSION_LEVEL = _env_int("COMPRESSION_LEVEL", 6)

        self.SEED_DEMO_DATA = _env_bool("SEED_DEMO_DATA", not self.IS_PRODUCTION)
        self.ADMIN_BOOTSTRAP_USERNAME = _env_str("ADMIN_BOOTSTRAP_USERNAME", "")
        self.ADMIN_BOOTSTRAP_PASSWORD = _env_str("ADMIN_BOOTSTRAP_PASSWORD", "")

    def validate(self) -> None:
        if not self.DATABASE_URL:
            raise RuntimeError("Missing DATABASE_URL")
        if self.EMAIL_PROVIDER not in EMAIL_PROVIDERS:
            raise RuntimeError(f"Invalid EMAIL_PROVIDER: {self.EMAIL_PROVIDER}")
        if self.NOTIFY_DISPATCH not in NOTIFY_DISPATCH_MODES:
            raise RuntimeError(f"Invalid NOTIFY_DISPATCH: {self.NOTIFY_DISPATCH}")
        if self.NOTIFY_DISPATCH == "celery" and not self.REDIS_URL:
            raise RuntimeError("NOTIFY_DISPATCH=celery requires REDIS_URL")

        if self.IS_PRODUCTION:
            if self.AUTH_ALLOW_TEST_TOKENS:
                raise RuntimeError("AUTH_ALLOW_TEST_TOKENS must be disabled in production")
            if self.DATABASE_URL.startswith("sqlite"):
                raise RuntimeError("SQLite is not supported in production")
            if self.EMAIL_PROVIDER == "console":
                raise RuntimeError("EMAIL_PROVIDER=console is not allowed in production")
            if "*" in self.ALLOWED_ORIGINS:
                raise RuntimeError("Wildcard ALLOWED_ORIGINS is not allowed in production")
