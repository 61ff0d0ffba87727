from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]
UnenrollFailurePolicy = Literal["proceed", "block"]


def _getenv(name: str, default: str) -> str:
    # Centralize env access so it’s easy to extend later (type casting, required vars)
    return os.environ.get(name, default).strip()


def _getbool(name: str, default: str) -> bool:
    return _getenv(name, default).lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    database_url: str | None
    redis_url: str | None
    lms_url: str | None
    lms_token: str | None
    lms_student_role_id: int
    external_call_timeout_seconds: float
    unenroll_failure_policy: UnenrollFailurePolicy
    smtp_host: str | None
    smtp_port: int
    smtp_username: str | None
    smtp_password: str | None
    smtp_from_email: str | None
    smtp_use_tls: bool

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"

    @property
    def lms_configured(self) -> bool:
        return bool(self.lms_url and self.lms_token)


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    port_raw = _getenv("PORT", "8000")
    timeout_raw = _getenv("EXTERNAL_CALL_TIMEOUT_SECONDS", "5")
    policy_raw = _getenv("UNENROLL_FAILURE_POLICY", "proceed").lower()

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    if policy_raw not in ("proceed", "block"):
        raise ValueError(
            f"UNENROLL_FAILURE_POLICY must be proceed|block (got {policy_raw!r})"
        )

    port = _parse_int("PORT", port_raw)
    smtp_port = _parse_int("SMTP_PORT", _getenv("SMTP_PORT", "587"))
    role_id = _parse_int("LMS_STUDENT_ROLE_ID", _getenv("LMS_STUDENT_ROLE_ID", "5"))

    try:
        timeout = float(timeout_raw)
    except ValueError:
        raise ValueError(
            f"EXTERNAL_CALL_TIMEOUT_SECONDS must be a number (got {timeout_raw!r})"
        ) from None
    if timeout <= 0:
        raise ValueError(
            f"EXTERNAL_CALL_TIMEOUT_SECONDS must be positive (got {timeout_raw!r})"
        )

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=_getbool("LOG_JSON", "false"),
        port=port,
        database_url=_getenv("DATABASE_URL", "") or None,
        redis_url=_getenv("REDIS_URL", "") or None,
        lms_url=_getenv("LMS_URL", "") or None,
        lms_token=_getenv("LMS_TOKEN", "") or None,
        lms_student_role_id=role_id,
        external_call_timeout_seconds=timeout,
        unenroll_failure_policy=policy_raw,
        smtp_host=_getenv("SMTP_HOST", "") or None,
        smtp_port=smtp_port,
        smtp_username=_getenv("SMTP_USERNAME", "") or None,
        smtp_password=_getenv("SMTP_PASSWORD", "") or None,
        smtp_from_email=_getenv("SMTP_FROM_EMAIL", "") or None,
        smtp_use_tls=_getbool("SMTP_USE_TLS", "true"),
    )


# Optional: module-level singleton so imports are cheap
SETTINGS = load_settings()
