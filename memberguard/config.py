from __future__ import annotations

import os
import secrets
import tempfile
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

from cryptography.fernet import Fernet
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from memberguard.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SecurityPolicy:
    """Process-wide security constants, fixed at start-up.

    Built once from :class:`Settings` and handed to every component
    constructor. Nothing mutates it at runtime.
    """

    lockout_threshold: int = 2
    lockout_duration: timedelta = timedelta(minutes=1)
    min_password_age: timedelta = timedelta(minutes=1)
    max_password_age: timedelta = timedelta(minutes=2)
    password_history_depth: int = 2
    password_min_length: int = 12
    session_lifetime: timedelta = timedelta(minutes=1)
    reset_token_ttl: timedelta = timedelta(hours=1)
    recovery_code_count: int = 10
    totp_issuer: str = "BookwormsOnline"
    totp_digits: int = 6
    totp_period_seconds: int = 30
    totp_window: int = 1
    store_timeout_seconds: float = 5.0


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str, generate: Callable[[], str]) -> str:
    """Return a secret persisted under SHARED_FS_ROOT, creating it on first use."""

    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/memberguard"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup",
            error=str(exc),
            path=str(fs_root),
            message="Could not set directory permissions",
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = generate()
    tmp_path = None
    try:
        # Write to temp file then rename
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set it via env or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the membership service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/memberguard", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/memberguard", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets.",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Signing and encryption material
    auth_secret: str = env_field(None, "AUTH_SECRET")
    auth_issuer: str = env_field("memberguard", "AUTH_ISSUER")
    data_encryption_key: str = env_field(
        None,
        "DATA_ENCRYPTION_KEY",
        description="Fernet key protecting card numbers and 2FA secrets at rest",
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # Security policy
    lockout_threshold: int = env_field(2, "LOCKOUT_THRESHOLD")
    lockout_minutes: float = env_field(1, "LOCKOUT_MINUTES")
    min_password_age_minutes: float = env_field(1, "MIN_PASSWORD_AGE_MINUTES")
    max_password_age_minutes: float = env_field(2, "MAX_PASSWORD_AGE_MINUTES")
    password_history_depth: int = env_field(2, "PASSWORD_HISTORY_DEPTH")
    session_minutes: float = env_field(1, "SESSION_MINUTES")
    reset_token_ttl_minutes: float = env_field(60, "RESET_TOKEN_TTL_MINUTES")
    recovery_code_count: int = env_field(10, "RECOVERY_CODE_COUNT")
    totp_issuer: str = env_field("BookwormsOnline", "TOTP_ISSUER")
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS")
    auth_rate_limit_per_minute: int = env_field(30, "AUTH_RATE_LIMIT_PER_MINUTE")

    # CAPTCHA oracle
    recaptcha_secret: str | None = env_field(None, "RECAPTCHA_SECRET")
    recaptcha_verify_url: str = env_field(
        "https://www.google.com/recaptcha/api/siteverify", "RECAPTCHA_VERIFY_URL"
    )
    recaptcha_timeout_seconds: float = env_field(10.0, "RECAPTCHA_TIMEOUT_SECONDS")
    captcha_bypass: bool = env_field(
        False,
        "CAPTCHA_BYPASS",
        description="Accept any non-empty CAPTCHA token (development and tests only)",
    )

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("BookwormsOnline", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("auth_secret")
    @classmethod
    def _ensure_auth_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".auth_secret", lambda: secrets.token_urlsafe(64))

    @field_validator("data_encryption_key")
    @classmethod
    def _ensure_encryption_key(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(
            ".data_key", lambda: Fernet.generate_key().decode("utf-8")
        )

    @field_validator("lockout_threshold", "password_history_depth", "recovery_code_count")
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    def security_policy(self) -> SecurityPolicy:
        return SecurityPolicy(
            lockout_threshold=self.lockout_threshold,
            lockout_duration=timedelta(minutes=self.lockout_minutes),
            min_password_age=timedelta(minutes=self.min_password_age_minutes),
            max_password_age=timedelta(minutes=self.max_password_age_minutes),
            password_history_depth=self.password_history_depth,
            session_lifetime=timedelta(minutes=self.session_minutes),
            reset_token_ttl=timedelta(minutes=self.reset_token_ttl_minutes),
            recovery_code_count=self.recovery_code_count,
            totp_issuer=self.totp_issuer,
            store_timeout_seconds=self.store_timeout_seconds,
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
