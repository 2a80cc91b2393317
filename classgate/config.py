from __future__ import annotations

import contextlib
import os
import re
import secrets
from datetime import timedelta
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from classgate.logging import get_logger

logger = get_logger(__name__)

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhdw]?)\s*$")
_DURATION_UNITS = {
    "": "seconds",
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
    "w": "weeks",
}


def parse_duration(value: str | int) -> timedelta:
    """Parse ``7d`` / ``12h`` / ``30m`` / ``45s`` / ``3600`` into a timedelta."""
    if isinstance(value, int):
        return timedelta(seconds=value)
    match = _DURATION_RE.match(str(value).lower())
    if not match:
        raise ValueError(f"invalid duration: {value!r}")
    amount, unit = match.groups()
    return timedelta(**{_DURATION_UNITS[unit]: int(amount)})


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings read from the environment and an optional ``.env``."""

    database_url: str = env_field(
        "postgresql://localhost:5432/classgate", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        "redis://localhost:6379/0",
        "REDIS_URL",
        description="Rate-limit backend; empty disables Redis",
    )
    shared_fs_root: str = env_field("/srv/classgate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI; enables runtime reset",
    )
    environment: str = env_field("development", "ENVIRONMENT")
    app_version: str = env_field("1.0.0", "APP_VERSION")

    jwt_secret: str | None = env_field(
        None,
        "JWT_SECRET",
        validate_default=True,
        description="Generated and persisted under SHARED_FS_ROOT when unset",
    )
    jwt_issuer: str = env_field("classgate", "JWT_ISSUER")
    jwt_expires_in: str = env_field(
        "7d", "JWT_EXPIRES_IN", description="Session token lifetime (7d, 12h, 3600)"
    )

    max_login_attempts: int = env_field(
        5,
        "MAX_LOGIN_ATTEMPTS",
        description="Consecutive failures before lockout (overridable via admin settings)",
    )
    lockout_duration_minutes: int = env_field(
        120,
        "LOCKOUT_DURATION_MINUTES",
        description="Lockout window in minutes (overridable via admin settings)",
    )
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    allow_signup: bool = env_field(
        True,
        "ALLOW_SIGNUP",
        description="Allow self registration (overridable via admin settings)",
    )

    client_url: str = env_field("http://localhost:3000", "CLIENT_URL")
    cors_allow_origins: str = env_field(
        "http://localhost:3000", "CORS_ALLOW_ORIGINS", description="Comma separated"
    )

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Classgate", "EMAIL_FROM_NAME")

    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def env_names(cls) -> dict[str, str]:
        """Field name to environment variable name."""
        names = {}
        for name, info in cls.model_fields.items():
            extra = info.json_schema_extra if isinstance(info.json_schema_extra, dict) else {}
            names[name] = extra.get("env") or name.upper()
        return names

    @classmethod
    def from_env(cls) -> "Settings":
        """Process environment first, then ``.env`` in the working directory."""
        sources = (os.environ, dotenv_values(".env"))
        values: dict[str, Any] = {}
        for field_name, env_name in cls.env_names().items():
            for source in sources:
                if env_name in source:
                    values[field_name] = source[env_name]
                    break
        return cls(**values)

    @property
    def token_ttl(self) -> timedelta:
        return parse_duration(self.jwt_expires_in)

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        value = (value or "").strip()
        return value or None

    @field_validator("jwt_expires_in")
    @classmethod
    def _validate_expires_in(cls, value: str) -> str:
        if parse_duration(value) <= timedelta(0):
            raise ValueError("JWT_EXPIRES_IN must be positive")
        return value

    @field_validator("max_login_attempts", "lockout_duration_minutes", "password_reset_ttl_minutes")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return load_or_create_signing_secret(Path(os.getenv("SHARED_FS_ROOT", "/srv/classgate")))


MIN_PERSISTED_SECRET_LENGTH = 32
SECRET_FILE_NAME = ".jwt_secret"


def _read_persisted_secret(path: Path) -> str | None:
    if not path.is_file() or path.is_symlink():
        return None
    try:
        stored = path.read_text().strip()
    except OSError as exc:
        logger.error("signing_secret_unreadable", path=str(path), error=str(exc))
        return None
    return stored if len(stored) >= MIN_PERSISTED_SECRET_LENGTH else None


def load_or_create_signing_secret(root: Path) -> str:
    """Token signing secret kept in ``root`` so sessions survive restarts.

    Written atomically with mode 0600. Raises ``RuntimeError`` when the
    secret can be neither read nor written.
    """
    try:
        root.mkdir(parents=True, exist_ok=True)
        root.chmod(0o700)
    except OSError as exc:
        # shared volumes are often owned by another uid
        logger.warning("signing_secret_dir_permissions", path=str(root), error=str(exc))

    path = root / SECRET_FILE_NAME
    existing = _read_persisted_secret(path)
    if existing:
        return existing

    secret = secrets.token_urlsafe(64)
    staging = root / f"{SECRET_FILE_NAME}.{secrets.token_hex(4)}.tmp"
    try:
        fd = os.open(staging, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w") as handle:
            handle.write(secret)
        os.replace(staging, path)
    except OSError as exc:
        with contextlib.suppress(OSError):
            staging.unlink()
        logger.error("signing_secret_persist_failed", path=str(path), error=str(exc))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    return secret


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
