from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from movieauth.logging import get_logger

logger = get_logger(__name__)

# argon2 requires memory_cost >= 8 * parallelism KiB; cost 2 maps to 64 KiB
MIN_PASSWORD_HASH_COST = 2
MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    # Storage and cache
    database_url: str = env_field(
        "postgresql://localhost:5432/movieauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="JSON snapshot file for the in-memory store; unset keeps it volatile",
    )
    shared_fs_root: str = env_field("/srv/movieauth", "SHARED_FS_ROOT")
    test_mode: bool = env_field(False, "TEST_MODE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    dev_mode: bool = env_field(
        False,
        "DEV_MODE",
        description="Expose sanitized exception detail in 500 responses",
    )

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(
        None,
        "JWT_REFRESH_SECRET",
        description="Refresh token signing secret; falls back to JWT_SECRET",
    )
    jwt_issuer: str = env_field("auth-service", "JWT_ISSUER")
    jwt_audience: str = env_field("movie-list-app", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    opaque_token_bytes: int = env_field(32, "OPAQUE_TOKEN_BYTES")

    # Credentials and lockout
    password_hash_cost: int = env_field(
        12,
        "PASSWORD_HASH_COST",
        description="Adaptive hash cost factor; argon2 memory is 2**(cost+4) KiB",
    )
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    max_failed_logins: int = env_field(5, "MAX_FAILED_LOGINS")
    lockout_minutes: int = env_field(120, "LOCKOUT_MINUTES")
    max_refresh_tokens: int = env_field(5, "MAX_REFRESH_TOKENS")
    reset_token_ttl_minutes: int = env_field(10, "RESET_TOKEN_TTL_MINUTES")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")

    # Fixed-window rate limits (max requests per window)
    rate_limit_login: int = env_field(5, "RATE_LIMIT_LOGIN")
    rate_limit_login_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_LOGIN_WINDOW_SECONDS")
    rate_limit_register: int = env_field(3, "RATE_LIMIT_REGISTER")
    rate_limit_register_window_seconds: int = env_field(
        15 * 60, "RATE_LIMIT_REGISTER_WINDOW_SECONDS"
    )
    rate_limit_reset_request: int = env_field(3, "RATE_LIMIT_RESET_REQUEST")
    rate_limit_reset_request_window_seconds: int = env_field(
        60 * 60, "RATE_LIMIT_RESET_REQUEST_WINDOW_SECONDS"
    )
    rate_limit_reset_confirm: int = env_field(5, "RATE_LIMIT_RESET_CONFIRM")
    rate_limit_reset_confirm_window_seconds: int = env_field(
        60 * 60, "RATE_LIMIT_RESET_CONFIRM_WINDOW_SECONDS"
    )
    rate_limit_refresh: int = env_field(10, "RATE_LIMIT_REFRESH")
    rate_limit_refresh_window_seconds: int = env_field(5 * 60, "RATE_LIMIT_REFRESH_WINDOW_SECONDS")
    rate_limit_generic: int = env_field(100, "RATE_LIMIT_GENERIC")
    rate_limit_generic_window_seconds: int = env_field(
        15 * 60, "RATE_LIMIT_GENERIC_WINDOW_SECONDS"
    )

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    smtp_timeout_seconds: float = env_field(30.0, "SMTP_TIMEOUT_SECONDS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("MovieList App", "EMAIL_FROM_NAME")
    email_dispatch_timeout_seconds: float = env_field(
        10.0,
        "EMAIL_DISPATCH_TIMEOUT_SECONDS",
        description="Upper bound a request waits on mail delivery before logging a fallback",
    )
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")

    # Event publication and service-to-service access
    event_webhook_url: str | None = env_field(None, "EVENT_WEBHOOK_URL")
    event_timeout_seconds: float = env_field(5.0, "EVENT_TIMEOUT_SECONDS")
    internal_service_token: str | None = env_field(
        None,
        "INTERNAL_SERVICE_TOKEN",
        description="Shared token for /internal routes; unset disables them",
    )

    # HTTP surface
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(True, "ENABLE_HSTS")
    build_sha: str = env_field("dev", "BUILD_SHA")

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

    @property
    def refresh_secret(self) -> str:
        return self.jwt_refresh_secret or self.jwt_secret

    @field_validator("redis_url", "memory_store_path", "jwt_refresh_secret", "event_webhook_url")
    @classmethod
    def _empty_as_none(cls, value: str | None) -> str | None:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("password_hash_cost")
    @classmethod
    def _validate_hash_cost(cls, value: int) -> int:
        if value < MIN_PASSWORD_HASH_COST:
            raise ValueError(
                f"PASSWORD_HASH_COST must be at least {MIN_PASSWORD_HASH_COST}"
            )
        return value

    @field_validator("max_failed_logins", "lockout_minutes", "max_refresh_tokens")
    @classmethod
    def _at_least_one(cls, value: int, info: ValidationInfo) -> int:
        if value < 1:
            raise ValueError(f"{info.field_name.upper()} must be at least 1")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _shared_jwt_secret(Path(os.getenv("SHARED_FS_ROOT", "/srv/movieauth")))


def _shared_jwt_secret(root: Path) -> str:
    """Read ``<root>/.jwt_secret``, generating it on first use.

    Instances sharing ``root`` sign with the same key. The file is written
    under a temp name and renamed into place.
    """
    target = root / ".jwt_secret"
    try:
        root.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("jwt_secret_dir_setup", error_type=type(exc).__name__, path=str(root))

    if target.is_file() and not target.is_symlink():
        try:
            existing = target.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error_type=type(exc).__name__, path=str(target))
        else:
            if len(existing) >= MIN_SECRET_LENGTH:
                return existing
            logger.warning("jwt_secret_too_short", path=str(target))

    secret = secrets.token_urlsafe(64)
    staging: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            "w", dir=root, prefix=".jwt_secret_", suffix=".tmp", delete=False
        ) as handle:
            staging = Path(handle.name)
            handle.write(secret)
        staging.chmod(0o600)
        staging.replace(target)
    except OSError as exc:
        if staging is not None:
            staging.unlink(missing_ok=True)
        logger.error("jwt_secret_persist_failed", error_type=type(exc).__name__, path=str(target))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.warning("jwt_secret_generated", path=str(target))
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
