from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from warden.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


class Environment(str, Enum):
    """Deployment environment; production turns on secure cookies."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _write_private(directory: Path, target: Path, value: str) -> None:
    # temp file plus rename so readers never see a partial secret
    fd, tmp_name = tempfile.mkstemp(dir=str(directory), prefix=f"{target.name}_", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(value)
        os.replace(tmp_name, target)
    except OSError:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def _load_or_create_secret(filename: str) -> str:
    """Return a persisted signing secret, generating one on first use.

    Secrets live under SHARED_FS_ROOT so issued tokens stay valid across
    restarts when no explicit secret is configured.
    """
    directory = Path(os.getenv("SHARED_FS_ROOT", "/srv/warden"))
    target = directory / filename

    try:
        directory.mkdir(parents=True, exist_ok=True)
        directory.chmod(0o700)
    except OSError as exc:
        # a pre-provisioned mount may refuse chmod and still be writable
        logger.warning("secret_dir_setup_failed", error=str(exc), path=str(directory))

    if target.is_file() and not target.is_symlink():
        try:
            stored = target.read_text().strip()
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(target))
        else:
            if len(stored) >= _MIN_SECRET_LENGTH:
                return stored

    secret = secrets.token_urlsafe(64)
    try:
        _write_private(directory, target, secret)
    except OSError as exc:
        logger.error("secret_persist_failed", error=str(exc), path=str(target))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret env var or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("secret_generated", path=str(target))
    return secret


class Settings(BaseModel):
    """Runtime settings, read from the environment and an optional .env file."""

    database_url: str = env_field("postgresql://localhost:5432/warden", "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/warden", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-memory fallbacks for the test suite.",
    )
    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    frontend_url: str = env_field(
        "http://localhost:3000",
        "FRONTEND_URL",
        description="Base URL used to build verification and reset links",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("warden", "JWT_ISSUER")
    jwt_audience: str = env_field("warden-clients", "JWT_AUDIENCE")
    jwt_clock_skew_seconds: int = env_field(0, "JWT_CLOCK_SKEW_SECONDS", ge=0)
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )
    verification_token_ttl_minutes: int = env_field(
        60, "VERIFICATION_TOKEN_TTL_MINUTES", ge=1
    )
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES", ge=1)

    # argon2id cost parameters
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost: int = env_field(64 * 1024, "ARGON2_MEMORY_COST", ge=8)
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM", ge=1)

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Warden", "EMAIL_FROM_NAME")

    # Rate limits (requests per window)
    register_rate_limit_per_minute: int = env_field(20, "REGISTER_RATE_LIMIT_PER_MINUTE")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    token_rate_limit_per_minute: int = env_field(30, "TOKEN_RATE_LIMIT_PER_MINUTE")
    admin_rate_limit_per_minute: int = env_field(60, "ADMIN_RATE_LIMIT_PER_MINUTE")

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
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            return Environment(value.strip().lower())
        return Environment(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_secret", "jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_signing_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        return _load_or_create_secret(f".{info.field_name}")

    @model_validator(mode="after")
    def _require_independent_secrets(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self


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
