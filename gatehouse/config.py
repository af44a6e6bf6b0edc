from __future__ import annotations

import json
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gatehouse.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [part.strip() for part in str(value).split(",") if part.strip()]


def _persisted_secret(filename: str) -> str:
    """Load or generate a signing secret stored under SHARED_FS_ROOT.

    Tokens stay valid across restarts as long as the shared root survives.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/gatehouse"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup_failed", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path: str | None = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
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
            f"Unable to persist {filename}; set the secret explicitly or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the auth core, read from the environment and .env."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    database_url: str = env_field(
        "postgresql://localhost:5432/newsroom", "DATABASE_URL"
    )
    shared_fs_root: str = env_field("/srv/gatehouse", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviour: sync Redis client, runtime resets allowed.",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    access_token_ttl_minutes: int = env_field(24 * 60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    revoke_rotated_refresh_tokens: bool = env_field(
        False,
        "REVOKE_ROTATED_REFRESH_TOKENS",
        description="Blacklist the presented refresh token when a new pair is minted.",
    )

    otp_ttl_seconds: int = env_field(600, "OTP_TTL_SECONDS")
    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS")
    otp_max_resends: int = env_field(3, "OTP_MAX_RESENDS")
    otp_extend_ttl_on_failure: bool = env_field(
        True,
        "OTP_EXTEND_TTL_ON_FAILURE",
        description="Re-arm the full challenge TTL after a wrong code instead of keeping the remainder.",
    )

    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_window_seconds: int = env_field(60 * 60, "LOCKOUT_WINDOW_SECONDS")
    lockout_duration_seconds: int = env_field(15 * 60, "LOCKOUT_DURATION_SECONDS")
    backoff_base_seconds: float = env_field(1.0, "BACKOFF_BASE_SECONDS")
    backoff_max_seconds: float = env_field(300.0, "BACKOFF_MAX_SECONDS")

    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(15 * 60, "LOGIN_RATE_WINDOW_SECONDS")
    rate_limit_whitelist_ips: list[str] = env_field([], "RATE_LIMIT_WHITELIST_IPS")
    rate_limit_whitelist_roles: list[str] = env_field([], "RATE_LIMIT_WHITELIST_ROLES")

    activity_timezone: str = env_field("UTC", "ACTIVITY_TIMEZONE")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Newsroom", "EMAIL_FROM_NAME")

    seed_users: list[dict] = env_field(
        [],
        "SEED_USERS",
        description="JSON list of {email, password, role, is_active, display_name} for the memory directory.",
    )

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

    @field_validator("rate_limit_whitelist_ips", "rate_limit_whitelist_roles", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("seed_users", mode="before")
    @classmethod
    def _parse_seed_users(cls, value: Any) -> list[dict]:
        if value in (None, ""):
            return []
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError("SEED_USERS must be a JSON list") from exc
        if not isinstance(value, list):
            raise ValueError("SEED_USERS must be a JSON list")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        return value or _persisted_secret(".jwt_secret")

    @field_validator("jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_jwt_refresh_secret(cls, value: str | None) -> str:
        return value or _persisted_secret(".jwt_refresh_secret")

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
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
