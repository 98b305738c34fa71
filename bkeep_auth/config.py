from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from bkeep_auth.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Return a persisted signing secret, generating one on first use.

    Secrets live under SHARED_FS_ROOT so tokens stay valid across restarts.
    """

    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/bkeep"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup",
            error=str(exc),
            path=str(fs_root),
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
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
            f"Unable to persist {filename}; set the secret env var or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


def _validate_secret(value: str | None, filename: str) -> str:
    if not value:
        return _load_or_create_secret(filename)
    if len(value) < MIN_SECRET_LENGTH:
        raise ValueError(
            f"token secrets must be at least {MIN_SECRET_LENGTH} characters"
        )
    return value


class Settings(BaseModel):
    """Runtime settings for the auth service, resolved from env and .env."""

    database_url: str = env_field(
        "postgresql://localhost:5432/bkeep", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/bkeep", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; forces the in-memory store.",
    )
    # Token signing
    access_token_secret: str | None = env_field(
        None, "ACCESS_TOKEN_SECRET", validate_default=True
    )
    refresh_token_secret: str | None = env_field(
        None, "REFRESH_TOKEN_SECRET", validate_default=True
    )
    access_token_ttl_seconds: int = env_field(3600, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS"
    )
    # MFA
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets at rest",
        validate_default=True,
    )
    mfa_otp_expiry_minutes: int = env_field(5, "MFA_OTP_EXPIRY_MINUTES")
    password_reset_expiry_minutes: int = env_field(
        60, "PASSWORD_RESET_TOKEN_EXPIRY_MINUTES"
    )
    invitation_expiry_minutes: int = env_field(
        7 * 24 * 60, "USER_INVITATION_TOKEN_EXPIRY_MINUTES"
    )
    # WebAuthn
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    webauthn_rp_id: str = env_field("localhost", "WEBAUTHN_RP_ID")
    webauthn_rp_name: str = env_field("BKeep", "WEBAUTHN_RP_NAME")
    webauthn_timeout_ms: int = env_field(60000, "WEBAUTHN_TIMEOUT_MS")
    challenge_ttl_seconds: int = env_field(300, "WEBAUTHN_CHALLENGE_TTL_SECONDS")
    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("BKeep", "EMAIL_FROM_NAME")
    # HTTP
    cors_allow_origins: str = env_field(
        "http://localhost:3000", "CORS_ALLOW_ORIGINS"
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    session_max_age_seconds: int = env_field(15 * 60, "SESSION_MAX_AGE_SECONDS")

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

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("frontend_url")
    @classmethod
    def _strip_frontend_url(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("access_token_secret")
    @classmethod
    def _ensure_access_secret(cls, value: str | None) -> str:
        return _validate_secret(value, ".access_token_secret")

    @field_validator("refresh_token_secret")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None) -> str:
        return _validate_secret(value, ".refresh_token_secret")

    @field_validator("mfa_secret_key")
    @classmethod
    def _ensure_mfa_key(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".mfa_secret_key")

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]


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
