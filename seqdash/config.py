from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from seqdash.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TOTP_ISSUER = "Random Sequence Dashboard"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the dashboard auth service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/seqdash", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/seqdash", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (OAuth code registry, dev email)",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("seqdash", "JWT_ISSUER")
    jwt_audience: str = env_field("seqdash-clients", "JWT_AUDIENCE")
    session_ttl_minutes: int = env_field(
        30 * 24 * 60,
        "SESSION_TTL_MINUTES",
        description="Lifetime of a signed session token and its session record",
    )
    pending_login_ttl_minutes: int = env_field(
        5,
        "PENDING_LOGIN_TTL_MINUTES",
        description="How long a password-verified login may wait for its second factor",
    )
    totp_issuer: str = env_field(DEFAULT_TOTP_ISSUER, "TOTP_ISSUER")
    totp_encryption_key: str | None = env_field(
        None,
        "TOTP_ENCRYPTION_KEY",
        description="Key material for encrypting TOTP secrets at rest; defaults to the JWT secret",
    )
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    email_change_ttl_minutes: int = env_field(60, "EMAIL_CHANGE_TTL_MINUTES")
    session_purge_interval_seconds: int = env_field(
        3600,
        "SESSION_PURGE_INTERVAL_SECONDS",
        description="Interval of the background sweep that drops expired session records",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Random Sequence Dashboard", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    cors_allow_origins: str = env_field(
        "http://localhost:3000",
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated list of allowed browser origins",
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

    @field_validator(
        "session_ttl_minutes",
        "pending_login_ttl_minutes",
        "backup_code_count",
        "password_reset_ttl_minutes",
        "email_change_ttl_minutes",
        "session_purge_interval_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("app_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated JWT secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/seqdash"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

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
