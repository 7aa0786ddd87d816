from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from seqdash.config import get_settings, reset_settings_cache
from seqdash.logging import get_logger
from seqdash.service.auth import AuthService
from seqdash.service.backup_codes import BackupCodeManager
from seqdash.service.credentials import PasswordService
from seqdash.service.email import EmailService
from seqdash.service.revocation import SessionRevocationService
from seqdash.service.sessions import SessionService
from seqdash.service.tokens import TokenCodec
from seqdash.service.totp import TOTPEngine
from seqdash.storage.memory import MemoryStore
from seqdash.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        key_material = self.settings.totp_encryption_key or self.settings.jwt_secret
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    totp_encryption_key=key_material,
                    persist=not self.settings.test_mode,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, totp_encryption_key=key_material
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
        )

        self.passwords = PasswordService()
        self.totp = TOTPEngine(self.settings.totp_issuer)
        self.backup_codes = BackupCodeManager(
            self.store, count=self.settings.backup_code_count
        )
        self.codec = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
        )
        self.sessions = SessionService(
            self.store,
            self.codec,
            session_ttl=timedelta(minutes=self.settings.session_ttl_minutes),
            pending_ttl=timedelta(minutes=self.settings.pending_login_ttl_minutes),
        )
        self.revocation = SessionRevocationService(self.store)
        self.auth = AuthService(
            self.store,
            self.settings,
            passwords=self.passwords,
            totp=self.totp,
            backup_codes=self.backup_codes,
            revocation=self.revocation,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )

        logger.info(
            "runtime_initialized",
            email_configured=self.email.is_configured,
            session_ttl_minutes=self.settings.session_ttl_minutes,
            signup_enabled=self.settings.allow_signup,
        )

    def close(self) -> None:
        pool = getattr(self.store, "pool", None)
        if pool is not None:
            pool.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
