"""Common storage utilities shared between memory and postgres implementations.

Both backends satisfy the same two protocols below so the service layer
never needs to know which one it is talking to.
"""

from __future__ import annotations

import base64
import hashlib
import os
import secrets
from datetime import datetime
from ipaddress import ip_address
from typing import Any, List, Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from seqdash.logging import get_logger
from seqdash.storage.models import Account, AccountToken, SessionRecord


class AccountStore(Protocol):
    def create_account(self, account: Account) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def find_account(self, identifier: str) -> Optional[Account]: ...

    def set_password_hash(self, account_id: str, password_hash: str) -> bool: ...

    def set_auth_method(self, account_id: str, auth_method: str) -> bool: ...

    def touch_last_login(self, account_id: str, when: datetime) -> None: ...

    def enable_totp(self, email: str, secret: str, backup_code_hashes: List[str]) -> bool: ...

    def disable_totp(self, email: str) -> bool: ...

    def consume_backup_code(self, email: str, code_hash: str) -> bool: ...

    def update_email(self, account_id: str, new_email: str) -> bool: ...

    def delete_account(self, account_id: str) -> bool: ...

    def save_account_token(self, token: AccountToken) -> None: ...

    def claim_account_token(
        self, token_hash: str, purpose: str, now: datetime
    ) -> Optional[AccountToken]: ...

    def purge_account_tokens(self, now: datetime) -> int: ...


class SessionStore(Protocol):
    def get_session_record(self, session_id: str) -> Optional[SessionRecord]: ...

    def get_session_epoch(self, subject_id: str) -> Optional[int]: ...

    def advance_session_epoch(self, subject_id: str) -> Optional[int]: ...

    def insert_session_record(self, record: SessionRecord) -> SessionRecord: ...

    def touch_session_record(
        self,
        session_id: str,
        *,
        last_active: datetime,
        user_agent: Optional[str],
        ip: Optional[str],
        device_name: Optional[str],
        expires_at: Optional[datetime] = None,
    ) -> Optional[SessionRecord]: ...

    def list_session_records(
        self, subject_id: str, *, include_invalid: bool = False
    ) -> List[SessionRecord]: ...

    def invalidate_session_record(self, subject_id: str, session_id: str) -> bool: ...

    def invalidate_subject_sessions(
        self, subject_id: str, *, except_session_id: Optional[str] = None
    ) -> int: ...

    def purge_expired_session_records(self, now: datetime) -> int: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_ip(raw_ip: Any) -> Optional[str]:
    """Return a canonical textual IP, or None when it does not parse."""
    if raw_ip is None:
        return None
    text = str(raw_ip).strip()
    if not text:
        return None
    try:
        return str(ip_address(text))
    except ValueError:
        return None


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


class SecretCipher:
    """Fernet wrapper for TOTP secrets at rest; the key is derived from text material."""

    def __init__(self, key_material: str | None) -> None:
        self.logger = get_logger(__name__)
        material = (
            key_material or os.getenv("TOTP_ENCRYPTION_KEY") or os.getenv("JWT_SECRET")
        )
        if not material:
            material = secrets.token_urlsafe(64)
            self.logger.warning("totp_cipher_ephemeral_key")
        self._fernet = Fernet(self._derive_key(material))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("totp_secret_decrypt_failed")
            return None
