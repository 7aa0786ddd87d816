"""Password hashing and credential verification.

Lookup failures, identity-provider-only accounts and wrong passwords all
collapse into one ``AuthFailure`` value so callers cannot tell them apart,
and each path spends a full argon2 verification so latency does not tell
them apart either.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from seqdash.logging import get_logger
from seqdash.storage.common import AccountStore
from seqdash.storage.models import Account

logger = get_logger(__name__)

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
PASSWORD_SPECIAL_CHARACTERS = '!@#$%^&*(),.?":{}|<>'


def password_policy_violation(password: str) -> Optional[str]:
    """Return a human-readable reason the password is too weak, or None."""
    if len(password) < PASSWORD_MIN_LENGTH:
        return f"password must be at least {PASSWORD_MIN_LENGTH} characters"
    if len(password) > PASSWORD_MAX_LENGTH:
        return f"password must be at most {PASSWORD_MAX_LENGTH} characters"
    if not any(ch.isupper() for ch in password):
        return "password must contain an uppercase letter"
    if not any(ch.islower() for ch in password):
        return "password must contain a lowercase letter"
    if not any(ch.isdigit() for ch in password):
        return "password must contain a digit"
    if not any(ch in PASSWORD_SPECIAL_CHARACTERS for ch in password):
        return "password must contain a special character"
    return None


@dataclass(frozen=True)
class AuthFailure:
    """Uniform credential failure. ``reason`` is for logs and never compared."""

    reason: str = field(default="invalid_credentials", compare=False)


class PasswordService:
    """argon2id hashing, run off the event loop."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified whenever there is no real hash, to keep timing uniform
        self._dummy_hash = self._hasher.hash("seqdash-dummy-password")

    def hash_sync(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify_sync(self, password_hash: Optional[str], password: str) -> bool:
        target = password_hash or self._dummy_hash
        try:
            matched = self._hasher.verify(target, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False
        return matched and password_hash is not None

    async def hash(self, password: str) -> str:
        return await asyncio.to_thread(self.hash_sync, password)

    async def verify(self, password_hash: Optional[str], password: str) -> bool:
        return await asyncio.to_thread(self.verify_sync, password_hash, password)


class CredentialVerifier:
    def __init__(self, store: AccountStore, passwords: PasswordService) -> None:
        self.store = store
        self.passwords = passwords

    async def verify(self, identifier: str, password: str) -> Union[Account, AuthFailure]:
        """Check an identifier (username or email) and password pair.

        Has no side effects; updating last-login is the caller's job. Usernames
        match exactly as typed; only the email comparison is normalized.
        """
        account = None
        if identifier:
            account = await asyncio.to_thread(self.store.find_account, identifier)
        stored_hash = account.password_hash if account else None
        matched = await self.passwords.verify(stored_hash, password or "")
        if account is None:
            logger.info("credential_check_failed", reason="unknown_identifier")
            return AuthFailure("unknown_identifier")
        if stored_hash is None:
            logger.info(
                "credential_check_failed", reason="no_password", account_id=account.id
            )
            return AuthFailure("no_password")
        if not matched:
            logger.info(
                "credential_check_failed", reason="wrong_password", account_id=account.id
            )
            return AuthFailure("wrong_password")
        return account

    async def check_password(self, account: Account, password: str) -> bool:
        """Re-authenticate an already identified account."""
        return await self.passwords.verify(account.password_hash, password or "")
