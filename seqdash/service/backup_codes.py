from __future__ import annotations

import hashlib
import secrets
from typing import Iterable, List

from seqdash.logging import email_fingerprint, get_logger
from seqdash.storage.common import AccountStore

logger = get_logger(__name__)

BACKUP_CODE_BYTES = 8
BACKUP_CODE_GROUP = 4


def generate_backup_codes(count: int = 10) -> List[str]:
    """Random codes formatted as XXXX-XXXX-XXXX-XXXX (uppercase hex)."""
    if count < 1:
        raise ValueError("count must be positive")
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(BACKUP_CODE_BYTES).upper()
        groups = [raw[i : i + BACKUP_CODE_GROUP] for i in range(0, len(raw), BACKUP_CODE_GROUP)]
        codes.append("-".join(groups))
    return codes


def normalize_backup_code(code: str) -> str:
    return "".join(ch for ch in code if ch not in "- \t\r\n").upper()


def hash_backup_code(code: str) -> str:
    """Dashes, whitespace and case are cosmetic; only the hex digits are hashed."""
    return hashlib.sha256(normalize_backup_code(code).encode("utf-8")).hexdigest()


class BackupCodeManager:
    def __init__(self, store: AccountStore, *, count: int = 10) -> None:
        self.store = store
        self.count = count

    def generate(self, count: int | None = None) -> List[str]:
        return generate_backup_codes(count or self.count)

    @staticmethod
    def hash(code: str) -> str:
        return hash_backup_code(code)

    def hash_all(self, codes: Iterable[str]) -> List[str]:
        return [hash_backup_code(code) for code in codes]

    @staticmethod
    def matches(code: str, hashes: Iterable[str]) -> bool:
        """Pure membership check; consumes nothing."""
        if not isinstance(code, str) or not normalize_backup_code(code):
            return False
        return hash_backup_code(code) in set(hashes)

    def verify_and_consume(self, code: str, email: str) -> bool:
        """Atomically remove the matching hash from the account.

        Returns True only to the one caller whose store update removed it, so a
        code validates at most once even under concurrent submissions. Store
        faults propagate.
        """
        if not isinstance(code, str) or not normalize_backup_code(code):
            return False
        consumed = self.store.consume_backup_code(email, hash_backup_code(code))
        if consumed:
            logger.info("backup_code_consumed", account=email_fingerprint(email))
        else:
            logger.info("backup_code_rejected", account=email_fingerprint(email))
        return consumed
