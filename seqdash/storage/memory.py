from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from seqdash.logging import get_logger
from seqdash.storage.common import SecretCipher, normalize_email
from seqdash.storage.errors import ConstraintViolation
from seqdash.storage.models import (
    Account,
    AccountToken,
    DeviceInfo,
    SessionRecord,
    utcnow,
)


class MemoryStore:
    """In-process account and session store for development and tests.

    Every mutation runs under one re-entrant lock, so the conditional updates
    (backup-code consumption, token claiming, session invalidation) are atomic
    with respect to concurrent callers. State is mirrored to a JSON file under
    ``fs_root`` when ``persist`` is enabled.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/seqdash",
        *,
        totp_encryption_key: str | None = None,
        persist: bool = False,
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, SessionRecord] = {}
        self.account_tokens: Dict[str, AccountToken] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.persist = persist
        self._totp_cipher = SecretCipher(totp_encryption_key)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _encrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        return self._totp_cipher.encrypt(secret)

    def _decrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        return self._totp_cipher.decrypt(secret)

    def _export(self, account: Optional[Account]) -> Optional[Account]:
        # Callers get a detached copy carrying the plaintext secret
        if account is None:
            return None
        return replace(
            account,
            totp_secret=self._decrypt_secret(account.totp_secret),
            backup_code_hashes=list(account.backup_code_hashes),
        )

    @staticmethod
    def _copy_session(record: Optional[SessionRecord]) -> Optional[SessionRecord]:
        if record is None:
            return None
        return replace(record, device_info=replace(record.device_info))

    # accounts
    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            email = normalize_email(account.email)
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if account.username and any(
                existing.username == account.username for existing in self.accounts.values()
            ):
                raise ConstraintViolation("username already exists", {"field": "username"})
            stored = replace(
                account,
                email=email,
                totp_secret=self._encrypt_secret(account.totp_secret),
                backup_code_hashes=list(account.backup_code_hashes),
            )
            self.accounts[stored.id] = stored
            self._persist_state()
            return self._export(stored)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self._export(self.accounts.get(account_id))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            return self._export(self._by_email(normalized))

    def _by_email(self, normalized: str) -> Optional[Account]:
        return next((a for a in self.accounts.values() if a.email == normalized), None)

    def find_account(self, identifier: str) -> Optional[Account]:
        """Match the username exactly, or the email case-insensitively."""
        if not identifier:
            return None
        normalized = normalize_email(identifier)
        with self._data_lock:
            for account in self.accounts.values():
                if account.username is not None and account.username == identifier:
                    return self._export(account)
            return self._export(self._by_email(normalized))

    def set_password_hash(self, account_id: str, password_hash: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.password_hash = password_hash
            self._persist_state()
            return True

    def set_auth_method(self, account_id: str, auth_method: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.auth_method = auth_method
            self._persist_state()
            return True

    def touch_last_login(self, account_id: str, when: datetime) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account:
                account.last_login_at = when
                self._persist_state()

    def advance_session_epoch(self, subject_id: str) -> Optional[int]:
        with self._data_lock:
            account = self.accounts.get(subject_id)
            if not account:
                return None
            account.session_epoch += 1
            self._persist_state()
            return account.session_epoch

    def enable_totp(self, email: str, secret: str, backup_code_hashes: List[str]) -> bool:
        if not secret:
            raise ValueError("cannot enable TOTP without a secret")
        with self._data_lock:
            account = self._by_email(normalize_email(email))
            if not account:
                return False
            account.totp_secret = self._encrypt_secret(secret)
            account.totp_enabled = True
            account.backup_code_hashes = list(backup_code_hashes)
            self._persist_state()
            return True

    def disable_totp(self, email: str) -> bool:
        with self._data_lock:
            account = self._by_email(normalize_email(email))
            if not account:
                return False
            account.totp_secret = None
            account.totp_enabled = False
            account.backup_code_hashes = []
            self._persist_state()
            return True

    def consume_backup_code(self, email: str, code_hash: str) -> bool:
        with self._data_lock:
            account = self._by_email(normalize_email(email))
            if not account or code_hash not in account.backup_code_hashes:
                return False
            account.backup_code_hashes.remove(code_hash)
            self._persist_state()
            return True

    def update_email(self, account_id: str, new_email: str) -> bool:
        normalized = normalize_email(new_email)
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            clash = self._by_email(normalized)
            if clash and clash.id != account_id:
                raise ConstraintViolation("email already exists", {"field": "email"})
            account.email = normalized
            self._persist_state()
            return True

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            if account_id not in self.accounts:
                return False
            self.accounts.pop(account_id, None)
            for sid, record in list(self.sessions.items()):
                if record.subject_id == account_id:
                    self.sessions.pop(sid, None)
            for digest, token in list(self.account_tokens.items()):
                if token.account_id == account_id:
                    self.account_tokens.pop(digest, None)
            self._persist_state()
            return True

    # one-time account tokens
    def save_account_token(self, token: AccountToken) -> None:
        with self._data_lock:
            self.account_tokens[token.token_hash] = replace(token)
            self._persist_state()

    def claim_account_token(
        self, token_hash: str, purpose: str, now: datetime
    ) -> Optional[AccountToken]:
        with self._data_lock:
            token = self.account_tokens.get(token_hash)
            if (
                token is None
                or token.purpose != purpose
                or token.used
                or token.expires_at <= now
            ):
                return None
            token.used = True
            self._persist_state()
            return replace(token)

    def purge_account_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                digest
                for digest, token in self.account_tokens.items()
                if token.used or token.expires_at <= now
            ]
            for digest in stale:
                self.account_tokens.pop(digest, None)
            if stale:
                self._persist_state()
            return len(stale)

    # session registry
    def get_session_record(self, session_id: str) -> Optional[SessionRecord]:
        with self._data_lock:
            return self._copy_session(self.sessions.get(session_id))

    def get_session_epoch(self, subject_id: str) -> Optional[int]:
        with self._data_lock:
            account = self.accounts.get(subject_id)
            return account.session_epoch if account else None

    def insert_session_record(self, record: SessionRecord) -> SessionRecord:
        """Insert unless a record already holds this session id; return the stored one."""
        with self._data_lock:
            existing = self.sessions.get(record.session_id)
            if existing is not None:
                return self._copy_session(existing)
            if record.subject_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"subject_id": record.subject_id}
                )
            self.sessions[record.session_id] = self._copy_session(record)
            self._persist_state()
            return self._copy_session(record)

    def touch_session_record(
        self,
        session_id: str,
        *,
        last_active: datetime,
        user_agent: Optional[str],
        ip: Optional[str],
        device_name: Optional[str],
        expires_at: Optional[datetime] = None,
    ) -> Optional[SessionRecord]:
        with self._data_lock:
            record = self.sessions.get(session_id)
            if record is None or not record.is_valid:
                return None
            info = record.device_info
            info.last_active = max(info.last_active, last_active)
            if user_agent:
                info.user_agent = user_agent
            if device_name:
                info.device_name = device_name
            if ip:
                info.ip = ip
            if expires_at is not None:
                record.expires_at = max(record.expires_at, expires_at)
            record.updated_at = max(record.updated_at, last_active)
            self._persist_state()
            return self._copy_session(record)

    def list_session_records(
        self, subject_id: str, *, include_invalid: bool = False
    ) -> List[SessionRecord]:
        with self._data_lock:
            records = [
                self._copy_session(r)
                for r in self.sessions.values()
                if r.subject_id == subject_id and (include_invalid or r.is_valid)
            ]
        return sorted(records, key=lambda r: r.device_info.last_active, reverse=True)

    def invalidate_session_record(self, subject_id: str, session_id: str) -> bool:
        with self._data_lock:
            record = self.sessions.get(session_id)
            if record is None or record.subject_id != subject_id or not record.is_valid:
                return False
            record.is_valid = False
            record.updated_at = max(record.updated_at, utcnow())
            self._persist_state()
            return True

    def invalidate_subject_sessions(
        self, subject_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            count = 0
            for record in self.sessions.values():
                if (
                    record.subject_id == subject_id
                    and record.is_valid
                    and record.session_id != except_session_id
                ):
                    record.is_valid = False
                    count += 1
            if count:
                self._persist_state()
            return count

    def purge_expired_session_records(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, r in self.sessions.items() if r.expires_at <= now]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def ping(self) -> bool:
        return True

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_account(self, account: Account) -> Dict[str, Any]:
        return {
            "id": account.id,
            "email": account.email,
            "username": account.username,
            "name": account.name,
            "password_hash": account.password_hash,
            "totp_secret": account.totp_secret,
            "totp_enabled": account.totp_enabled,
            "backup_code_hashes": list(account.backup_code_hashes),
            "auth_method": account.auth_method,
            "created_at": self._serialize_datetime(account.created_at),
            "last_login_at": self._serialize_datetime(account.last_login_at),
            "session_epoch": account.session_epoch,
        }

    def _deserialize_account(self, data: Dict[str, Any]) -> Account:
        return Account(
            id=data["id"],
            email=data["email"],
            username=data.get("username"),
            name=data.get("name"),
            password_hash=data.get("password_hash"),
            totp_secret=data.get("totp_secret"),
            totp_enabled=bool(data.get("totp_enabled")),
            backup_code_hashes=list(data.get("backup_code_hashes") or []),
            auth_method=data.get("auth_method", "password"),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            session_epoch=int(data.get("session_epoch") or 0),
        )

    def _serialize_session(self, record: SessionRecord) -> Dict[str, Any]:
        info = record.device_info
        return {
            "subject_id": record.subject_id,
            "session_id": record.session_id,
            "device_info": {
                "user_agent": info.user_agent,
                "ip": info.ip,
                "last_active": self._serialize_datetime(info.last_active),
                "device_name": info.device_name,
            },
            "is_valid": record.is_valid,
            "created_at": self._serialize_datetime(record.created_at),
            "updated_at": self._serialize_datetime(record.updated_at),
            "expires_at": self._serialize_datetime(record.expires_at),
        }

    def _deserialize_session(self, data: Dict[str, Any]) -> SessionRecord:
        info = data.get("device_info") or {}
        return SessionRecord(
            subject_id=data["subject_id"],
            session_id=data["session_id"],
            device_info=DeviceInfo(
                user_agent=info.get("user_agent"),
                ip=info.get("ip"),
                last_active=self._deserialize_datetime(info["last_active"]),
                device_name=info.get("device_name", "Unknown Device"),
            ),
            is_valid=bool(data.get("is_valid", True)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
        )

    def _serialize_token(self, token: AccountToken) -> Dict[str, Any]:
        return {
            "token_hash": token.token_hash,
            "purpose": token.purpose,
            "account_id": token.account_id,
            "email": token.email,
            "new_email": token.new_email,
            "used": token.used,
            "created_at": self._serialize_datetime(token.created_at),
            "expires_at": self._serialize_datetime(token.expires_at),
        }

    def _deserialize_token(self, data: Dict[str, Any]) -> AccountToken:
        return AccountToken(
            token_hash=data["token_hash"],
            purpose=data["purpose"],
            account_id=data["account_id"],
            email=data["email"],
            new_email=data.get("new_email"),
            used=bool(data.get("used")),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
        )

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "account_tokens": [
                self._serialize_token(t) for t in self.account_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.sessions = {
            s["session_id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.account_tokens = {
            t["token_hash"]: self._deserialize_token(t)
            for t in data.get("account_tokens", [])
        }
        return True
