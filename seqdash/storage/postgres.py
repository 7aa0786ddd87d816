from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from seqdash.logging import get_logger
from seqdash.storage.common import SecretCipher, normalize_email, safe_row_value
from seqdash.storage.errors import ConstraintViolation, StoreUnavailable
from seqdash.storage.models import (
    AUTH_METHOD_PASSWORD,
    Account,
    AccountToken,
    DeviceInfo,
    SessionRecord,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        username TEXT UNIQUE,
        name TEXT,
        password_hash TEXT,
        totp_secret TEXT,
        totp_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        backup_code_hashes TEXT[] NOT NULL DEFAULT '{}',
        auth_method TEXT NOT NULL DEFAULT 'password',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ,
        session_epoch INTEGER NOT NULL DEFAULT 0,
        CONSTRAINT account_totp_secret_present
            CHECK (NOT totp_enabled OR totp_secret IS NOT NULL)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS session_record (
        session_id TEXT PRIMARY KEY,
        subject_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        user_agent TEXT,
        ip TEXT,
        device_name TEXT NOT NULL DEFAULT 'Unknown Device',
        last_active TIMESTAMPTZ NOT NULL,
        is_valid BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "ALTER TABLE account ADD COLUMN IF NOT EXISTS session_epoch INTEGER NOT NULL DEFAULT 0",
    "CREATE INDEX IF NOT EXISTS session_record_subject_idx ON session_record (subject_id)",
    "CREATE INDEX IF NOT EXISTS session_record_expiry_idx ON session_record (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS account_token (
        token_hash TEXT PRIMARY KEY,
        purpose TEXT NOT NULL,
        account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        email TEXT NOT NULL,
        new_email TEXT,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
)


class PostgresStore:
    """Postgres-backed account and session registry.

    Each mutation is a single statement keyed on one account or one session
    id, so conditional updates such as backup-code consumption are atomic
    without explicit transactions.
    """

    def __init__(self, dsn: str, *, totp_encryption_key: str | None = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._totp_cipher = SecretCipher(totp_encryption_key)
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.warning("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def _row_to_account(self, row: Any) -> Optional[Account]:
        if not row:
            return None
        return Account(
            id=str(row["id"]),
            email=row["email"],
            username=safe_row_value(row, "username"),
            name=safe_row_value(row, "name"),
            password_hash=safe_row_value(row, "password_hash"),
            totp_secret=self._totp_cipher.decrypt(safe_row_value(row, "totp_secret")),
            totp_enabled=bool(safe_row_value(row, "totp_enabled", False)),
            backup_code_hashes=list(safe_row_value(row, "backup_code_hashes") or []),
            auth_method=safe_row_value(row, "auth_method", AUTH_METHOD_PASSWORD),
            created_at=safe_row_value(row, "created_at") or utcnow(),
            last_login_at=safe_row_value(row, "last_login_at"),
            session_epoch=int(safe_row_value(row, "session_epoch", 0) or 0),
        )

    @staticmethod
    def _row_to_session(row: Any) -> Optional[SessionRecord]:
        if not row:
            return None
        return SessionRecord(
            subject_id=str(row["subject_id"]),
            session_id=row["session_id"],
            device_info=DeviceInfo(
                user_agent=safe_row_value(row, "user_agent"),
                ip=safe_row_value(row, "ip"),
                last_active=row["last_active"],
                device_name=safe_row_value(row, "device_name") or "Unknown Device",
            ),
            is_valid=bool(row["is_valid"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            expires_at=row["expires_at"],
        )

    @staticmethod
    def _row_to_token(row: Any) -> Optional[AccountToken]:
        if not row:
            return None
        return AccountToken(
            token_hash=row["token_hash"],
            purpose=row["purpose"],
            account_id=str(row["account_id"]),
            email=row["email"],
            new_email=safe_row_value(row, "new_email"),
            used=bool(row["used"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    # accounts
    def create_account(self, account: Account) -> Account:
        email = normalize_email(account.email)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (
                        id, email, username, name, password_hash, totp_secret,
                        totp_enabled, backup_code_hashes, auth_method, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        email,
                        account.username,
                        account.name,
                        account.password_hash,
                        self._totp_cipher.encrypt(account.totp_secret),
                        account.totp_enabled,
                        list(account.backup_code_hashes),
                        account.auth_method,
                        account.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = "username" if "username" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        account.email = email
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_account(row)

    def find_account(self, identifier: str) -> Optional[Account]:
        if not identifier:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM account
                WHERE username = %s OR email = %s
                ORDER BY (username = %s) DESC NULLS LAST
                LIMIT 1
                """,
                (identifier, normalize_email(identifier), identifier),
            ).fetchone()
        return self._row_to_account(row)

    def set_password_hash(self, account_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE account SET password_hash = %s WHERE id = %s RETURNING id",
                (password_hash, account_id),
            ).fetchone()
        return row is not None

    def set_auth_method(self, account_id: str, auth_method: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE account SET auth_method = %s WHERE id = %s RETURNING id",
                (auth_method, account_id),
            ).fetchone()
        return row is not None

    def touch_last_login(self, account_id: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET last_login_at = %s WHERE id = %s",
                (when, account_id),
            )

    def advance_session_epoch(self, subject_id: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account SET session_epoch = session_epoch + 1
                WHERE id = %s
                RETURNING session_epoch
                """,
                (subject_id,),
            ).fetchone()
        return int(row["session_epoch"]) if row else None

    def enable_totp(self, email: str, secret: str, backup_code_hashes: List[str]) -> bool:
        if not secret:
            raise ValueError("cannot enable TOTP without a secret")
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET totp_secret = %s, totp_enabled = TRUE, backup_code_hashes = %s
                WHERE email = %s
                RETURNING id
                """,
                (
                    self._totp_cipher.encrypt(secret),
                    list(backup_code_hashes),
                    normalize_email(email),
                ),
            ).fetchone()
        return row is not None

    def disable_totp(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET totp_secret = NULL, totp_enabled = FALSE, backup_code_hashes = '{}'
                WHERE email = %s
                RETURNING id
                """,
                (normalize_email(email),),
            ).fetchone()
        return row is not None

    def consume_backup_code(self, email: str, code_hash: str) -> bool:
        """Remove ``code_hash`` if present; True only for the caller that removed it."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET backup_code_hashes = array_remove(backup_code_hashes, %s)
                WHERE email = %s AND %s = ANY(backup_code_hashes)
                RETURNING id
                """,
                (code_hash, normalize_email(email), code_hash),
            ).fetchone()
        return row is not None

    def update_email(self, account_id: str, new_email: str) -> bool:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "UPDATE account SET email = %s WHERE id = %s RETURNING id",
                    (normalize_email(new_email), account_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return row is not None

    def delete_account(self, account_id: str) -> bool:
        # session_record and account_token rows go with it via ON DELETE CASCADE
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM account WHERE id = %s RETURNING id", (account_id,)
            ).fetchone()
        return row is not None

    # one-time account tokens
    def save_account_token(self, token: AccountToken) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO account_token (
                    token_hash, purpose, account_id, email, new_email, used, created_at, expires_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    token.token_hash,
                    token.purpose,
                    token.account_id,
                    token.email,
                    token.new_email,
                    token.used,
                    token.created_at,
                    token.expires_at,
                ),
            )

    def claim_account_token(
        self, token_hash: str, purpose: str, now: datetime
    ) -> Optional[AccountToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account_token SET used = TRUE
                WHERE token_hash = %s AND purpose = %s AND NOT used AND expires_at > %s
                RETURNING *
                """,
                (token_hash, purpose, now),
            ).fetchone()
        return self._row_to_token(row)

    def purge_account_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM account_token WHERE used OR expires_at <= %s", (now,)
            )
            return cur.rowcount or 0

    # session registry
    def get_session_record(self, session_id: str) -> Optional[SessionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM session_record WHERE session_id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row)

    def get_session_epoch(self, subject_id: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT session_epoch FROM account WHERE id = %s", (subject_id,)
            ).fetchone()
        return int(row["session_epoch"]) if row else None

    def insert_session_record(self, record: SessionRecord) -> SessionRecord:
        info = record.device_info
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO session_record (
                        session_id, subject_id, user_agent, ip, device_name, last_active,
                        is_valid, created_at, updated_at, expires_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (session_id) DO NOTHING
                    RETURNING *
                    """,
                    (
                        record.session_id,
                        record.subject_id,
                        info.user_agent,
                        info.ip,
                        info.device_name,
                        info.last_active,
                        record.is_valid,
                        record.created_at,
                        record.updated_at,
                        record.expires_at,
                    ),
                ).fetchone()
                if row is None:
                    row = conn.execute(
                        "SELECT * FROM session_record WHERE session_id = %s",
                        (record.session_id,),
                    ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account does not exist", {"subject_id": record.subject_id}
            )
        return self._row_to_session(row)

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
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE session_record
                SET last_active = GREATEST(last_active, %s),
                    updated_at = GREATEST(updated_at, %s),
                    user_agent = COALESCE(%s, user_agent),
                    ip = COALESCE(%s, ip),
                    device_name = COALESCE(%s, device_name),
                    expires_at = GREATEST(expires_at, COALESCE(%s, expires_at))
                WHERE session_id = %s AND is_valid
                RETURNING *
                """,
                (last_active, last_active, user_agent, ip, device_name, expires_at, session_id),
            ).fetchone()
        return self._row_to_session(row)

    def list_session_records(
        self, subject_id: str, *, include_invalid: bool = False
    ) -> List[SessionRecord]:
        query = "SELECT * FROM session_record WHERE subject_id = %s"
        if not include_invalid:
            query += " AND is_valid"
        query += " ORDER BY last_active DESC"
        with self._connect() as conn:
            rows = conn.execute(query, (subject_id,)).fetchall()
        return [self._row_to_session(row) for row in rows]

    def invalidate_session_record(self, subject_id: str, session_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE session_record SET is_valid = FALSE, updated_at = now()
                WHERE session_id = %s AND subject_id = %s AND is_valid
                RETURNING session_id
                """,
                (session_id, subject_id),
            ).fetchone()
        return row is not None

    def invalidate_subject_sessions(
        self, subject_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE session_record SET is_valid = FALSE, updated_at = now()
                WHERE subject_id = %s AND is_valid AND session_id IS DISTINCT FROM %s
                """,
                (subject_id, except_session_id),
            )
            return cur.rowcount or 0

    def purge_expired_session_records(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM session_record WHERE expires_at <= %s", (now,)
            )
            return cur.rowcount or 0
