from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from seqdash.logging import get_logger
from seqdash.storage.common import SessionStore
from seqdash.storage.models import SessionRecord

logger = get_logger(__name__)


class RevocationResult(str, Enum):
    REVOKED = "revoked"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class SessionView:
    """What a subject may see of one of their sessions. Carries no token material."""

    session_id: str
    device_name: str
    user_agent: Optional[str]
    ip: Optional[str]
    last_active: datetime
    created_at: datetime
    expires_at: datetime
    is_valid: bool
    current: bool = False

    @classmethod
    def from_record(
        cls, record: SessionRecord, *, current_session_id: Optional[str] = None
    ) -> "SessionView":
        info = record.device_info
        return cls(
            session_id=record.session_id,
            device_name=info.device_name,
            user_agent=info.user_agent,
            ip=info.ip,
            last_active=info.last_active,
            created_at=record.created_at,
            expires_at=record.expires_at,
            is_valid=record.is_valid,
            current=record.session_id == current_session_id,
        )


class SessionRevocationService:
    def __init__(self, store: SessionStore) -> None:
        self.store = store

    def list(
        self, subject_id: str, *, current_session_id: Optional[str] = None
    ) -> List[SessionView]:
        """Valid sessions owned by ``subject_id``, most recently active first."""
        records = self.store.list_session_records(subject_id)
        return [
            SessionView.from_record(record, current_session_id=current_session_id)
            for record in records
            if record.subject_id == subject_id
        ]

    def revoke(self, subject_id: str, session_id: str) -> RevocationResult:
        """Clear the validity flag on one session the subject owns.

        Ownership is part of the update key, so a guessed id belonging to
        someone else is indistinguishable from one that does not exist.
        """
        if not session_id:
            return RevocationResult.NOT_FOUND
        if self.store.invalidate_session_record(subject_id, session_id):
            logger.info("session_revoked", subject_id=subject_id, session_id=session_id)
            return RevocationResult.REVOKED
        logger.info("session_revoke_not_found", subject_id=subject_id, session_id=session_id)
        return RevocationResult.NOT_FOUND

    def revoke_all(self, subject_id: str, *, except_session_id: Optional[str] = None) -> int:
        """Revoke every session of the subject but ``except_session_id``.

        The account's session epoch advances first, so tokens that were issued
        earlier but never presented cannot create a record afterwards. The
        excepted session keeps working through its existing record.
        """
        epoch = self.store.advance_session_epoch(subject_id)
        count = self.store.invalidate_subject_sessions(
            subject_id, except_session_id=except_session_id
        )
        logger.info(
            "sessions_revoked_bulk",
            subject_id=subject_id,
            count=count,
            kept=except_session_id,
            epoch=epoch,
        )
        return count
