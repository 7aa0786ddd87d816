from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from seqdash.logging import get_logger
from seqdash.service.auth import AuthOutcome, LoginState
from seqdash.service.errors import AuthenticationError
from seqdash.service.tokens import PendingCredential, SessionClaims, TokenCodec
from seqdash.storage.common import SessionStore, normalize_ip
from seqdash.storage.errors import ConstraintViolation, StoreUnavailable
from seqdash.storage.models import SessionRecord

logger = get_logger(__name__)

UNKNOWN_DEVICE = "Unknown Device"

# Checked in order: iPhone and Android user agents also mention Mac and Linux
_DEVICE_BUCKETS = (
    ("iphone", "iPhone"),
    ("ipad", "iPad"),
    ("android", "Android Device"),
    ("windows", "Windows PC"),
    ("mac", "Mac"),
    ("linux", "Linux"),
)


def infer_device_name(user_agent: Optional[str]) -> str:
    """Coarse display label for a user agent. Not a security control."""
    if not user_agent:
        return UNKNOWN_DEVICE
    lowered = user_agent.lower()
    for needle, label in _DEVICE_BUCKETS:
        if needle in lowered:
            return label
    return UNKNOWN_DEVICE


@dataclass(frozen=True)
class IssuedSession:
    token: str
    claims: SessionClaims


@dataclass(frozen=True)
class MaterializedSession:
    claims: SessionClaims
    record: Optional[SessionRecord] = None
    degraded: bool = False

    @property
    def subject_id(self) -> str:
        return self.claims.subject_id

    @property
    def session_id(self) -> str:
        return self.claims.session_id


class SessionService:
    """Issues signed session tokens and reconciles them with the registry.

    Records are created lazily by ``materialize``, not at login. A record
    whose validity flag was cleared stays revoked: materialization refuses
    it instead of flipping it back.
    """

    def __init__(
        self,
        store: SessionStore,
        codec: TokenCodec,
        *,
        session_ttl: timedelta,
        pending_ttl: timedelta,
    ) -> None:
        self.store = store
        self.codec = codec
        self.session_ttl = session_ttl
        self.pending_ttl = pending_ttl

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc).replace(microsecond=0)

    @staticmethod
    def _new_session_id() -> str:
        return uuid.uuid4().hex

    def issue(
        self,
        grant: Union[AuthOutcome, PendingCredential],
        *,
        existing: Optional[SessionClaims] = None,
    ) -> IssuedSession:
        """Mint a session token for an authenticated outcome.

        A fresh session id is assigned only when ``existing`` is None;
        otherwise the existing id is carried into the new claims.
        """
        if isinstance(grant, PendingCredential) or getattr(
            grant, "pending", None
        ) is not None:
            logger.warning("session_issue_refused", reason="second_factor_pending")
            raise AuthenticationError("second factor required")
        if grant.state is not LoginState.AUTHENTICATED or grant.account is None:
            logger.warning("session_issue_refused", reason=grant.state.value)
            raise AuthenticationError("not authenticated")

        now = self._now()
        subject_id = grant.account.id
        if existing is not None:
            if existing.subject_id != subject_id:
                raise AuthenticationError("session belongs to another account")
            claims = existing.reissued(
                issued_at=now, ttl=self.session_ttl, epoch=grant.account.session_epoch
            )
        else:
            claims = SessionClaims(
                subject_id=subject_id,
                session_id=self._new_session_id(),
                issued_at=now,
                expires_at=now + self.session_ttl,
                epoch=grant.account.session_epoch,
            )
        logger.info(
            "session_issued",
            subject_id=claims.subject_id,
            session_id=claims.session_id,
            reissued=existing is not None,
        )
        return IssuedSession(token=self.codec.encode_session(claims), claims=claims)

    def issue_pending(self, pending: PendingCredential) -> str:
        """Short-lived token that lets the client continue with phase two."""
        return self.codec.encode_pending(pending, expires_at=self._now() + self.pending_ttl)

    def decode_pending(self, token: str) -> Optional[PendingCredential]:
        return self.codec.decode_pending(token)

    def _epoch_is_stale(self, claims: SessionClaims) -> bool:
        """Retire a just-created record whose token predates a bulk revocation.

        Checked after the insert so a concurrent epoch advance either sees the
        record in its bulk update or is seen here.
        """
        current = self.store.get_session_epoch(claims.subject_id)
        if current is not None and claims.epoch >= current:
            return False
        self.store.invalidate_session_record(claims.subject_id, claims.session_id)
        logger.info(
            "session_epoch_stale",
            subject_id=claims.subject_id,
            session_id=claims.session_id,
            token_epoch=claims.epoch,
            account_epoch=current,
        )
        return True

    def materialize(
        self,
        token: str,
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> Optional[MaterializedSession]:
        """Resolve a presented token into its session record.

        Returns None for an invalid token, a revoked record, a record owned by
        another subject, a deleted account, or a token minted before the
        account's last bulk revocation. If the registry cannot be reached, the
        verified claims are returned without a record.
        """
        claims = self.codec.decode_session(token)
        if claims is None:
            return None

        now = self._now()
        client_ip = normalize_ip(ip)
        device_name = infer_device_name(user_agent) if user_agent else None
        try:
            record = self.store.get_session_record(claims.session_id)
            created = record is None
            if record is None:
                record = self.store.insert_session_record(
                    SessionRecord.new(
                        claims.subject_id,
                        claims.session_id,
                        expires_at=claims.expires_at,
                        user_agent=user_agent,
                        ip=client_ip,
                        device_name=device_name or UNKNOWN_DEVICE,
                        now=now,
                    )
                )
                logger.info(
                    "session_record_created",
                    subject_id=claims.subject_id,
                    session_id=claims.session_id,
                )
            if record.subject_id != claims.subject_id:
                logger.warning(
                    "session_subject_mismatch",
                    subject_id=claims.subject_id,
                    session_id=claims.session_id,
                )
                return None
            if not record.is_valid:
                logger.info(
                    "session_revoked_presented",
                    subject_id=claims.subject_id,
                    session_id=claims.session_id,
                )
                return None
            if created and self._epoch_is_stale(claims):
                return None
            touched = self.store.touch_session_record(
                claims.session_id,
                last_active=now,
                user_agent=user_agent,
                ip=client_ip,
                device_name=device_name,
                expires_at=claims.expires_at,
            )
        except ConstraintViolation:
            logger.info("session_subject_missing", subject_id=claims.subject_id)
            return None
        except StoreUnavailable as exc:
            logger.warning(
                "session_registry_unavailable",
                subject_id=claims.subject_id,
                session_id=claims.session_id,
                error=str(exc),
            )
            return MaterializedSession(claims=claims, record=None, degraded=True)
        if touched is None:
            # Revoked between the read and the update
            return None
        return MaterializedSession(claims=claims, record=touched)

    def refresh(
        self,
        token: str,
        outcome: AuthOutcome,
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> IssuedSession:
        """Reissue a token for the same login, keeping its session id."""
        current = self.materialize(token, user_agent=user_agent, ip=ip)
        if current is None:
            raise AuthenticationError("session is no longer valid")
        return self.issue(outcome, existing=current.claims)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Drop records whose tokens the codec can no longer accept.

        Records outlive their expiry by the codec leeway, so a revoked record
        exists for as long as its token still decodes.
        """
        cutoff = (now or self._now()) - self.codec.leeway
        removed = self.store.purge_expired_session_records(cutoff)
        if removed:
            logger.info("session_records_purged", count=removed)
        return removed
