"""Signed token codec and the immutable claim types carried by tokens.

Two token types exist. ``session`` tokens carry a stable ``sid`` that joins
them to a session record. ``pending_login`` tokens only prove that phase one
of a login succeeded for an account with a second factor; they are never
accepted where a session is expected.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from seqdash.logging import get_logger

logger = get_logger(__name__)

TOKEN_TYPE_SESSION = "session"
TOKEN_TYPE_PENDING = "pending_login"


@dataclass(frozen=True)
class SessionClaims:
    subject_id: str
    session_id: str
    issued_at: datetime
    expires_at: datetime
    # Account session epoch at issue time; older epochs cannot create records
    epoch: int = 0

    def reissued(
        self, *, issued_at: datetime, ttl: timedelta, epoch: Optional[int] = None
    ) -> "SessionClaims":
        """New claims for the same login: the session id carries over unchanged."""
        return SessionClaims(
            subject_id=self.subject_id,
            session_id=self.session_id,
            issued_at=issued_at,
            expires_at=issued_at + ttl,
            epoch=self.epoch if epoch is None else epoch,
        )


@dataclass(frozen=True)
class PendingCredential:
    """Phase-one result for an account that still owes a second factor.

    Never persisted and never a session: ``requires_second_factor`` is checked
    by the session issuer, which refuses to promote it.
    """

    subject_id: str
    email: str
    username: Optional[str] = None
    requires_second_factor: bool = True


def _to_timestamp(moment: datetime) -> int:
    return int(moment.timestamp())


def _from_timestamp(raw: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(float(raw), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


class TokenCodec:
    """HS256 JWT encoding pinned to one algorithm, issuer and audience."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway: timedelta = timedelta(seconds=30),
    ) -> None:
        if not secret:
            raise ValueError("token secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self._leeway = leeway

    @property
    def leeway(self) -> timedelta:
        """How long past ``exp`` a token is still accepted."""
        return self._leeway

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        body = {**payload, "iss": self.issuer, "aud": self.audience}
        payload_enc = self._encode_segment(
            json.dumps(body, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._leeway.total_seconds():
            return None
        return payload

    # typed helpers
    def encode_session(self, claims: SessionClaims) -> str:
        return self.encode(
            {
                "sub": claims.subject_id,
                "sid": claims.session_id,
                "iat": _to_timestamp(claims.issued_at),
                "exp": _to_timestamp(claims.expires_at),
                "epoch": claims.epoch,
                "token_type": TOKEN_TYPE_SESSION,
            }
        )

    def decode_session(self, token: str) -> Optional[SessionClaims]:
        payload = self.decode(token)
        if not payload or payload.get("token_type") != TOKEN_TYPE_SESSION:
            return None
        subject_id, session_id = payload.get("sub"), payload.get("sid")
        issued_at = _from_timestamp(payload.get("iat"))
        expires_at = _from_timestamp(payload.get("exp"))
        if not subject_id or not session_id or not issued_at or not expires_at:
            return None
        epoch = payload.get("epoch", 0)
        if not isinstance(epoch, int) or isinstance(epoch, bool) or epoch < 0:
            return None
        return SessionClaims(
            subject_id=str(subject_id),
            session_id=str(session_id),
            issued_at=issued_at,
            expires_at=expires_at,
            epoch=epoch,
        )

    def encode_pending(self, pending: PendingCredential, *, expires_at: datetime) -> str:
        return self.encode(
            {
                "sub": pending.subject_id,
                "email": pending.email,
                "username": pending.username,
                "exp": _to_timestamp(expires_at),
                "token_type": TOKEN_TYPE_PENDING,
                "requires_second_factor": True,
            }
        )

    def decode_pending(self, token: str) -> Optional[PendingCredential]:
        payload = self.decode(token)
        if not payload or payload.get("token_type") != TOKEN_TYPE_PENDING:
            return None
        if not payload.get("sub") or not payload.get("email"):
            return None
        return PendingCredential(
            subject_id=str(payload["sub"]),
            email=str(payload["email"]),
            username=payload.get("username"),
            requires_second_factor=True,
        )
