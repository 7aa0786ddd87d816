from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


AUTH_METHOD_PASSWORD = "password"
AUTH_METHOD_IDENTITY_PROVIDER = "identity_provider"
AUTH_METHOD_BOTH = "both"

TOKEN_PURPOSE_PASSWORD_RESET = "password_reset"
TOKEN_PURPOSE_EMAIL_CHANGE = "email_change"


@dataclass
class Account:
    id: str
    email: str
    username: Optional[str] = None
    name: Optional[str] = None
    password_hash: Optional[str] = None
    totp_secret: Optional[str] = None
    totp_enabled: bool = False
    backup_code_hashes: List[str] = field(default_factory=list)
    auth_method: str = AUTH_METHOD_PASSWORD
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    # Advanced whenever every outstanding session token must stop being honored
    session_epoch: int = 0

    @classmethod
    def new(
        cls,
        email: str,
        *,
        username: Optional[str] = None,
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
        auth_method: str = AUTH_METHOD_PASSWORD,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            username=username,
            name=name,
            password_hash=password_hash,
            auth_method=auth_method,
        )

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)


@dataclass
class DeviceInfo:
    user_agent: Optional[str] = None
    ip: Optional[str] = None
    last_active: datetime = field(default_factory=utcnow)
    device_name: str = "Unknown Device"


@dataclass
class SessionRecord:
    """Server-side registry entry joined to a signed token by session_id."""

    subject_id: str
    session_id: str
    device_info: DeviceInfo
    expires_at: datetime
    is_valid: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        subject_id: str,
        session_id: str,
        *,
        expires_at: datetime,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
        device_name: str = "Unknown Device",
        now: Optional[datetime] = None,
    ) -> "SessionRecord":
        moment = now or utcnow()
        return cls(
            subject_id=subject_id,
            session_id=session_id,
            device_info=DeviceInfo(
                user_agent=user_agent,
                ip=ip,
                last_active=moment,
                device_name=device_name,
            ),
            expires_at=expires_at,
            created_at=moment,
            updated_at=moment,
        )


@dataclass
class AccountToken:
    """One-time token for password reset and email change; only the digest is kept."""

    token_hash: str
    purpose: str
    account_id: str
    email: str
    expires_at: datetime
    new_email: Optional[str] = None
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        token_hash: str,
        purpose: str,
        *,
        account_id: str,
        email: str,
        ttl_minutes: int,
        new_email: Optional[str] = None,
    ) -> "AccountToken":
        now = utcnow()
        return cls(
            token_hash=token_hash,
            purpose=purpose,
            account_id=account_id,
            email=email,
            new_email=new_email,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )
