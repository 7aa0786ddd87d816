from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from seqdash.service.credentials import password_policy_violation

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    zero_width = "​‌‍﻿"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_username(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    if len(value) > 64:
        raise ValueError("username must be at most 64 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError(
            "username must contain only letters, digits, dots, underscores and hyphens"
        )
    return value


def _validate_password_strength(value: str) -> str:
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    problem = password_policy_violation(value)
    if problem:
        raise ValueError(problem)
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str
    username: Optional[str] = Field(default=None, max_length=64)
    name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: Optional[str]) -> Optional[str]:
        return _validate_username(value)


class LoginRequest(BaseModel):
    """Phase one. ``identifier`` is a username or an email address."""

    identifier: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)


class SecondFactorRequest(BaseModel):
    pending_token: str = Field(..., max_length=2048)
    code: str = Field(..., min_length=1, max_length=32)
    is_backup_code: bool = False


class AccountResponse(BaseModel):
    id: str
    email: str
    username: Optional[str] = None
    name: Optional[str] = None
    auth_method: str
    totp_enabled: bool = False
    created_at: datetime
    last_login_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    """Login result. Exactly one of ``access_token`` and ``pending_token`` is set."""

    status: str
    access_token: Optional[str] = None
    token_type: Optional[str] = None
    session_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    pending_token: Optional[str] = None
    account: Optional[AccountResponse] = None


class OAuthStartRequest(BaseModel):
    redirect_uri: Optional[str] = Field(default=None, max_length=2048)


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str
    provider: str


class PasswordForgotRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class EmailChangeRequest(BaseModel):
    new_email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("new_email")
    @classmethod
    def _validate_new_email(cls, value: str) -> str:
        return _validate_email(value)


class AccountDeleteRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class TwoFactorSetupResponse(BaseModel):
    secret: str
    provisioning_uri: str
    qr_code: str


class TwoFactorEnableRequest(BaseModel):
    secret: str = Field(..., min_length=16, max_length=128)
    code: str = Field(..., min_length=1, max_length=10)


class TwoFactorEnableResponse(BaseModel):
    enabled: bool = True
    backup_codes: List[str]


class TwoFactorDisableRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)
    is_backup_code: bool = False


class TwoFactorStatusResponse(BaseModel):
    enabled: bool
    backup_codes_remaining: int = 0


class SessionResponse(BaseModel):
    session_id: str
    device_name: str
    user_agent: Optional[str] = None
    ip: Optional[str] = None
    last_active: datetime
    created_at: datetime
    expires_at: datetime
    current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionResponse]
