from __future__ import annotations

import asyncio
import hashlib
import secrets
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, List, Optional
from urllib.parse import urlencode, urlparse

import httpx

from seqdash.config import Settings
from seqdash.logging import email_fingerprint, get_logger
from seqdash.service.backup_codes import BackupCodeManager
from seqdash.service.credentials import (
    AuthFailure,
    CredentialVerifier,
    PasswordService,
    password_policy_violation,
)
from seqdash.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    ValidationError,
)
from seqdash.service.revocation import SessionRevocationService
from seqdash.service.tokens import PendingCredential
from seqdash.service.totp import TOTPConfig, TOTPEngine
from seqdash.storage.common import AccountStore, normalize_email
from seqdash.storage.errors import ConstraintViolation
from seqdash.storage.models import (
    AUTH_METHOD_BOTH,
    AUTH_METHOD_IDENTITY_PROVIDER,
    AUTH_METHOD_PASSWORD,
    TOKEN_PURPOSE_EMAIL_CHANGE,
    TOKEN_PURPOSE_PASSWORD_RESET,
    Account,
    AccountToken,
)

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
    },
}

OAUTH_STATE_TTL = timedelta(minutes=10)

logger = get_logger(__name__)


class LoginState(str, Enum):
    AWAITING_CREDENTIALS = "awaiting_credentials"
    AWAITING_SECOND_FACTOR = "awaiting_second_factor"
    AUTHENTICATED = "authenticated"
    DENIED = "denied"


@dataclass(frozen=True)
class AuthOutcome:
    """Result of one login step.

    ``reason`` is kept for logging only; callers must render every DENIED
    outcome with the same generic message.
    """

    state: LoginState
    account: Optional[Account] = None
    pending: Optional[PendingCredential] = None
    reason: Optional[str] = field(default=None, compare=False)

    @classmethod
    def authenticated(cls, account: Account) -> "AuthOutcome":
        return cls(LoginState.AUTHENTICATED, account=account)

    @classmethod
    def challenge(cls, pending: PendingCredential) -> "AuthOutcome":
        return cls(LoginState.AWAITING_SECOND_FACTOR, pending=pending)

    @classmethod
    def denied(cls, reason: str) -> "AuthOutcome":
        return cls(LoginState.DENIED, reason=reason)

    @property
    def is_authenticated(self) -> bool:
        return self.state is LoginState.AUTHENTICATED

    @property
    def requires_second_factor(self) -> bool:
        return self.state is LoginState.AWAITING_SECOND_FACTOR

    @property
    def is_denied(self) -> bool:
        return self.state is LoginState.DENIED


def hash_opaque_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class AuthService:
    """Two-phase login orchestration plus the account flows around it.

    Never creates or mutates sessions on a successful login; the route layer
    hands AUTHENTICATED outcomes to the session issuer. Account flows that
    change credentials revoke other sessions through the revocation service.
    """

    def __init__(
        self,
        store: AccountStore,
        settings: Settings,
        *,
        passwords: PasswordService,
        totp: TOTPEngine,
        backup_codes: BackupCodeManager,
        revocation: SessionRevocationService,
    ) -> None:
        self.store = store
        self.settings = settings
        self.passwords = passwords
        self.verifier = CredentialVerifier(store, passwords)
        self.totp = totp
        self.backup_codes = backup_codes
        self.revocation = revocation
        self._state_lock = threading.Lock()
        self._oauth_states: dict[str, tuple[str, datetime, str]] = {}
        self._oauth_code_registry: dict[tuple[str, str], dict] = {}
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    # two-phase login
    def _second_factor_gate(self, account: Account) -> AuthOutcome:
        if account.totp_enabled:
            self.logger.info("login_second_factor_required", account_id=account.id)
            return AuthOutcome.challenge(
                PendingCredential(
                    subject_id=account.id,
                    email=account.email,
                    username=account.username,
                    requires_second_factor=True,
                )
            )
        self.logger.info("login_authenticated", account_id=account.id)
        return AuthOutcome.authenticated(account)

    async def authenticate_password(self, identifier: str, password: str) -> AuthOutcome:
        """Phase one: identifier and password."""
        result = await self.verifier.verify(identifier or "", password or "")
        if isinstance(result, AuthFailure):
            self.logger.info("login_denied", phase="credentials", reason=result.reason)
            return AuthOutcome.denied(result.reason)
        return self._second_factor_gate(result)

    async def complete_second_factor(
        self,
        email: str,
        code: str,
        *,
        is_backup_code: bool = False,
        subject_id: Optional[str] = None,
    ) -> AuthOutcome:
        """Phase two: a TOTP code, or a backup code consumed atomically."""
        account = None
        if email:
            account = await asyncio.to_thread(self.store.get_account_by_email, email)
        if account is None or (subject_id is not None and account.id != subject_id):
            self.logger.info("login_denied", phase="second_factor", reason="unknown_account")
            return AuthOutcome.denied("unknown_account")
        if not account.totp_enabled or not account.totp_secret:
            self.logger.info(
                "login_denied",
                phase="second_factor",
                reason="second_factor_not_enabled",
                account_id=account.id,
            )
            return AuthOutcome.denied("second_factor_not_enabled")

        if is_backup_code:
            accepted = await asyncio.to_thread(
                self.backup_codes.verify_and_consume, code, account.email
            )
        else:
            accepted = self.totp.verify(code, account.totp_secret)
        if not accepted:
            self.logger.info(
                "login_denied",
                phase="second_factor",
                reason="invalid_backup_code" if is_backup_code else "invalid_totp_code",
                account_id=account.id,
            )
            return AuthOutcome.denied("invalid_code")

        self.logger.info(
            "login_authenticated",
            account_id=account.id,
            second_factor="backup_code" if is_backup_code else "totp",
        )
        if is_backup_code:
            account.backup_code_hashes = [
                h for h in account.backup_code_hashes if h != self.backup_codes.hash(code)
            ]
        return AuthOutcome.authenticated(account)

    def record_login(self, account: Account) -> None:
        self.store.touch_last_login(account.id, self._now())

    # registration
    async def register(
        self,
        email: str,
        password: str,
        *,
        username: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Account:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup disabled")
        problem = password_policy_violation(password)
        if problem:
            raise ValidationError(problem, detail={"field": "password"})
        password_hash = await self.passwords.hash(password)
        account = Account.new(
            email,
            username=username or None,
            name=name,
            password_hash=password_hash,
            auth_method=AUTH_METHOD_PASSWORD,
        )
        try:
            created = await asyncio.to_thread(self.store.create_account, account)
        except ConstraintViolation as exc:
            self.logger.info("registration_conflict", field=exc.detail.get("field"))
            raise ConflictError(
                "an account with this email or username already exists",
                detail={"field": exc.detail.get("field")},
            )
        self.logger.info("account_registered", account_id=created.id)
        return created

    # identity providers
    def _get_oauth_credentials(self, provider: str) -> tuple[Optional[str], Optional[str]]:
        if provider == "google":
            return self.settings.oauth_google_client_id, self.settings.oauth_google_client_secret
        if provider == "github":
            return self.settings.oauth_github_client_id, self.settings.oauth_github_client_secret
        return None, None

    @staticmethod
    def _validate_redirect_uri(redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"}:
            raise ValidationError("OAuth redirect URI must be http(s)")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValidationError("insecure redirect URI not allowed outside localhost")
        if not parsed.netloc:
            raise ValidationError("OAuth redirect URI must include host")
        return redirect_uri

    def cleanup_expired_states(self) -> int:
        now = self._now()
        with self._state_lock:
            expired = [
                state
                for state, (_, expires_at, _) in self._oauth_states.items()
                if expires_at <= now
            ]
            for state in expired:
                self._oauth_states.pop(state, None)
        if expired:
            self.logger.debug("oauth_state_cleanup", cleaned=len(expired))
        return len(expired)

    def start_oauth(self, provider: str, redirect_uri: Optional[str] = None) -> dict:
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError(f"unsupported OAuth provider: {provider}")
        client_id, _ = self._get_oauth_credentials(provider)
        if not client_id:
            self.logger.warning("oauth_not_configured", provider=provider)
            raise ValidationError(f"OAuth provider {provider} is not configured")
        callback_uri = redirect_uri or self.settings.oauth_redirect_uri
        if not callback_uri:
            self.logger.error("oauth_no_redirect_uri_configured", provider=provider)
            raise ValidationError("no OAuth redirect URI configured")
        callback_uri = self._validate_redirect_uri(callback_uri)

        self.cleanup_expired_states()
        state = uuid.uuid4().hex
        with self._state_lock:
            self._oauth_states[state] = (provider, self._now() + OAUTH_STATE_TTL, callback_uri)

        provider_config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": callback_uri,
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
        }
        if provider == "google":
            params["prompt"] = "select_account"
        return {
            "authorization_url": f"{provider_config['auth_url']}?{urlencode(params)}",
            "state": state,
            "provider": provider,
        }

    def register_oauth_code(self, provider: str, code: str, payload: dict) -> None:
        """Record an exchanged OAuth identity for testing or offline flows."""

        with self._state_lock:
            self._oauth_code_registry[(provider, code)] = payload

    async def _exchange_oauth_code(
        self, provider: str, code: str, redirect_uri: str
    ) -> Optional[dict]:
        with self._state_lock:
            registered = self._oauth_code_registry.pop((provider, code), None)
        if registered:
            return registered

        client_id, client_secret = self._get_oauth_credentials(provider)
        if not client_id or not client_secret:
            self.logger.error("oauth_credentials_missing", provider=provider)
            return None
        provider_config = OAUTH_PROVIDERS[provider]
        try:
            async with httpx.AsyncClient(timeout=30.0, follow_redirects=False) as client:
                token_response = await client.post(
                    provider_config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    self.logger.error("oauth_no_access_token", provider=provider)
                    return None

                userinfo_headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    userinfo_headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(
                    provider_config["userinfo_url"], headers=userinfo_headers
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    self.logger.error("oauth_userinfo_invalid_format", provider=provider)
                    return None
                identity = self._parse_oauth_userinfo(provider, userinfo)

                if provider == "github" and not identity.get("email"):
                    emails_response = await client.get(
                        "https://api.github.com/user/emails", headers=userinfo_headers
                    )
                    if emails_response.status_code == 200:
                        identity["email"] = next(
                            (
                                e["email"]
                                for e in emails_response.json()
                                if e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            self.logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            return None

        if not identity.get("email"):
            self.logger.error("oauth_identity_missing_email", provider=provider)
            return None
        self.logger.info("oauth_exchange_success", provider=provider)
        return identity

    @staticmethod
    def _parse_oauth_userinfo(provider: str, userinfo: dict) -> dict:
        if provider == "google":
            return {
                "provider_uid": userinfo.get("id"),
                "email": userinfo.get("email"),
                "name": userinfo.get("name"),
            }
        if provider == "github":
            return {
                "provider_uid": str(userinfo.get("id")),
                "email": userinfo.get("email"),
                "name": userinfo.get("name") or userinfo.get("login"),
            }
        return {"provider_uid": userinfo.get("id") or userinfo.get("sub")}

    async def complete_oauth(self, provider: str, code: str, state: str) -> AuthOutcome:
        with self._state_lock:
            stored = self._oauth_states.pop(state, None)
        if not stored or stored[0] != provider or stored[1] < self._now():
            self.logger.info("login_denied", phase="oauth", reason="invalid_state")
            return AuthOutcome.denied("invalid_oauth_state")
        identity = await self._exchange_oauth_code(provider, code, stored[2])
        if not identity:
            self.logger.info("login_denied", phase="oauth", reason="exchange_failed")
            return AuthOutcome.denied("oauth_exchange_failed")
        return await asyncio.to_thread(self.authenticate_identity_provider, identity)

    def authenticate_identity_provider(self, identity: dict[str, Any]) -> AuthOutcome:
        """Sign-in via an external identity: create or link, then the 2FA gate."""
        email = identity.get("email")
        if not email:
            return AuthOutcome.denied("identity_missing_email")
        account = self.store.get_account_by_email(email)
        if account is None:
            if not self.settings.allow_signup:
                self.logger.info("login_denied", phase="oauth", reason="signup_disabled")
                return AuthOutcome.denied("signup_disabled")
            account = self._create_identity_account(email, identity.get("name"))
        elif account.auth_method == AUTH_METHOD_PASSWORD:
            self.store.set_auth_method(account.id, AUTH_METHOD_BOTH)
            account.auth_method = AUTH_METHOD_BOTH
            self.logger.info("identity_provider_linked", account_id=account.id)
        return self._second_factor_gate(account)

    def _create_identity_account(self, email: str, name: Optional[str]) -> Account:
        local_part = normalize_email(email).split("@", 1)[0]
        for username in (local_part, f"{local_part}-{secrets.token_hex(3)}"):
            try:
                created = self.store.create_account(
                    Account.new(
                        email,
                        username=username,
                        name=name,
                        auth_method=AUTH_METHOD_IDENTITY_PROVIDER,
                    )
                )
            except ConstraintViolation as exc:
                if exc.detail.get("field") != "username":
                    existing = self.store.get_account_by_email(email)
                    if existing is not None:
                        return existing
                    raise
                continue
            self.logger.info("account_registered", account_id=created.id, via="identity_provider")
            return created
        raise ConflictError("could not allocate a username for this identity")

    # two-factor setup
    async def begin_two_factor_setup(self, account: Account) -> TOTPConfig:
        """New secret and provisioning payload; the account is left untouched."""
        if account.totp_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        return await self.totp.generate_config(account.email)

    def enable_two_factor(self, account: Account, secret: str, code: str) -> List[str]:
        """Persist secret, flag and backup-code hashes together after proof of possession.

        Returns the plaintext backup codes; this is the only time they exist.
        """
        if account.totp_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        if not secret or not self.totp.verify(code, secret):
            self.logger.info("two_factor_enable_rejected", account_id=account.id)
            raise ValidationError("invalid verification code", detail={"field": "code"})
        codes = self.backup_codes.generate()
        if not self.store.enable_totp(account.email, secret, self.backup_codes.hash_all(codes)):
            raise NotFoundError("account not found")
        self.logger.info("two_factor_enabled", account_id=account.id, backup_codes=len(codes))
        return codes

    async def disable_two_factor(
        self,
        account: Account,
        code: str,
        *,
        is_backup_code: bool = False,
        keep_session_id: Optional[str] = None,
    ) -> None:
        if not account.totp_enabled:
            raise ValidationError("two-factor authentication is not enabled")
        outcome = await self.complete_second_factor(
            account.email, code, is_backup_code=is_backup_code, subject_id=account.id
        )
        if not outcome.is_authenticated:
            raise ValidationError("invalid verification code", detail={"field": "code"})
        if not await asyncio.to_thread(self.store.disable_totp, account.email):
            raise NotFoundError("account not found")
        await asyncio.to_thread(
            self.revocation.revoke_all, account.id, except_session_id=keep_session_id
        )
        self.logger.info("two_factor_disabled", account_id=account.id)

    @staticmethod
    def two_factor_status(account: Account) -> dict:
        return {
            "enabled": account.totp_enabled,
            "backup_codes_remaining": len(account.backup_code_hashes)
            if account.totp_enabled
            else 0,
        }

    # password management
    async def change_password(
        self,
        account: Account,
        current_password: str,
        new_password: str,
        *,
        keep_session_id: Optional[str] = None,
    ) -> None:
        if not account.has_password:
            raise ValidationError("this account signs in with an identity provider")
        if not await self.verifier.check_password(account, current_password):
            self.logger.info("password_change_rejected", account_id=account.id)
            raise InvalidCredentialsError()
        problem = password_policy_violation(new_password)
        if problem:
            raise ValidationError(problem, detail={"field": "new_password"})
        password_hash = await self.passwords.hash(new_password)
        await asyncio.to_thread(self.store.set_password_hash, account.id, password_hash)
        await asyncio.to_thread(
            self.revocation.revoke_all, account.id, except_session_id=keep_session_id
        )
        self.logger.info("password_changed", account_id=account.id)

    def _issue_account_token(
        self,
        account: Account,
        purpose: str,
        *,
        ttl_minutes: int,
        new_email: Optional[str] = None,
    ) -> str:
        token = secrets.token_urlsafe(32)
        self.store.save_account_token(
            AccountToken.new(
                hash_opaque_token(token),
                purpose,
                account_id=account.id,
                email=account.email,
                new_email=new_email,
                ttl_minutes=ttl_minutes,
            )
        )
        return token

    def request_password_reset(self, email: str) -> Optional[str]:
        """Opaque reset token, or None when no account matches.

        Callers answer identically in both cases.
        """
        account = self.store.get_account_by_email(email) if email else None
        if account is None:
            self.logger.info("password_reset_unknown_email", account=email_fingerprint(email))
            return None
        token = self._issue_account_token(
            account,
            TOKEN_PURPOSE_PASSWORD_RESET,
            ttl_minutes=self.settings.password_reset_ttl_minutes,
        )
        self.logger.info("password_reset_requested", account_id=account.id)
        return token

    async def complete_password_reset(self, token: str, new_password: str) -> Account:
        problem = password_policy_violation(new_password)
        if problem:
            raise ValidationError(problem, detail={"field": "password"})
        claimed = await asyncio.to_thread(
            self.store.claim_account_token,
            hash_opaque_token(token or ""),
            TOKEN_PURPOSE_PASSWORD_RESET,
            self._now(),
        )
        if claimed is None:
            raise ValidationError("invalid or expired reset token")
        account = await asyncio.to_thread(self.store.get_account, claimed.account_id)
        if account is None:
            raise NotFoundError("account not found")
        password_hash = await self.passwords.hash(new_password)
        await asyncio.to_thread(self.store.set_password_hash, account.id, password_hash)
        if account.auth_method == AUTH_METHOD_IDENTITY_PROVIDER:
            await asyncio.to_thread(self.store.set_auth_method, account.id, AUTH_METHOD_BOTH)
        await asyncio.to_thread(self.revocation.revoke_all, account.id)
        self.logger.info("password_reset_completed", account_id=account.id)
        return account

    # email change
    async def request_email_change(
        self, account: Account, new_email: str, password: str
    ) -> str:
        normalized = normalize_email(new_email)
        if normalized == account.email:
            raise ValidationError("new email matches the current email")
        if not account.has_password:
            raise ValidationError("this account signs in with an identity provider")
        if not await self.verifier.check_password(account, password):
            self.logger.info("email_change_rejected", account_id=account.id)
            raise InvalidCredentialsError()
        if await asyncio.to_thread(self.store.get_account_by_email, normalized) is not None:
            raise ConflictError("email already in use", detail={"field": "new_email"})
        token = await asyncio.to_thread(
            self._issue_account_token,
            account,
            TOKEN_PURPOSE_EMAIL_CHANGE,
            ttl_minutes=self.settings.email_change_ttl_minutes,
            new_email=normalized,
        )
        self.logger.info("email_change_requested", account_id=account.id)
        return token

    def confirm_email_change(self, token: str) -> Account:
        claimed = self.store.claim_account_token(
            hash_opaque_token(token or ""), TOKEN_PURPOSE_EMAIL_CHANGE, self._now()
        )
        if claimed is None or not claimed.new_email:
            raise ValidationError("invalid or expired verification token")
        try:
            updated = self.store.update_email(claimed.account_id, claimed.new_email)
        except ConstraintViolation:
            raise ConflictError("email already in use", detail={"field": "new_email"})
        if not updated:
            raise NotFoundError("account not found")
        self.logger.info("email_changed", account_id=claimed.account_id)
        return self.store.get_account(claimed.account_id)

    # deletion
    async def delete_account(self, account_id: str, password: str) -> None:
        """Delete after re-authentication; sessions and tokens go with the account."""
        account = await asyncio.to_thread(self.store.get_account, account_id)
        if account is None:
            raise NotFoundError("account not found")
        if not account.has_password:
            raise ValidationError("accounts without a password cannot be deleted with one")
        if not await self.verifier.check_password(account, password):
            self.logger.info("account_delete_rejected", account_id=account_id)
            raise InvalidCredentialsError()
        if not await asyncio.to_thread(self.store.delete_account, account_id):
            raise NotFoundError("account not found")
        self.logger.info("account_deleted", account_id=account_id)
