from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request

from seqdash.api.schemas import (
    AccountDeleteRequest,
    AccountResponse,
    AuthResponse,
    EmailChangeRequest,
    Envelope,
    LoginRequest,
    OAuthStartRequest,
    OAuthStartResponse,
    PasswordChangeRequest,
    PasswordForgotRequest,
    PasswordResetConfirm,
    RegisterRequest,
    SecondFactorRequest,
    SessionListResponse,
    SessionResponse,
    TwoFactorDisableRequest,
    TwoFactorEnableRequest,
    TwoFactorEnableResponse,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
)
from seqdash.logging import get_logger
from seqdash.service.auth import AuthOutcome
from seqdash.service.errors import (
    AuthenticationError,
    InvalidCredentialsError,
    NotFoundError,
)
from seqdash.service.revocation import RevocationResult
from seqdash.service.runtime import get_runtime
from seqdash.service.sessions import MaterializedSession
from seqdash.storage.models import Account

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_BEARER_PREFIX = "bearer "


@dataclass(frozen=True)
class Principal:
    account: Account
    session: MaterializedSession
    token: str

    @property
    def session_id(self) -> str:
        return self.session.session_id


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.lower().startswith(_BEARER_PREFIX):
        return None
    token = authorization[len(_BEARER_PREFIX):].strip()
    return token or None


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _account_to_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        email=account.email,
        username=account.username,
        name=account.name,
        auth_method=account.auth_method,
        totp_enabled=account.totp_enabled,
        created_at=account.created_at,
        last_login_at=account.last_login_at,
    )


async def get_user(
    request: Request, authorization: Optional[str] = Header(None)
) -> Principal:
    """Resolve the bearer token into the caller's account and live session."""
    token = _bearer_token(authorization)
    if not token:
        raise AuthenticationError("missing bearer token")
    runtime = get_runtime()
    session = await asyncio.to_thread(
        runtime.sessions.materialize,
        token,
        user_agent=request.headers.get("user-agent"),
        ip=_client_ip(request),
    )
    if session is None:
        raise AuthenticationError("invalid session")
    account = await asyncio.to_thread(runtime.store.get_account, session.subject_id)
    if account is None:
        raise AuthenticationError("invalid session")
    return Principal(account=account, session=session, token=token)


async def _login_response(outcome: AuthOutcome) -> Envelope:
    """Translate a login outcome into a response; every denial looks the same."""
    runtime = get_runtime()
    if outcome.requires_second_factor:
        return Envelope(
            status="ok",
            data=AuthResponse(
                status="second_factor_required",
                pending_token=runtime.sessions.issue_pending(outcome.pending),
            ),
        )
    if not outcome.is_authenticated:
        raise InvalidCredentialsError()
    issued = runtime.sessions.issue(outcome)
    await asyncio.to_thread(runtime.auth.record_login, outcome.account)
    return Envelope(
        status="ok",
        data=AuthResponse(
            status="authenticated",
            access_token=issued.token,
            token_type="bearer",
            session_id=issued.claims.session_id,
            expires_at=issued.claims.expires_at,
            account=_account_to_response(outcome.account),
        ),
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a password account. Signing in is a separate step."""
    runtime = get_runtime()
    account = await runtime.auth.register(
        body.email, body.password, username=body.username, name=body.name
    )
    return Envelope(status="ok", data=_account_to_response(account))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Phase one of sign-in.

    Returns a session token, or a short-lived pending token when the account
    has two-factor authentication enabled.

    Raises:
        401: For any credential failure, with one generic message
    """
    runtime = get_runtime()
    outcome = await runtime.auth.authenticate_password(body.identifier, body.password)
    return await _login_response(outcome)


@router.post("/auth/login/second-factor", response_model=Envelope, tags=["auth"])
async def login_second_factor(body: SecondFactorRequest):
    runtime = get_runtime()
    pending = runtime.sessions.decode_pending(body.pending_token)
    if pending is None:
        raise InvalidCredentialsError()
    outcome = await runtime.auth.complete_second_factor(
        pending.email,
        body.code,
        is_backup_code=body.is_backup_code,
        subject_id=pending.subject_id,
    )
    return await _login_response(outcome)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_session(request: Request, authorization: Optional[str] = Header(None)):
    """Reissue the caller's token. The session id does not change."""
    token = _bearer_token(authorization)
    if not token:
        raise AuthenticationError("missing bearer token")
    runtime = get_runtime()
    claims = runtime.codec.decode_session(token)
    account = None
    if claims is not None:
        account = await asyncio.to_thread(runtime.store.get_account, claims.subject_id)
    if account is None:
        raise AuthenticationError("invalid session")
    issued = await asyncio.to_thread(
        runtime.sessions.refresh,
        token,
        AuthOutcome.authenticated(account),
        user_agent=request.headers.get("user-agent"),
        ip=_client_ip(request),
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            status="authenticated",
            access_token=issued.token,
            token_type="bearer",
            session_id=issued.claims.session_id,
            expires_at=issued.claims.expires_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    await asyncio.to_thread(
        runtime.revocation.revoke, principal.account.id, principal.session_id
    )
    return Envelope(status="ok", data={"status": "logged_out"})


@router.post("/auth/oauth/{provider}/start", response_model=Envelope, tags=["auth"])
async def oauth_start(
    provider: str = Path(..., description="OAuth provider (google, github)"),
    body: Optional[OAuthStartRequest] = None,
):
    """Return the provider authorization URL the client should redirect to."""
    runtime = get_runtime()
    start = runtime.auth.start_oauth(
        provider, redirect_uri=body.redirect_uri if body else None
    )
    return Envelope(
        status="ok",
        data=OAuthStartResponse(
            authorization_url=start["authorization_url"],
            state=start["state"],
            provider=provider,
        ),
    )


@router.get("/auth/oauth/{provider}/callback", response_model=Envelope, tags=["auth"])
async def oauth_callback(
    provider: str = Path(..., description="OAuth provider"),
    code: str = Query(..., max_length=512),
    state: str = Query(..., max_length=128),
):
    runtime = get_runtime()
    outcome = await runtime.auth.complete_oauth(provider, code, state)
    return await _login_response(outcome)


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordForgotRequest):
    runtime = get_runtime()
    token = await asyncio.to_thread(runtime.auth.request_password_reset, body.email)
    if token:
        await asyncio.to_thread(
            runtime.email.send_password_reset,
            body.email,
            token,
            ttl_minutes=runtime.settings.password_reset_ttl_minutes,
        )
    # Same answer whether or not the address is registered
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.auth.complete_password_reset(body.token, body.new_password)
    return Envelope(status="ok", data={"status": "reset"})


@router.get("/me", response_model=Envelope, tags=["account"])
async def get_current_account(principal: Principal = Depends(get_user)):
    return Envelope(status="ok", data=_account_to_response(principal.account))


@router.post("/account/password", response_model=Envelope, tags=["account"])
async def change_password(
    body: PasswordChangeRequest, principal: Principal = Depends(get_user)
):
    """Change the password; every other session of the account is revoked."""
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.account,
        body.current_password,
        body.new_password,
        keep_session_id=principal.session_id,
    )
    return Envelope(status="ok", data={"status": "changed"})


@router.put("/account/email", response_model=Envelope, tags=["account"])
async def request_email_change(
    body: EmailChangeRequest, principal: Principal = Depends(get_user)
):
    runtime = get_runtime()
    token = await runtime.auth.request_email_change(
        principal.account, body.new_email, body.password
    )
    await asyncio.to_thread(
        runtime.email.send_email_change_verification,
        body.new_email,
        token,
        ttl_minutes=runtime.settings.email_change_ttl_minutes,
    )
    return Envelope(status="ok", data={"status": "sent"})


@router.get("/account/email/verify", response_model=Envelope, tags=["account"])
async def verify_email_change(token: str = Query(..., max_length=256)):
    runtime = get_runtime()
    account = await asyncio.to_thread(runtime.auth.confirm_email_change, token)
    return Envelope(
        status="ok",
        data={"status": "verified", "account": _account_to_response(account).model_dump()},
    )


@router.delete("/account", response_model=Envelope, tags=["account"])
async def delete_account(
    body: AccountDeleteRequest, principal: Principal = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.auth.delete_account(principal.account.id, body.password)
    return Envelope(status="ok", data={"status": "deleted"})


@router.get("/account/2fa/status", response_model=Envelope, tags=["two-factor"])
async def two_factor_status(principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(**runtime.auth.two_factor_status(principal.account)),
    )


@router.post("/account/2fa/setup", response_model=Envelope, tags=["two-factor"])
async def two_factor_setup(principal: Principal = Depends(get_user)):
    """Generate a secret and QR code. Nothing is stored until enable succeeds."""
    runtime = get_runtime()
    config = await runtime.auth.begin_two_factor_setup(principal.account)
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(
            secret=config.secret,
            provisioning_uri=config.provisioning_uri,
            qr_code=config.qr_image,
        ),
    )


@router.post("/account/2fa/enable", response_model=Envelope, tags=["two-factor"])
async def two_factor_enable(
    body: TwoFactorEnableRequest, principal: Principal = Depends(get_user)
):
    runtime = get_runtime()
    codes = await asyncio.to_thread(
        runtime.auth.enable_two_factor, principal.account, body.secret, body.code
    )
    return Envelope(status="ok", data=TwoFactorEnableResponse(backup_codes=codes))


@router.post("/account/2fa/disable", response_model=Envelope, tags=["two-factor"])
async def two_factor_disable(
    body: TwoFactorDisableRequest, principal: Principal = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.auth.disable_two_factor(
        principal.account,
        body.code,
        is_backup_code=body.is_backup_code,
        keep_session_id=principal.session_id,
    )
    return Envelope(status="ok", data={"status": "disabled"})


@router.get("/account/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    views = await asyncio.to_thread(
        runtime.revocation.list,
        principal.account.id,
        current_session_id=principal.session_id,
    )
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[
                SessionResponse(
                    session_id=view.session_id,
                    device_name=view.device_name,
                    user_agent=view.user_agent,
                    ip=view.ip,
                    last_active=view.last_active,
                    created_at=view.created_at,
                    expires_at=view.expires_at,
                    current=view.current,
                )
                for view in views
            ]
        ),
    )


@router.delete("/account/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_user),
):
    """Revoke one of the caller's sessions.

    Sessions owned by someone else answer 404, exactly like unknown ids.
    """
    runtime = get_runtime()
    result = await asyncio.to_thread(runtime.revocation.revoke, principal.account.id, session_id)
    if result is RevocationResult.NOT_FOUND:
        raise NotFoundError("session not found")
    return Envelope(status="ok", data={"status": "revoked", "session_id": session_id})
