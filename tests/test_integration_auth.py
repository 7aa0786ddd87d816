"""Integration tests for the HTTP authentication surface.

Covers the whole lifecycle through the API:
- Registration and password login
- Two-factor setup, enable and the second login phase
- Session listing, revocation and refresh
- Password change and reset
- Logout and account deletion
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from seqdash import app as app_module
from seqdash.service.runtime import get_runtime

IPHONE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X)"
LINUX_UA = "Mozilla/5.0 (X11; Linux x86_64) Firefox/121.0"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def test_user_email():
    return "player@example.com"


@pytest.fixture
def test_user_password():
    return "LuckyNumbers#7"


@pytest.fixture
def registered(client, test_user_email, test_user_password):
    response = client.post(
        "/v1/auth/register",
        json={"email": test_user_email, "password": test_user_password, "username": "player"},
    )
    assert response.status_code == 201
    return response.json()["data"]


def _login(client, identifier, password, user_agent=LINUX_UA):
    return client.post(
        "/v1/auth/login",
        json={"identifier": identifier, "password": password},
        headers={"User-Agent": user_agent},
    )


def _auth(token, user_agent=LINUX_UA):
    return {"Authorization": f"Bearer {token}", "User-Agent": user_agent}


def _token(client, email, password, user_agent=LINUX_UA):
    response = _login(client, email, password, user_agent)
    assert response.status_code == 200
    return response.json()["data"]["access_token"]


def _enable_2fa(client, token):
    setup = client.post("/v1/account/2fa/setup", headers=_auth(token)).json()["data"]
    code = get_runtime().totp.current_code(setup["secret"])
    response = client.post(
        "/v1/account/2fa/enable",
        json={"secret": setup["secret"], "code": code},
        headers=_auth(token),
    )
    assert response.status_code == 200
    return setup["secret"], response.json()["data"]["backup_codes"]


class TestRegistration:
    """Tests for account creation."""

    def test_register_returns_account(self, registered, test_user_email):
        assert registered["email"] == test_user_email
        assert registered["username"] == "player"
        assert registered["totp_enabled"] is False
        assert "password_hash" not in registered

    def test_duplicate_email_conflicts(self, client, registered, test_user_email, test_user_password):
        response = client.post(
            "/v1/auth/register",
            json={"email": test_user_email.upper(), "password": test_user_password},
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_weak_password_rejected_without_echo(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"email": "weak@example.com", "password": "short"},
        )
        assert response.status_code == 422
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert "short" not in str(body["error"]["details"])

    def test_invalid_email_rejected(self, client, test_user_password):
        response = client.post(
            "/v1/auth/register",
            json={"email": "not-an-email", "password": test_user_password},
        )
        assert response.status_code == 422


class TestPasswordLogin:
    """Tests for the first login phase."""

    def test_login_by_email_or_username(self, client, registered, test_user_email, test_user_password):
        for identifier in (test_user_email, "player"):
            response = _login(client, identifier, test_user_password)
            assert response.status_code == 200
            data = response.json()["data"]
            assert data["status"] == "authenticated"
            assert data["token_type"] == "bearer"
            assert data["session_id"]
            assert data["account"]["email"] == test_user_email

    def test_failures_are_indistinguishable(self, client, registered, test_user_email):
        wrong_password = _login(client, test_user_email, "Wrong#Pass1")
        unknown = _login(client, "nobody@example.com", "Wrong#Pass1")
        assert wrong_password.status_code == unknown.status_code == 401
        assert wrong_password.json()["error"] == unknown.json()["error"]
        assert wrong_password.headers["WWW-Authenticate"] == "Bearer"

    def test_me_requires_bearer(self, client):
        response = client.get("/v1/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_me_returns_account(self, client, registered, test_user_email, test_user_password):
        token = _token(client, test_user_email, test_user_password)
        response = client.get("/v1/me", headers=_auth(token))
        assert response.status_code == 200
        assert response.json()["data"]["id"] == registered["id"]
        assert response.headers["Cache-Control"].startswith("no-store")


class TestTwoFactorLogin:
    """Tests for the TOTP and backup-code second phase."""

    def test_setup_enable_and_login(self, client, registered, test_user_email, test_user_password):
        token = _token(client, test_user_email, test_user_password)
        secret, backup_codes = _enable_2fa(client, token)
        assert len(backup_codes) == 10

        status = client.get("/v1/account/2fa/status", headers=_auth(token)).json()["data"]
        assert status == {"enabled": True, "backup_codes_remaining": 10}

        first = _login(client, test_user_email, test_user_password).json()["data"]
        assert first["status"] == "second_factor_required"
        assert first["access_token"] is None

        second = client.post(
            "/v1/auth/login/second-factor",
            json={
                "pending_token": first["pending_token"],
                "code": get_runtime().totp.current_code(secret),
            },
        )
        assert second.status_code == 200
        assert second.json()["data"]["status"] == "authenticated"

    def test_backup_code_is_single_use(self, client, registered, test_user_email, test_user_password):
        token = _token(client, test_user_email, test_user_password)
        _, backup_codes = _enable_2fa(client, token)

        def _second_phase():
            pending = _login(client, test_user_email, test_user_password).json()["data"]
            return client.post(
                "/v1/auth/login/second-factor",
                json={
                    "pending_token": pending["pending_token"],
                    "code": backup_codes[0],
                    "is_backup_code": True,
                },
            )

        assert _second_phase().status_code == 200
        reused = _second_phase()
        assert reused.status_code == 401
        assert reused.json()["error"]["code"] == "invalid_credentials"

    def test_pending_token_is_not_a_bearer(self, client, registered, test_user_email, test_user_password):
        token = _token(client, test_user_email, test_user_password)
        _enable_2fa(client, token)
        pending = _login(client, test_user_email, test_user_password).json()["data"]
        response = client.get("/v1/me", headers=_auth(pending["pending_token"]))
        assert response.status_code == 401

    def test_forged_pending_token_rejected(self, client):
        response = client.post(
            "/v1/auth/login/second-factor",
            json={"pending_token": "not.a.token", "code": "123456"},
        )
        assert response.status_code == 401


class TestSessions:
    """Tests for session listing, revocation and refresh."""

    def test_two_devices_then_revoke_one(self, client, registered, test_user_email, test_user_password):
        phone = _token(client, test_user_email, test_user_password, IPHONE_UA)
        desktop = _token(client, test_user_email, test_user_password, LINUX_UA)
        client.get("/v1/me", headers=_auth(phone, IPHONE_UA))

        listing = client.get("/v1/account/sessions", headers=_auth(desktop)).json()["data"]
        devices = {item["device_name"]: item for item in listing["items"]}
        assert set(devices) == {"iPhone", "Linux"}
        assert devices["Linux"]["current"] is True
        assert devices["iPhone"]["current"] is False

        phone_sid = devices["iPhone"]["session_id"]
        response = client.delete(f"/v1/account/sessions/{phone_sid}", headers=_auth(desktop))
        assert response.status_code == 200
        assert response.json()["data"] == {"status": "revoked", "session_id": phone_sid}

        assert client.get("/v1/me", headers=_auth(phone, IPHONE_UA)).status_code == 401
        assert client.get("/v1/me", headers=_auth(desktop)).status_code == 200

    def test_foreign_and_unknown_sessions_answer_404(
        self, client, registered, test_user_email, test_user_password
    ):
        client.post(
            "/v1/auth/register",
            json={"email": "rival@example.com", "password": test_user_password},
        )
        rival = _token(client, "rival@example.com", test_user_password)
        rival_sid = client.get("/v1/account/sessions", headers=_auth(rival)).json()["data"][
            "items"
        ][0]["session_id"]

        mine = _token(client, test_user_email, test_user_password)
        foreign = client.delete(f"/v1/account/sessions/{rival_sid}", headers=_auth(mine))
        unknown = client.delete("/v1/account/sessions/missing", headers=_auth(mine))
        assert foreign.status_code == unknown.status_code == 404
        assert foreign.json()["error"] == unknown.json()["error"]
        assert client.get("/v1/me", headers=_auth(rival)).status_code == 200

    def test_refresh_keeps_session_id(self, client, registered, test_user_email, test_user_password):
        login = _login(client, test_user_email, test_user_password).json()["data"]
        response = client.post("/v1/auth/refresh", headers=_auth(login["access_token"]))
        assert response.status_code == 200
        refreshed = response.json()["data"]
        assert refreshed["session_id"] == login["session_id"]

        listing = client.get(
            "/v1/account/sessions", headers=_auth(refreshed["access_token"])
        ).json()["data"]
        assert [item["session_id"] for item in listing["items"]] == [login["session_id"]]

    def test_logout_revokes_the_session(self, client, registered, test_user_email, test_user_password):
        token = _token(client, test_user_email, test_user_password)
        response = client.post("/v1/auth/logout", headers=_auth(token))
        assert response.json()["data"] == {"status": "logged_out"}
        assert client.get("/v1/me", headers=_auth(token)).status_code == 401
        assert client.post("/v1/auth/refresh", headers=_auth(token)).status_code == 401


class TestAccountChanges:
    """Tests for password and account lifecycle endpoints."""

    def test_password_change_revokes_other_sessions(
        self, client, registered, test_user_email, test_user_password
    ):
        other = _token(client, test_user_email, test_user_password, IPHONE_UA)
        client.get("/v1/me", headers=_auth(other, IPHONE_UA))
        current = _token(client, test_user_email, test_user_password)

        response = client.post(
            "/v1/account/password",
            json={"current_password": test_user_password, "new_password": "Fresh#Numbers8"},
            headers=_auth(current),
        )
        assert response.status_code == 200
        assert client.get("/v1/me", headers=_auth(current)).status_code == 200
        assert client.get("/v1/me", headers=_auth(other, IPHONE_UA)).status_code == 401
        assert _login(client, test_user_email, "Fresh#Numbers8").status_code == 200

    def test_password_change_revokes_tokens_never_presented(
        self, client, registered, test_user_email, test_user_password
    ):
        unused = _token(client, test_user_email, test_user_password, IPHONE_UA)
        current = _token(client, test_user_email, test_user_password)

        response = client.post(
            "/v1/account/password",
            json={"current_password": test_user_password, "new_password": "Fresh#Numbers8"},
            headers=_auth(current),
        )
        assert response.status_code == 200
        assert client.get("/v1/me", headers=_auth(unused, IPHONE_UA)).status_code == 401
        assert client.get("/v1/me", headers=_auth(current)).status_code == 200

    def test_forgot_password_does_not_reveal_accounts(self, client, registered, test_user_email):
        known = client.post("/v1/auth/password/forgot", json={"email": test_user_email})
        unknown = client.post("/v1/auth/password/forgot", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"] == {"status": "sent"}

    def test_password_reset_round_trip(self, client, registered, test_user_email, test_user_password):
        old = _token(client, test_user_email, test_user_password)
        client.get("/v1/me", headers=_auth(old))
        token = get_runtime().auth.request_password_reset(test_user_email)

        response = client.post(
            "/v1/auth/password/reset",
            json={"token": token, "new_password": "Reset#Numbers9"},
        )
        assert response.status_code == 200
        assert client.get("/v1/me", headers=_auth(old)).status_code == 401
        assert _login(client, test_user_email, "Reset#Numbers9").status_code == 200

        again = client.post(
            "/v1/auth/password/reset",
            json={"token": token, "new_password": "Reset#Numbers10"},
        )
        assert again.status_code == 400

    def test_delete_account(self, client, registered, test_user_email, test_user_password):
        token = _token(client, test_user_email, test_user_password)
        wrong = client.request(
            "DELETE", "/v1/account", json={"password": "Wrong#Pass1"}, headers=_auth(token)
        )
        assert wrong.status_code == 401

        response = client.request(
            "DELETE", "/v1/account", json={"password": test_user_password}, headers=_auth(token)
        )
        assert response.json()["data"] == {"status": "deleted"}
        assert client.get("/v1/me", headers=_auth(token)).status_code == 401
        assert _login(client, test_user_email, test_user_password).status_code == 401


_WATCHED_STORE_METHODS = (
    "create_account",
    "get_account",
    "get_account_by_email",
    "find_account",
    "set_password_hash",
    "touch_last_login",
    "get_session_record",
    "get_session_epoch",
    "advance_session_epoch",
    "insert_session_record",
    "touch_session_record",
    "list_session_records",
    "invalidate_session_record",
    "invalidate_subject_sessions",
)


def _record_loop_calls(monkeypatch, store):
    """Patch store methods to note every call made on an event loop thread."""
    on_loop = []

    def _wrap(name, original):
        def _watched(*args, **kwargs):
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                pass
            else:
                on_loop.append(name)
            return original(*args, **kwargs)

        return _watched

    for name in _WATCHED_STORE_METHODS:
        monkeypatch.setattr(store, name, _wrap(name, getattr(store, name)))
    return on_loop


class TestStoreAccess:
    """Store reads and writes run in worker threads, never on the event loop."""

    def test_request_lifecycle_stays_off_the_loop(
        self, client, monkeypatch, test_user_email, test_user_password
    ):
        on_loop = _record_loop_calls(monkeypatch, get_runtime().store)

        client.post(
            "/v1/auth/register",
            json={"email": test_user_email, "password": test_user_password},
        )
        token = _token(client, test_user_email, test_user_password)
        spare = _token(client, test_user_email, test_user_password, IPHONE_UA)
        assert client.get("/v1/me", headers=_auth(token)).status_code == 200
        assert client.get("/v1/me", headers=_auth(spare, IPHONE_UA)).status_code == 200
        items = client.get("/v1/account/sessions", headers=_auth(token)).json()["data"]["items"]
        spare_sid = next(item["session_id"] for item in items if item["device_name"] == "iPhone")
        response = client.delete(f"/v1/account/sessions/{spare_sid}", headers=_auth(token))
        assert response.status_code == 200
        token = client.post("/v1/auth/refresh", headers=_auth(token)).json()["data"][
            "access_token"
        ]
        client.post(
            "/v1/account/password",
            json={"current_password": test_user_password, "new_password": "Fresh#Numbers8"},
            headers=_auth(token),
        )
        client.post("/v1/auth/logout", headers=_auth(token))

        assert on_loop == []


class TestHealth:
    def test_healthz_reports_memory_store(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"] == {"status": "healthy", "type": "memory"}
        assert "X-Request-ID" in response.headers
