"""Tests for listing and revoking sessions."""

import pytest

from seqdash.service.auth import AuthOutcome
from seqdash.service.revocation import RevocationResult, SessionView
from seqdash.storage.models import Account

IPHONE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X)"
LINUX_UA = "Mozilla/5.0 (X11; Linux x86_64) Firefox/121.0"


@pytest.fixture
def alice(memory_store):
    return memory_store.create_account(Account.new("alice@example.com", username="alice"))


@pytest.fixture
def bob(memory_store):
    return memory_store.create_account(Account.new("bob@example.com", username="bob"))


def _login(session_service, account, user_agent, ip):
    issued = session_service.issue(AuthOutcome.authenticated(account))
    session_service.materialize(issued.token, user_agent=user_agent, ip=ip)
    return issued


class TestListAndRevoke:
    def test_scenario_two_devices_then_revoke_one(self, session_service, revocation, alice):
        phone = _login(session_service, alice, IPHONE_UA, "10.0.0.2")
        desktop = _login(session_service, alice, LINUX_UA, "10.0.0.3")

        views = revocation.list(alice.id)
        assert {v.session_id for v in views} == {
            phone.claims.session_id,
            desktop.claims.session_id,
        }
        assert {v.device_name for v in views} == {"iPhone", "Linux"}

        assert revocation.revoke(alice.id, phone.claims.session_id) is RevocationResult.REVOKED
        remaining = revocation.list(alice.id)
        assert [v.session_id for v in remaining] == [desktop.claims.session_id]
        assert session_service.materialize(desktop.token) is not None
        assert session_service.materialize(phone.token) is None

    def test_current_session_is_flagged(self, session_service, revocation, alice):
        phone = _login(session_service, alice, IPHONE_UA, "10.0.0.2")
        _login(session_service, alice, LINUX_UA, "10.0.0.3")
        views = revocation.list(alice.id, current_session_id=phone.claims.session_id)
        assert [v.current for v in views].count(True) == 1
        assert next(v for v in views if v.current).session_id == phone.claims.session_id

    def test_views_carry_no_token_material(self, session_service, revocation, alice):
        issued = _login(session_service, alice, IPHONE_UA, "10.0.0.2")
        view = revocation.list(alice.id)[0]
        assert isinstance(view, SessionView)
        assert issued.token not in repr(view)

    def test_cannot_revoke_someone_elses_session(self, session_service, revocation, alice, bob):
        bobs = _login(session_service, bob, LINUX_UA, "10.0.0.9")
        assert revocation.revoke(alice.id, bobs.claims.session_id) is RevocationResult.NOT_FOUND
        assert session_service.store.get_session_record(bobs.claims.session_id).is_valid
        assert session_service.materialize(bobs.token) is not None

    def test_lists_are_per_subject(self, session_service, revocation, alice, bob):
        _login(session_service, alice, IPHONE_UA, "10.0.0.2")
        _login(session_service, bob, LINUX_UA, "10.0.0.9")
        assert all(v.session_id for v in revocation.list(alice.id))
        assert len(revocation.list(alice.id)) == 1
        assert len(revocation.list(bob.id)) == 1

    @pytest.mark.parametrize("session_id", ["", "does-not-exist"])
    def test_unknown_ids_not_found(self, revocation, alice, session_id):
        assert revocation.revoke(alice.id, session_id) is RevocationResult.NOT_FOUND

    def test_second_revoke_is_not_found(self, session_service, revocation, alice):
        issued = _login(session_service, alice, IPHONE_UA, "10.0.0.2")
        assert revocation.revoke(alice.id, issued.claims.session_id) is RevocationResult.REVOKED
        assert revocation.revoke(alice.id, issued.claims.session_id) is RevocationResult.NOT_FOUND


class TestRevokeAll:
    def test_keeps_the_excepted_session(self, session_service, revocation, alice, bob):
        keep = _login(session_service, alice, IPHONE_UA, "10.0.0.2")
        _login(session_service, alice, LINUX_UA, "10.0.0.3")
        _login(session_service, alice, LINUX_UA, "10.0.0.4")
        bobs = _login(session_service, bob, LINUX_UA, "10.0.0.9")

        assert revocation.revoke_all(alice.id, except_session_id=keep.claims.session_id) == 2
        assert [v.session_id for v in revocation.list(alice.id)] == [keep.claims.session_id]
        assert session_service.materialize(bobs.token) is not None

    def test_without_exception_revokes_everything(self, session_service, revocation, alice):
        _login(session_service, alice, IPHONE_UA, "10.0.0.2")
        _login(session_service, alice, LINUX_UA, "10.0.0.3")
        assert revocation.revoke_all(alice.id) == 2
        assert revocation.list(alice.id) == []
        assert revocation.revoke_all(alice.id) == 0

    def test_tokens_never_presented_are_revoked_too(self, session_service, revocation, alice):
        keep = _login(session_service, alice, IPHONE_UA, "10.0.0.2")
        unused = session_service.issue(AuthOutcome.authenticated(alice))

        revocation.revoke_all(alice.id, except_session_id=keep.claims.session_id)

        assert session_service.materialize(unused.token) is None
        assert session_service.materialize(keep.token) is not None
        assert [v.session_id for v in revocation.list(alice.id)] == [keep.claims.session_id]

    def test_logins_after_revoke_all_work(self, session_service, revocation, memory_store, alice):
        revocation.revoke_all(alice.id)
        current = memory_store.get_account(alice.id)
        assert current.session_epoch == 1

        fresh = session_service.issue(AuthOutcome.authenticated(current))
        assert fresh.claims.epoch == 1
        assert session_service.materialize(fresh.token) is not None
