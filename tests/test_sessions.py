"""Tests for session issuance, materialization and refresh."""

from datetime import datetime, timedelta, timezone

import pytest

from seqdash.service.auth import AuthOutcome
from seqdash.service.errors import AuthenticationError
from seqdash.service.sessions import UNKNOWN_DEVICE, infer_device_name
from seqdash.service.tokens import PendingCredential, SessionClaims
from seqdash.storage.errors import StoreUnavailable
from seqdash.storage.models import Account

IPHONE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15"
WINDOWS_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0"


@pytest.fixture
def account(memory_store):
    return memory_store.create_account(Account.new("sessions@example.com", username="sess"))


@pytest.fixture
def other_account(memory_store):
    return memory_store.create_account(Account.new("other@example.com", username="other"))


class _UnavailableStore:
    """Registry whose every call fails as if the database were down."""

    def __getattr__(self, name):
        def _fail(*args, **kwargs):
            raise StoreUnavailable(operation=name)

        return _fail


class TestIssue:
    def test_issue_for_authenticated_outcome(self, session_service, codec, account):
        issued = session_service.issue(AuthOutcome.authenticated(account))
        claims = codec.decode_session(issued.token)
        assert claims == issued.claims
        assert claims.subject_id == account.id
        assert claims.expires_at - claims.issued_at == session_service.session_ttl

    def test_fresh_session_id_per_login(self, session_service, account):
        first = session_service.issue(AuthOutcome.authenticated(account))
        second = session_service.issue(AuthOutcome.authenticated(account))
        assert first.claims.session_id != second.claims.session_id

    def test_issue_does_not_write_the_registry(self, session_service, memory_store, account):
        session_service.issue(AuthOutcome.authenticated(account))
        assert memory_store.sessions == {}

    def test_pending_credential_refused(self, session_service, account):
        pending = PendingCredential(subject_id=account.id, email=account.email)
        with pytest.raises(AuthenticationError):
            session_service.issue(pending)
        with pytest.raises(AuthenticationError):
            session_service.issue(AuthOutcome.challenge(pending))

    def test_denied_outcome_refused(self, session_service):
        with pytest.raises(AuthenticationError):
            session_service.issue(AuthOutcome.denied("wrong_password"))

    def test_existing_claims_of_another_account_refused(
        self, session_service, account, other_account
    ):
        theirs = session_service.issue(AuthOutcome.authenticated(other_account))
        with pytest.raises(AuthenticationError):
            session_service.issue(AuthOutcome.authenticated(account), existing=theirs.claims)

    def test_claims_are_immutable(self, session_service, account):
        issued = session_service.issue(AuthOutcome.authenticated(account))
        with pytest.raises(AttributeError):
            issued.claims.session_id = "forged"

    def test_epoch_travels_in_the_token(self, session_service, codec, memory_store, account):
        memory_store.advance_session_epoch(account.id)
        issued = session_service.issue(
            AuthOutcome.authenticated(memory_store.get_account(account.id))
        )
        assert issued.claims.epoch == 1
        assert codec.decode_session(issued.token).epoch == 1

    @pytest.mark.parametrize("epoch", ["1", -1, 1.5, True])
    def test_malformed_epoch_rejected(self, codec, account, epoch):
        now = int(datetime.now(timezone.utc).timestamp())
        token = codec.encode(
            {
                "sub": account.id,
                "sid": "sid",
                "iat": now,
                "exp": now + 3600,
                "epoch": epoch,
                "token_type": "session",
            }
        )
        assert codec.decode_session(token) is None


class TestPendingToken:
    def test_pending_round_trip(self, session_service, account):
        pending = PendingCredential(subject_id=account.id, email=account.email, username="sess")
        token = session_service.issue_pending(pending)
        assert session_service.decode_pending(token) == pending

    def test_pending_token_is_not_a_session(self, session_service, account):
        token = session_service.issue_pending(
            PendingCredential(subject_id=account.id, email=account.email)
        )
        assert session_service.materialize(token) is None

    def test_session_token_is_not_pending(self, session_service, account):
        issued = session_service.issue(AuthOutcome.authenticated(account))
        assert session_service.decode_pending(issued.token) is None


class TestMaterialize:
    def test_first_use_creates_record(self, session_service, memory_store, account):
        issued = session_service.issue(AuthOutcome.authenticated(account))
        session = session_service.materialize(issued.token, user_agent=IPHONE_UA, ip="10.0.0.7")

        record = memory_store.get_session_record(issued.claims.session_id)
        assert session.record.session_id == record.session_id
        assert record.is_valid
        assert record.subject_id == account.id
        assert record.device_info.device_name == "iPhone"
        assert record.device_info.ip == "10.0.0.7"

    def test_session_id_is_stable(self, session_service, memory_store, account):
        issued = session_service.issue(AuthOutcome.authenticated(account))
        first = session_service.materialize(issued.token, user_agent=IPHONE_UA)
        second = session_service.materialize(issued.token, user_agent=IPHONE_UA)

        assert first.session_id == second.session_id == issued.claims.session_id
        assert second.record.device_info.last_active >= first.record.device_info.last_active
        assert len(memory_store.sessions) == 1

    def test_device_info_follows_latest_request(self, session_service, account):
        issued = session_service.issue(AuthOutcome.authenticated(account))
        session_service.materialize(issued.token, user_agent=IPHONE_UA, ip="10.0.0.7")
        updated = session_service.materialize(issued.token, user_agent=WINDOWS_UA, ip="10.0.0.8")
        assert updated.record.device_info.device_name == "Windows PC"
        assert updated.record.device_info.ip == "10.0.0.8"

    def test_revoked_session_stays_revoked(self, session_service, memory_store, account):
        issued = session_service.issue(AuthOutcome.authenticated(account))
        session_service.materialize(issued.token)
        assert memory_store.invalidate_session_record(account.id, issued.claims.session_id)

        assert session_service.materialize(issued.token) is None
        assert not memory_store.get_session_record(issued.claims.session_id).is_valid

    def test_foreign_session_id_rejected(self, session_service, codec, memory_store, account, other_account):
        issued = session_service.issue(AuthOutcome.authenticated(account))
        session_service.materialize(issued.token)

        forged = codec.encode_session(
            SessionClaims(
                subject_id=other_account.id,
                session_id=issued.claims.session_id,
                issued_at=issued.claims.issued_at,
                expires_at=issued.claims.expires_at,
            )
        )
        assert session_service.materialize(forged) is None
        assert memory_store.get_session_record(issued.claims.session_id).subject_id == account.id

    def test_deleted_account_rejected(self, session_service, memory_store, account):
        issued = session_service.issue(AuthOutcome.authenticated(account))
        memory_store.delete_account(account.id)
        assert session_service.materialize(issued.token) is None
        assert memory_store.sessions == {}

    @pytest.mark.parametrize("token", ["", "garbage", "a.b.c"])
    def test_invalid_tokens_rejected(self, session_service, token):
        assert session_service.materialize(token) is None

    def test_expired_token_rejected(self, session_service, codec, account):
        past = datetime.now(timezone.utc) - timedelta(days=2)
        token = codec.encode_session(
            SessionClaims(
                subject_id=account.id,
                session_id="expired",
                issued_at=past,
                expires_at=past + timedelta(hours=1),
            )
        )
        assert session_service.materialize(token) is None

    def test_token_signed_with_other_secret_rejected(self, session_service, account, settings):
        from seqdash.service.tokens import TokenCodec

        foreign = TokenCodec(
            "another-secret", issuer=settings.jwt_issuer, audience=settings.jwt_audience
        )
        issued = session_service.issue(AuthOutcome.authenticated(account))
        assert session_service.materialize(foreign.encode_session(issued.claims)) is None

    def test_registry_outage_degrades_to_claims(self, session_service, account):
        issued = session_service.issue(AuthOutcome.authenticated(account))
        session_service.store = _UnavailableStore()

        session = session_service.materialize(issued.token)
        assert session.degraded
        assert session.record is None
        assert session.claims == issued.claims


class TestRefresh:
    def test_refresh_keeps_session_id(self, session_service, memory_store, account):
        issued = session_service.issue(AuthOutcome.authenticated(account))
        refreshed = session_service.refresh(issued.token, AuthOutcome.authenticated(account))

        assert refreshed.claims.session_id == issued.claims.session_id
        assert refreshed.claims.expires_at >= issued.claims.expires_at
        assert list(memory_store.sessions) == [issued.claims.session_id]

    def test_refresh_of_revoked_session_fails(self, session_service, memory_store, account):
        issued = session_service.issue(AuthOutcome.authenticated(account))
        session_service.materialize(issued.token)
        memory_store.invalidate_session_record(account.id, issued.claims.session_id)
        with pytest.raises(AuthenticationError):
            session_service.refresh(issued.token, AuthOutcome.authenticated(account))


class TestPurge:
    def test_expired_records_are_dropped(self, session_service, codec, memory_store, account):
        issued = session_service.issue(AuthOutcome.authenticated(account))
        session_service.materialize(issued.token)
        later = issued.claims.expires_at + codec.leeway + timedelta(seconds=1)
        assert session_service.purge_expired(later) == 1
        assert memory_store.sessions == {}

    def test_live_records_survive(self, session_service, account):
        issued = session_service.issue(AuthOutcome.authenticated(account))
        session_service.materialize(issued.token)
        assert session_service.purge_expired() == 0

    def test_records_outlive_expiry_by_the_leeway(self, session_service, codec, account):
        issued = session_service.issue(AuthOutcome.authenticated(account))
        session_service.materialize(issued.token)
        just_expired = issued.claims.expires_at + timedelta(seconds=1)
        assert just_expired < issued.claims.expires_at + codec.leeway
        assert session_service.purge_expired(just_expired) == 0

    def test_revoked_record_is_not_recreated_after_purge(
        self, session_service, codec, memory_store, account
    ):
        # Expired ten seconds ago: past exp but still inside the decode leeway
        now = datetime.now(timezone.utc)
        claims = SessionClaims(
            subject_id=account.id,
            session_id="lingering",
            issued_at=now - timedelta(hours=1),
            expires_at=now - timedelta(seconds=10),
        )
        token = codec.encode_session(claims)
        assert codec.decode_session(token) is not None
        assert session_service.materialize(token) is not None
        assert memory_store.invalidate_session_record(account.id, "lingering")

        session_service.purge_expired()

        assert session_service.materialize(token) is None
        record = memory_store.get_session_record("lingering")
        assert record is not None and not record.is_valid


class TestDeviceName:
    @pytest.mark.parametrize(
        "user_agent, expected",
        [
            (IPHONE_UA, "iPhone"),
            ("Mozilla/5.0 (iPad; CPU OS 16_0 like Mac OS X)", "iPad"),
            ("Mozilla/5.0 (Linux; Android 14; Pixel 8)", "Android Device"),
            (WINDOWS_UA, "Windows PC"),
            ("Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0)", "Mac"),
            ("Mozilla/5.0 (X11; Linux x86_64)", "Linux"),
            ("curl/8.4.0", UNKNOWN_DEVICE),
            (None, UNKNOWN_DEVICE),
            ("", UNKNOWN_DEVICE),
        ],
    )
    def test_buckets(self, user_agent, expected):
        assert infer_device_name(user_agent) == expected
