"""Tests for the TOTP engine."""

import base64
from urllib.parse import parse_qs, unquote, urlparse

import pytest

from seqdash.service.totp import TOTPEngine

# RFC 6238 appendix B, SHA1 seed
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode("ascii")


@pytest.fixture
def engine():
    return TOTPEngine("Random Sequence Dashboard")


class TestCodeGeneration:
    @pytest.mark.parametrize(
        "timestamp, expected",
        [
            (59, "287082"),
            (1111111109, "081804"),
            (1234567890, "005924"),
            (2000000000, "279037"),
        ],
    )
    def test_rfc6238_vectors(self, engine, timestamp, expected):
        assert engine.code_at(RFC_SECRET, timestamp) == expected

    def test_bad_secret_yields_empty_code(self, engine):
        assert engine.code_at("!!!not-base32!!!", 59) == ""

    def test_generated_secret_is_base32(self, engine):
        secret = engine.generate_secret()
        assert len(base64.b32decode(secret)) == 20


class TestVerify:
    def test_current_step_accepted(self, engine):
        now = 1_700_000_000
        assert engine.verify(engine.code_at(RFC_SECRET, now), RFC_SECRET, at=now)

    def test_one_step_drift_each_way_accepted(self, engine):
        now = 1_700_000_000
        assert engine.verify(engine.code_at(RFC_SECRET, now - 30), RFC_SECRET, at=now)
        assert engine.verify(engine.code_at(RFC_SECRET, now + 30), RFC_SECRET, at=now)

    def test_two_steps_away_rejected(self, engine):
        now = 1_700_000_000
        stale = engine.code_at(RFC_SECRET, now - 60)
        # Guard against the rare case where the stale code equals a valid one
        window = {engine.code_at(RFC_SECRET, now + off * 30) for off in (-1, 0, 1)}
        if stale not in window:
            assert not engine.verify(stale, RFC_SECRET, at=now)

    def test_code_tied_to_its_secret(self, engine):
        now = 1_700_000_000
        other = engine.generate_secret()
        code = engine.code_at(RFC_SECRET, now)
        window = {engine.code_at(other, now + off * 30) for off in (-1, 0, 1)}
        if code not in window:
            assert not engine.verify(code, other, at=now)

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "12a456", None, 123456])
    def test_malformed_codes_rejected_without_raising(self, engine, code):
        assert engine.verify(code, RFC_SECRET, at=59) is False

    @pytest.mark.parametrize("secret", ["", None, "!!!"])
    def test_bad_secret_rejected_without_raising(self, engine, secret):
        assert engine.verify("287082", secret, at=59) is False

    def test_spaces_in_code_tolerated(self, engine):
        assert engine.verify("287 082", RFC_SECRET, at=59)


class TestProvisioning:
    def test_provisioning_uri_fields(self, engine):
        uri = engine.provisioning_uri(RFC_SECRET, "player@example.com")
        parsed = urlparse(uri)
        assert parsed.scheme == "otpauth"
        assert parsed.netloc == "totp"
        assert unquote(parsed.path) == "/Random Sequence Dashboard:player@example.com"
        query = parse_qs(parsed.query)
        assert query["secret"] == [RFC_SECRET]
        assert query["issuer"] == ["Random Sequence Dashboard"]
        assert query["digits"] == ["6"]
        assert query["period"] == ["30"]

    async def test_generate_config_renders_png_data_url(self, engine):
        config = await engine.generate_config("player@example.com")
        assert config.qr_image.startswith("data:image/png;base64,")
        png = base64.b64decode(config.qr_image.split(",", 1)[1])
        assert png[:8] == b"\x89PNG\r\n\x1a\n"
        assert config.secret in config.provisioning_uri

    async def test_each_setup_gets_a_fresh_secret(self, engine):
        first = await engine.generate_config("player@example.com")
        second = await engine.generate_config("player@example.com")
        assert first.secret != second.secret
