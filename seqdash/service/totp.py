from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import io
import secrets
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote, urlencode

import qrcode

from seqdash.config import DEFAULT_TOTP_ISSUER
from seqdash.logging import get_logger

logger = get_logger(__name__)

TOTP_DIGITS = 6
TOTP_INTERVAL_SECONDS = 30
TOTP_DRIFT_STEPS = 1
TOTP_SECRET_BYTES = 20


@dataclass(frozen=True)
class TOTPConfig:
    secret: str
    provisioning_uri: str
    qr_image: str


class TOTPEngine:
    """RFC 6238 time-based codes (HMAC-SHA1, 6 digits, 30 second steps).

    ``generate_config`` only produces material for the authenticator app; it
    never touches the account. Enabling happens elsewhere, after a code
    produced from the same secret has been verified.
    """

    def __init__(
        self,
        issuer: str = DEFAULT_TOTP_ISSUER,
        *,
        drift_steps: int = TOTP_DRIFT_STEPS,
        interval: int = TOTP_INTERVAL_SECONDS,
        digits: int = TOTP_DIGITS,
    ) -> None:
        self.issuer = issuer
        self.drift_steps = drift_steps
        self.interval = interval
        self.digits = digits

    @staticmethod
    def generate_secret() -> str:
        return base64.b32encode(secrets.token_bytes(TOTP_SECRET_BYTES)).decode("ascii")

    def provisioning_uri(self, secret: str, account_label: str) -> str:
        label = quote(f"{self.issuer}:{account_label}", safe="@:")
        params = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": self.digits,
                "period": self.interval,
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{params}"

    @staticmethod
    def render_qr_data_url(payload: str) -> str:
        image = qrcode.make(payload)
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
        return f"data:image/png;base64,{encoded}"

    async def generate_config(self, account_email: str) -> TOTPConfig:
        secret = self.generate_secret()
        uri = self.provisioning_uri(secret, account_email)
        qr_image = await asyncio.to_thread(self.render_qr_data_url, uri)
        return TOTPConfig(secret=secret, provisioning_uri=uri, qr_image=qr_image)

    @staticmethod
    def _decode_secret(secret: str) -> Optional[bytes]:
        cleaned = secret.replace(" ", "").upper()
        padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
        try:
            key = base64.b32decode(padded, casefold=True)
        except (ValueError, TypeError):
            return None
        return key or None

    def code_at(self, secret: str, timestamp: float) -> str:
        """Code for the time step containing ``timestamp``; empty for a bad secret."""
        key = self._decode_secret(secret or "")
        if key is None:
            logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // self.interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def current_code(self, secret: str, at: Optional[float] = None) -> str:
        return self.code_at(secret, time.time() if at is None else at)

    def verify(self, code: object, secret: object, *, at: Optional[float] = None) -> bool:
        """Accept a code from the current step or one step either side."""
        if not isinstance(code, str) or not isinstance(secret, str) or not secret:
            return False
        candidate = code.strip().replace(" ", "")
        if len(candidate) != self.digits or not candidate.isdigit():
            return False
        now = time.time() if at is None else at
        matched = False
        for offset in range(-self.drift_steps, self.drift_steps + 1):
            generated = self.code_at(secret, now + offset * self.interval)
            # Evaluate every step so timing does not depend on which one matched
            if generated and hmac.compare_digest(generated, candidate):
                matched = True
        return matched
