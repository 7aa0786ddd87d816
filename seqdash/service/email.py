from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from seqdash.logging import get_logger

logger = get_logger(__name__)

_HTML_LAYOUT = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1c2430; }}
        .container {{ max-width: 560px; margin: 0 auto; padding: 36px 20px; }}
        .button {{ display: inline-block; background: #2f6fed; color: white; padding: 12px 24px; border-radius: 6px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 36px; font-size: 12px; color: #66707c; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        <p>{intro}</p>
        <p style="margin: 28px 0;">
            <a href="{url}" class="button">{action}</a>
        </p>
        <p>{expiry}</p>
        <p>{footnote}</p>
        <div class="footer">
            <p>{product}</p>
            <p>If the button doesn't work, paste this URL into your browser: {url}</p>
        </div>
    </div>
</body>
</html>
"""


def _expiry_text(minutes: int) -> str:
    if minutes % 60 == 0:
        hours = minutes // 60
        return f"This link expires in {hours} hour{'s' if hours != 1 else ''}."
    return f"This link expires in {minutes} minutes."


class EmailService:
    """Transactional mail for account recovery and email changes.

    Without an SMTP host the message is logged instead of sent, which is what
    local development and the test suite rely on.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Random Sequence Dashboard",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send via SMTP. Returns True if the message was handed off."""
        if not self.is_configured:
            # Dev mode: the body carries a live token, so only the subject is logged
            logger.info("email_dev_mode", to=self._redact_email(to_email), subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=self._redact_email(to_email))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def _send_action_email(
        self,
        to_email: str,
        *,
        subject: str,
        title: str,
        intro: str,
        action: str,
        url: str,
        ttl_minutes: int,
        footnote: str,
    ) -> bool:
        expiry = _expiry_text(ttl_minutes)
        html_body = _HTML_LAYOUT.format(
            title=escape(title),
            intro=escape(intro),
            action=escape(action),
            url=escape(url, quote=True),
            expiry=expiry,
            footnote=escape(footnote),
            product=escape(self.from_name),
        )
        text_body = f"{title}\n\n{intro}\n\n{url}\n\n{expiry}\n\n{footnote}\n\n---\n{self.from_name}\n"
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_reset(self, to_email: str, token: str, *, ttl_minutes: int = 60) -> bool:
        return self._send_action_email(
            to_email,
            subject="Reset your password",
            title="Reset your password",
            intro="We received a request to reset the password for your account.",
            action="Choose a new password",
            url=f"{self.base_url}/reset-password?token={token}",
            ttl_minutes=ttl_minutes,
            footnote="If you didn't request this, you can ignore this email.",
        )

    def send_email_change_verification(
        self, to_email: str, token: str, *, ttl_minutes: int = 60
    ) -> bool:
        """Sent to the new address; the change applies once the link is opened."""
        return self._send_action_email(
            to_email,
            subject="Confirm your new email address",
            title="Confirm your new email address",
            intro="Confirm that this address should be used to sign in to your account.",
            action="Confirm email",
            url=f"{self.base_url}/verify-email?token={token}",
            ttl_minutes=ttl_minutes,
            footnote="If you didn't ask for this change, no action is needed.",
        )
