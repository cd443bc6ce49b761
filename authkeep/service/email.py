from __future__ import annotations

import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional
from urllib.parse import urlencode

from authkeep.logging import get_logger

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 30

_HTML_BODY = """<!DOCTYPE html>
<html>
<body style="font-family: sans-serif; line-height: 1.5; color: #1f2933;">
  <div style="max-width: 560px; margin: 0 auto; padding: 32px 16px;">
    <h2>{heading}</h2>
    <p>{intro}</p>
    <p><a href="{url}" style="background: #2563eb; color: #fff; padding: 10px 20px; border-radius: 6px; text-decoration: none;">{action}</a></p>
    <p>The link expires in {expiry} and can be used once.</p>
    <p style="font-size: 12px; color: #5b6470;">{url}</p>
  </div>
</body>
</html>
"""

_TEXT_BODY = """{heading}

{intro}

{action}: {url}

The link expires in {expiry} and can be used once.
"""


def _describe_minutes(minutes: int) -> str:
    if minutes % 60:
        return f"{minutes} minutes"
    hours = minutes // 60
    return "1 hour" if hours == 1 else f"{hours} hours"


class EmailService:
    """Sends reset and verification links over SMTP.

    With no ``smtp_host`` the service runs in dev mode: messages are logged
    by subject and recipient only, since the links carry live tokens.
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
        from_name: str = "authkeep",
        frontend_url: str = "http://localhost:3000",
        reset_ttl_minutes: int = 60,
        verification_ttl_minutes: int = 24 * 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = frontend_url.rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes
        self.verification_ttl_minutes = verification_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _link(self, path: str, token: str) -> str:
        return f"{self.frontend_url}{path}?{urlencode({'token': token})}"

    def _compose(self, to_email: str, subject: str, **fields: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email
        message.set_content(_TEXT_BODY.format(**fields))
        message.add_alternative(_HTML_BODY.format(**fields), subtype="html")
        return message

    def _open_smtp(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
            server.starttls(context=context)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=SMTP_TIMEOUT_SECONDS
            )
        return server

    def _send(self, message: EmailMessage) -> bool:
        """Deliver ``message``; returns False instead of raising on SMTP failure."""
        to_email = message["To"]
        if not self.is_configured:
            logger.info("email_dev_mode", to=to_email, subject=message["Subject"])
            return True

        try:
            with self._open_smtp() as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(message)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", host=self.smtp_host, smtp_code=exc.smtp_code)
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=to_email,
                host=self.smtp_host,
                error_type=type(exc).__name__,
            )
            return False

        logger.info("email_sent", to=to_email, subject=message["Subject"])
        return True

    def send_password_reset(self, to_email: str, token: str) -> bool:
        message = self._compose(
            to_email,
            "Reset your password",
            heading="Reset your password",
            intro="Someone asked to reset the password for this account. "
            "If it wasn't you, ignore this email and nothing will change.",
            action="Choose a new password",
            url=self._link("/reset-password", token),
            expiry=_describe_minutes(self.reset_ttl_minutes),
        )
        return self._send(message)

    def send_email_verification(self, to_email: str, token: str) -> bool:
        message = self._compose(
            to_email,
            "Verify your email",
            heading="Confirm your email address",
            intro="Confirm this address to finish setting up your account.",
            action="Verify email",
            url=self._link("/verify-email", token),
            expiry=_describe_minutes(self.verification_ttl_minutes),
        )
        return self._send(message)
