from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from warden.logging import get_logger, mask_email

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 30

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: Helvetica, Arial, sans-serif; color: #1f2933; line-height: 1.5;">
  <table role="presentation" width="100%" cellpadding="0" cellspacing="0">
    <tr><td style="max-width: 560px; padding: 32px 16px;">
      <h2 style="margin-top: 0;">{heading}</h2>
      <p>{intro}</p>
      <p><a href="{url}" style="background: #2f6fed; color: #ffffff; padding: 10px 20px; border-radius: 6px; text-decoration: none;">{action}</a></p>
      <p>The link is valid for {expiry}.</p>
      <p>{outro}</p>
      <p style="font-size: 12px; color: #5b6470;">{sender} &middot; {url}</p>
    </td></tr>
  </table>
</body>
</html>
"""

_TEXT_TEMPLATE = """{heading}

{intro}

{action}: {url}

The link is valid for {expiry}.
{outro}
-- {sender}
"""


def _describe_minutes(minutes: int) -> str:
    if minutes % 60 == 0:
        hours = minutes // 60
        return "1 hour" if hours == 1 else f"{hours} hours"
    return f"{minutes} minutes"


class EmailService:
    """Transactional mail for verification and password-reset links.

    Sends over SMTP (STARTTLS or implicit TLS). When no SMTP host is configured
    the message is logged instead, which keeps local development usable.
    Every send reports success as a bool; callers decide whether a failure
    matters.
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
        from_name: str = "Warden",
        frontend_url: str = "http://localhost:3000",
        verification_ttl_minutes: int = 60,
        reset_ttl_minutes: int = 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = frontend_url.rstrip("/")
        self.verification_ttl_minutes = verification_ttl_minutes
        self.reset_ttl_minutes = reset_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _compose(self, to_email: str, subject: str, html_body: str, text_body: str) -> str:
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email
        # alternatives ordered plain to rich
        message.attach(MIMEText(text_body, "plain"))
        message.attach(MIMEText(html_body, "html"))
        return message.as_string()

    def _open_smtp(self, context: ssl.SSLContext) -> smtplib.SMTP:
        if self.smtp_use_tls:
            return smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
        return smtplib.SMTP_SSL(
            self.smtp_host, self.smtp_port, context=context, timeout=SMTP_TIMEOUT_SECONDS
        )

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        recipient = mask_email(to_email)
        if not self.is_configured:
            logger.info(
                "email_dev_mode", to=recipient, subject=subject, body_preview=text_body[:200]
            )
            return True

        payload = self._compose(to_email, subject, html_body, text_body)
        context = ssl.create_default_context()
        try:
            with self._open_smtp(context) as server:
                if self.smtp_use_tls:
                    server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, payload)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed", to=recipient, host=self.smtp_host, error_code=exc.smtp_code
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=recipient)
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            # OSError: refused connections and socket timeouts
            logger.error(
                "email_send_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def _send_link(
        self,
        to_email: str,
        *,
        subject: str,
        heading: str,
        intro: str,
        action: str,
        url: str,
        ttl_minutes: int,
        outro: str = "",
    ) -> bool:
        fields = {
            "heading": heading,
            "intro": intro,
            "action": action,
            "url": url,
            "expiry": _describe_minutes(ttl_minutes),
            "outro": outro,
            "sender": self.from_name,
        }
        return self._send_email(
            to_email,
            subject,
            _HTML_TEMPLATE.format(**fields),
            _TEXT_TEMPLATE.format(**fields),
        )

    def send_email_verification(self, to_email: str, token: str) -> bool:
        return self._send_link(
            to_email,
            subject="Verify Your Email",
            heading="Verify your email",
            intro="Thanks for signing up! Please verify your email address using the link below.",
            action="Verify Email",
            url=f"{self.frontend_url}/verify-email?token={token}",
            ttl_minutes=self.verification_ttl_minutes,
        )

    def send_password_reset(self, to_email: str, token: str) -> bool:
        return self._send_link(
            to_email,
            subject="Reset Your Password",
            heading="Reset your password",
            intro="We received a request to reset your password. Use the link below to choose a new one.",
            action="Reset Password",
            url=f"{self.frontend_url}/reset-password?token={token}",
            ttl_minutes=self.reset_ttl_minutes,
            outro="If you didn't request this, you can safely ignore this email.",
        )


__all__ = ["EmailService"]
