from __future__ import annotations

import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from walletauth.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #1d4ed8; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer"><p>{brand}</p></div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email over SMTP.

    Sends password-reset links, verification links, one-time MFA codes and
    account-locked notices. When no SMTP host is configured (dev mode) the
    message is logged instead of sent. Send methods are blocking and return
    True on success, False when the server refused or could not be reached.
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
        from_name: str = "DwayBank",
        base_url: Optional[str] = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.timeout_seconds = timeout_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(self, title: str, paragraphs: list[str]) -> str:
        body = "\n        ".join(paragraphs)
        return _HTML_TEMPLATE.format(title=escape(title), body=body, brand=escape(self.from_name))

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        if not self.is_configured:
            # Dev mode: log instead of sending. Bodies may carry codes or
            # links, so only the subject is recorded.
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
                with smtplib.SMTP(
                    self.smtp_host, self.smtp_port, timeout=self.timeout_seconds
                ) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout_seconds
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=e.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                refused=len(e.recipients),
            )
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
            # Covers connection refusals and socket timeouts
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

    def send_password_reset(self, to_email: str, token: str, ttl_minutes: int = 15) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        subject = f"Reset your {self.from_name} password"
        html_body = self._render(
            "Reset your password",
            [
                "<p>We received a request to reset your password.</p>",
                f'<p style="margin: 30px 0;"><a href="{escape(reset_url)}" class="button">Reset Password</a></p>',
                f"<p>This link will expire in {ttl_minutes} minutes. If you didn't request this, you can ignore this email.</p>",
            ],
        )
        text_body = (
            f"Reset your {self.from_name} password\n\n"
            f"Visit the link below to choose a new password:\n\n{reset_url}\n\n"
            f"This link will expire in {ttl_minutes} minutes.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_email_verification(self, to_email: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        subject = f"Verify your {self.from_name} email"
        html_body = self._render(
            "Verify your email",
            [
                "<p>Please confirm your email address to finish setting up your wallet.</p>",
                f'<p style="margin: 30px 0;"><a href="{escape(verify_url)}" class="button">Verify Email</a></p>',
                "<p>This link will expire in 24 hours.</p>",
            ],
        )
        text_body = (
            f"Verify your {self.from_name} email\n\n{verify_url}\n\n"
            "This link will expire in 24 hours.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_mfa_code(
        self, to_email: str, code: str, *, purpose: str = "sign-in", ttl_minutes: int = 5
    ) -> bool:
        subject = f"Your {self.from_name} {purpose} code"
        html_body = self._render(
            "Your verification code",
            [
                f"<p>Use this code to complete your {escape(purpose)}:</p>",
                f'<p class="code">{escape(code)}</p>',
                f"<p>The code expires in {ttl_minutes} minutes. Never share it with anyone.</p>",
            ],
        )
        text_body = (
            f"Your {self.from_name} {purpose} code is {code}.\n"
            f"It expires in {ttl_minutes} minutes. Never share it with anyone.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_account_locked(self, to_email: str, locked_until: Optional[datetime]) -> bool:
        until = locked_until.strftime("%Y-%m-%d %H:%M UTC") if locked_until else "an administrator unlocks it"
        subject = f"Your {self.from_name} account has been locked"
        html_body = self._render(
            "Account locked",
            [
                "<p>Your account was locked after repeated failed sign-in attempts.</p>",
                f"<p>It will stay locked until {escape(until)}.</p>",
                "<p>If this wasn't you, reset your password and contact support.</p>",
            ],
        )
        text_body = (
            "Your account was locked after repeated failed sign-in attempts.\n"
            f"It will stay locked until {until}.\n"
            "If this wasn't you, reset your password and contact support.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)
