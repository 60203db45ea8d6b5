from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import quote

from tokenwarden.config import Settings
from tokenwarden.logging import get_logger, mask_email

logger = get_logger(__name__)


class EmailService:
    """Transactional email over SMTP.

    Supports:
    - STARTTLS or implicit TLS
    - Verification code emails
    - Password reset link emails
    - Fallback to logging when not configured (dev mode)

    The blocking SMTP exchange runs in a worker thread so callers on the event
    loop are never stalled by a slow mail server.
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
        from_name: str = "Tokenwarden",
        base_url: Optional[str] = None,
        code_ttl_minutes: int = 5,
        reset_ttl_minutes: int = 10,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3001").rstrip("/")
        self.code_ttl_minutes = code_ttl_minutes
        self.reset_ttl_minutes = reset_ttl_minutes
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            code_ttl_minutes=settings.verification_code_ttl_minutes,
            reset_ttl_minutes=settings.password_reset_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def reset_url(self, token: str) -> str:
        return f"{self.base_url}/reset-password?token={quote(token, safe='')}"

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: record the attempt instead of sending; bodies carry
            # credentials so they are not logged
            logger.info("email_dev_mode", to=mask_email(to_email), subject=subject)
            return True

        msg = self._build_message(to_email, subject, html_body, text_body)
        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=mask_email(to_email),
        )
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                smtp_status=getattr(e, "smtp_code", None),
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=mask_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except OSError as e:
            # Connection refused, TLS failures and socket timeouts
            logger.error(
                "email_connect_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=mask_email(to_email), subject=subject)
        return True

    def _verification_bodies(self, code: str) -> tuple[str, str]:
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 32px; font-weight: 700; letter-spacing: 8px; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Confirm your email</h1>
        <p>Enter this code to verify your email address:</p>
        <p class="code">{code}</p>
        <p>The code expires in {self.code_ttl_minutes} minutes.</p>
        <div class="footer"><p>{self.from_name}</p></div>
    </div>
</body>
</html>
"""
        text_body = (
            f"Your {self.from_name} verification code is {code}\n\n"
            f"The code expires in {self.code_ttl_minutes} minutes.\n"
        )
        return html_body, text_body

    def _reset_bodies(self, token: str) -> tuple[str, str]:
        reset_url = self.reset_url(token)
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #10a37f; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Reset your password</h1>
        <p>We received a request to reset your password. Click the button below to choose a new one:</p>
        <p style="margin: 30px 0;">
            <a href="{reset_url}" class="button">Reset Password</a>
        </p>
        <p>This link will expire in {self.reset_ttl_minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <div class="footer">
            <p>If the button doesn't work, copy and paste this URL: {reset_url}</p>
        </div>
    </div>
</body>
</html>
"""
        text_body = f"""Reset your {self.from_name} password

Visit the link below to choose a new password:

{reset_url}

This link will expire in {self.reset_ttl_minutes} minutes.

If you didn't request this, you can safely ignore this email.
"""
        return html_body, text_body

    async def send_verification_code(self, to_email: str, code: str) -> bool:
        html_body, text_body = self._verification_bodies(code)
        return await asyncio.to_thread(
            self._send_email,
            to_email,
            f"Your {self.from_name} verification code",
            html_body,
            text_body,
        )

    async def send_password_reset_link(self, to_email: str, token: str) -> bool:
        html_body, text_body = self._reset_bodies(token)
        return await asyncio.to_thread(
            self._send_email,
            to_email,
            f"Reset your {self.from_name} password",
            html_body,
            text_body,
        )
