from __future__ import annotations

import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional

from bizmarket.logging import email_fingerprint, get_logger

logger = get_logger(__name__)


class EmailService:
    """Sends account verification and password reset links.

    When SMTP is not configured (local development, tests) the message is
    logged with the recipient fingerprinted and the link omitted.
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
        from_name: str = "BizMarket",
        base_url: Optional[str] = None,
        timeout_seconds: float = 10.0,
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

    def _send_email(self, to_email: str, subject: str, body: str) -> bool:
        """Send a plain-text email via SMTP. Returns True if handed off."""
        if not self.is_configured:
            logger.info("email_dev_mode", to_fp=email_fingerprint(to_email), subject=subject)
            return True

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.set_content(body)

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(
                    self.smtp_host, self.smtp_port, timeout=self.timeout_seconds
                ) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.send_message(msg)
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout_seconds
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.send_message(msg)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", host=self.smtp_host, error=str(exc))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to_fp=email_fingerprint(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to_fp=email_fingerprint(to_email), subject=subject)
        return True

    def send_email_verification(self, to_email: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        body = (
            "Welcome to BizMarket!\n\n"
            "Confirm your email address to activate your account:\n\n"
            f"{verify_url}\n"
        )
        return self._send_email(to_email, "Verify your BizMarket account", body)

    def send_password_reset(self, to_email: str, token: str, *, ttl_minutes: int = 30) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        body = (
            "We received a request to reset your BizMarket password.\n\n"
            f"{reset_url}\n\n"
            f"This link expires in {ttl_minutes} minutes. "
            "If you did not ask for a reset you can ignore this email.\n"
        )
        return self._send_email(to_email, "Reset your BizMarket password", body)
