from __future__ import annotations

import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol
from urllib.parse import urlencode

from realmauth.config import Settings
from realmauth.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeliveryReceipt:
    delivered: bool
    error: Optional[str] = None

    def as_payload(self) -> dict:
        return {"delivered": self.delivered, "error": self.error}


class EmailSender(Protocol):
    def send(self, to: str, subject: str, html_body: str) -> DeliveryReceipt: ...


def _redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _layout(title: str, paragraph: str, link: str, button: str, footer: str) -> str:
    return f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: sans-serif; line-height: 1.6; color: #1f2933;">
    <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
        <h1>{title}</h1>
        <p>{paragraph}</p>
        <p style="margin: 30px 0;"><a href="{link}">{button}</a></p>
        <p>{footer}</p>
        <p style="font-size: 12px; color: #5b6470;">If the link doesn't work, copy and paste this URL: {link}</p>
    </div>
</body>
</html>
"""


class EmailService:
    """SMTP sender for transactional emails.

    When no SMTP host is configured the message is logged instead of sent and
    the delivery is reported as successful (dev mode).
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
        from_name: str = "Realm Hunter",
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
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send(self, to: str, subject: str, html_body: str) -> DeliveryReceipt:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=_redact_email(to),
                subject=subject,
                body_length=len(html_body),
            )
            return DeliveryReceipt(delivered=True)

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to
        msg.attach(MIMEText(html_body, "html"))
        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error("email_auth_failed", host=self.smtp_host, error=str(e))
            return DeliveryReceipt(delivered=False, error="smtp authentication failed")
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=_redact_email(to), error=str(e))
            return DeliveryReceipt(delivered=False, error="recipient refused")
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=_redact_email(to),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return DeliveryReceipt(delivered=False, error=type(e).__name__)
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=_redact_email(to),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return DeliveryReceipt(delivered=False, error="smtp connection failed")
        logger.info("email_sent", to=_redact_email(to), subject=subject)
        return DeliveryReceipt(delivered=True)


def _link(base_url: str, path: str, **params: str) -> str:
    return f"{base_url.rstrip('/')}{path}?{urlencode(params)}"


def verification_message(base_url: str, email: str, token: str, ttl_hours: int) -> tuple[str, str]:
    link = _link(base_url, "/verify-email", email=email, token=token)
    body = _layout(
        "Verify your email",
        "Thanks for signing up! Please verify your email address using the link below.",
        link,
        "Verify Email",
        f"This link will expire in {ttl_hours} hours.",
    )
    return "Verify your Realm Hunter email", body


def email_change_message(
    base_url: str, previous_email: str, new_email: str, token: str, ttl_hours: int
) -> tuple[str, str]:
    link = _link(
        base_url,
        "/confirm-email-change",
        previous_email=previous_email,
        new_email=new_email,
        token=token,
    )
    body = _layout(
        "Confirm your new email",
        "We received a request to move your account to this address.",
        link,
        "Confirm Email Change",
        f"This link will expire in {ttl_hours} hours. If you didn't request this, ignore this email.",
    )
    return "Confirm your new Realm Hunter email", body


def password_reset_message(base_url: str, token: str, ttl_minutes: int) -> tuple[str, str]:
    link = _link(base_url, "/reset-password", token=token)
    body = _layout(
        "Reset your password",
        "We received a request to reset your password.",
        link,
        "Reset Password",
        f"This link will expire in {ttl_minutes} minutes. If you didn't request this, ignore this email.",
    )
    return "Reset your Realm Hunter password", body


__all__ = [
    "DeliveryReceipt",
    "EmailSender",
    "EmailService",
    "email_change_message",
    "password_reset_message",
    "verification_message",
]
