from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from gatekeep.config import Settings
from gatekeep.logging import get_logger, redact_email

logger = get_logger(__name__)


class EmailService:
    """Transactional email for the auth flows.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Email verification links
    - Login and password-change codes
    - Two-factor enablement notices
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "Gatekeep",
        base_url: Optional[str] = None,
        log_bodies: bool = False,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        # Dev mode only: lets a developer read codes from the log
        self.log_bodies = log_bodies

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
            log_bodies=not settings.is_production,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

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
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if self.log_bodies else None,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
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

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            # Connection refused, DNS failure, timeouts
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

    @staticmethod
    def _wrap_html(paragraphs: list[str]) -> str:
        body = "".join(f"<p>{p}</p>" for p in paragraphs)
        return f'<!DOCTYPE html><html><head><meta charset="utf-8"></head><body>{body}</body></html>'

    @staticmethod
    def _greeting(name: Optional[str]) -> str:
        return f"Hello {name}," if name else "Hello,"

    def send_verification_email(self, to_email: str, token: str, name: Optional[str] = None) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        subject = f"Verify your {self.from_name} email address"
        text_body = (
            f"{self._greeting(name)}\n\n"
            f"Confirm your email address by opening this link:\n{verify_url}\n\n"
            "The link expires in 24 hours. If you did not create an account, ignore this email."
        )
        html_body = self._wrap_html(
            [
                html.escape(self._greeting(name)),
                f'Confirm your email address: <a href="{html.escape(verify_url)}">verify email</a>',
                "The link expires in 24 hours. If you did not create an account, ignore this email.",
            ]
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def _send_code(
        self, to_email: str, code: str, *, subject: str, reason: str, name: Optional[str]
    ) -> bool:
        text_body = (
            f"{self._greeting(name)}\n\n"
            f"Your {reason} code is: {code}\n\n"
            "It expires in 5 minutes. Never share this code with anyone."
        )
        html_body = self._wrap_html(
            [
                html.escape(self._greeting(name)),
                f"Your {html.escape(reason)} code is: <strong>{html.escape(code)}</strong>",
                "It expires in 5 minutes. Never share this code with anyone.",
            ]
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_login_otp(self, to_email: str, code: str, name: Optional[str] = None) -> bool:
        return self._send_code(
            to_email, code, subject="Your sign-in code", reason="sign-in", name=name
        )

    def send_password_change_otp(self, to_email: str, code: str, name: Optional[str] = None) -> bool:
        return self._send_code(
            to_email,
            code,
            subject="Confirm your password change",
            reason="password change",
            name=name,
        )

    def send_two_factor_enabled(self, to_email: str, name: Optional[str] = None) -> bool:
        subject = "Two-factor authentication enabled"
        text_body = (
            f"{self._greeting(name)}\n\n"
            "Two-factor authentication is now enabled on your account. "
            "If you did not make this change, contact an administrator immediately."
        )
        html_body = self._wrap_html([html.escape(self._greeting(name)), text_body.split("\n\n", 1)[1]])
        return self._send_email(to_email, subject, html_body, text_body)
