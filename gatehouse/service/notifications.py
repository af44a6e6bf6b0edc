from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from gatehouse.logging import get_logger

logger = get_logger(__name__)


class NotificationDispatcher(Protocol):
    async def send_code(
        self, destination: str, code: str, display_name: Optional[str] = None
    ) -> bool: ...


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailDispatcher:
    """Delivers one-time login codes over SMTP.

    When no SMTP host is configured the message is logged instead of sent so
    local development works without a mail server.
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
        from_name: str = "Newsroom",
        code_ttl_minutes: int = 10,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.code_ttl_minutes = code_ttl_minutes
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _compose(
        self, to_email: str, code: str, display_name: Optional[str]
    ) -> MIMEMultipart:
        greeting = f"Hello {display_name}," if display_name else "Hello,"
        text_body = (
            f"{greeting}\n\n"
            f"Your verification code is: {code}\n\n"
            f"This code expires in {self.code_ttl_minutes} minutes.\n"
            "If you did not try to sign in, you can ignore this message.\n"
        )
        html_body = (
            f"<p>{html.escape(greeting)}</p>"
            f"<p>Your verification code is: <strong>{code}</strong></p>"
            f"<p>This code expires in {self.code_ttl_minutes} minutes.</p>"
            "<p>If you did not try to sign in, you can ignore this message.</p>"
        )
        msg = MIMEMultipart("alternative")
        msg["Subject"] = f"{self.from_name} login verification code"
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _deliver(self, to_email: str, msg: MIMEMultipart) -> bool:
        context = ssl.create_default_context()
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
                to=redact_email(to_email),
                host=self.smtp_host,
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", to=redact_email(to_email), error=str(e)
            )
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
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error", to=redact_email(to_email), host=self.smtp_host, error=str(e)
            )
            return False
        except OSError as e:
            # Covers refused connections and socket timeouts
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("email_sent", to=redact_email(to_email), kind="login_code")
        return True

    async def send_code(
        self, destination: str, code: str, display_name: Optional[str] = None
    ) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(destination),
                kind="login_code",
                otp=code,
            )
            return True
        msg = self._compose(destination, code, display_name)
        return await asyncio.to_thread(self._deliver, destination, msg)
