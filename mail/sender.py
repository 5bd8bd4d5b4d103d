"""
mail/sender.py -- EmailSender protocol and its provider adapters.

One capability, three transports:
  ConsoleEmailSender -- logs the message instead of sending it (dev/test).
  SmtpEmailSender    -- smtplib, STARTTLS on 587 or implicit TLS on 465.
  ResendEmailSender  -- Resend transactional HTTP API via requests.

Contract: send() returns True when the provider accepted the message and
False on any delivery failure. It never raises -- the caller decides whether
a failed send is fatal (OTP email) or best-effort (welcome email).

Provider choice is a configuration-time decision made once by
build_email_sender(); nothing here keeps module-level mutable state.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

import requests

from core.config import Settings

logger = logging.getLogger("citsa.mail")

RESEND_API_URL = "https://api.resend.com/emails"


class EmailSender(Protocol):
    def send(self, to: str, subject: str, html: str, text: str) -> bool: ...


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class ConsoleEmailSender:
    """Development sender: writes the text body to the log and reports success."""

    def send(self, to: str, subject: str, html: str, text: str) -> bool:
        logger.info("Email (console) to=%s subject=%r\n%s", to, subject, text)
        return True


class SmtpEmailSender:
    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        use_tls: bool = True,
        from_address: str,
        from_name: str = "",
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.from_address = from_address
        self.from_name = from_name
        self.timeout = timeout

    def _build_message(self, to: str, subject: str, html: str, text: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_address}>" if self.from_name else self.from_address
        msg["To"] = to
        msg.attach(MIMEText(text, "plain"))
        msg.attach(MIMEText(html, "html"))
        return msg

    def send(self, to: str, subject: str, html: str, text: str) -> bool:
        msg = self._build_message(to, subject, html, text)
        context = ssl.create_default_context()
        try:
            if self.use_tls:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.sendmail(self.from_address, [to], msg.as_string())
            else:
                with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.sendmail(self.from_address, [to], msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("SMTP authentication failed for %s@%s: %s", self.user, self.host, exc)
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error("SMTP recipient refused %s: %s", redact_email(to), exc)
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error("SMTP send to %s failed (%s): %s", redact_email(to), type(exc).__name__, exc)
            return False
        logger.info("Email sent via SMTP to %s", redact_email(to))
        return True


class ResendEmailSender:
    def __init__(
        self,
        *,
        api_key: str,
        from_address: str,
        from_name: str = "",
        timeout: float = 15.0,
        session: requests.Session | None = None,
    ) -> None:
        self.api_key = api_key
        self.from_address = from_address
        self.from_name = from_name
        self.timeout = timeout
        # Shared session for connection pooling across sends.
        self._session = session or requests.Session()

    def send(self, to: str, subject: str, html: str, text: str) -> bool:
        sender = f"{self.from_name} <{self.from_address}>" if self.from_name else self.from_address
        try:
            resp = self._session.post(
                RESEND_API_URL,
                json={"from": sender, "to": [to], "subject": subject, "html": html, "text": text},
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("Resend request for %s failed: %s", redact_email(to), exc)
            return False
        if resp.status_code >= 400:
            logger.error("Resend API error %d for %s: %s", resp.status_code, redact_email(to), resp.text[:200])
            return False
        # The message was accepted on a 2xx; the id is only used for the log line.
        message_id = ""
        if resp.headers.get("Content-Type", "").startswith("application/json"):
            try:
                message_id = resp.json().get("id", "")
            except ValueError:
                logger.warning("Resend accepted mail for %s with an unreadable body", redact_email(to))
        logger.info("Email sent via Resend to %s: %s", redact_email(to), message_id)
        return True


def build_email_sender(settings: Settings) -> EmailSender:
    """Construct the configured sender. Called once at startup."""
    if settings.email_provider == "smtp":
        logger.info("Email transport: SMTP %s:%d", settings.smtp_host, settings.smtp_port)
        return SmtpEmailSender(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            from_address=settings.email_from_address,
            from_name=settings.email_from_name,
        )
    if settings.email_provider == "resend":
        logger.info("Email transport: Resend API (from: %s)", settings.email_from_address)
        return ResendEmailSender(
            api_key=settings.resend_api_key,
            from_address=settings.email_from_address,
            from_name=settings.email_from_name,
        )
    logger.warning("Email transport: console -- messages are logged, not delivered")
    return ConsoleEmailSender()
