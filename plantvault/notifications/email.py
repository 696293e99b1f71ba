"""
Outbound email.

The authentication core only sees the EmailSender interface. Production
uses SmtpEmailSender (smtplib, STARTTLS); development and tests use
LoggingEmailSender, which records that a message went out without ever
logging the code or link itself.
"""

import logging
import smtplib
import ssl
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

SMTP_TIMEOUT_SECONDS = 20


def _mask(address: Optional[str]) -> str:
    if not address:
        return ""
    if "@" in address:
        user, domain = address.split("@", 1)
        return f"{user[:1]}***@{domain}"
    return address[:3] + "***"


def _format_expiry(expires_at: float) -> str:
    return datetime.fromtimestamp(expires_at, timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


class EmailSender(ABC):
    """Email collaborator used by the authentication flows."""

    @abstractmethod
    def send_mfa_code(self, to: str, code: str, expires_at: float) -> None:
        """Deliver a one-time verification code."""

    @abstractmethod
    def send_password_reset(self, to: str, reset_link: str, expires_at: float) -> None:
        """Deliver a password-reset link."""

    @abstractmethod
    def send_greenhouse_alert(self, recipients: Sequence[str], greenhouse_name: str,
                              alerts: Sequence[str]) -> None:
        """Notify greenhouse owners that readings left the safe range."""


class SmtpEmailSender(EmailSender):
    """
    Sends mail through an SMTP relay.

    Example:
        >>> sender = SmtpEmailSender("smtp-relay.brevo.com", 587, "user", "pass",
        ...                          "Plantelligence <no-reply@example.com>")
        >>> sender.send_mfa_code("alice@example.com", "123456", expires_at)
    """

    def __init__(self, host: str, port: int, user: str, password: str,
                 mail_from: str, use_tls: bool = True):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.mail_from = mail_from or user
        self.use_tls = use_tls

    @classmethod
    def from_settings(cls, settings) -> 'SmtpEmailSender':
        return cls(settings.smtp_host, settings.smtp_port, settings.smtp_user,
                   settings.smtp_password, settings.smtp_from, settings.smtp_use_tls)

    def _send(self, to: List[str], subject: str, text: str, html: str = "") -> None:
        if not self.mail_from:
            raise RuntimeError("SMTP_FROM is not configured.")

        msg = EmailMessage()
        msg["From"] = self.mail_from
        msg["To"] = ", ".join(to)
        msg["Subject"] = subject
        msg.set_content(text)
        if html:
            msg.add_alternative(html, subtype="html")

        with smtplib.SMTP(self.host, self.port, timeout=SMTP_TIMEOUT_SECONDS) as smtp:
            smtp.ehlo()
            if self.use_tls:
                smtp.starttls(context=ssl.create_default_context())
                smtp.ehlo()
            if self.user and self.password:
                smtp.login(self.user, self.password)
            smtp.send_message(msg)
        logger.info("Email '%s' sent to %s", subject, ", ".join(_mask(a) for a in to))

    def send_mfa_code(self, to: str, code: str, expires_at: float) -> None:
        expiry = _format_expiry(expires_at)
        text = (
            "Hello!\n\n"
            f"Your multi-factor authentication code is {code}.\n"
            f"It expires at {expiry}.\n\n"
            "If you did not request this code, contact security support immediately."
        )
        html = (
            "<p>Hello,</p>"
            "<p>Your multi-factor authentication code is:</p>"
            f'<p style="font-size:24px;font-weight:bold;letter-spacing:4px;">{code}</p>'
            f"<p>It expires at <strong>{expiry}</strong>.</p>"
            "<p>If you did not request this code, contact security support immediately.</p>"
        )
        self._send([to], "Plantelligence - Multi-factor authentication code", text, html)

    def send_password_reset(self, to: str, reset_link: str, expires_at: float) -> None:
        text = (
            "A password reset was requested for your Plantelligence account.\n\n"
            f"Open this link to choose a new password: {reset_link}\n"
            f"The link expires at {_format_expiry(expires_at)}.\n\n"
            "If you did not request a reset you can ignore this message."
        )
        self._send([to], "Plantelligence - Password reset", text)

    def send_greenhouse_alert(self, recipients: Sequence[str], greenhouse_name: str,
                              alerts: Sequence[str]) -> None:
        if not recipients:
            return
        plain_alerts = "\n".join(f"- {alert}" for alert in alerts)
        items = "".join(f"<li>{alert}</li>" for alert in alerts)
        text = f"Critical readings in greenhouse {greenhouse_name}:\n\n{plain_alerts}"
        html = f"<p>Critical readings in greenhouse <strong>{greenhouse_name}</strong>:</p><ul>{items}</ul>"
        self._send(list(recipients), f"Plantelligence - Critical alert in {greenhouse_name}", text, html)


class LoggingEmailSender(EmailSender):
    """
    Development sender: nothing leaves the process.

    Keeps a list of (kind, recipients) tuples so a local run can show
    what would have been delivered.
    """

    def __init__(self):
        self.sent: List[tuple] = []

    def send_mfa_code(self, to: str, code: str, expires_at: float) -> None:
        self.sent.append(('mfa_code', [to]))
        logger.info("[dev mail] MFA code for %s (expires %s)", _mask(to), _format_expiry(expires_at))

    def send_password_reset(self, to: str, reset_link: str, expires_at: float) -> None:
        self.sent.append(('password_reset', [to]))
        logger.info("[dev mail] Password reset link for %s (expires %s)",
                    _mask(to), _format_expiry(expires_at))

    def send_greenhouse_alert(self, recipients: Sequence[str], greenhouse_name: str,
                              alerts: Sequence[str]) -> None:
        if not recipients:
            return
        self.sent.append(('greenhouse_alert', list(recipients)))
        logger.info("[dev mail] %d alert(s) for greenhouse %s to %d recipient(s)",
                    len(alerts), greenhouse_name, len(recipients))


def create_email_sender(settings) -> EmailSender:
    """SMTP when a host is configured, otherwise the logging sender."""
    if settings.smtp_host:
        return SmtpEmailSender.from_settings(settings)
    logger.warning("SMTP_HOST not set; outgoing email will only be logged")
    return LoggingEmailSender()
