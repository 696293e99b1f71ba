"""
Unit tests for the email senders.
"""

import logging

import pytest

from plantvault.config import Settings
from plantvault.notifications import LoggingEmailSender, SmtpEmailSender, create_email_sender
from plantvault.notifications import email as email_module

from .conftest import START_TIME


class FakeSMTP:
    """Stands in for smtplib.SMTP and records the conversation."""

    instances = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.calls = []
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def ehlo(self):
        self.calls.append('ehlo')

    def starttls(self, context=None):
        self.calls.append('starttls')

    def login(self, user, password):
        self.calls.append(('login', user))

    def send_message(self, msg):
        self.messages.append(msg)


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(email_module.smtplib, 'SMTP', FakeSMTP)
    return FakeSMTP


class TestSmtpEmailSender:
    """Message construction and the SMTP handshake."""

    def test_mfa_code_message(self, fake_smtp):
        """The code is in the body; TLS and login happen first."""
        sender = SmtpEmailSender("smtp.test", 587, "user", "secret", "no-reply@plantelligence.test")
        sender.send_mfa_code("alice@example.com", "123456", START_TIME + 300)

        smtp = fake_smtp.instances[0]
        assert (smtp.host, smtp.port) == ("smtp.test", 587)
        assert smtp.calls == ['ehlo', 'starttls', 'ehlo', ('login', 'user')]
        msg = smtp.messages[0]
        assert msg["To"] == "alice@example.com"
        assert "123456" in msg.get_body(preferencelist=('plain',)).get_content()

    def test_no_tls_no_login(self, fake_smtp):
        """Plain relays without credentials skip STARTTLS and AUTH."""
        sender = SmtpEmailSender("localhost", 25, "", "", "no-reply@plantelligence.test", use_tls=False)
        sender.send_password_reset("alice@example.com", "https://x/reset?token=abc", START_TIME)
        assert fake_smtp.instances[0].calls == ['ehlo']

    def test_missing_from_address(self, fake_smtp):
        """Sending without any From address fails before connecting."""
        sender = SmtpEmailSender("smtp.test", 587, "", "", "")
        with pytest.raises(RuntimeError):
            sender.send_mfa_code("alice@example.com", "123456", START_TIME)
        assert fake_smtp.instances == []

    def test_alert_to_several_recipients(self, fake_smtp):
        """Greenhouse alerts go out as one message."""
        sender = SmtpEmailSender("smtp.test", 587, "user", "secret", "no-reply@plantelligence.test")
        sender.send_greenhouse_alert(["a@b.com", "c@d.com"], "North", ["Humidity 12%"])
        msg = fake_smtp.instances[0].messages[0]
        assert msg["To"] == "a@b.com, c@d.com"
        assert "North" in msg["Subject"]

    def test_alert_without_recipients(self, fake_smtp):
        """No recipients means no connection."""
        sender = SmtpEmailSender("smtp.test", 587, "user", "secret", "no-reply@plantelligence.test")
        sender.send_greenhouse_alert([], "North", ["Humidity 12%"])
        assert fake_smtp.instances == []


class TestLoggingEmailSender:
    """Development sender."""

    def test_code_never_logged(self, caplog):
        """Only a masked address and the expiry reach the log."""
        sender = LoggingEmailSender()
        with caplog.at_level(logging.INFO):
            sender.send_mfa_code("alice@example.com", "987654", START_TIME)
        assert "987654" not in caplog.text
        assert "a***@example.com" in caplog.text
        assert sender.sent == [('mfa_code', ["alice@example.com"])]

    def test_reset_link_never_logged(self, caplog):
        """The reset token stays out of the log."""
        sender = LoggingEmailSender()
        with caplog.at_level(logging.INFO):
            sender.send_password_reset("alice@example.com", "https://x/reset?token=s3cr3t", START_TIME)
        assert "s3cr3t" not in caplog.text


class TestCreateEmailSender:
    """Selection from settings."""

    def test_smtp_when_host_set(self):
        assert isinstance(create_email_sender(Settings(smtp_host="smtp.test")), SmtpEmailSender)

    def test_logging_without_host(self):
        assert isinstance(create_email_sender(Settings()), LoggingEmailSender)
