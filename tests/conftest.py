"""
Shared fixtures: a controllable clock, in-memory storage, a recording
email sender and a fully wired AuthService.
"""

from typing import List, Tuple

import pytest

from plantvault.auth import AuthService, PasswordCodec
from plantvault.config import Settings
from plantvault.integration import SecurityLedger
from plantvault.notifications import EmailSender
from plantvault.storage import MemoryStorage

# Aligned to the start of a 30 second TOTP step, plus 10 seconds
START_TIME = 1_699_999_990.0
PASSWORD = "Str0ng!Pass"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingEmailSender(EmailSender):
    """Keeps every outgoing message; can be switched to fail."""

    def __init__(self):
        self.codes: List[Tuple[str, str]] = []
        self.reset_links: List[Tuple[str, str]] = []
        self.alerts: List[Tuple[list, str]] = []
        self.fail = False

    def _check(self):
        if self.fail:
            raise ConnectionError("SMTP unavailable")

    @property
    def last_code(self) -> str:
        return self.codes[-1][1]

    @property
    def last_reset_token(self) -> str:
        return self.reset_links[-1][1].split('token=', 1)[1]

    def send_mfa_code(self, to, code, expires_at):
        self._check()
        self.codes.append((to, code))

    def send_password_reset(self, to, reset_link, expires_at):
        self._check()
        self.reset_links.append((to, reset_link))

    def send_greenhouse_alert(self, recipients, greenhouse_name, alerts):
        self._check()
        self.alerts.append((list(recipients), greenhouse_name))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    store = MemoryStorage()
    store.initialize()
    return store


@pytest.fixture
def ledger(storage, clock):
    return SecurityLedger(storage, clock=clock)


@pytest.fixture
def mail():
    return RecordingEmailSender()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="test-access-secret",
        jwt_refresh_secret="test-refresh-secret",
        mfa_totp_encryption_key="test-totp-encryption-key",
        mfa_debug_mode=False,
        password_reset_url="https://plantelligence.test/reset",
        storage_backend="memory",
        argon2_time_cost=1,
        argon2_memory_cost=1024,
    )


@pytest.fixture
def passwords(clock):
    return PasswordCodec(time_cost=1, memory_cost=1024, clock=clock)


@pytest.fixture
def service(settings, storage, mail, clock):
    svc = AuthService(settings, storage, email_sender=mail, clock=clock)
    svc.initialize()
    yield svc
    svc.close()


@pytest.fixture
def make_user(service, mail):
    """Run the full registration flow; returns (sanitized user, base32 secret)."""

    def _make(email="alice@example.com", password=PASSWORD, **profile):
        started = service.register(email, password, **profile)
        setup = service.confirm_registration_email(started['challengeId'], mail.last_code)
        user = service.finalize_registration(
            setup['otpSetupId'], service.totp.current_code(setup['secret']))
        return user, setup['secret']

    return _make


@pytest.fixture
def signed_in(service, make_user):
    """Registered user logged in through OTP; returns (user, secret, tokens)."""

    def _sign_in(email="alice@example.com", password=PASSWORD):
        user, secret = make_user(email, password)
        session = service.login(email, password)
        result = service.complete_mfa(session['sessionId'], 'otp',
                                      service.totp.current_code(secret))
        return user, secret, result['tokens']

    return _sign_in
