"""
Flow tests for two-step registration (email code, then authenticator).
"""

import threading
from dataclasses import replace

import pytest

from plantvault.auth import AuthService
from plantvault.errors import (
    ConflictError,
    DeliveryFailureError,
    ExpiredError,
    InvalidCodeError,
    LockedError,
    NotFoundError,
    ValidationError,
)
from plantvault.records import ROLE_ADMIN, ROLE_USER, iso
from plantvault.storage import REGISTRATION_CHALLENGES, USERS, MemoryStorage

from .conftest import PASSWORD, START_TIME


def actions(service, limit=20):
    return [entry['action'] for entry in service.list_security_logs(limit)]


def wrong(code):
    return "000000" if code != "000000" else "111111"


class TestRegistrationHappyPath:
    """register -> confirm_email -> finalize."""

    def test_register_returns_challenge(self, service, mail):
        """A challenge is created and its code mailed."""
        started = service.register("a@b.com", PASSWORD)
        assert started['challengeId']
        assert started['expiresAt'] == iso(START_TIME + 600)
        assert started['debugCode'] is None
        assert mail.codes[-1][0] == "a@b.com"

    def test_confirm_email_returns_otp_setup(self, service, mail):
        """Correct email code moves on to authenticator setup."""
        started = service.register("a@b.com", PASSWORD)
        setup = service.confirm_registration_email(started['challengeId'], mail.last_code)
        assert setup['nextStep'] == 'otp'
        assert setup['otpSetupId'] == started['challengeId']
        assert setup['issuer'] == "Plantelligence"
        assert setup['accountName'] == "a@b.com"
        assert setup['uri'].startswith("otpauth://totp/")

    def test_first_user_is_admin(self, make_user):
        """The very first account becomes Admin, later ones User."""
        first, _ = make_user("first@example.com")
        second, _ = make_user("second@example.com")
        assert first['role'] == ROLE_ADMIN
        assert second['role'] == ROLE_USER

    def test_admin_decided_at_insert(self, service, mail):
        """Two registrations finalized together still produce one Admin."""
        setups = []
        for email in ("first@example.com", "second@example.com"):
            started = service.register(email, PASSWORD)
            setups.append(service.confirm_registration_email(started['challengeId'], mail.last_code))

        start = threading.Barrier(len(setups))
        users, errors = [], []

        def finalize(setup):
            code = service.totp.current_code(setup['secret'])
            start.wait(timeout=5)
            try:
                users.append(service.finalize_registration(setup['otpSetupId'], code))
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=finalize, args=(setup,)) for setup in setups]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert sorted(user['role'] for user in users) == [ROLE_ADMIN, ROLE_USER]
        stored = service.storage.find(USERS)
        assert sorted(doc['role'] for doc in stored) == [ROLE_ADMIN, ROLE_USER]

    def test_user_created_with_both_mfa_methods(self, service, make_user):
        """Finalized users have email and OTP enforced."""
        user, _ = make_user()
        assert user['mfaEnabled'] is True
        assert user['mfa']['enforcedMethods'] == ['email', 'otp']
        assert user['mfa']['otp']['configuredAt'] is not None
        assert service.storage.count(REGISTRATION_CHALLENGES) == 0

    def test_sanitized_user_hides_secrets(self, service, make_user):
        """No password hash or TOTP secret leaves the service."""
        user, secret = make_user()
        assert 'passwordHash' not in user
        assert '$argon2' not in str(user)
        assert secret not in str(user)
        stored = service.storage.get(USERS, user['id'])
        assert secret not in str(stored)

    def test_email_normalized(self, make_user):
        """Email is trimmed and lower-cased."""
        user, _ = make_user("  Alice@Example.COM ")
        assert user['email'] == "alice@example.com"

    def test_profile_and_consent_kept(self, make_user):
        """Optional profile fields are carried into the user."""
        user, _ = make_user(full_name=" Alice ", phone="555-0100", consent=True)
        assert user['fullName'] == "Alice"
        assert user['phone'] == "555-0100"
        assert user['consentGiven'] is True
        assert user['consentTimestamp'] == iso(START_TIME)

    def test_security_events_recorded(self, service, make_user):
        """Each step leaves a ledger entry."""
        make_user()
        recorded = actions(service)
        for action in ('registration_started', 'registration_challenge_sent',
                       'registration_email_verified', 'user_registered', 'mfa_totp_configured'):
            assert action in recorded

    def test_confirm_twice_returns_same_secret(self, service, mail):
        """Redisplaying the setup does not rotate the secret."""
        started = service.register("a@b.com", PASSWORD)
        code = mail.last_code
        first = service.confirm_registration_email(started['challengeId'], code)
        second = service.confirm_registration_email(started['challengeId'], code)
        assert first['secret'] == second['secret']

    def test_debug_mode_echoes_codes(self, settings, mail, clock):
        """Debug mode returns the emailed code to the caller."""
        debug = AuthService(replace(settings, mfa_debug_mode=True), MemoryStorage(),
                            email_sender=mail, clock=clock)
        started = debug.register("a@b.com", PASSWORD)
        assert started['debugCode'] == mail.last_code
        setup = debug.confirm_registration_email(started['challengeId'], started['debugCode'])
        assert setup['debugCode'] == debug.totp.current_code(setup['secret'])


class TestRegistrationRejections:
    """Validation, conflicts and delivery failures."""

    def test_duplicate_email_conflict(self, service, make_user):
        """A registered email cannot register again."""
        make_user("a@b.com")
        with pytest.raises(ConflictError) as exc_info:
            service.register(" A@B.com", PASSWORD)
        assert exc_info.value.status_code == 409

    def test_weak_password_rejected(self, service, mail):
        """Policy failures stop registration before any email."""
        with pytest.raises(ValidationError):
            service.register("a@b.com", "password123")
        assert mail.codes == []

    @pytest.mark.parametrize("email", ["", "not-an-email", "@example.com", None])
    def test_invalid_email_rejected(self, service, email):
        """Malformed addresses are a ValidationError."""
        with pytest.raises(ValidationError):
            service.register(email, PASSWORD)

    def test_delivery_failure_leaves_nothing(self, service, mail):
        """A failed email deletes the challenge and is logged."""
        mail.fail = True
        with pytest.raises(DeliveryFailureError) as exc_info:
            service.register("a@b.com", PASSWORD)
        assert exc_info.value.status_code == 503
        assert service.storage.count(REGISTRATION_CHALLENGES) == 0
        assert 'registration_delivery_failed' in actions(service)

    def test_restart_replaces_pending_challenge(self, service, mail):
        """Registering again invalidates the earlier code."""
        first = service.register("a@b.com", PASSWORD)
        service.register("a@b.com", PASSWORD)
        with pytest.raises(NotFoundError):
            service.confirm_registration_email(first['challengeId'], mail.codes[0][1])


class TestRegistrationEmailCode:
    """Email step of the state machine."""

    def test_wrong_code(self, service, mail):
        """A wrong code is InvalidCode; the right one still works after."""
        started = service.register("a@b.com", PASSWORD)
        with pytest.raises(InvalidCodeError):
            service.confirm_registration_email(started['challengeId'], wrong(mail.last_code))
        assert 'registration_code_invalid' in actions(service)
        service.confirm_registration_email(started['challengeId'], mail.last_code)

    def test_locked_after_five_misses(self, service, mail):
        """The sixth attempt is Locked even with the right code."""
        started = service.register("a@b.com", PASSWORD)
        for _ in range(5):
            with pytest.raises(InvalidCodeError):
                service.confirm_registration_email(started['challengeId'], wrong(mail.last_code))
        with pytest.raises(LockedError):
            service.confirm_registration_email(started['challengeId'], mail.last_code)
        assert service.storage.count(REGISTRATION_CHALLENGES) == 0

    def test_expired_code(self, service, mail, clock):
        """Ten minutes later the challenge is gone."""
        started = service.register("a@b.com", PASSWORD)
        clock.advance(601)
        with pytest.raises(ExpiredError):
            service.confirm_registration_email(started['challengeId'], mail.last_code)
        with pytest.raises(NotFoundError):
            service.confirm_registration_email(started['challengeId'], mail.last_code)

    def test_unknown_challenge(self, service):
        """Unknown ids are NotFound."""
        with pytest.raises(NotFoundError):
            service.confirm_registration_email("missing", "123456")


class TestRegistrationFinalize:
    """Authenticator step of the state machine."""

    def test_finalize_requires_email_confirmation(self, service, mail):
        """The OTP step cannot be reached directly."""
        started = service.register("a@b.com", PASSWORD)
        with pytest.raises(ValidationError):
            service.finalize_registration(started['challengeId'], "123456")

    def test_wrong_otp(self, service, mail):
        """A wrong authenticator code is counted on its own counter."""
        started = service.register("a@b.com", PASSWORD)
        setup = service.confirm_registration_email(started['challengeId'], mail.last_code)
        good = service.totp.current_code(setup['secret'])
        with pytest.raises(InvalidCodeError):
            service.finalize_registration(setup['otpSetupId'], wrong(good))
        pending = service.registration_challenges.get(setup['otpSetupId'])
        assert pending.otp_attempts == 1
        assert pending.attempts == 0
        assert 'registration_otp_invalid' in actions(service)

    def test_otp_locked_after_five_misses(self, service, mail):
        """Five wrong authenticator codes lock the registration."""
        started = service.register("a@b.com", PASSWORD)
        setup = service.confirm_registration_email(started['challengeId'], mail.last_code)
        good = service.totp.current_code(setup['secret'])
        for _ in range(5):
            with pytest.raises(InvalidCodeError):
                service.finalize_registration(setup['otpSetupId'], wrong(good))
        with pytest.raises(LockedError):
            service.finalize_registration(setup['otpSetupId'], good)
        assert service.storage.count(USERS) == 0

    def test_finalize_after_expiry(self, service, mail, clock):
        """The whole registration shares one ten-minute window."""
        started = service.register("a@b.com", PASSWORD)
        setup = service.confirm_registration_email(started['challengeId'], mail.last_code)
        clock.advance(601)
        with pytest.raises(ExpiredError):
            service.finalize_registration(setup['otpSetupId'], service.totp.current_code(setup['secret']))

    def test_finalize_is_single_use(self, service, mail):
        """A finished registration cannot be finalized again."""
        started = service.register("a@b.com", PASSWORD)
        setup = service.confirm_registration_email(started['challengeId'], mail.last_code)
        code = service.totp.current_code(setup['secret'])
        service.finalize_registration(setup['otpSetupId'], code)
        with pytest.raises(NotFoundError):
            service.finalize_registration(setup['otpSetupId'], code)

    def test_replaced_registration_cannot_finalize(self, service, mail):
        """Only the newest registration for an email can complete."""
        started = service.register("a@b.com", PASSWORD)
        setup = service.confirm_registration_email(started['challengeId'], mail.last_code)

        other = service.register("a@b.com", PASSWORD)
        other_setup = service.confirm_registration_email(other['challengeId'], mail.last_code)
        service.finalize_registration(other_setup['otpSetupId'],
                                      service.totp.current_code(other_setup['secret']))

        with pytest.raises(NotFoundError):
            service.finalize_registration(setup['otpSetupId'],
                                          service.totp.current_code(setup['secret']))

    def test_email_uniqueness_enforced_at_write(self, service, make_user):
        """The repository refuses a second user with the same email."""
        user, _ = make_user("a@b.com")
        clone = service.users.get(user['id'])
        clone.id = "someone-else"
        with pytest.raises(ConflictError):
            service.users.create(clone)
