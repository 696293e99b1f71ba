"""
User Registration Flow

Two-step sign-up: prove the email address, then prove an authenticator
app is set up. Only then does a User record exist.

    register()      -> EMAIL_PENDING  (challenge stored, 6-digit code mailed)
    confirm_email() -> OTP_PENDING    (TOTP secret generated or reused)
    finalize()      -> DONE           (user created, challenge deleted)

The pending password is hashed immediately; the plaintext never touches
storage. The first account ever created becomes an Admin.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from ..errors import ConflictError, DeliveryFailureError, ValidationError
from ..integration.security_ledger import SecurityLedger
from ..notifications import EmailSender
from ..records import (
    ENFORCED_MFA_METHODS,
    MFA_EMAIL,
    ROLE_ADMIN,
    ROLE_USER,
    MfaSettings,
    User,
    iso,
    new_id,
)
from .challenges import ChallengeEvents, ChallengeMessages, ChallengeStore, generate_code
from .passwords import PasswordCodec
from .totp import TotpEngine
from .users import UserRepository, normalize_email

logger = logging.getLogger(__name__)

REGISTRATION_TTL_SECONDS = 600
REGISTRATION_MAX_ATTEMPTS = 5
REGISTRATION_OTP_MAX_ATTEMPTS = 5

REGISTRATION_EMAIL_EVENTS = ChallengeEvents(
    missing='registration_challenge_missing',
    expired='registration_code_expired',
    locked='registration_code_locked',
    invalid='registration_code_invalid',
)
REGISTRATION_OTP_EVENTS = ChallengeEvents(
    missing='registration_challenge_missing',
    expired='registration_code_expired',
    locked='registration_otp_locked',
    invalid='registration_otp_invalid',
)
REGISTRATION_MESSAGES = ChallengeMessages(
    missing="Registration request is invalid or has expired.",
    expired="Verification code expired. Start the registration again.",
    locked="Registration locked after too many invalid attempts. Start again.",
    invalid="Invalid verification code.",
)
REGISTRATION_OTP_MESSAGES = ChallengeMessages(
    missing=REGISTRATION_MESSAGES.missing,
    expired=REGISTRATION_MESSAGES.expired,
    locked="Authenticator setup locked after too many invalid attempts. Start again.",
    invalid="Invalid authenticator code.",
)


class RegistrationFlow:
    """
    Registration state machine.

    Example:
        >>> started = flow.register("a@b.com", "Str0ng!Pass")
        >>> setup = flow.confirm_email(started['challengeId'], emailed_code)
        >>> user = flow.finalize(setup['otpSetupId'], code_from_app)
        >>> user['role']
        'Admin'
    """

    def __init__(self, users: UserRepository,
                 challenges: ChallengeStore,
                 passwords: PasswordCodec,
                 totp: TotpEngine,
                 ledger: SecurityLedger,
                 email_sender: EmailSender,
                 debug_mode: bool = False,
                 clock: Callable[[], float] = time.time):
        self._users = users
        self._challenges = challenges
        self._passwords = passwords
        self._totp = totp
        self._ledger = ledger
        self._email = email_sender
        self._debug_mode = debug_mode
        self._clock = clock

    def register(self, email: str, password: str,
                 full_name: Optional[str] = None,
                 phone: Optional[str] = None,
                 consent: bool = False) -> Dict[str, Any]:
        """
        Start a registration and email the verification code.

        Args:
            email: Address to register (normalized: trimmed, lower-case)
            password: Plaintext password (checked against the policy)
            full_name: Optional display name
            phone: Optional phone number
            consent: Data-processing consent

        Returns:
            Dict with 'challengeId', 'expiresAt' and 'debugCode'

        Raises:
            ValidationError: Bad email or password policy failure
            ConflictError: Email already registered
            DeliveryFailureError: Code could not be mailed (nothing is left behind)
        """
        normalized = normalize_email(email)
        if not password:
            raise ValidationError("Password is required.")
        self._passwords.validate_complexity(password)

        if self._users.find_by_email(normalized) is not None:
            raise ConflictError("Email already registered.")

        now = self._clock()
        code = generate_code()
        challenge = self._challenges.create(normalized, code=code, payload={
            'password_hash': self._passwords.hash(password),
            'full_name': (full_name or '').strip() or None,
            'phone': (phone or '').strip() or None,
            'consent_given': bool(consent),
            'consent_timestamp': now if consent else None,
            'otp_setup': None,
        })
        self._ledger.append('registration_started', metadata={'email': normalized})

        try:
            self._email.send_mfa_code(normalized, code, challenge.expires_at)
        except Exception as exc:
            self._challenges.delete(challenge.id)
            logger.error("Registration code delivery failed: %s", exc)
            self._ledger.append('registration_delivery_failed',
                                metadata={'email': normalized, 'reason': str(exc)})
            raise DeliveryFailureError(
                "Could not send the verification code. Try again in a moment.") from exc

        self._ledger.append('registration_challenge_sent', metadata={'email': normalized})
        return {
            'challengeId': challenge.id,
            'expiresAt': iso(challenge.expires_at),
            'debugCode': code if self._debug_mode else None,
        }

    def confirm_email(self, challenge_id: str, code: str,
                      ip_address: Optional[str] = None) -> Dict[str, Any]:
        """
        Check the emailed code and hand out the authenticator setup.

        Calling it again after success returns the same secret.

        Returns:
            Dict with nextStep 'otp', otpSetupId, secret, uri, issuer,
            accountName and debugCode
        """
        challenge = self._challenges.verify(
            challenge_id, code,
            consume=False,
            ip_address=ip_address,
        )
        email = challenge.subject_id
        self._ledger.append('registration_email_verified',
                            metadata={'challenge_id': challenge.id, 'email': email},
                            ip_address=ip_address)

        payload = dict(challenge.payload)
        stored = payload.get('otp_setup') or {}
        setup = self._totp.recreate_setup(
            email,
            stored.get('encrypted_secret'),
            issuer=stored.get('issuer'),
            account_name=stored.get('account_name'),
        )
        if setup is None:
            setup = self._totp.generate_setup(email)
            payload['otp_setup'] = {
                'encrypted_secret': setup.encrypted_secret,
                'issuer': setup.issuer,
                'account_name': setup.account_name,
            }

        self._challenges.update(challenge.id, payload=payload,
                                verified_at=self._clock(), otp_attempts=0)

        result = {'nextStep': 'otp', 'otpSetupId': challenge.id}
        result.update(setup.to_public())
        return result

    def finalize(self, challenge_id: str, otp_code: str,
                 ip_address: Optional[str] = None) -> Dict[str, Any]:
        """
        Verify the first authenticator code and create the user.

        Returns:
            The sanitized new user

        Raises:
            ValidationError: Email not verified yet, or no TOTP setup
            NotFoundError / ExpiredError / LockedError / InvalidCodeError:
                Per the challenge contract, counted on the OTP attempt counter
            ConflictError: The email was registered in the meantime
        """
        pending = self._challenges.get(challenge_id)
        if pending is not None:
            if not pending.verified_at:
                raise ValidationError("Confirm your email before validating the authenticator app.")
            if not (pending.payload.get('otp_setup') or {}).get('encrypted_secret'):
                raise ValidationError("Authenticator setup not found. Restart the registration.")

        challenge = self._challenges.verify(
            challenge_id,
            check=lambda c: self._totp.verify_code(
                otp_code, c.payload['otp_setup']['encrypted_secret']),
            attempts_field='otp_attempts',
            events=REGISTRATION_OTP_EVENTS,
            messages=REGISTRATION_OTP_MESSAGES,
            consume=False,
            ip_address=ip_address,
        )

        payload = challenge.payload
        otp_setup = payload['otp_setup']
        issuer = otp_setup.get('issuer') or self._totp.issuer
        now = self._clock()
        user = User(
            id=new_id(),
            email=challenge.subject_id,
            password_hash=payload['password_hash'],
            role=ROLE_USER,
            created_at=now,
            updated_at=now,
            last_password_change=now,
            password_expires_at=self._passwords.compute_expiry(now),
            full_name=payload.get('full_name'),
            phone=payload.get('phone'),
            consent_given=bool(payload.get('consent_given')),
            consent_timestamp=(payload.get('consent_timestamp') or now) if payload.get('consent_given') else None,
            mfa_enabled=True,
            mfa_configured_at=now,
            mfa=MfaSettings.from_dict({
                'enforced_methods': list(ENFORCED_MFA_METHODS),
                'email': {'configured_at': challenge.verified_at or now, 'delivery': MFA_EMAIL},
                'otp': {
                    'configured_at': now,
                    'encrypted_secret': otp_setup['encrypted_secret'],
                    'issuer': issuer,
                    'account_name': otp_setup.get('account_name') or challenge.subject_id,
                },
            }),
        )
        # The first account ever stored becomes Admin
        self._users.create(user, first_user_role=ROLE_ADMIN)
        self._challenges.delete(challenge.id)

        self._ledger.append('user_registered', user_id=user.id,
                            metadata={'email': user.email, 'role': user.role})
        self._ledger.append('mfa_totp_configured', user_id=user.id,
                            metadata={'method': 'otp', 'issuer': issuer})
        return user.sanitized()
