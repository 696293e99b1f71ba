"""
Second-factor building blocks shared by the login and account flows.

- Email codes: an MfaChallenge (5 minutes, 5 attempts) whose code is
  mailed to the user
- TOTP enrollment: an OtpEnrollment holding an encrypted candidate
  secret until the user proves their app generates matching codes
- TOTP verification against the secret stored on the user
"""

import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

from ..errors import DeliveryFailureError
from ..integration.security_ledger import SecurityLedger
from ..notifications import EmailSender
from ..records import Challenge, User
from .challenges import ChallengeEvents, ChallengeMessages, ChallengeStore, generate_code
from .totp import TotpEngine, TotpSetup
from .users import UserRepository

logger = logging.getLogger(__name__)

MFA_CHALLENGE_TTL_SECONDS = 300
MFA_CHALLENGE_MAX_ATTEMPTS = 5
OTP_ENROLLMENT_TTL_SECONDS = 600
OTP_ENROLLMENT_MAX_ATTEMPTS = 5

MFA_CHALLENGE_EVENTS = ChallengeEvents(
    missing='mfa_challenge_missing',
    expired='mfa_code_expired',
    locked='mfa_challenge_locked',
    invalid='mfa_code_invalid',
)
MFA_CHALLENGE_MESSAGES = ChallengeMessages(
    missing="MFA challenge is invalid or has expired.",
    expired="MFA code expired. Request a new code.",
    locked="MFA code locked after too many invalid attempts.",
    invalid="Invalid MFA code.",
)

OTP_ENROLLMENT_EVENTS = ChallengeEvents(
    missing='mfa_totp_enrollment_missing',
    expired='mfa_totp_enrollment_expired',
    locked='mfa_totp_enrollment_locked',
    invalid='mfa_totp_invalid',
)
OTP_ENROLLMENT_MESSAGES = ChallengeMessages(
    missing="Authenticator enrollment is invalid or has expired.",
    expired="Authenticator enrollment expired. Start again.",
    locked="Authenticator enrollment locked after too many invalid attempts.",
    invalid="Invalid authenticator code.",
)


class MfaService:
    """Email codes, TOTP enrollment and TOTP checks for existing users."""

    def __init__(self, users: UserRepository,
                 email_challenges: ChallengeStore,
                 enrollments: ChallengeStore,
                 totp: TotpEngine,
                 ledger: SecurityLedger,
                 email_sender: EmailSender,
                 debug_mode: bool = False,
                 clock: Callable[[], float] = time.time):
        self._users = users
        self._email_challenges = email_challenges
        self._enrollments = enrollments
        self._totp = totp
        self._ledger = ledger
        self._email = email_sender
        self._debug_mode = debug_mode
        self._clock = clock

    @property
    def totp(self) -> TotpEngine:
        return self._totp

    # ========================================================================
    # Email codes
    # ========================================================================

    def send_email_challenge(self, user: User,
                             metadata: Optional[Dict[str, Any]] = None) -> Tuple[Challenge, Optional[str]]:
        """
        Create an MfaChallenge and mail its code.

        Returns:
            Tuple of (challenge, debug_code); debug_code is None unless
            debug mode is on

        Raises:
            DeliveryFailureError: If the email could not be sent; the
                challenge is deleted first
        """
        code = generate_code()
        challenge = self._email_challenges.create(user.id, code=code, metadata=metadata)

        try:
            self._email.send_mfa_code(user.email, code, challenge.expires_at)
        except Exception as exc:
            self._email_challenges.delete(challenge.id)
            logger.error("MFA code delivery failed for user %s: %s", user.id, exc)
            self._ledger.append('mfa_delivery_failed', user_id=user.id, metadata={'reason': str(exc)})
            raise DeliveryFailureError(
                "Could not send the MFA code. Try again in a moment.") from exc

        self._ledger.append('mfa_code_sent', user_id=user.id, metadata={'delivery': 'email'})
        return challenge, (code if self._debug_mode else None)

    def verify_email_challenge(self, challenge_id: Optional[str], code: Optional[str],
                               user_id: Optional[str] = None,
                               ip_address: Optional[str] = None) -> Challenge:
        """Single-use check of an emailed code (see ChallengeStore.verify)."""
        return self._email_challenges.verify(challenge_id, code, subject_id=user_id,
                                             ip_address=ip_address)

    # ========================================================================
    # TOTP
    # ========================================================================

    def otp_labels(self, user: User) -> Tuple[str, str]:
        """(issuer, account_name) shown in the authenticator app."""
        otp = user.otp
        issuer = (otp.issuer if otp and otp.issuer else None) or self._totp.issuer
        account_name = (otp.account_name if otp and otp.account_name else None) or user.email
        return issuer, account_name

    def has_otp(self, user: User) -> bool:
        """True only when the stored secret is present and still decrypts."""
        return user.otp is not None and self._totp.is_usable(user.otp.encrypted_secret)

    def otp_debug_code(self, user: User) -> Optional[str]:
        if user.otp is None:
            return None
        return self._totp.debug_code_for(user.otp.encrypted_secret)

    def verify_user_otp(self, user: User, code: Optional[str]) -> bool:
        if user.otp is None:
            return False
        return self._totp.verify_code(code, user.otp.encrypted_secret)

    def start_enrollment(self, user: User) -> Tuple[Challenge, TotpSetup, bool]:
        """
        Create an OtpEnrollment, or reuse the user's unexpired one.

        A reused enrollment keeps its secret (the user may already have
        scanned it); if it was locked its attempts start over.

        Returns:
            Tuple of (enrollment, setup, reused)
        """
        existing = self._enrollments.latest_for(user.id)
        if existing is not None and not existing.is_expired(self._clock()):
            payload = existing.payload
            setup = self._totp.recreate_setup(
                user.email,
                payload.get('encrypted_secret'),
                issuer=payload.get('issuer'),
                account_name=payload.get('account_name'),
            )
            if setup is not None:
                if existing.attempts >= self._enrollments.max_attempts:
                    existing = self._enrollments.update(existing.id, attempts=0)
                return existing, setup, True

        setup = self._totp.generate_setup(user.email)
        enrollment = self._enrollments.create(user.id, payload={
            'encrypted_secret': setup.encrypted_secret,
            'issuer': setup.issuer,
            'account_name': setup.account_name,
        })
        return enrollment, setup, False

    def complete_enrollment(self, user: User, enrollment_id: Optional[str], code: Optional[str],
                            ip_address: Optional[str] = None,
                            context: Optional[Dict[str, Any]] = None) -> User:
        """
        Verify the first code from a new authenticator and activate it.

        Raises:
            NotFoundError / ExpiredError / LockedError / InvalidCodeError:
                Per the enrollment challenge contract
        """
        enrollment = self._enrollments.verify(
            enrollment_id,
            check=lambda candidate: self._totp.verify_code(
                code, candidate.payload.get('encrypted_secret')),
            subject_id=user.id,
            ip_address=ip_address,
            context=context,
        )

        payload = enrollment.payload
        issuer = payload.get('issuer') or self._totp.issuer
        updated = self._users.activate_otp(
            user,
            payload['encrypted_secret'],
            issuer=issuer,
            account_name=payload.get('account_name') or user.email,
        )
        metadata = {'method': 'otp', 'issuer': issuer}
        metadata.update(context or {})
        self._ledger.append('mfa_totp_configured', user_id=user.id,
                            metadata=metadata, ip_address=ip_address)
        return updated
