"""
Authentication Service

Single entry point that wires storage, crypto, challenges, tokens and
the security ledger into the registration, login and account flows.
A routing layer talks only to AuthService (usually through
errors.dispatch).
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from ..config import Settings
from ..crypto import SecretCipher
from ..integration.security_ledger import SecurityLedger
from ..notifications import EmailSender, create_email_sender
from ..storage import MFA_CHALLENGES, OTP_ENROLLMENTS, REGISTRATION_CHALLENGES, Storage
from .account import AccountManager
from .challenges import ChallengeStore
from .login import LoginFlow
from .mfa import (
    MFA_CHALLENGE_EVENTS,
    MFA_CHALLENGE_MAX_ATTEMPTS,
    MFA_CHALLENGE_MESSAGES,
    MFA_CHALLENGE_TTL_SECONDS,
    OTP_ENROLLMENT_EVENTS,
    OTP_ENROLLMENT_MAX_ATTEMPTS,
    OTP_ENROLLMENT_MESSAGES,
    OTP_ENROLLMENT_TTL_SECONDS,
    MfaService,
)
from .passwords import PasswordCodec
from .registration import (
    REGISTRATION_EMAIL_EVENTS,
    REGISTRATION_MAX_ATTEMPTS,
    REGISTRATION_MESSAGES,
    REGISTRATION_TTL_SECONDS,
    RegistrationFlow,
)
from .tokens import TokenLedger
from .totp import TotpEngine
from .users import UserRepository

logger = logging.getLogger(__name__)


class AuthService:
    """
    Facade over every authentication operation.

    Args:
        settings: Runtime settings (secrets, TTLs, MFA options)
        storage: Document store; its lifecycle is driven by initialize()/close()
        email_sender: Outbound email (default: chosen from settings)
        clock: Time source in epoch seconds

    Raises:
        ValueError: If no TOTP encryption key is configured

    Example:
        >>> service = AuthService(Settings.from_env(), MemoryStorage())
        >>> service.initialize()
        >>> started = service.register("a@b.com", "Str0ng!Pass")
    """

    def __init__(self, settings: Settings, storage: Storage,
                 email_sender: Optional[EmailSender] = None,
                 clock: Callable[[], float] = time.time):
        self.settings = settings
        self.storage = storage
        self.email_sender = email_sender or create_email_sender(settings)
        self._clock = clock
        debug_mode = settings.mfa_debug_mode

        self.ledger = SecurityLedger(storage, clock=clock)
        self.users = UserRepository(storage, clock=clock)
        self.passwords = PasswordCodec.from_settings(settings, clock=clock)
        self.tokens = TokenLedger.from_settings(settings, storage, self.ledger, clock=clock)
        self.totp = TotpEngine(
            SecretCipher(settings.mfa_totp_encryption_key),
            issuer=settings.mfa_issuer,
            debug_mode=debug_mode,
            clock=clock,
        )

        self.registration_challenges = ChallengeStore(
            storage, REGISTRATION_CHALLENGES,
            ttl_seconds=REGISTRATION_TTL_SECONDS,
            max_attempts=REGISTRATION_MAX_ATTEMPTS,
            ledger=self.ledger,
            events=REGISTRATION_EMAIL_EVENTS,
            subject_kind='email',
            messages=REGISTRATION_MESSAGES,
            clock=clock,
        )
        self.mfa_challenges = ChallengeStore(
            storage, MFA_CHALLENGES,
            ttl_seconds=MFA_CHALLENGE_TTL_SECONDS,
            max_attempts=MFA_CHALLENGE_MAX_ATTEMPTS,
            ledger=self.ledger,
            events=MFA_CHALLENGE_EVENTS,
            messages=MFA_CHALLENGE_MESSAGES,
            clock=clock,
        )
        self.otp_enrollments = ChallengeStore(
            storage, OTP_ENROLLMENTS,
            ttl_seconds=OTP_ENROLLMENT_TTL_SECONDS,
            max_attempts=OTP_ENROLLMENT_MAX_ATTEMPTS,
            ledger=self.ledger,
            events=OTP_ENROLLMENT_EVENTS,
            messages=OTP_ENROLLMENT_MESSAGES,
            clock=clock,
        )

        self.mfa = MfaService(self.users, self.mfa_challenges, self.otp_enrollments,
                              self.totp, self.ledger, self.email_sender,
                              debug_mode=debug_mode, clock=clock)
        self.registration = RegistrationFlow(self.users, self.registration_challenges,
                                             self.passwords, self.totp, self.ledger,
                                             self.email_sender, debug_mode=debug_mode,
                                             clock=clock)
        self.login_flow = LoginFlow(storage, self.users, self.passwords, self.mfa,
                                    self.tokens, self.ledger, clock=clock)
        self.accounts = AccountManager(self.users, self.passwords, self.mfa, self.tokens,
                                       self.ledger, self.email_sender,
                                       password_reset_url=settings.password_reset_url,
                                       clock=clock)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def initialize(self) -> None:
        """Open the storage backend. Call once before serving requests."""
        self.storage.initialize()
        logger.info("Auth service ready (storage=%s, debug_mode=%s)",
                    type(self.storage).__name__, self.settings.mfa_debug_mode)

    def close(self) -> None:
        self.storage.close()

    def cleanup_expired(self) -> Dict[str, int]:
        """
        Delete every expired token, challenge, enrollment and login session.

        Idempotent. Expiry is still checked on every read, so skipping a
        sweep never makes stale records valid.

        Returns:
            Deleted row count per collection
        """
        counts = {
            'tokens': self.tokens.cleanup_expired(),
            MFA_CHALLENGES: self.mfa_challenges.cleanup_expired(),
            REGISTRATION_CHALLENGES: self.registration_challenges.cleanup_expired(),
            OTP_ENROLLMENTS: self.otp_enrollments.cleanup_expired(),
            'login_sessions': self.login_flow.cleanup_expired(),
        }
        total = sum(counts.values())
        if total:
            logger.info("Expired records removed: %s", counts)
        return counts

    # ========================================================================
    # Registration
    # ========================================================================

    def register(self, email: str, password: str, full_name: Optional[str] = None,
                 phone: Optional[str] = None, consent: bool = False) -> Dict[str, Any]:
        return self.registration.register(email, password, full_name=full_name,
                                          phone=phone, consent=consent)

    def confirm_registration_email(self, challenge_id: str, code: str,
                                   ip_address: Optional[str] = None) -> Dict[str, Any]:
        return self.registration.confirm_email(challenge_id, code, ip_address=ip_address)

    def finalize_registration(self, challenge_id: str, otp_code: str,
                              ip_address: Optional[str] = None) -> Dict[str, Any]:
        return self.registration.finalize(challenge_id, otp_code, ip_address=ip_address)

    # ========================================================================
    # Login and sessions
    # ========================================================================

    def login(self, email: str, password: str,
              ip_address: Optional[str] = None) -> Dict[str, Any]:
        return self.login_flow.login(email, password, ip_address=ip_address)

    def initiate_mfa(self, session_id: str, method: str,
                     ip_address: Optional[str] = None) -> Dict[str, Any]:
        return self.login_flow.initiate_method(session_id, method, ip_address=ip_address)

    def complete_mfa(self, session_id: str, method: str, code: str,
                     otp_enrollment_id: Optional[str] = None,
                     ip_address: Optional[str] = None) -> Dict[str, Any]:
        return self.login_flow.complete_mfa(session_id, method, code,
                                            otp_enrollment_id=otp_enrollment_id,
                                            ip_address=ip_address)

    def refresh_session(self, refresh_token: str) -> Dict[str, Any]:
        return self.login_flow.refresh_session(refresh_token)

    def revoke_session(self, refresh_token: Optional[str] = None,
                       access_jti: Optional[str] = None,
                       user_id: Optional[str] = None,
                       access_expires_at: Optional[float] = None) -> Dict[str, Any]:
        return self.login_flow.revoke_session(refresh_token=refresh_token,
                                              access_jti=access_jti, user_id=user_id,
                                              access_expires_at=access_expires_at)

    def authenticate(self, authorization_header: Optional[str]) -> Dict[str, Any]:
        return self.accounts.authenticate(authorization_header)

    # ========================================================================
    # Account
    # ========================================================================

    def request_password_change_code(self, user_id: str) -> Dict[str, Any]:
        return self.accounts.request_password_change_code(user_id)

    def change_password(self, user_id: str, current_password: str, new_password: str,
                        otp_code: Optional[str] = None,
                        challenge_id: Optional[str] = None,
                        code: Optional[str] = None,
                        ip_address: Optional[str] = None) -> Dict[str, Any]:
        return self.accounts.change_password(user_id, current_password, new_password,
                                             otp_code=otp_code, challenge_id=challenge_id,
                                             code=code, ip_address=ip_address)

    def request_password_reset(self, email: str) -> Dict[str, Any]:
        return self.accounts.request_password_reset(email)

    def confirm_password_reset(self, token: str, new_password: str) -> Dict[str, Any]:
        return self.accounts.confirm_password_reset(token, new_password)

    def start_otp_enrollment(self, user_id: str) -> Dict[str, Any]:
        return self.accounts.start_otp_enrollment(user_id)

    def complete_otp_enrollment(self, user_id: str, enrollment_id: str, code: str,
                                ip_address: Optional[str] = None) -> Dict[str, Any]:
        return self.accounts.complete_otp_enrollment(user_id, enrollment_id, code,
                                                     ip_address=ip_address)

    def get_profile(self, user_id: str) -> Dict[str, Any]:
        return self.accounts.get_profile(user_id)

    def update_profile(self, user_id: str, full_name: Optional[str] = None,
                       phone: Optional[str] = None,
                       consent_given: Optional[bool] = None) -> Dict[str, Any]:
        return self.accounts.update_profile(user_id, full_name=full_name, phone=phone,
                                            consent_given=consent_given)

    def request_data_deletion(self, user_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        return self.accounts.request_data_deletion(user_id, reason=reason)

    def list_users(self, actor_id: str) -> List[Dict[str, Any]]:
        return self.accounts.list_users(actor_id)

    def update_user_role(self, actor_id: str, target_id: str, role: str) -> Dict[str, Any]:
        return self.accounts.update_user_role(actor_id, target_id, role)

    # ========================================================================
    # Security log
    # ========================================================================

    def list_security_logs(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent ledger entries, newest first."""
        return [entry.to_public() for entry in self.ledger.list(limit)]

    def verify_security_log(self) -> Dict[str, Any]:
        return self.ledger.verify_chain()
