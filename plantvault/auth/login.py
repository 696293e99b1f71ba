"""
User Login Flow

Password first, then a mandatory second factor:

    login()            -> LoginSession (10 minutes) + available MFA methods
    initiate_method()  -> 'email': code mailed (5 minutes)
                          'otp':   configured app, or a new enrollment
    complete_mfa()     -> tokens issued, session deleted

Unknown emails and wrong passwords look identical to the caller; the
difference is only visible in the security ledger. Session tokens are
minted exclusively through TokenLedger.issue_session_tokens().
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from ..errors import (
    ExpiredError,
    InvalidCodeError,
    InvalidCredentialsError,
    LockedError,
    NotFoundError,
    ValidationError,
)
from ..integration.security_ledger import SecurityLedger
from ..records import MFA_EMAIL, MFA_OTP, LoginSession, User, iso, new_id
from ..storage import LOGIN_SESSIONS, Query, Storage
from .mfa import MfaService
from .passwords import PasswordCodec
from .tokens import TokenLedger
from .users import UserRepository, normalize_email

logger = logging.getLogger(__name__)

LOGIN_SESSION_TTL_SECONDS = 600
INVALID_CREDENTIALS_MESSAGE = "Invalid credentials."


class LoginFlow:
    """
    Login and session lifecycle.

    Example:
        >>> started = flow.login("alice@example.com", "Str0ng!Pass")
        >>> flow.initiate_method(started['sessionId'], 'otp')
        >>> result = flow.complete_mfa(started['sessionId'], 'otp', code_from_app)
        >>> result['tokens']['access']['token']
    """

    def __init__(self, storage: Storage,
                 users: UserRepository,
                 passwords: PasswordCodec,
                 mfa: MfaService,
                 tokens: TokenLedger,
                 ledger: SecurityLedger,
                 session_ttl_seconds: int = LOGIN_SESSION_TTL_SECONDS,
                 clock: Callable[[], float] = time.time):
        self._storage = storage
        self._users = users
        self._passwords = passwords
        self._mfa = mfa
        self._tokens = tokens
        self._ledger = ledger
        self._session_ttl = session_ttl_seconds
        self._clock = clock

    # ========================================================================
    # Login sessions
    # ========================================================================

    def _create_session(self, user_id: str, password_expired: bool) -> LoginSession:
        now = self._clock()
        session = LoginSession(
            id=new_id(),
            user_id=user_id,
            password_expired=password_expired,
            created_at=now,
            updated_at=now,
            expires_at=now + self._session_ttl,
        )
        self._storage.upsert(LOGIN_SESSIONS, session.id, session.to_dict(), merge=False)
        return session

    def _update_session(self, session_id: str, **changes: Any) -> None:
        changes['updated_at'] = self._clock()
        self._storage.upsert(LOGIN_SESSIONS, session_id, changes)

    def _clear_session(self, session_id: Optional[str]) -> None:
        if session_id:
            self._storage.delete(LOGIN_SESSIONS, session_id)

    def _active_session(self, session_id: Optional[str]) -> LoginSession:
        doc = self._storage.get(LOGIN_SESSIONS, session_id) if session_id else None
        if doc is None:
            raise NotFoundError("MFA session is invalid or has expired.")
        session = LoginSession.from_dict(doc)
        if session.is_expired(self._clock()):
            self._clear_session(session.id)
            raise ExpiredError("Login session expired. Sign in again.")
        return session

    def _session_user(self, session: LoginSession) -> User:
        user = self._users.get(session.user_id)
        if user is None:
            self._clear_session(session.id)
            raise NotFoundError("User for this session no longer exists.")
        return user

    # ========================================================================
    # Flow
    # ========================================================================

    def login(self, email: str, password: str,
              ip_address: Optional[str] = None) -> Dict[str, Any]:
        """
        Check credentials and open an MFA session.

        Returns:
            Dict with mfaRequired, sessionId, expiresAt, passwordExpired
            and the available methods

        Raises:
            InvalidCredentialsError: Unknown email or wrong password
        """
        try:
            normalized = normalize_email(email)
        except ValidationError:
            normalized = None

        user = self._users.find_by_email(normalized) if normalized is not None else None
        if user is None:
            attempted = normalized or (email.strip().lower() if isinstance(email, str) else '')
            self._ledger.append('login_failed',
                                metadata={'reason': 'unknown_email', 'email': attempted},
                                ip_address=ip_address)
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)

        if not self._passwords.verify(password, user.password_hash):
            self._ledger.append('login_failed', user_id=user.id,
                                metadata={'reason': 'invalid_password'},
                                ip_address=ip_address)
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)

        password_expired = self._passwords.is_expired(user.password_expires_at)
        session = self._create_session(user.id, password_expired)

        otp_configured = self._mfa.has_otp(user)
        issuer, account_name = self._mfa.otp_labels(user)
        otp_method: Dict[str, Any] = {
            'configured': otp_configured,
            'enrollmentRequired': not otp_configured,
            'issuer': issuer,
            'accountName': account_name,
        }
        debug_code = self._mfa.otp_debug_code(user) if otp_configured else None
        if debug_code:
            otp_method['debugCode'] = debug_code

        self._ledger.append('mfa_session_created', user_id=user.id,
                            metadata={'session_id': session.id, 'password_expired': password_expired},
                            ip_address=ip_address)

        return {
            'mfaRequired': True,
            'sessionId': session.id,
            'expiresAt': iso(session.expires_at),
            'passwordExpired': password_expired,
            'methods': {
                MFA_EMAIL: {'delivery': 'email'},
                MFA_OTP: otp_method,
            },
        }

    def initiate_method(self, session_id: str, method: str,
                        ip_address: Optional[str] = None) -> Dict[str, Any]:
        """
        Start the chosen second factor for a login session.

        Args:
            session_id: Session returned by login()
            method: 'email' or 'otp'

        Raises:
            NotFoundError / ExpiredError: Unknown or expired session
            ValidationError: Unsupported method
            DeliveryFailureError: Email code could not be sent
        """
        session = self._active_session(session_id)
        user = self._session_user(session)

        if method == MFA_EMAIL:
            challenge, debug_code = self._mfa.send_email_challenge(
                user, metadata={'password_expired': session.password_expired})
            self._update_session(session.id, email_challenge={
                'id': challenge.id,
                'expires_at': challenge.expires_at,
            })
            self._ledger.append('mfa_email_requested', user_id=user.id,
                                metadata={'session_id': session.id, 'challenge_id': challenge.id},
                                ip_address=ip_address)
            return {
                'method': MFA_EMAIL,
                'challengeId': challenge.id,
                'expiresAt': iso(challenge.expires_at),
                'debugCode': debug_code,
            }

        if method == MFA_OTP:
            if self._mfa.has_otp(user):
                issuer, account_name = self._mfa.otp_labels(user)
                self._update_session(session.id, otp_enrollment=None)
                self._ledger.append('mfa_totp_challenge_requested', user_id=user.id,
                                    metadata={'session_id': session.id, 'configured': True},
                                    ip_address=ip_address)
                result = {
                    'method': MFA_OTP,
                    'configured': True,
                    'issuer': issuer,
                    'accountName': account_name,
                }
                debug_code = self._mfa.otp_debug_code(user)
                if debug_code:
                    result['debugCode'] = debug_code
                return result

            enrollment, setup, reused = self._mfa.start_enrollment(user)
            self._update_session(session.id, otp_enrollment={
                'id': enrollment.id,
                'expires_at': enrollment.expires_at,
            })
            self._ledger.append('mfa_totp_enrollment_started', user_id=user.id,
                                metadata={'session_id': session.id,
                                          'enrollment_id': enrollment.id,
                                          'reused': reused},
                                ip_address=ip_address)
            result = {'method': MFA_OTP, 'configured': False, 'enrollmentId': enrollment.id}
            result.update(setup.to_public())
            result['expiresAt'] = iso(enrollment.expires_at)
            return result

        raise ValidationError("Invalid MFA method.")

    def complete_mfa(self, session_id: str, method: str, code: str,
                     otp_enrollment_id: Optional[str] = None,
                     ip_address: Optional[str] = None) -> Dict[str, Any]:
        """
        Verify the second factor and issue session tokens.

        Returns:
            Dict with the sanitized 'user', 'tokens' {access, refresh} and
            'passwordExpired'

        Raises:
            NotFoundError / ExpiredError: Unknown or expired session
            ValidationError: Unsupported method, or nothing to verify against
            NotFoundError / ExpiredError / LockedError / InvalidCodeError:
                From the underlying challenge or enrollment
        """
        session = self._active_session(session_id)
        user = self._session_user(session)
        password_expired = session.password_expired

        if method == MFA_EMAIL:
            challenge_id = (session.email_challenge or {}).get('id')
            if not challenge_id:
                raise ValidationError("Request a new email code first.")
            challenge = self._mfa.verify_email_challenge(challenge_id, code, user_id=user.id,
                                                         ip_address=ip_address)
            password_expired = bool(challenge.metadata.get('password_expired', password_expired))

        elif method == MFA_OTP:
            enrollment_id = otp_enrollment_id or (session.otp_enrollment or {}).get('id')
            if enrollment_id:
                try:
                    user = self._mfa.complete_enrollment(user, enrollment_id, code,
                                                         ip_address=ip_address)
                except (NotFoundError, ExpiredError, LockedError):
                    self._clear_session(session.id)
                    raise
            else:
                if not self._mfa.has_otp(user):
                    raise ValidationError("No authenticator configured for this user.")
                if not self._mfa.verify_user_otp(user, code):
                    self._ledger.append('mfa_totp_invalid', user_id=user.id,
                                        metadata={'method': MFA_OTP}, ip_address=ip_address)
                    raise InvalidCodeError("Invalid authenticator code.")
        else:
            raise ValidationError("Invalid MFA method.")

        user = self._users.update(user.id, last_login_at=self._clock())
        tokens = self._tokens.issue_session_tokens(user)

        self._ledger.append('mfa_verified', user_id=user.id,
                            metadata={'method': method}, ip_address=ip_address)
        self._ledger.append('login_success', user_id=user.id,
                            metadata={'password_expired': password_expired}, ip_address=ip_address)
        self._clear_session(session.id)

        return {
            'user': user.sanitized(),
            'tokens': tokens.to_dict(),
            'passwordExpired': password_expired,
        }

    # ========================================================================
    # Established sessions
    # ========================================================================

    def refresh_session(self, refresh_token: str) -> Dict[str, Any]:
        """
        Exchange a valid refresh token for a new token pair.

        The presented refresh token is checked and revoked atomically, so
        each one works once even when presented twice at the same moment.

        Raises:
            InvalidTokenError: Refresh token rejected
            NotFoundError: The user no longer exists
        """
        payload = self._tokens.rotate_refresh_token(refresh_token)
        user = self._users.require(payload['sub'])

        tokens = self._tokens.issue_session_tokens(user)
        self._ledger.append('session_refreshed', user_id=user.id)
        return {'user': user.sanitized(), 'tokens': tokens.to_dict()}

    def revoke_session(self, refresh_token: Optional[str] = None,
                       access_jti: Optional[str] = None,
                       user_id: Optional[str] = None,
                       access_expires_at: Optional[float] = None) -> Dict[str, Any]:
        """
        Log out: revoke the refresh token and blacklist the access token jti.

        Unknown refresh tokens are ignored.
        """
        if refresh_token:
            self._tokens.revoke_refresh_token(refresh_token)
        if access_jti and user_id:
            self._tokens.revoke_access_token_by_jti(access_jti, user_id, access_expires_at)

        self._ledger.append('session_revoked', user_id=user_id, metadata={
            'has_refresh_token': bool(refresh_token),
            'access_jti': access_jti,
        })
        return {'revoked': True}

    def cleanup_expired(self) -> int:
        """Delete login sessions past their expires_at."""
        return self._storage.delete_where(
            LOGIN_SESSIONS, Query().where('expires_at', '<=', self._clock())
        )
