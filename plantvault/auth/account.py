"""
Account Management

Operations on an existing account once it is authenticated (or, for the
reset link, once it proves control of its mailbox):

- password change (current password + fresh MFA proof)
- password reset by emailed single-use link
- self-service authenticator enrollment
- profile, consent and data-deletion requests
- role administration (Admin only)
- bearer-token authentication
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from ..errors import (
    ConflictError,
    ForbiddenError,
    InvalidCodeError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from ..integration.security_ledger import SecurityLedger
from ..notifications import EmailSender
from ..records import ROLE_ADMIN, ROLE_USER, MFA_EMAIL, MFA_OTP, iso
from .mfa import MfaService
from .passwords import PasswordCodec
from .tokens import TokenLedger
from .users import UserRepository, normalize_email

logger = logging.getLogger(__name__)

BEARER_PREFIX = 'bearer '
SELF_SERVICE_CONTEXT = {'context': 'self_service'}


class AccountManager:
    """
    Authenticated account operations.

    Example:
        >>> principal = accounts.authenticate("Bearer " + access_token)
        >>> code = accounts.request_password_change_code(principal['id'])
        >>> accounts.change_password(principal['id'], "Old!Pass1", "N3w!Pass",
        ...                          challenge_id=code['challengeId'], code=emailed_code)
    """

    def __init__(self, users: UserRepository,
                 passwords: PasswordCodec,
                 mfa: MfaService,
                 tokens: TokenLedger,
                 ledger: SecurityLedger,
                 email_sender: EmailSender,
                 password_reset_url: str,
                 clock: Callable[[], float] = time.time):
        self._users = users
        self._passwords = passwords
        self._mfa = mfa
        self._tokens = tokens
        self._ledger = ledger
        self._email = email_sender
        self._reset_url = password_reset_url
        self._clock = clock

    def _set_password(self, user_id: str, new_password: str):
        now = self._clock()
        return self._users.update(
            user_id,
            password_hash=self._passwords.hash(new_password),
            last_password_change=now,
            password_expires_at=self._passwords.compute_expiry(now),
        )

    # ========================================================================
    # Password change
    # ========================================================================

    def request_password_change_code(self, user_id: str) -> Dict[str, Any]:
        """Email a code that can authorize a password change."""
        user = self._users.require(user_id)
        challenge, debug_code = self._mfa.send_email_challenge(
            user, metadata={'action': 'password_change'})
        return {
            'challengeId': challenge.id,
            'expiresAt': iso(challenge.expires_at),
            'debugCode': debug_code,
        }

    def change_password(self, user_id: str, current_password: str, new_password: str,
                        otp_code: Optional[str] = None,
                        challenge_id: Optional[str] = None,
                        code: Optional[str] = None,
                        ip_address: Optional[str] = None) -> Dict[str, Any]:
        """
        Replace the password after two proofs: current password and MFA.

        MFA is either a current authenticator code (otp_code) or an
        emailed code (challenge_id + code). Outstanding refresh tokens are
        left valid.

        Raises:
            InvalidCredentialsError: No MFA proof, or wrong current password
            ConflictError: otp_code given but no authenticator configured
            InvalidCodeError: Wrong authenticator code
            NotFoundError / ExpiredError / LockedError / InvalidCodeError:
                From the email challenge
            ValidationError: New password fails the policy
        """
        user = self._users.require(user_id)

        if otp_code:
            if not self._mfa.has_otp(user):
                raise ConflictError("No authenticator configured for this account.")
            if not self._mfa.verify_user_otp(user, otp_code):
                self._ledger.append('mfa_totp_invalid', user_id=user.id,
                                    metadata={'method': MFA_OTP, 'action': 'password_change'},
                                    ip_address=ip_address)
                raise InvalidCodeError("Invalid authenticator code.")
            verification_method = MFA_OTP
        elif challenge_id and code:
            self._mfa.verify_email_challenge(challenge_id, code, user_id=user.id,
                                             ip_address=ip_address)
            verification_method = MFA_EMAIL
        else:
            raise InvalidCredentialsError("Confirm the operation with MFA before changing the password.")

        if not self._passwords.verify(current_password, user.password_hash):
            self._ledger.append('password_change_failed', user_id=user.id,
                                metadata={'reason': 'invalid_password'}, ip_address=ip_address)
            raise InvalidCredentialsError("Current password is incorrect.")

        if not new_password:
            raise ValidationError("New password is required.")
        self._passwords.validate_complexity(new_password)

        updated = self._set_password(user.id, new_password)
        self._ledger.append('password_changed', user_id=user.id,
                            metadata={'verification_method': verification_method},
                            ip_address=ip_address)
        return {'passwordExpiresAt': iso(updated.password_expires_at)}

    # ========================================================================
    # Password reset
    # ========================================================================

    def request_password_reset(self, email: str) -> Dict[str, Any]:
        """
        Email a reset link if the account exists.

        The response is the same whether or not it does. A failed delivery
        discards the token and is only visible in the logs and ledger.
        """
        try:
            normalized = normalize_email(email)
        except ValidationError:
            normalized = None

        user = self._users.find_by_email(normalized) if normalized else None
        if user is None:
            self._ledger.append('password_reset_requested',
                                metadata={'email': normalized, 'outcome': 'unknown_user'})
            return {'delivered': True}

        raw_token, expires_at = self._tokens.issue_password_reset_token(user.id)
        reset_link = f"{self._reset_url}?token={raw_token}"

        try:
            self._email.send_password_reset(user.email, reset_link, expires_at)
        except Exception as exc:
            self._tokens.consume_password_reset_token(raw_token)
            logger.error("Password reset delivery failed for user %s: %s", user.id, exc)
            self._ledger.append('password_reset_delivery_failed', user_id=user.id,
                                metadata={'reason': str(exc)})
            return {'delivered': True}

        self._ledger.append('password_reset_requested', user_id=user.id,
                            metadata={'expires_at': iso(expires_at)})
        return {'delivered': True}

    def confirm_password_reset(self, token: str, new_password: str) -> Dict[str, Any]:
        """
        Set a new password using a reset link token.

        The password is checked before the token is spent, so a policy
        failure leaves the link usable.

        Raises:
            ValidationError: New password fails the policy
            InvalidTokenError: Unknown, used or expired token
            NotFoundError: The account no longer exists
        """
        if not new_password:
            raise ValidationError("New password is required.")
        self._passwords.validate_complexity(new_password)

        record = self._tokens.consume_password_reset_token(token)
        user = self._users.get(record.user_id)
        if user is None:
            raise NotFoundError("User not found.")

        updated = self._set_password(user.id, new_password)
        self._ledger.append('password_reset_completed', user_id=user.id)
        return {'passwordExpiresAt': iso(updated.password_expires_at)}

    # ========================================================================
    # Self-service authenticator enrollment
    # ========================================================================

    def start_otp_enrollment(self, user_id: str) -> Dict[str, Any]:
        user = self._users.require(user_id)
        enrollment, setup, reused = self._mfa.start_enrollment(user)
        self._ledger.append('mfa_totp_enrollment_started', user_id=user.id, metadata={
            'context': 'self_service',
            'enrollment_id': enrollment.id,
            'reused': reused,
        })
        result = {'enrollmentId': enrollment.id, 'expiresAt': iso(enrollment.expires_at)}
        result.update(setup.to_public())
        return result

    def complete_otp_enrollment(self, user_id: str, enrollment_id: str, code: str,
                                ip_address: Optional[str] = None) -> Dict[str, Any]:
        """
        Activate a new authenticator, replacing any previous one.

        Returns:
            The sanitized user
        """
        user = self._users.require(user_id)
        updated = self._mfa.complete_enrollment(user, enrollment_id, code,
                                                ip_address=ip_address,
                                                context=dict(SELF_SERVICE_CONTEXT))
        return updated.sanitized()

    # ========================================================================
    # Profile
    # ========================================================================

    def get_profile(self, user_id: str) -> Dict[str, Any]:
        return self._users.require(user_id).sanitized()

    def update_profile(self, user_id: str, full_name: Optional[str] = None,
                       phone: Optional[str] = None,
                       consent_given: Optional[bool] = None) -> Dict[str, Any]:
        """
        Replace name, phone and consent.

        The consent timestamp is set the first time consent is given and
        kept afterwards.
        """
        user = self._users.require(user_id)
        updated = self._users.update_profile(user, full_name, phone, consent_given)
        self._ledger.append('user_profile_updated', user_id=user.id,
                            metadata={'consent_given': updated.consent_given})
        return updated.sanitized()

    def request_data_deletion(self, user_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        user = self._users.require(user_id)
        self._users.update(user.id, deletion_requested=True)
        self._ledger.append('data_deletion_requested', user_id=user.id,
                            metadata={'reason': reason})
        return {'deletionRequested': True}

    # ========================================================================
    # Administration
    # ========================================================================

    def _require_admin(self, actor_id: str, message: str) -> None:
        actor = self._users.get(actor_id)
        if actor is None or not actor.is_admin:
            raise ForbiddenError(message)

    def list_users(self, actor_id: str) -> List[Dict[str, Any]]:
        """All accounts, newest first (Admin only)."""
        self._require_admin(actor_id, "Only administrators can list users.")
        return [user.sanitized() for user in self._users.list_all()]

    def update_user_role(self, actor_id: str, target_id: str, role: str) -> Dict[str, Any]:
        """
        Set a user's role. Anything other than 'Admin' means 'User'.

        Raises:
            ForbiddenError: Actor is not currently an Admin
            NotFoundError: Unknown target
        """
        normalized_role = ROLE_ADMIN if role == ROLE_ADMIN else ROLE_USER
        self._require_admin(actor_id, "Only administrators can change access roles.")

        target = self._users.require(target_id)
        updated = self._users.update(target.id, role=normalized_role)
        self._ledger.append('user_role_updated', user_id=target.id,
                            metadata={'actor_id': actor_id, 'role': normalized_role})
        return updated.sanitized()

    # ========================================================================
    # Bearer authentication
    # ========================================================================

    def authenticate(self, authorization_header: Optional[str]) -> Dict[str, Any]:
        """
        Resolve 'Bearer <access token>' to the calling user.

        Returns:
            Dict with id, email, role, jti, requiresPasswordReset, profile

        Raises:
            InvalidTokenError: Missing/malformed header, rejected token, or
                the user no longer exists
        """
        header = (authorization_header or '').strip()
        if not header.lower().startswith(BEARER_PREFIX):
            raise InvalidTokenError("Authentication token missing.")
        token = header[len(BEARER_PREFIX):].strip()
        if not token:
            raise InvalidTokenError("Authentication token missing.")

        payload = self._tokens.verify_access_token(token)
        user = self._users.get(payload['sub'])
        if user is None:
            raise InvalidTokenError("User no longer exists.")

        return {
            'id': user.id,
            'email': user.email,
            'role': user.role,
            'jti': payload['jti'],
            'expiresAt': iso(payload['exp']),
            'requiresPasswordReset': self._passwords.is_expired(user.password_expires_at),
            'profile': {
                'fullName': user.full_name,
                'phone': user.phone,
                'consentGiven': user.consent_given,
                'consentTimestamp': iso(user.consent_timestamp),
            },
        }
