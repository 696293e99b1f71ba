"""
User persistence.

Wraps the 'users' collection: typed User records in and out, email
uniqueness enforced at write time, MFA activation.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from ..errors import ConflictError, NotFoundError, ValidationError
from ..records import ENFORCED_MFA_METHODS, MFA_EMAIL, User
from ..storage import USERS, Query, Storage

logger = logging.getLogger(__name__)


def normalize_email(email: Optional[str]) -> str:
    """
    Canonical form used for lookups and uniqueness: trimmed, lower-case.

    Raises:
        ValidationError: If the value is not an email address
    """
    if not isinstance(email, str):
        raise ValidationError("Email is required.")
    normalized = email.strip().lower()
    local, _, domain = normalized.partition('@')
    if not local or not domain or ' ' in normalized:
        raise ValidationError("Invalid email address.")
    return normalized


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class UserRepository:
    """Typed access to user records."""

    def __init__(self, storage: Storage, clock: Callable[[], float] = time.time):
        self._storage = storage
        self._clock = clock

    def get(self, user_id: Optional[str]) -> Optional[User]:
        if not user_id:
            return None
        doc = self._storage.get(USERS, user_id)
        return User.from_dict(doc) if doc else None

    def require(self, user_id: Optional[str]) -> User:
        """
        Raises:
            NotFoundError: If the user does not exist
        """
        user = self.get(user_id)
        if user is None:
            raise NotFoundError("User not found.")
        return user

    def find_by_email(self, email: str) -> Optional[User]:
        doc = self._storage.find_one(USERS, Query().where('email', '==', normalize_email(email)))
        return User.from_dict(doc) if doc else None

    def list_all(self) -> List[User]:
        """Newest accounts first."""
        docs = self._storage.find(USERS, Query().order_by('created_at', 'desc'))
        return [User.from_dict(doc) for doc in docs]

    def create(self, user: User, first_user_role: Optional[str] = None) -> User:
        """
        Insert a new user.

        The email check, the first-account check and the insert share one
        transaction.

        Args:
            user: Account to store
            first_user_role: Role given instead of user.role when no other
                account exists yet

        Raises:
            ConflictError: If the email is already registered
        """
        with self._storage.transaction() as store:
            clash = store.find_one(USERS, Query().where('email', '==', user.email))
            if clash is not None:
                raise ConflictError("Email already registered.")
            if first_user_role is not None and store.count(USERS) == 0:
                user.role = first_user_role
            store.upsert(USERS, user.id, user.to_dict(), merge=False)
        logger.info("User %s created with role %s", user.id, user.role)
        return user

    def update(self, user_id: str, **changes: Any) -> User:
        changes['updated_at'] = self._clock()
        return User.from_dict(self._storage.upsert(USERS, user_id, changes))

    def activate_otp(self, user: User, encrypted_secret: Dict[str, str],
                     issuer: str, account_name: str) -> User:
        """
        Promote a verified authenticator secret into the user record and
        enforce both MFA methods.
        """
        now = self._clock()
        email_configured_at = (user.mfa.email.configured_at
                               if user.mfa.email and user.mfa.email.configured_at
                               else user.created_at)
        return self.update(
            user.id,
            mfa_enabled=True,
            mfa_configured_at=now,
            mfa={
                'enforced_methods': list(ENFORCED_MFA_METHODS),
                'email': {'configured_at': email_configured_at, 'delivery': MFA_EMAIL},
                'otp': {
                    'configured_at': now,
                    'encrypted_secret': dict(encrypted_secret),
                    'issuer': issuer,
                    'account_name': account_name,
                },
            },
        )

    def update_profile(self, user: User, full_name: Optional[str], phone: Optional[str],
                       consent_given: Optional[bool]) -> User:
        consent = bool(consent_given)
        changes: Dict[str, Any] = {
            'full_name': _clean_text(full_name),
            'phone': _clean_text(phone),
            'consent_given': consent,
        }
        if consent:
            changes['consent_timestamp'] = user.consent_timestamp or self._clock()
        return self.update(user.id, **changes)
