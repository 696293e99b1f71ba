"""
Password Hashing and Lifecycle

Argon2id hashing (argon2-cffi) plus the expiry clock that forces users
to rotate their password every `password_expiry_days`.

Security considerations:
- Never store plaintext passwords
- Verification goes through argon2's own constant-time compare
- Salt is automatically handled by argon2-cffi
"""

import re
import time
from typing import Callable, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from ..errors import ValidationError

SECONDS_PER_DAY = 24 * 60 * 60

# Argon2id parameters
# - time_cost and memory_cost come from Settings so tests can run cheaply
ARGON2_PARALLELISM = 4
ARGON2_HASH_LEN = 32
ARGON2_SALT_LEN = 16

PASSWORD_POLICY_REGEX = re.compile(r'^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[^A-Za-z0-9]).{8,}$')
PASSWORD_POLICY_MESSAGE = (
    "Password must be at least 8 characters long and include an uppercase letter, "
    "a lowercase letter, a number and a special character."
)


def is_password_compliant(password: Optional[str]) -> bool:
    """Check a password against the complexity policy."""
    return bool(PASSWORD_POLICY_REGEX.match(password or ''))


class PasswordCodec:
    """
    Hash, verify and age passwords.

    Example:
        >>> codec = PasswordCodec(expiry_days=90)
        >>> stored = codec.hash("Str0ng!Pass")
        >>> codec.verify("Str0ng!Pass", stored)
        True
    """

    def __init__(self, expiry_days: int = 90,
                 enforce_policy: bool = True,
                 time_cost: int = 3,
                 memory_cost: int = 65536,
                 clock: Callable[[], float] = time.time):
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=ARGON2_PARALLELISM,
            hash_len=ARGON2_HASH_LEN,
            salt_len=ARGON2_SALT_LEN,
            type=Type.ID,
        )
        self._expiry_days = expiry_days
        self._enforce_policy = enforce_policy
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], float] = time.time) -> 'PasswordCodec':
        return cls(
            expiry_days=settings.password_expiry_days,
            enforce_policy=settings.enforce_password_policy,
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            clock=clock,
        )

    @property
    def expiry_days(self) -> int:
        return self._expiry_days

    def hash(self, plaintext: str) -> str:
        """
        Hash a password using Argon2id.

        The resulting string embeds the algorithm parameters and salt.
        """
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, password_hash: Optional[str]) -> bool:
        """
        Verify a password against a stored hash.

        Returns:
            True if the password matches, False on mismatch or a malformed hash
        """
        if not plaintext or not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            return False

    def compute_expiry(self, now: Optional[float] = None) -> float:
        """Timestamp after which a password set at `now` must be changed."""
        if now is None:
            now = self._clock()
        return now + self._expiry_days * SECONDS_PER_DAY

    def is_expired(self, expires_at: Optional[float], now: Optional[float] = None) -> bool:
        """A null expiry never expires."""
        if expires_at is None:
            return False
        if now is None:
            now = self._clock()
        return expires_at <= now

    def validate_complexity(self, plaintext: str) -> None:
        """
        Enforce the complexity policy (when enabled).

        Raises:
            ValidationError: With the user-facing policy message
        """
        if self._enforce_policy and not is_password_compliant(plaintext):
            raise ValidationError(PASSWORD_POLICY_MESSAGE)
