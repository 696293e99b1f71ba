"""
Server-side Challenges

One expiring, attempt-limited, single-use challenge abstraction shared by
registration email codes, login MFA codes and TOTP enrollments.

State machine:
    CREATED --correct code, not expired, attempts < max--> CONSUMED (deleted)
    CREATED --expires_at <= now--> EXPIRED (deleted on access)
    CREATED --wrong code--> CREATED (attempts + 1)
    CREATED --attempts >= max--> LOCKED (deleted on access)

Codes are only stored as SHA-256 digests. Every rejection is written to
the security ledger before the error reaches the caller.
"""

import hmac
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ..errors import ExpiredError, InvalidCodeError, LockedError, NotFoundError
from ..integration.security_ledger import SecurityLedger
from ..records import Challenge, new_id
from ..storage import Query, Storage
from .tokens import hash_token

logger = logging.getLogger(__name__)

CODE_DIGITS = 6


def generate_code(digits: int = CODE_DIGITS) -> str:
    """Uniformly random numeric code, zero padded."""
    return str(secrets.randbelow(10 ** digits)).zfill(digits)


@dataclass(frozen=True)
class ChallengeEvents:
    """Security ledger action names for each rejection outcome."""
    missing: str
    expired: str
    locked: str
    invalid: str


@dataclass(frozen=True)
class ChallengeMessages:
    """Caller-facing messages for each rejection outcome."""
    missing: str = "Challenge is invalid or has expired."
    expired: str = "Code expired. Request a new one."
    locked: str = "Too many invalid attempts. Start again."
    invalid: str = "Invalid verification code."


class ChallengeStore:
    """
    Expiring, attempt-limited, single-use challenges in one collection.

    Args:
        storage: Document store
        collection: Collection holding this kind of challenge
        ttl_seconds: Lifetime from creation
        max_attempts: Failed attempts tolerated before lockout
        ledger: Security ledger for rejection events
        events: Action names for rejections
        subject_kind: 'user' when subject_id is a user id, 'email' when it
            is a pending email address (registration)
        messages: Caller-facing error messages
        clock: Time source
    """

    def __init__(self, storage: Storage, collection: str, *,
                 ttl_seconds: int,
                 max_attempts: int,
                 ledger: SecurityLedger,
                 events: ChallengeEvents,
                 subject_kind: str = 'user',
                 messages: Optional[ChallengeMessages] = None,
                 clock: Callable[[], float] = time.time):
        self._storage = storage
        self._collection = collection
        self._ttl = ttl_seconds
        self._max_attempts = max_attempts
        self._ledger = ledger
        self._events = events
        self._subject_kind = subject_kind
        self._messages = messages or ChallengeMessages()
        self._clock = clock

    @property
    def collection(self) -> str:
        return self._collection

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def create(self, subject_id: str, code: Optional[str] = None,
               metadata: Optional[Dict[str, Any]] = None,
               payload: Optional[Dict[str, Any]] = None) -> Challenge:
        """
        Start a new challenge, replacing any earlier one for the subject.

        Args:
            subject_id: User id (or pending email)
            code: One-time code to hash and store, if this kind uses one
            metadata: Context returned to the caller on success
            payload: Flow-specific data kept on the record

        Returns:
            The stored challenge
        """
        now = self._clock()
        challenge = Challenge(
            id=new_id(),
            subject_id=subject_id,
            created_at=now,
            updated_at=now,
            expires_at=now + self._ttl,
            code_hash=hash_token(code) if code is not None else None,
            metadata=dict(metadata or {}),
            payload=dict(payload or {}),
        )
        with self._storage.transaction() as store:
            store.delete_where(self._collection, Query().where('subject_id', '==', subject_id))
            store.upsert(self._collection, challenge.id, challenge.to_dict(), merge=False)
        return challenge

    def get(self, challenge_id: Optional[str]) -> Optional[Challenge]:
        """Raw lookup, no expiry checks."""
        if not challenge_id:
            return None
        doc = self._storage.get(self._collection, challenge_id)
        return Challenge.from_dict(doc) if doc else None

    def latest_for(self, subject_id: str) -> Optional[Challenge]:
        doc = self._storage.find_one(
            self._collection,
            Query().where('subject_id', '==', subject_id).order_by('created_at', 'desc')
        )
        return Challenge.from_dict(doc) if doc else None

    def update(self, challenge_id: str, **changes: Any) -> Challenge:
        changes['updated_at'] = self._clock()
        return Challenge.from_dict(self._storage.upsert(self._collection, challenge_id, changes))

    def delete(self, challenge_id: Optional[str]) -> bool:
        if not challenge_id:
            return False
        return self._storage.delete(self._collection, challenge_id)

    def cleanup_expired(self) -> int:
        """Delete every challenge whose expires_at has passed."""
        return self._storage.delete_where(
            self._collection, Query().where('expires_at', '<=', self._clock())
        )

    # ========================================================================
    # Verification
    # ========================================================================

    def code_matches(self, challenge: Challenge, code: Optional[str]) -> bool:
        if code is None or not str(code).strip() or not challenge.code_hash:
            return False
        return hmac.compare_digest(hash_token(str(code).strip()), challenge.code_hash)

    def verify(self, challenge_id: Optional[str], code: Optional[str] = None, *,
               check: Optional[Callable[[Challenge], bool]] = None,
               attempts_field: str = 'attempts',
               subject_id: Optional[str] = None,
               events: Optional[ChallengeEvents] = None,
               messages: Optional[ChallengeMessages] = None,
               consume: bool = True,
               ip_address: Optional[str] = None,
               context: Optional[Dict[str, Any]] = None) -> Challenge:
        """
        Check a supplied code against a challenge.

        Args:
            challenge_id: Challenge to verify
            code: Code supplied by the user (compared to the stored hash)
            check: Custom matcher used instead of the hash compare (TOTP)
            attempts_field: Counter to check and increment
            subject_id: When given, the challenge must belong to this subject
            events: Ledger action names overriding the store defaults
            messages: Error messages overriding the store defaults
            consume: Delete the challenge on success
            ip_address: Client address for the ledger
            context: Extra ledger metadata

        Returns:
            The challenge as it was before consumption

        Raises:
            NotFoundError: Unknown challenge (or owned by another subject)
            ExpiredError: Past expires_at; the challenge is deleted
            LockedError: Attempts exhausted; the challenge is deleted
            InvalidCodeError: Wrong code; the attempt counter is incremented
        """
        events = events or self._events
        failure = None

        # Read-check-increment is one transaction; ledger writes and the
        # raised error come after it commits.
        with self._storage.transaction():
            challenge = self.get(challenge_id)
            now = self._clock()

            if challenge is None or (subject_id is not None and challenge.subject_id != subject_id):
                challenge = None
                failure = 'missing'
            elif challenge.is_expired(now):
                self.delete(challenge.id)
                failure = 'expired'
            elif getattr(challenge, attempts_field) >= self._max_attempts:
                self.delete(challenge.id)
                failure = 'locked'
            else:
                matched = check(challenge) if check is not None else self.code_matches(challenge, code)
                if not matched:
                    attempts = getattr(challenge, attempts_field) + 1
                    setattr(challenge, attempts_field, attempts)
                    self.update(challenge.id, **{attempts_field: attempts})
                    failure = 'invalid'
                elif consume:
                    self.delete(challenge.id)

        if failure is not None:
            self._reject(failure, challenge_id, challenge, attempts_field, events,
                         messages or self._messages, ip_address, context)
        return challenge

    def _reject(self, failure: str, challenge_id: Optional[str], challenge: Optional[Challenge],
                attempts_field: str, events: ChallengeEvents,
                messages: ChallengeMessages, ip_address: Optional[str], context: Optional[Dict[str, Any]]) -> None:
        metadata: Dict[str, Any] = {'challenge_id': challenge_id}
        user_id = None
        if challenge is not None:
            if self._subject_kind == 'email':
                metadata['email'] = challenge.subject_id
            else:
                user_id = challenge.subject_id
            if failure in ('locked', 'invalid'):
                metadata['attempts'] = getattr(challenge, attempts_field)
        metadata.update(context or {})

        self._ledger.append(getattr(events, failure), user_id=user_id,
                            metadata=metadata, ip_address=ip_address)
        logger.info("Challenge %s rejected in %s: %s", challenge_id, self._collection, failure)

        message = getattr(messages, failure)
        if failure == 'missing':
            raise NotFoundError(message)
        if failure == 'expired':
            raise ExpiredError(message)
        if failure == 'locked':
            raise LockedError(message)
        raise InvalidCodeError(message)
