"""
Session Token Ledger

Signed JWT access/refresh tokens (PyJWT, HS256) plus the persisted state
that makes them revocable:

- refresh tokens are stored as SHA-256(token) rows of type 'refresh'
- access tokens are stateless, but a revoked jti leaves an
  'access_revocation' marker that every verification checks
- password-reset links are random tokens stored hashed as 'password_reset'

Raw tokens are never persisted or logged.
"""

import hashlib
import logging
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import jwt

from ..errors import InvalidTokenError
from ..integration.security_ledger import SecurityLedger
from ..records import (
    TOKEN_ACCESS_REVOCATION,
    TOKEN_PASSWORD_RESET,
    TOKEN_REFRESH,
    TokenRecord,
    User,
    iso,
    new_id,
)
from ..storage import TOKENS, Query, Storage

logger = logging.getLogger(__name__)

JWT_ALGORITHM = 'HS256'
RESET_TOKEN_BYTES = 48
REQUIRED_CLAIMS = ['exp', 'iat', 'iss', 'jti', 'sub']


def hash_token(token: str) -> str:
    """SHA-256 hex digest used to store tokens and one-time codes."""
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


@dataclass
class IssuedToken:
    token: str
    expires_at: float
    jti: str

    def to_dict(self) -> Dict[str, Any]:
        return {'token': self.token, 'expiresAt': iso(self.expires_at), 'jti': self.jti}


@dataclass
class SessionTokens:
    access: IssuedToken
    refresh: IssuedToken

    def to_dict(self) -> Dict[str, Any]:
        return {'access': self.access.to_dict(), 'refresh': self.refresh.to_dict()}


class TokenLedger:
    """
    Issue, verify and revoke session tokens.

    Expiry is checked against the injected clock rather than PyJWT's
    wall-clock check, so the whole lifecycle is testable.
    """

    def __init__(self, storage: Storage, ledger: SecurityLedger,
                 access_secret: str, refresh_secret: str,
                 issuer: str = 'plantelligence-backend',
                 access_ttl_seconds: int = 900,
                 refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
                 password_reset_ttl_seconds: int = 900,
                 clock: Callable[[], float] = time.time):
        self._storage = storage
        self._ledger = ledger
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self._issuer = issuer
        self._access_ttl = access_ttl_seconds
        self._refresh_ttl = refresh_ttl_seconds
        self._reset_ttl = password_reset_ttl_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, storage: Storage, ledger: SecurityLedger,
                      clock: Callable[[], float] = time.time) -> 'TokenLedger':
        return cls(
            storage, ledger,
            access_secret=settings.jwt_secret,
            refresh_secret=settings.jwt_refresh_secret,
            issuer=settings.token_issuer,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            password_reset_ttl_seconds=settings.password_reset_ttl_seconds,
            clock=clock,
        )

    @property
    def access_ttl_seconds(self) -> int:
        return self._access_ttl

    # ========================================================================
    # Signing
    # ========================================================================

    def _sign(self, claims: Dict[str, Any], secret: str, ttl: int) -> IssuedToken:
        now = self._clock()
        expires_at = now + ttl
        jti = str(uuid.uuid4())
        payload = dict(claims)
        payload.update({
            'iat': int(now),
            'exp': int(expires_at),
            'jti': jti,
            'iss': self._issuer,
        })
        token = jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)
        return IssuedToken(token=token, expires_at=expires_at, jti=jti)

    def _decode(self, token: str, secret: str) -> Dict[str, Any]:
        if not token:
            raise InvalidTokenError("Token missing.")
        try:
            payload = jwt.decode(
                token, secret,
                algorithms=[JWT_ALGORITHM],
                issuer=self._issuer,
                options={'verify_exp': False, 'verify_iat': False, 'require': REQUIRED_CLAIMS},
            )
        except jwt.PyJWTError as exc:
            raise InvalidTokenError("Invalid token.") from exc

        if payload['exp'] <= self._clock():
            raise InvalidTokenError("Token expired.")
        return payload

    # ========================================================================
    # Access tokens
    # ========================================================================

    def issue_access_token(self, user: User) -> IssuedToken:
        """
        Sign a short-lived access token.

        Claims: sub, email, role, consent, requiresPasswordReset.
        """
        now = self._clock()
        requires_reset = user.password_expires_at is not None and user.password_expires_at <= now
        return self._sign({
            'sub': user.id,
            'email': user.email,
            'role': user.role,
            'consent': bool(user.consent_given),
            'requiresPasswordReset': requires_reset,
        }, self._access_secret, self._access_ttl)

    def verify_access_token(self, token: str) -> Dict[str, Any]:
        """
        Verify signature, issuer and expiry, then the revocation markers.

        Raises:
            InvalidTokenError: On any failure, including a revoked jti
        """
        payload = self._decode(token, self._access_secret)
        if payload.get('type') == TOKEN_REFRESH:
            raise InvalidTokenError("Invalid token.")

        marker = self._storage.find_one(
            TOKENS,
            Query()
            .where('type', '==', TOKEN_ACCESS_REVOCATION)
            .where('jti', '==', payload['jti'])
        )
        if marker is not None:
            raise InvalidTokenError("Token has been revoked.")
        return payload

    def revoke_access_token_by_jti(self, jti: str, user_id: Optional[str],
                                   expires_at: Optional[float] = None) -> TokenRecord:
        """
        Record a revocation marker that lives until the token would have
        expired anyway.
        """
        now = self._clock()
        if expires_at is None:
            expires_at = now + self._access_ttl
        record = TokenRecord(
            id=new_id(),
            user_id=user_id,
            type=TOKEN_ACCESS_REVOCATION,
            expires_at=expires_at,
            created_at=now,
            jti=jti,
            revoked=True,
            revoked_at=now,
        )
        self._storage.upsert(TOKENS, record.id, record.to_dict(), merge=False)
        self._ledger.append('access_token_revoked', user_id=user_id,
                            metadata={'jti': jti, 'expires_at': iso(expires_at)})
        return record

    # ========================================================================
    # Refresh tokens
    # ========================================================================

    def issue_refresh_token(self, user: User) -> IssuedToken:
        """Sign a refresh token and persist its hash so it can be revoked."""
        issued = self._sign({'sub': user.id, 'type': TOKEN_REFRESH},
                            self._refresh_secret, self._refresh_ttl)
        record = TokenRecord(
            id=new_id(),
            user_id=user.id,
            type=TOKEN_REFRESH,
            expires_at=issued.expires_at,
            created_at=self._clock(),
            token_hash=hash_token(issued.token),
            jti=issued.jti,
        )
        self._storage.upsert(TOKENS, record.id, record.to_dict(), merge=False)
        self._ledger.append('refresh_token_issued', user_id=user.id,
                            metadata={'jti': issued.jti, 'expires_at': iso(issued.expires_at)})
        return issued

    def _find_by_hash(self, token: str, token_type: str) -> Optional[TokenRecord]:
        doc = self._storage.find_one(
            TOKENS,
            Query()
            .where('token_hash', '==', hash_token(token))
            .where('type', '==', token_type)
        )
        return TokenRecord.from_dict(doc) if doc else None

    def _decode_refresh(self, token: str) -> Dict[str, Any]:
        payload = self._decode(token, self._refresh_secret)
        if payload.get('type') != TOKEN_REFRESH:
            raise InvalidTokenError("Invalid token.")
        return payload

    def _live_refresh_record(self, token: str) -> TokenRecord:
        record = self._find_by_hash(token, TOKEN_REFRESH)
        if record is None:
            raise InvalidTokenError("Refresh token not recognized.")
        if record.revoked:
            raise InvalidTokenError("Refresh token revoked.")
        if record.is_expired(self._clock()):
            raise InvalidTokenError("Refresh token expired.")
        return record

    def verify_refresh_token(self, token: str) -> Dict[str, Any]:
        """
        Verify a refresh token.

        Both the signed exp claim and the stored record's expires_at must
        still be in the future, and the record must not be revoked.

        Raises:
            InvalidTokenError: On any failure
        """
        payload = self._decode_refresh(token)
        self._live_refresh_record(token)
        return payload

    def rotate_refresh_token(self, token: str) -> Dict[str, Any]:
        """
        Verify a refresh token and revoke it in the same transaction.

        When several callers present the same token at once, exactly one
        gets the payload back; the rest see it revoked.

        Raises:
            InvalidTokenError: On any failure, as verify_refresh_token
        """
        payload = self._decode_refresh(token)
        with self._storage.transaction() as store:
            record = self._live_refresh_record(token)
            store.upsert(TOKENS, record.id, {'revoked': True, 'revoked_at': self._clock()})
        return payload

    def revoke_refresh_token(self, token: str) -> bool:
        """
        Mark a refresh token revoked.

        Returns:
            False when the token is unknown (no-op), True otherwise
        """
        if not token:
            return False
        record = self._find_by_hash(token, TOKEN_REFRESH)
        if record is None:
            return False
        if not record.revoked:
            self._storage.upsert(TOKENS, record.id, {'revoked': True, 'revoked_at': self._clock()})
        return True

    def issue_session_tokens(self, user: User) -> SessionTokens:
        """The only way a logged-in session is minted."""
        return SessionTokens(
            access=self.issue_access_token(user),
            refresh=self.issue_refresh_token(user),
        )

    # ========================================================================
    # Password reset tokens
    # ========================================================================

    def issue_password_reset_token(self, user_id: str) -> Tuple[str, float]:
        """
        Create a single-use reset token.

        Returns:
            Tuple of (raw_token, expires_at); only the hash is stored
        """
        now = self._clock()
        raw_token = secrets.token_hex(RESET_TOKEN_BYTES)
        record = TokenRecord(
            id=new_id(),
            user_id=user_id,
            type=TOKEN_PASSWORD_RESET,
            expires_at=now + self._reset_ttl,
            created_at=now,
            token_hash=hash_token(raw_token),
        )
        self._storage.upsert(TOKENS, record.id, record.to_dict(), merge=False)
        return raw_token, record.expires_at

    def consume_password_reset_token(self, token: str) -> TokenRecord:
        """
        Validate a reset token and mark it used.

        The check and the mark happen in one transaction, so a link can
        only ever be spent once.

        Raises:
            InvalidTokenError: Unknown, already used or expired token
        """
        if not token:
            raise InvalidTokenError("Invalid reset token.")

        with self._storage.transaction() as store:
            record = self._find_by_hash(token, TOKEN_PASSWORD_RESET)
            if record is None:
                raise InvalidTokenError("Invalid reset token.")
            if record.revoked:
                raise InvalidTokenError("Reset token already used.")
            if record.is_expired(self._clock()):
                raise InvalidTokenError("Reset token expired.")

            store.upsert(TOKENS, record.id, {'revoked': True, 'revoked_at': self._clock()})
        record.revoked = True
        return record

    def cleanup_expired(self) -> int:
        """Delete every token row whose expires_at has passed."""
        return self._storage.delete_where(
            TOKENS, Query().where('expires_at', '<=', self._clock())
        )
