"""
Record Types

Explicit shapes for every entity the authentication core persists.
Storage adapters hand back plain dicts; from_dict() validates and
normalizes them once, at the boundary, so the flows never have to guess
which optional fields exist.

All timestamps are Unix epoch seconds (float). "Expired" always means
expires_at <= now.
"""

import secrets
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import StorageError

ROLE_ADMIN = 'Admin'
ROLE_USER = 'User'
ROLES = (ROLE_ADMIN, ROLE_USER)

MFA_EMAIL = 'email'
MFA_OTP = 'otp'
ENFORCED_MFA_METHODS = [MFA_EMAIL, MFA_OTP]

TOKEN_REFRESH = 'refresh'
TOKEN_ACCESS_REVOCATION = 'access_revocation'
TOKEN_PASSWORD_RESET = 'password_reset'
TOKEN_TYPES = (TOKEN_REFRESH, TOKEN_ACCESS_REVOCATION, TOKEN_PASSWORD_RESET)


def new_id() -> str:
    """Opaque unique identifier for any stored record."""
    return secrets.token_hex(16)


def iso(timestamp: Optional[float]) -> Optional[str]:
    """Render an epoch timestamp as ISO-8601 UTC (None passes through)."""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, timezone.utc).isoformat()


def _require(data: Dict[str, Any], kind: str, *keys: str) -> None:
    missing = [key for key in keys if data.get(key) is None]
    if missing:
        raise StorageError(f"{kind} record {data.get('id', '?')} missing: {', '.join(missing)}")


# ============================================================================
# Users
# ============================================================================

@dataclass
class OtpConfig:
    """An activated authenticator app. encrypted_secret never leaves the core."""
    configured_at: float
    encrypted_secret: Dict[str, str]
    issuer: str
    account_name: str

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['OtpConfig']:
        if not data or not data.get('encrypted_secret'):
            return None
        return cls(
            configured_at=data.get('configured_at'),
            encrypted_secret=dict(data['encrypted_secret']),
            issuer=data.get('issuer') or '',
            account_name=data.get('account_name') or '',
        )


@dataclass
class EmailMfaConfig:
    configured_at: Optional[float]
    delivery: str = 'email'

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['EmailMfaConfig']:
        if not data:
            return None
        return cls(configured_at=data.get('configured_at'),
                   delivery=data.get('delivery') or 'email')


@dataclass
class MfaSettings:
    enforced_methods: List[str] = field(default_factory=list)
    email: Optional[EmailMfaConfig] = None
    otp: Optional[OtpConfig] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'MfaSettings':
        data = data or {}
        methods = data.get('enforced_methods')
        return cls(
            enforced_methods=list(methods) if isinstance(methods, list) else [],
            email=EmailMfaConfig.from_dict(data.get('email')),
            otp=OtpConfig.from_dict(data.get('otp')),
        )


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    role: str
    created_at: float
    updated_at: float
    last_password_change: float
    password_expires_at: Optional[float]
    full_name: Optional[str] = None
    phone: Optional[str] = None
    consent_given: bool = False
    consent_timestamp: Optional[float] = None
    last_login_at: Optional[float] = None
    deletion_requested: bool = False
    mfa_enabled: bool = False
    mfa_configured_at: Optional[float] = None
    mfa: MfaSettings = field(default_factory=MfaSettings)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def otp(self) -> Optional[OtpConfig]:
        return self.mfa.otp

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'User':
        _require(data, 'User', 'id', 'email', 'password_hash', 'created_at')
        created_at = data['created_at']
        return cls(
            id=data['id'],
            email=data['email'],
            password_hash=data['password_hash'],
            role=data.get('role') if data.get('role') in ROLES else ROLE_USER,
            created_at=created_at,
            updated_at=data.get('updated_at') or created_at,
            last_password_change=data.get('last_password_change') or created_at,
            password_expires_at=data.get('password_expires_at'),
            full_name=data.get('full_name'),
            phone=data.get('phone'),
            consent_given=bool(data.get('consent_given')),
            consent_timestamp=data.get('consent_timestamp'),
            last_login_at=data.get('last_login_at'),
            deletion_requested=bool(data.get('deletion_requested')),
            mfa_enabled=bool(data.get('mfa_enabled')),
            mfa_configured_at=data.get('mfa_configured_at'),
            mfa=MfaSettings.from_dict(data.get('mfa')),
        )

    def sanitized(self) -> Dict[str, Any]:
        """
        Caller-facing view of the user.

        Omits the password hash and the encrypted TOTP secret.
        """
        mfa = self.mfa
        return {
            'id': self.id,
            'email': self.email,
            'role': self.role,
            'fullName': self.full_name,
            'phone': self.phone,
            'consentGiven': self.consent_given,
            'consentTimestamp': iso(self.consent_timestamp),
            'createdAt': iso(self.created_at),
            'updatedAt': iso(self.updated_at),
            'lastLoginAt': iso(self.last_login_at),
            'passwordExpiresAt': iso(self.password_expires_at),
            'deletionRequested': self.deletion_requested,
            'mfaEnabled': self.mfa_enabled,
            'mfaConfiguredAt': iso(self.mfa_configured_at),
            'mfa': {
                'enforcedMethods': list(mfa.enforced_methods),
                'email': {
                    'configuredAt': iso(mfa.email.configured_at),
                    'delivery': mfa.email.delivery,
                } if mfa.email else None,
                'otp': {
                    'configuredAt': iso(mfa.otp.configured_at),
                } if mfa.otp else None,
            },
        }


# ============================================================================
# Challenges
# ============================================================================

@dataclass
class Challenge:
    """
    Expiring, attempt-limited, single-use server-side challenge.

    One shape serves registration codes, login MFA codes and OTP
    enrollments. Flow-specific data lives in payload; subject_id is the
    user id (or the pending email address during registration).
    """
    id: str
    subject_id: str
    created_at: float
    updated_at: float
    expires_at: float
    code_hash: Optional[str] = None
    attempts: int = 0
    otp_attempts: int = 0
    verified_at: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    payload: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Challenge':
        _require(data, 'Challenge', 'id', 'subject_id', 'created_at', 'expires_at')
        return cls(
            id=data['id'],
            subject_id=data['subject_id'],
            created_at=data['created_at'],
            updated_at=data.get('updated_at') or data['created_at'],
            expires_at=data['expires_at'],
            code_hash=data.get('code_hash'),
            attempts=int(data.get('attempts') or 0),
            otp_attempts=int(data.get('otp_attempts') or 0),
            verified_at=data.get('verified_at'),
            metadata=dict(data.get('metadata') or {}),
            payload=dict(data.get('payload') or {}),
        )


# ============================================================================
# Login sessions
# ============================================================================

@dataclass
class LoginSession:
    """Password accepted, MFA pending."""
    id: str
    user_id: str
    password_expired: bool
    created_at: float
    updated_at: float
    expires_at: float
    email_challenge: Optional[Dict[str, Any]] = None
    otp_enrollment: Optional[Dict[str, Any]] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoginSession':
        _require(data, 'LoginSession', 'id', 'user_id', 'created_at', 'expires_at')
        return cls(
            id=data['id'],
            user_id=data['user_id'],
            password_expired=bool(data.get('password_expired')),
            created_at=data['created_at'],
            updated_at=data.get('updated_at') or data['created_at'],
            expires_at=data['expires_at'],
            email_challenge=data.get('email_challenge'),
            otp_enrollment=data.get('otp_enrollment'),
        )


# ============================================================================
# Tokens
# ============================================================================

@dataclass
class TokenRecord:
    """
    Persisted token state.

    refresh and password_reset rows are looked up by token_hash;
    access_revocation rows are markers keyed by jti.
    """
    id: str
    user_id: str
    type: str
    expires_at: float
    created_at: float
    token_hash: Optional[str] = None
    jti: Optional[str] = None
    revoked: bool = False
    revoked_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TokenRecord':
        _require(data, 'TokenRecord', 'id', 'type', 'expires_at')
        if data['type'] not in TOKEN_TYPES:
            raise StorageError(f"TokenRecord {data['id']} has unknown type '{data['type']}'")
        return cls(
            id=data['id'],
            user_id=data.get('user_id'),
            type=data['type'],
            expires_at=data['expires_at'],
            created_at=data.get('created_at') or 0.0,
            token_hash=data.get('token_hash'),
            jti=data.get('jti'),
            revoked=bool(data.get('revoked')),
            revoked_at=data.get('revoked_at'),
        )


# ============================================================================
# Security log
# ============================================================================

@dataclass
class SecurityLogEntry:
    id: str
    sequence: int
    action: str
    created_at: float
    prev_hash: str
    hash: str
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        """The hashed portion of the entry (everything except the hashes and id)."""
        return {
            'user_id': self.user_id,
            'action': self.action,
            'metadata': self.metadata,
            'ip_address': self.ip_address,
            'created_at': self.created_at,
            'sequence': self.sequence,
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SecurityLogEntry':
        _require(data, 'SecurityLogEntry', 'id', 'action', 'created_at', 'prev_hash', 'hash')
        return cls(
            id=data['id'],
            sequence=int(data.get('sequence') or 0),
            action=data['action'],
            created_at=data['created_at'],
            prev_hash=data['prev_hash'],
            hash=data['hash'],
            user_id=data.get('user_id'),
            metadata=dict(data.get('metadata') or {}),
            ip_address=data.get('ip_address'),
        )

    def to_public(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'sequence': self.sequence,
            'userId': self.user_id,
            'action': self.action,
            'metadata': self.metadata,
            'ipAddress': self.ip_address,
            'createdAt': iso(self.created_at),
            'prevHash': self.prev_hash,
            'hash': self.hash,
        }
