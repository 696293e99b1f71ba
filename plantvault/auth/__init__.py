# Authentication Module
"""
Authentication core:
- Argon2id password hashing and policy - passwords.py
- TOTP/HOTP (RFC 4226 / RFC 6238) with encrypted secrets - totp.py
- JWT access/refresh tokens and revocation - tokens.py
- Expiring, attempt-limited challenges - challenges.py
- Registration, login and account flows - registration.py, login.py, account.py
- AuthService facade - service.py

Security features:
- Codes and tokens stored only as SHA-256 digests
- Constant-time comparison for code verification
- Lockout after repeated invalid codes
- Every rejection recorded in the security ledger
"""

from .passwords import (
    PasswordCodec,
    PASSWORD_POLICY_MESSAGE,
    is_password_compliant,
)

from .totp import (
    TotpEngine,
    TotpSetup,
    totp,
    hotp,
    verify_totp,
    generate_secret,
    secret_to_base32,
    base32_to_secret,
    build_provisioning_uri,
)

from .tokens import (
    TokenLedger,
    IssuedToken,
    SessionTokens,
    hash_token,
)

from .challenges import (
    ChallengeStore,
    ChallengeEvents,
    ChallengeMessages,
    generate_code,
)

from .users import UserRepository, normalize_email
from .mfa import MfaService
from .registration import RegistrationFlow
from .login import LoginFlow
from .account import AccountManager
from .service import AuthService

__all__ = [
    # Passwords
    'PasswordCodec',
    'PASSWORD_POLICY_MESSAGE',
    'is_password_compliant',
    # TOTP
    'TotpEngine',
    'TotpSetup',
    'totp',
    'hotp',
    'verify_totp',
    'generate_secret',
    'secret_to_base32',
    'base32_to_secret',
    'build_provisioning_uri',
    # Tokens
    'TokenLedger',
    'IssuedToken',
    'SessionTokens',
    'hash_token',
    # Challenges
    'ChallengeStore',
    'ChallengeEvents',
    'ChallengeMessages',
    'generate_code',
    # Flows
    'UserRepository',
    'normalize_email',
    'MfaService',
    'RegistrationFlow',
    'LoginFlow',
    'AccountManager',
    'AuthService',
]
