# Crypto Module
"""
Encryption of secrets at rest:
- SecretCipher - AES-256-GCM wrapping of TOTP secrets
"""

from .secret_cipher import SecretCipher, derive_key

__all__ = [
    'SecretCipher',
    'derive_key',
]
