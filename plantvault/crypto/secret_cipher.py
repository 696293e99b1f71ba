"""
TOTP Secret Encryption

AES-256-GCM wrapping for authenticator secrets at rest.

Storage format (all fields base64):
    {'iv': 12-byte nonce, 'ciphertext': ..., 'tag': 16-byte GCM tag}

The key is configured once per process. A raw 32-byte value is used
directly; anything else is stretched with SHA-256. Key material is never
part of the stored payload.
"""

import base64
import binascii
import hashlib
import logging
import secrets
from typing import Dict, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import DecryptionError

logger = logging.getLogger(__name__)

KEY_SIZE = 32    # AES-256
NONCE_SIZE = 12  # 96-bit nonce for GCM
TAG_SIZE = 16    # 128-bit GCM tag


def derive_key(key_material: Union[str, bytes]) -> bytes:
    """
    Turn operator-provided key material into a 32-byte AES key.

    Args:
        key_material: Raw key bytes or a configured secret string

    Returns:
        32-byte key

    Raises:
        ValueError: If no key material is configured
    """
    if not key_material:
        raise ValueError("TOTP encryption key is not configured")
    raw = key_material.encode('utf-8') if isinstance(key_material, str) else bytes(key_material)
    if len(raw) == KEY_SIZE:
        return raw
    return hashlib.sha256(raw).digest()


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')


def _unb64(value: str, name: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError, TypeError) as exc:
        raise DecryptionError(f"Encrypted secret field '{name}' is not valid base64") from exc


class SecretCipher:
    """
    Authenticated encryption for short secrets.

    Example:
        >>> cipher = SecretCipher("change-me")
        >>> payload = cipher.encrypt("JBSWY3DPEHPK3PXP")
        >>> cipher.decrypt(payload)
        'JBSWY3DPEHPK3PXP'
    """

    def __init__(self, key_material: Union[str, bytes]):
        self._key = derive_key(key_material)
        self._aesgcm = AESGCM(self._key)

    def encrypt(self, plaintext: str) -> Dict[str, str]:
        """
        Encrypt a secret with a fresh random nonce.

        Args:
            plaintext: Secret to protect

        Returns:
            Dict with base64 'iv', 'ciphertext' and 'tag'
        """
        nonce = secrets.token_bytes(NONCE_SIZE)
        ciphertext_with_tag = self._aesgcm.encrypt(nonce, plaintext.encode('utf-8'), None)
        return {
            'iv': _b64(nonce),
            'ciphertext': _b64(ciphertext_with_tag[:-TAG_SIZE]),
            'tag': _b64(ciphertext_with_tag[-TAG_SIZE:]),
        }

    def decrypt(self, payload: Dict[str, str]) -> str:
        """
        Decrypt a payload produced by encrypt().

        Args:
            payload: Dict with 'iv', 'ciphertext' and 'tag'

        Returns:
            The original secret

        Raises:
            DecryptionError: If the payload is malformed, was tampered with,
                or was encrypted under a different key
        """
        if not isinstance(payload, dict):
            raise DecryptionError("Encrypted secret is missing")
        missing = [name for name in ('iv', 'ciphertext', 'tag') if not payload.get(name)]
        if missing:
            raise DecryptionError(f"Encrypted secret missing fields: {', '.join(missing)}")

        nonce = _unb64(payload['iv'], 'iv')
        ciphertext = _unb64(payload['ciphertext'], 'ciphertext')
        tag = _unb64(payload['tag'], 'tag')
        if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
            raise DecryptionError("Encrypted secret has an invalid nonce or tag length")

        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            logger.warning("TOTP secret failed authentication (tampered or wrong key)")
            raise DecryptionError("Encrypted secret failed authentication") from exc
        return plaintext.decode('utf-8')
