"""
Unit tests for TOTP secret encryption (AES-256-GCM).
"""

import base64

import pytest

from plantvault.crypto import SecretCipher, derive_key
from plantvault.errors import DecryptionError


class TestSecretCipher:
    """Encrypt/decrypt of authenticator secrets."""

    def test_round_trip(self):
        """Decrypt returns the original secret."""
        cipher = SecretCipher("test-key")
        payload = cipher.encrypt("JBSWY3DPEHPK3PXP")
        assert cipher.decrypt(payload) == "JBSWY3DPEHPK3PXP"

    def test_payload_shape(self):
        """Payload carries a 12-byte nonce and a 16-byte tag, never the plaintext."""
        payload = SecretCipher("test-key").encrypt("JBSWY3DPEHPK3PXP")
        assert set(payload) == {'iv', 'ciphertext', 'tag'}
        assert len(base64.b64decode(payload['iv'])) == 12
        assert len(base64.b64decode(payload['tag'])) == 16
        assert "JBSWY3DPEHPK3PXP" not in str(payload)

    def test_fresh_nonce_per_encryption(self):
        """Encrypting twice gives different ciphertexts."""
        cipher = SecretCipher("test-key")
        assert cipher.encrypt("same")['iv'] != cipher.encrypt("same")['iv']

    def test_wrong_key_rejected(self):
        """A different key cannot decrypt."""
        payload = SecretCipher("key-one").encrypt("JBSWY3DPEHPK3PXP")
        with pytest.raises(DecryptionError):
            SecretCipher("key-two").decrypt(payload)

    def test_tampered_ciphertext_rejected(self):
        """Flipping a ciphertext bit fails authentication."""
        cipher = SecretCipher("test-key")
        payload = cipher.encrypt("JBSWY3DPEHPK3PXP")
        raw = bytearray(base64.b64decode(payload['ciphertext']))
        raw[0] ^= 0x01
        payload['ciphertext'] = base64.b64encode(bytes(raw)).decode('ascii')
        with pytest.raises(DecryptionError):
            cipher.decrypt(payload)

    def test_missing_fields_rejected(self):
        """Incomplete payloads are a DecryptionError."""
        cipher = SecretCipher("test-key")
        with pytest.raises(DecryptionError):
            cipher.decrypt({'iv': 'AAAA'})
        with pytest.raises(DecryptionError):
            cipher.decrypt(None)

    def test_invalid_base64_rejected(self):
        """Non-base64 fields are a DecryptionError."""
        cipher = SecretCipher("test-key")
        payload = cipher.encrypt("secret")
        payload['iv'] = "***"
        with pytest.raises(DecryptionError):
            cipher.decrypt(payload)


class TestDeriveKey:
    """Key material handling."""

    def test_raw_32_byte_key_used_directly(self):
        """Exactly 32 bytes are taken as the AES key."""
        key = b"k" * 32
        assert derive_key(key) == key

    def test_other_lengths_are_stretched(self):
        """Short material is hashed to 32 bytes."""
        assert len(derive_key("short")) == 32
        assert derive_key("short") == derive_key(b"short")

    def test_empty_key_rejected(self):
        """Missing key material is a configuration error."""
        with pytest.raises(ValueError):
            derive_key("")
