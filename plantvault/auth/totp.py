"""
TOTP (Time-based One-Time Password) Engine

Implements RFC 6238 TOTP on top of RFC 4226 HOTP for the second factor.

Features:
- Base32 secret generation for authenticator apps
- otpauth:// provisioning URIs
- Verification with +/- 1 time step drift tolerance
- Secrets are only ever persisted encrypted (SecretCipher)

Compatible with Google Authenticator, Authy, Microsoft Authenticator and
any other RFC 6238 app.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
import struct
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Union
from urllib.parse import quote

from ..crypto import SecretCipher
from ..errors import DecryptionError

logger = logging.getLogger(__name__)

# TOTP configuration (RFC 6238 defaults)
TOTP_DIGITS = 6           # Number of digits in OTP
TOTP_TIME_STEP = 30       # Time step in seconds
TOTP_SECRET_BYTES = 20    # Secret key length (160 bits for SHA-1)
TOTP_ALGORITHM = 'SHA1'
TOTP_DRIFT_TOLERANCE = 1  # Accept codes from +/- this many time steps


def generate_secret(length: int = TOTP_SECRET_BYTES) -> bytes:
    """Generate a cryptographically secure random secret."""
    return secrets.token_bytes(length)


def secret_to_base32(secret: bytes) -> str:
    """
    Encode secret as base32 string (for authenticator apps).

    Args:
        secret: Raw secret bytes

    Returns:
        Base32-encoded string (no padding)
    """
    return base64.b32encode(secret).decode('ascii').rstrip('=')


def base32_to_secret(encoded: str) -> bytes:
    """
    Decode base32 secret string to bytes.

    Raises:
        ValueError: If the string is not valid base32
    """
    encoded = encoded.replace(' ', '').upper()
    padding = 8 - (len(encoded) % 8)
    if padding != 8:
        encoded += '=' * padding
    try:
        return base64.b32decode(encoded)
    except binascii.Error as exc:
        raise ValueError("Invalid base32 secret") from exc


def get_time_counter(timestamp: float, time_step: int = TOTP_TIME_STEP) -> int:
    """Time counter T = floor(timestamp / time_step)."""
    return int(timestamp) // time_step


def hotp(secret: bytes, counter: int, digits: int = TOTP_DIGITS) -> str:
    """
    Generate HOTP (HMAC-based OTP) value, RFC 4226.

    Args:
        secret: Shared secret key
        counter: Counter value (8-byte integer)
        digits: Number of digits in OTP

    Returns:
        Zero-padded OTP string
    """
    counter_bytes = struct.pack('>Q', counter)
    hmac_hash = hmac.new(secret, counter_bytes, hashlib.sha1).digest()

    # Dynamic truncation
    offset = hmac_hash[-1] & 0x0F
    truncated = struct.unpack('>I', hmac_hash[offset:offset + 4])[0]
    truncated &= 0x7FFFFFFF

    return str(truncated % (10 ** digits)).zfill(digits)


def totp(secret: bytes, timestamp: float, digits: int = TOTP_DIGITS,
         time_step: int = TOTP_TIME_STEP) -> str:
    """Generate the TOTP value for a timestamp, RFC 6238."""
    return hotp(secret, get_time_counter(timestamp, time_step), digits)


def verify_totp(secret: bytes, code: str, timestamp: float,
                digits: int = TOTP_DIGITS,
                time_step: int = TOTP_TIME_STEP,
                drift_tolerance: int = TOTP_DRIFT_TOLERANCE) -> bool:
    """
    Verify a TOTP code with drift tolerance.

    Checks the code against the current time step and +/- drift_tolerance
    steps to absorb clock drift between server and authenticator.

    Returns:
        True if code is valid, False otherwise
    """
    if code is None:
        return False
    code = str(code).replace(' ', '').strip()
    if len(code) != digits or not code.isdigit():
        return False

    current_counter = get_time_counter(timestamp, time_step)
    for offset in range(-drift_tolerance, drift_tolerance + 1):
        expected = hotp(secret, current_counter + offset, digits)
        if hmac.compare_digest(code, expected):
            return True
    return False


def build_provisioning_uri(secret_b32: str, account_name: str, issuer: str) -> str:
    """
    Generate the otpauth:// URI that authenticator apps scan.

    Returns:
        otpauth://totp/<issuer>:<account>?secret=...&issuer=...
    """
    label = f"{issuer}:{account_name}"
    params = {
        'secret': secret_b32,
        'period': str(TOTP_TIME_STEP),
        'digits': str(TOTP_DIGITS),
        'algorithm': TOTP_ALGORITHM,
        'issuer': issuer,
    }
    param_str = '&'.join(f"{k}={quote(str(v), safe='')}" for k, v in params.items())
    return f"otpauth://totp/{quote(label)}?{param_str}"


@dataclass
class TotpSetup:
    """Everything a client needs to provision an authenticator app."""
    secret: str
    uri: str
    issuer: str
    account_name: str
    encrypted_secret: Dict[str, str]
    debug_code: Optional[str] = None

    def to_public(self) -> Dict[str, Optional[str]]:
        """Caller-facing view (the encrypted form stays server-side)."""
        return {
            'secret': self.secret,
            'uri': self.uri,
            'issuer': self.issuer,
            'accountName': self.account_name,
            'debugCode': self.debug_code,
        }


class TotpEngine:
    """
    TOTP setup and verification against encrypted-at-rest secrets.

    Example:
        >>> engine = TotpEngine(SecretCipher("key"), issuer="Plantelligence")
        >>> setup = engine.generate_setup("alice@example.com")
        >>> engine.verify_code(engine.current_code(setup.secret), setup.encrypted_secret)
        True
    """

    def __init__(self, cipher: SecretCipher,
                 issuer: str = 'Plantelligence',
                 debug_mode: bool = False,
                 clock: Callable[[], float] = time.time):
        self._cipher = cipher
        self._issuer = issuer
        self._debug_mode = debug_mode
        self._clock = clock

    @property
    def issuer(self) -> str:
        return self._issuer

    def current_code(self, secret_b32: str, timestamp: Optional[float] = None) -> str:
        """TOTP code for a base32 secret at `timestamp` (default: now)."""
        if timestamp is None:
            timestamp = self._clock()
        return totp(base32_to_secret(secret_b32), timestamp)

    def _setup(self, secret_b32: str, account_name: str, issuer: str,
               encrypted_secret: Dict[str, str]) -> TotpSetup:
        return TotpSetup(
            secret=secret_b32,
            uri=build_provisioning_uri(secret_b32, account_name, issuer),
            issuer=issuer,
            account_name=account_name,
            encrypted_secret=encrypted_secret,
            debug_code=self.current_code(secret_b32) if self._debug_mode else None,
        )

    def generate_setup(self, account_label: str, issuer: Optional[str] = None) -> TotpSetup:
        """
        Create a fresh secret for first-time enrollment.

        Args:
            account_label: Account name shown in the app (usually the email)
            issuer: Issuer label (defaults to the configured MFA issuer)

        Returns:
            TotpSetup with the plaintext secret for display and its encrypted form
        """
        secret_b32 = secret_to_base32(generate_secret())
        resolved_issuer = issuer or self._issuer
        return self._setup(secret_b32, account_label, resolved_issuer,
                           self._cipher.encrypt(secret_b32))

    def recreate_setup(self, account_label: str,
                       encrypted_secret: Optional[Dict[str, str]],
                       issuer: Optional[str] = None,
                       account_name: Optional[str] = None) -> Optional[TotpSetup]:
        """
        Rebuild a setup from a stored encrypted secret for redisplay.

        Returns:
            TotpSetup, or None when nothing usable is stored (missing record,
            tampered ciphertext or a rotated key)
        """
        if not encrypted_secret:
            return None
        try:
            secret_b32 = self._cipher.decrypt(encrypted_secret)
        except DecryptionError as exc:
            logger.warning("Stored TOTP secret could not be decrypted: %s", exc)
            return None
        return self._setup(secret_b32, account_name or account_label,
                           issuer or self._issuer, encrypted_secret)

    def is_usable(self, encrypted_secret: Optional[Dict[str, str]]) -> bool:
        """True if the stored secret decrypts under the current key."""
        if not encrypted_secret:
            return False
        try:
            self._cipher.decrypt(encrypted_secret)
        except DecryptionError:
            return False
        return True

    def debug_code_for(self, encrypted_secret: Optional[Dict[str, str]]) -> Optional[str]:
        """Current code for a stored secret, only in debug mode."""
        if not self._debug_mode:
            return None
        setup = self.recreate_setup('', encrypted_secret)
        return setup.debug_code if setup else None

    def verify_code(self, code: Optional[str],
                    secret: Union[str, Dict[str, str], None]) -> bool:
        """
        Check a user-supplied code.

        Args:
            code: 6-digit code from the authenticator app
            secret: Base32 secret, or the encrypted dict as stored

        Returns:
            True if the code matches the previous, current or next time step.
            Blank input and undecryptable secrets are simply rejected.
        """
        if code is None or not str(code).strip() or not secret:
            return False

        if isinstance(secret, dict):
            try:
                secret = self._cipher.decrypt(secret)
            except DecryptionError as exc:
                logger.warning("TOTP verification against undecryptable secret: %s", exc)
                return False

        try:
            raw_secret = base32_to_secret(secret)
        except ValueError:
            return False
        return verify_totp(raw_secret, str(code).strip(), self._clock())
