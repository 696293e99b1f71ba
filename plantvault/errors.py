"""
Error Taxonomy

Domain errors raised by the authentication core. Each carries a
user-facing message and the HTTP-equivalent status a routing layer
should answer with.

    NotFoundError            404  challenge/session/enrollment/user/token absent
    ExpiredError             401  time-boxed entity past its expiry
    LockedError              423  attempt counter reached its maximum
    InvalidCredentialsError  401  unknown email or wrong password
    InvalidCodeError         401  email/TOTP code does not match
    InvalidTokenError        401  signed token rejected
    ConflictError            409  email already registered, OTP state clash
    ForbiddenError           403  role check failed
    ValidationError          400  malformed input, password policy
    DeliveryFailureError     503  email collaborator failed

DecryptionError, StorageError and StorageConflictError are internal and
never map to a user-visible message directly.
"""

import logging
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "Internal error."


class AuthError(Exception):
    """Base class for errors recovered at the service boundary."""

    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        """Structured response body."""
        return {'message': self.message, 'statusCode': self.status_code}


class NotFoundError(AuthError):
    status_code = 404


class ExpiredError(AuthError):
    status_code = 401


class LockedError(AuthError):
    status_code = 423


class InvalidCredentialsError(AuthError):
    status_code = 401


class InvalidCodeError(AuthError):
    status_code = 401


class InvalidTokenError(AuthError):
    status_code = 401


class ConflictError(AuthError):
    status_code = 409


class ForbiddenError(AuthError):
    status_code = 403


class ValidationError(AuthError):
    status_code = 400


class DeliveryFailureError(AuthError):
    status_code = 503


class DecryptionError(Exception):
    """Stored ciphertext could not be authenticated or decoded."""


class StorageError(Exception):
    """Backend failure or a record that does not match its type."""


class StorageConflictError(StorageError):
    """A write collided with a uniqueness constraint (a concurrent writer won)."""


def dispatch(func: Callable, *args, **kwargs) -> Tuple[int, Any]:
    """
    Run a service operation and map its outcome to (status, body).

    Domain errors become their own status and message. Anything else is
    logged with its traceback and reported as a generic internal error
    so internals never reach the caller.

    Args:
        func: Service operation to call
        *args, **kwargs: Forwarded to func

    Returns:
        Tuple of (status_code, response body)
    """
    try:
        result = func(*args, **kwargs)
    except AuthError as exc:
        return exc.status_code, exc.to_dict()
    except Exception:
        logger.exception("Unhandled error in %s", getattr(func, '__name__', func))
        return 500, {'message': INTERNAL_ERROR_MESSAGE, 'statusCode': 500}
    return 200, result
