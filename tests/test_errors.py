"""
Unit tests for the error taxonomy and the boundary dispatcher.
"""

import logging

import pytest

from plantvault.errors import (
    INTERNAL_ERROR_MESSAGE,
    AuthError,
    ConflictError,
    DecryptionError,
    DeliveryFailureError,
    ExpiredError,
    ForbiddenError,
    InvalidCodeError,
    InvalidCredentialsError,
    InvalidTokenError,
    LockedError,
    NotFoundError,
    StorageConflictError,
    StorageError,
    ValidationError,
    dispatch,
)


class TestStatusCodes:
    """Each domain error carries its HTTP-equivalent status."""

    @pytest.mark.parametrize("error_class, status", [
        (NotFoundError, 404),
        (ExpiredError, 401),
        (LockedError, 423),
        (InvalidCredentialsError, 401),
        (InvalidCodeError, 401),
        (InvalidTokenError, 401),
        (ConflictError, 409),
        (ForbiddenError, 403),
        (ValidationError, 400),
        (DeliveryFailureError, 503),
    ])
    def test_status(self, error_class, status):
        error = error_class("message")
        assert isinstance(error, AuthError)
        assert error.status_code == status
        assert error.to_dict() == {'message': "message", 'statusCode': status}

    def test_override(self):
        """A status can be overridden per instance."""
        assert AuthError("teapot", status_code=418).status_code == 418

    def test_explicit_none_keeps_class_status(self):
        """Passing status_code=None is the same as omitting it."""
        assert LockedError("locked", status_code=None).status_code == 423

    def test_storage_conflict_is_internal(self):
        """Write collisions are storage errors, never domain errors."""
        error = StorageConflictError("duplicate sequence")
        assert isinstance(error, StorageError)
        assert not isinstance(error, AuthError)

    def test_internal_errors_are_not_domain_errors(self):
        """DecryptionError never maps to a user-facing status."""
        assert not issubclass(DecryptionError, AuthError)


class TestDispatch:
    """Boundary mapping of results and failures."""

    def test_success(self):
        """Results pass through with 200."""
        assert dispatch(lambda value: {'echo': value}, 3) == (200, {'echo': 3})

    def test_domain_error(self):
        """Domain errors keep their status and message."""
        def fail():
            raise LockedError("Too many attempts.")

        assert dispatch(fail) == (423, {'message': "Too many attempts.", 'statusCode': 423})

    def test_unexpected_error_is_hidden(self, caplog):
        """Anything else is logged and reported generically."""
        def explode():
            raise KeyError("password_hash")

        with caplog.at_level(logging.ERROR, logger='plantvault.errors'):
            status, body = dispatch(explode)
        assert status == 500
        assert body == {'message': INTERNAL_ERROR_MESSAGE, 'statusCode': 500}
        assert 'password_hash' not in body['message']
        assert "explode" in caplog.text

    def test_service_call(self, service):
        """Works with bound service methods."""
        status, body = dispatch(service.login, "ghost@example.com", "x")
        assert status == 401
        assert body['message'] == "Invalid credentials."
