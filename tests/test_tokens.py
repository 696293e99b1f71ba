"""
Unit tests for the session token ledger.

Tests:
- Access token issue/verify/revoke
- Refresh token persistence and revocation
- Password reset tokens
"""

import threading

import jwt
import pytest

from plantvault.auth import TokenLedger, hash_token
from plantvault.errors import InvalidTokenError
from plantvault.records import ROLE_USER, TOKEN_PASSWORD_RESET, TOKEN_REFRESH, User
from plantvault.storage import TOKENS, Query

from .conftest import START_TIME


def make_user(**overrides):
    fields = dict(
        id="user-1",
        email="alice@example.com",
        password_hash="$argon2id$placeholder",
        role=ROLE_USER,
        created_at=START_TIME,
        updated_at=START_TIME,
        last_password_change=START_TIME,
        password_expires_at=START_TIME + 90 * 86400,
        consent_given=True,
    )
    fields.update(overrides)
    return User(**fields)


def run_together(func, arg, workers=2):
    """Call func(arg) from several threads released at the same moment."""
    start = threading.Barrier(workers)
    results, errors = [], []

    def worker():
        start.wait(timeout=5)
        try:
            results.append(func(arg))
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return results, errors


@pytest.fixture
def tokens(storage, ledger, clock):
    return TokenLedger(storage, ledger,
                       access_secret="access-secret",
                       refresh_secret="refresh-secret",
                       clock=clock)


class TestAccessTokens:
    """Stateless access tokens with jti revocation."""

    def test_round_trip(self, tokens):
        """Verify returns the user's id and claims."""
        issued = tokens.issue_access_token(make_user())
        payload = tokens.verify_access_token(issued.token)
        assert payload['sub'] == "user-1"
        assert payload['email'] == "alice@example.com"
        assert payload['role'] == ROLE_USER
        assert payload['iss'] == "plantelligence-backend"
        assert payload['jti'] == issued.jti
        assert payload['requiresPasswordReset'] is False

    def test_expires_after_ttl(self, tokens, clock):
        """Token is rejected once the clock passes exp."""
        issued = tokens.issue_access_token(make_user())
        clock.advance(899)
        tokens.verify_access_token(issued.token)
        clock.advance(2)
        with pytest.raises(InvalidTokenError):
            tokens.verify_access_token(issued.token)

    def test_revoked_jti_rejected(self, tokens, ledger):
        """After revocation by jti the same token fails."""
        issued = tokens.issue_access_token(make_user())
        tokens.revoke_access_token_by_jti(issued.jti, "user-1")
        with pytest.raises(InvalidTokenError):
            tokens.verify_access_token(issued.token)
        assert ledger.list(1)[0].action == 'access_token_revoked'

    def test_revocation_does_not_affect_other_tokens(self, tokens):
        """Only the revoked jti is blocked."""
        first = tokens.issue_access_token(make_user())
        second = tokens.issue_access_token(make_user())
        tokens.revoke_access_token_by_jti(first.jti, "user-1")
        assert tokens.verify_access_token(second.token)['jti'] == second.jti

    def test_foreign_signature_rejected(self, tokens):
        """A token signed with another secret fails."""
        forged = jwt.encode({'sub': 'user-1', 'iss': 'plantelligence-backend', 'jti': 'x',
                             'iat': int(START_TIME), 'exp': int(START_TIME) + 900},
                            "not-the-secret", algorithm="HS256")
        with pytest.raises(InvalidTokenError):
            tokens.verify_access_token(forged)

    def test_wrong_issuer_rejected(self, tokens):
        """Issuer must match."""
        foreign = jwt.encode({'sub': 'user-1', 'iss': 'someone-else', 'jti': 'x',
                              'iat': int(START_TIME), 'exp': int(START_TIME) + 900},
                             "access-secret", algorithm="HS256")
        with pytest.raises(InvalidTokenError):
            tokens.verify_access_token(foreign)

    def test_garbage_and_empty_rejected(self, tokens):
        """Malformed input is an InvalidTokenError."""
        with pytest.raises(InvalidTokenError):
            tokens.verify_access_token("not.a.jwt")
        with pytest.raises(InvalidTokenError):
            tokens.verify_access_token("")

    def test_expired_password_flagged(self, tokens):
        """requiresPasswordReset reflects the password expiry."""
        issued = tokens.issue_access_token(make_user(password_expires_at=START_TIME - 1))
        assert tokens.verify_access_token(issued.token)['requiresPasswordReset'] is True


class TestRefreshTokens:
    """Refresh tokens persisted by hash."""

    def test_round_trip(self, tokens):
        """A fresh refresh token verifies."""
        issued = tokens.issue_refresh_token(make_user())
        assert tokens.verify_refresh_token(issued.token)['sub'] == "user-1"

    def test_only_hash_is_stored(self, tokens, storage):
        """The raw token never reaches storage."""
        issued = tokens.issue_refresh_token(make_user())
        rows = storage.find(TOKENS, Query().where('type', '==', TOKEN_REFRESH))
        assert len(rows) == 1
        assert rows[0]['token_hash'] == hash_token(issued.token)
        assert issued.token not in str(rows)

    def test_revoked_refresh_rejected(self, tokens):
        """Revoke then verify fails."""
        issued = tokens.issue_refresh_token(make_user())
        assert tokens.revoke_refresh_token(issued.token) is True
        with pytest.raises(InvalidTokenError):
            tokens.verify_refresh_token(issued.token)

    def test_revoke_unknown_is_noop(self, tokens):
        """Unknown tokens are ignored."""
        assert tokens.revoke_refresh_token("unknown") is False
        assert tokens.revoke_refresh_token("") is False

    def test_expired_refresh_rejected(self, tokens, clock):
        """Refresh tokens expire after seven days."""
        issued = tokens.issue_refresh_token(make_user())
        clock.advance(7 * 24 * 60 * 60 + 1)
        with pytest.raises(InvalidTokenError):
            tokens.verify_refresh_token(issued.token)

    def test_unpersisted_refresh_rejected(self, tokens, storage):
        """A validly signed token with no stored record fails."""
        issued = tokens.issue_refresh_token(make_user())
        storage.delete_where(TOKENS, Query().where('type', '==', TOKEN_REFRESH))
        with pytest.raises(InvalidTokenError):
            tokens.verify_refresh_token(issued.token)

    def test_refresh_not_accepted_as_access(self, tokens):
        """Refresh tokens cannot authenticate requests."""
        issued = tokens.issue_refresh_token(make_user())
        with pytest.raises(InvalidTokenError):
            tokens.verify_access_token(issued.token)

    def test_session_tokens_pair(self, tokens):
        """issue_session_tokens returns both tokens."""
        pair = tokens.issue_session_tokens(make_user()).to_dict()
        assert set(pair) == {'access', 'refresh'}
        assert pair['access']['jti'] != pair['refresh']['jti']

    def test_rotate_spends_token(self, tokens):
        """Rotation returns the payload once, then the token is revoked."""
        issued = tokens.issue_refresh_token(make_user())
        assert tokens.rotate_refresh_token(issued.token)['sub'] == "user-1"
        with pytest.raises(InvalidTokenError):
            tokens.rotate_refresh_token(issued.token)
        with pytest.raises(InvalidTokenError):
            tokens.verify_refresh_token(issued.token)

    def test_concurrent_rotation_single_winner(self, tokens, monkeypatch):
        """Two callers past the signature check at once; only one rotates."""
        issued = tokens.issue_refresh_token(make_user())
        both_decoded = threading.Barrier(2)
        decode = tokens._decode

        def decode_then_wait(token, secret):
            payload = decode(token, secret)
            both_decoded.wait(timeout=5)
            return payload

        monkeypatch.setattr(tokens, '_decode', decode_then_wait)
        results, errors = run_together(tokens.rotate_refresh_token, issued.token)
        assert len(results) == 1
        assert [type(e) for e in errors] == [InvalidTokenError]


class TestPasswordResetTokens:
    """Single-use reset links."""

    def test_consume_once(self, tokens):
        """A reset token works exactly once."""
        raw, _ = tokens.issue_password_reset_token("user-1")
        record = tokens.consume_password_reset_token(raw)
        assert record.user_id == "user-1"
        assert record.type == TOKEN_PASSWORD_RESET
        with pytest.raises(InvalidTokenError):
            tokens.consume_password_reset_token(raw)

    def test_expired_reset_rejected(self, tokens, clock):
        """Reset tokens expire after 15 minutes."""
        raw, expires_at = tokens.issue_password_reset_token("user-1")
        assert expires_at == START_TIME + 900
        clock.advance(901)
        with pytest.raises(InvalidTokenError):
            tokens.consume_password_reset_token(raw)

    def test_unknown_reset_rejected(self, tokens):
        """Unknown tokens fail."""
        with pytest.raises(InvalidTokenError):
            tokens.consume_password_reset_token("nope")
        with pytest.raises(InvalidTokenError):
            tokens.consume_password_reset_token("")

    def test_concurrent_consume_single_winner(self, tokens):
        """Racing consumers of one link: exactly one gets the record."""
        raw, _ = tokens.issue_password_reset_token("user-1")
        results, errors = run_together(tokens.consume_password_reset_token, raw, workers=4)
        assert len(results) == 1
        assert len(errors) == 3
        assert all(isinstance(e, InvalidTokenError) for e in errors)


class TestTokenCleanup:
    """Expiry sweep."""

    def test_cleanup_expired(self, tokens, clock, storage):
        """Only rows past expires_at are removed."""
        tokens.issue_password_reset_token("user-1")
        tokens.issue_refresh_token(make_user())
        clock.advance(901)
        assert tokens.cleanup_expired() == 1
        assert tokens.cleanup_expired() == 0
        assert storage.count(TOKENS) == 1
