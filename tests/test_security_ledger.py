"""
Unit tests for the hash-chained security ledger.
"""

import pytest

from plantvault.errors import StorageConflictError
from plantvault.integration import GENESIS_HASH, SecurityLedger, compute_entry_hash
from plantvault.integration.security_ledger import APPEND_ATTEMPTS
from plantvault.storage import SECURITY_LOGS, MemoryStorage


class TestLedgerAppend:
    """Append-only chain."""

    def test_first_entry_links_to_genesis(self, ledger):
        """The chain starts at GENESIS."""
        entry = ledger.append('login_failed', metadata={'reason': 'unknown_email'})
        assert entry.prev_hash == GENESIS_HASH
        assert entry.sequence == 1
        assert entry.hash == compute_entry_hash(GENESIS_HASH, entry.payload())

    def test_entries_link_to_predecessor(self, ledger):
        """Each entry carries the previous hash."""
        first = ledger.append('a')
        second = ledger.append('b', user_id='user-1')
        assert second.prev_hash == first.hash
        assert second.sequence == 2

    def test_none_metadata_dropped(self, ledger):
        """Null metadata values are not recorded."""
        entry = ledger.append('x', metadata={'keep': 1, 'drop': None})
        assert entry.metadata == {'keep': 1}

    def test_list_newest_first(self, ledger):
        """list() returns the most recent entries first."""
        for action in ('a', 'b', 'c'):
            ledger.append(action)
        assert [e.action for e in ledger.list(2)] == ['c', 'b']

    def test_entries_for_user(self, ledger):
        """Entries can be filtered by subject."""
        ledger.append('a', user_id='user-1')
        ledger.append('b', user_id='user-2')
        ledger.append('c', user_id='user-1')
        assert [e.action for e in ledger.entries_for('user-1')] == ['c', 'a']


class TestLedgerVerification:
    """Replay of the full chain."""

    def test_untouched_chain_valid(self, ledger):
        """Replaying N appends reproduces every hash."""
        for index in range(10):
            ledger.append('event', metadata={'index': index})
        result = ledger.verify_chain()
        assert result['valid'] is True
        assert result['entries'] == 10

    def test_empty_chain_valid(self, ledger):
        """No entries is a valid chain."""
        assert ledger.verify_chain()['valid'] is True

    def test_tampered_metadata_detected(self, ledger, storage):
        """Editing a stored entry breaks the chain at that entry."""
        ledger.append('a')
        target = ledger.append('login_failed', metadata={'reason': 'invalid_password'})
        ledger.append('c')
        storage.upsert(SECURITY_LOGS, target.id, {'metadata': {'reason': 'nothing to see'}})

        result = ledger.verify_chain()
        assert result['valid'] is False
        assert result['broken_at'] == target.id
        assert result['entries'] == 1

    def test_deleted_entry_detected(self, ledger, storage):
        """Removing an entry breaks the link of its successor."""
        ledger.append('a')
        removed = ledger.append('b')
        successor = ledger.append('c')
        storage.delete(SECURITY_LOGS, removed.id)

        result = ledger.verify_chain()
        assert result['valid'] is False
        assert result['broken_at'] == successor.id

    def test_public_view(self, ledger):
        """to_public uses caller-facing names and ISO timestamps."""
        entry = ledger.append('login_success', user_id='user-1', ip_address='10.0.0.1')
        public = entry.to_public()
        assert public['userId'] == 'user-1'
        assert public['ipAddress'] == '10.0.0.1'
        assert public['createdAt'].startswith('2023-11-14T')


class CollidingStorage(MemoryStorage):
    """Rejects the next few ledger inserts as if another writer got there first."""

    def __init__(self, collisions):
        super().__init__()
        self.collisions = collisions

    def upsert(self, collection, doc_id, data, merge=True):
        if collection == SECURITY_LOGS and self.collisions > 0:
            self.collisions -= 1
            raise StorageConflictError("sequence already taken")
        return super().upsert(collection, doc_id, data, merge=merge)


class TestLedgerCollisions:
    """Lost races against another writer."""

    def test_append_retries_after_collision(self, clock):
        """A collision is retried and the chain stays intact."""
        storage = CollidingStorage(collisions=2)
        storage.initialize()
        ledger = SecurityLedger(storage, clock=clock)
        entry = ledger.append('login_success', user_id='user-1')
        assert entry.sequence == 1
        assert storage.collisions == 0
        assert ledger.verify_chain() == {'valid': True, 'entries': 1, 'broken_at': None, 'reason': None}

    def test_append_gives_up(self, clock):
        """Endless collisions surface instead of looping."""
        storage = CollidingStorage(collisions=APPEND_ATTEMPTS)
        storage.initialize()
        ledger = SecurityLedger(storage, clock=clock)
        with pytest.raises(StorageConflictError):
            ledger.append('login_success')
        assert storage.count(SECURITY_LOGS) == 0
