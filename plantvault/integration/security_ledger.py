"""
Security Event Ledger

Append-only, hash-chained audit trail of security-relevant events
(logins, failed codes, lockouts, revocations, role changes, ...).

Each entry stores:
    prev_hash  - hash of the previous entry ('GENESIS' for the first)
    hash       - SHA-256(prev_hash + canonical JSON of the entry payload)

Rewriting or deleting any historical entry breaks every later hash, so
verify_chain() detects tampering by replaying the log oldest-first.
"""

import hashlib
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from ..errors import StorageConflictError
from ..records import SecurityLogEntry, new_id
from ..storage import SECURITY_LOGS, Query, Storage

logger = logging.getLogger(__name__)

GENESIS_HASH = 'GENESIS'
APPEND_ATTEMPTS = 5


def canonical_json(payload: Dict[str, Any]) -> str:
    """Deterministic JSON encoding used for hashing."""
    return json.dumps(payload, sort_keys=True, separators=(',', ':'), default=str)


def compute_entry_hash(prev_hash: str, payload: Dict[str, Any]) -> str:
    """hash = SHA-256(prev_hash + canonical_json(payload)), hex encoded."""
    return hashlib.sha256((prev_hash + canonical_json(payload)).encode('utf-8')).hexdigest()


def _clean_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {key: value for key, value in (metadata or {}).items() if value is not None}


class SecurityLedger:
    """
    Tamper-evident security event log backed by the document store.

    Appends run inside storage.transaction(), so two concurrent writers can
    never both chain onto the same previous hash. A backend that enforces
    unique sequence numbers reports a lost race as StorageConflictError;
    the append is then retried on top of the new head.

    Example:
        >>> ledger = SecurityLedger(storage)
        >>> ledger.append('login_failed', user_id=uid, metadata={'reason': 'invalid_password'})
        >>> ledger.verify_chain()['valid']
        True
    """

    def __init__(self, storage: Storage, clock: Callable[[], float] = time.time):
        self._storage = storage
        self._clock = clock

    def _latest(self) -> Optional[Dict[str, Any]]:
        return self._storage.find_one(
            SECURITY_LOGS,
            Query().order_by('sequence', 'desc').limit(1)
        )

    def append(self, action: str, user_id: Optional[str] = None,
               metadata: Optional[Dict[str, Any]] = None,
               ip_address: Optional[str] = None) -> SecurityLogEntry:
        """
        Record one event at the head of the chain.

        Args:
            action: Event name, e.g. 'login_success'
            user_id: Subject of the event, if known
            metadata: Extra context (None values are dropped)
            ip_address: Client address, if known

        Returns:
            The persisted entry

        Raises:
            StorageConflictError: Still colliding after APPEND_ATTEMPTS tries
        """
        for attempt in range(1, APPEND_ATTEMPTS + 1):
            try:
                entry = self._append_once(action, user_id, metadata, ip_address)
            except StorageConflictError:
                if attempt == APPEND_ATTEMPTS:
                    raise
                logger.warning("Security log append collided (attempt %d), retrying", attempt)
                continue
            logger.debug("Security event %s #%d", action, entry.sequence)
            return entry

    def _append_once(self, action: str, user_id: Optional[str],
                     metadata: Optional[Dict[str, Any]],
                     ip_address: Optional[str]) -> SecurityLogEntry:
        with self._storage.transaction() as store:
            latest = self._latest()
            prev_hash = latest['hash'] if latest else GENESIS_HASH
            sequence = (latest.get('sequence', 0) + 1) if latest else 1

            entry = SecurityLogEntry(
                id=new_id(),
                sequence=sequence,
                action=action,
                created_at=self._clock(),
                prev_hash=prev_hash,
                hash='',
                user_id=user_id,
                metadata=_clean_metadata(metadata),
                ip_address=ip_address,
            )
            entry.hash = compute_entry_hash(prev_hash, entry.payload())
            store.upsert(SECURITY_LOGS, entry.id, entry.to_dict(), merge=False)
        return entry

    def list(self, limit: int = 100) -> List[SecurityLogEntry]:
        """Most recent entries first."""
        docs = self._storage.find(
            SECURITY_LOGS,
            Query().order_by('sequence', 'desc').limit(limit)
        )
        return [SecurityLogEntry.from_dict(doc) for doc in docs]

    def entries_for(self, user_id: str, limit: int = 100) -> List[SecurityLogEntry]:
        docs = self._storage.find(
            SECURITY_LOGS,
            Query().where('user_id', '==', user_id).order_by('sequence', 'desc').limit(limit)
        )
        return [SecurityLogEntry.from_dict(doc) for doc in docs]

    def verify_chain(self) -> Dict[str, Any]:
        """
        Replay the whole log oldest-first and recompute every hash.

        Returns:
            Dict with 'valid', 'entries' checked, and on failure the
            'broken_at' entry id plus a 'reason'
        """
        docs = self._storage.find(SECURITY_LOGS, Query().order_by('sequence', 'asc'))
        prev_hash = GENESIS_HASH

        for index, doc in enumerate(docs):
            entry = SecurityLogEntry.from_dict(doc)
            if entry.prev_hash != prev_hash:
                return self._broken(index, entry, 'prev_hash does not match previous entry')
            if compute_entry_hash(prev_hash, entry.payload()) != entry.hash:
                return self._broken(index, entry, 'entry hash mismatch')
            prev_hash = entry.hash

        return {'valid': True, 'entries': len(docs), 'broken_at': None, 'reason': None}

    @staticmethod
    def _broken(index: int, entry: SecurityLogEntry, reason: str) -> Dict[str, Any]:
        logger.error("Security log chain broken at entry %s (#%d): %s",
                     entry.id, entry.sequence, reason)
        return {'valid': False, 'entries': index, 'broken_at': entry.id, 'reason': reason}
