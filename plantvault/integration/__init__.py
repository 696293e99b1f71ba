# Integration Module
"""
Security ledger: append-only, hash-chained audit log of authentication
events. Tampering with any stored entry breaks the chain on replay.
"""

from .security_ledger import (
    SecurityLedger,
    GENESIS_HASH,
    canonical_json,
    compute_entry_hash,
)

__all__ = [
    'SecurityLedger',
    'GENESIS_HASH',
    'canonical_json',
    'compute_entry_hash',
]
