# Storage Module
"""
Interchangeable document-store backends behind one interface:
- MemoryStorage   - in-process dicts (tests, ephemeral runs)
- JsonFileStorage - single local JSON file
- SqlStorage      - SQLAlchemy relational table
"""

from .base import (
    Storage,
    Query,
    Filter,
    COLLECTIONS,
    USERS,
    TOKENS,
    REGISTRATION_CHALLENGES,
    OTP_ENROLLMENTS,
    LOGIN_SESSIONS,
    MFA_CHALLENGES,
    SECURITY_LOGS,
    GREENHOUSES,
)
from .memory import MemoryStorage
from .json_file import JsonFileStorage
from .sql import SqlStorage


def create_storage(settings) -> Storage:
    """
    Build the backend selected by settings.storage_backend.

    The returned storage is not initialized yet; the caller owns the
    initialize()/close() lifecycle.
    """
    backend = settings.storage_backend
    if backend == 'memory':
        return MemoryStorage()
    if backend == 'json':
        return JsonFileStorage(settings.json_store_path)
    if backend == 'sql':
        return SqlStorage(settings.database_url)
    raise ValueError(f"Unknown storage backend '{backend}'")


__all__ = [
    'Storage',
    'Query',
    'Filter',
    'MemoryStorage',
    'JsonFileStorage',
    'SqlStorage',
    'create_storage',
    'COLLECTIONS',
    'USERS',
    'TOKENS',
    'REGISTRATION_CHALLENGES',
    'OTP_ENROLLMENTS',
    'LOGIN_SESSIONS',
    'MFA_CHALLENGES',
    'SECURITY_LOGS',
    'GREENHOUSES',
]
