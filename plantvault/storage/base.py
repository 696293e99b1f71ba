"""
Document Storage Interface

Every backend stores plain dict documents grouped into named
collections. Lookups are expressed with a small fluent Query object
so the business logic never depends on a backend's query dialect.

Example:
    >>> query = Query().where('user_id', '==', uid).order_by('created_at', 'desc').limit(1)
    >>> storage.find_one('otp_enrollments', query)
"""

import copy
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterator, List, Optional, Tuple

# Logical collections used by the authentication core
USERS = 'users'
TOKENS = 'tokens'
REGISTRATION_CHALLENGES = 'registration_challenges'
OTP_ENROLLMENTS = 'otp_enrollments'
LOGIN_SESSIONS = 'login_sessions'
MFA_CHALLENGES = 'mfa_challenges'
SECURITY_LOGS = 'security_logs'
GREENHOUSES = 'greenhouses'

COLLECTIONS = (
    USERS, TOKENS, REGISTRATION_CHALLENGES, OTP_ENROLLMENTS,
    LOGIN_SESSIONS, MFA_CHALLENGES, SECURITY_LOGS, GREENHOUSES,
)

OPERATORS = ('==', '!=', '<', '<=', '>', '>=', 'in', 'not-in')

_MISSING = object()


@dataclass(frozen=True)
class Filter:
    """A single field comparison."""
    field: str
    op: str
    value: Any

    def matches(self, document: Dict[str, Any]) -> bool:
        """Evaluate the comparison against one document."""
        actual = get_path(document, self.field)

        if self.op == '==':
            return actual is not _MISSING and actual == self.value
        if self.op == '!=':
            return actual is _MISSING or actual != self.value
        if self.op == 'in':
            return actual is not _MISSING and actual in self.value
        if self.op == 'not-in':
            return actual is _MISSING or actual not in self.value

        # Range comparisons never match missing or null values
        if actual is _MISSING or actual is None or self.value is None:
            return False
        try:
            if self.op == '<':
                return actual < self.value
            if self.op == '<=':
                return actual <= self.value
            if self.op == '>':
                return actual > self.value
            return actual >= self.value
        except TypeError:
            return False


@dataclass
class Query:
    """Filters, ordering and limit for a collection lookup."""
    filters: List[Filter] = field(default_factory=list)
    ordering: List[Tuple[str, str]] = field(default_factory=list)
    max_results: Optional[int] = None

    def where(self, field_path: str, op: str, value: Any) -> 'Query':
        if op not in OPERATORS:
            raise ValueError(f"Unsupported operator '{op}'")
        if op in ('in', 'not-in'):
            value = tuple(value)
        self.filters.append(Filter(field_path, op, value))
        return self

    def order_by(self, field_path: str, direction: str = 'asc') -> 'Query':
        if direction not in ('asc', 'desc'):
            raise ValueError(f"Unsupported direction '{direction}'")
        self.ordering.append((field_path, direction))
        return self

    def limit(self, count: int) -> 'Query':
        self.max_results = count
        return self

    def apply(self, documents: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Filter, sort and truncate a list of documents (not copied)."""
        result = [doc for doc in documents if all(f.matches(doc) for f in self.filters)]

        # Stable sort applied from the least significant key backwards
        for field_path, direction in reversed(self.ordering):
            result.sort(
                key=lambda doc: _sort_key(get_path(doc, field_path)),
                reverse=(direction == 'desc'),
            )

        if self.max_results is not None and self.max_results >= 0:
            result = result[:self.max_results]
        return result


def get_path(document: Dict[str, Any], field_path: str) -> Any:
    """Resolve a dotted path ('mfa.otp.configured_at') inside a document."""
    current: Any = document
    for part in field_path.split('.'):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _sort_key(value: Any) -> Tuple[int, Any]:
    # Missing and null sort first; mixed types grouped by kind
    if value is _MISSING or value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (2, value)
    return (3, str(value))


class Storage(ABC):
    """
    Abstract document store.

    Concrete adapters implement the collection primitives. Every read
    returns deep copies so callers can never mutate stored state by
    accident.
    """

    def initialize(self) -> None:
        """Open connections / create schema. Called once at startup."""

    def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a document by id."""

    @abstractmethod
    def find(self, collection: str, query: Optional[Query] = None) -> List[Dict[str, Any]]:
        """List documents matching a query."""

    @abstractmethod
    def upsert(self, collection: str, doc_id: str, data: Dict[str, Any],
               merge: bool = True) -> Dict[str, Any]:
        """Insert a document, or merge into / replace an existing one."""

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> bool:
        """Delete by id. Returns True if something was removed."""

    @abstractmethod
    def delete_where(self, collection: str, query: Query) -> int:
        """Delete every document matching the query filters."""

    @abstractmethod
    @contextmanager
    def transaction(self) -> Iterator['Storage']:
        """
        Serialize a read-modify-write sequence.

        Writers entering a transaction never interleave with each other,
        which is what keeps the security log hash chain contiguous.
        """

    def find_one(self, collection: str, query: Query) -> Optional[Dict[str, Any]]:
        """First document matching the query, or None."""
        single = replace(query, filters=list(query.filters), ordering=list(query.ordering), max_results=1)
        results = self.find(collection, single)
        return results[0] if results else None

    def count(self, collection: str, query: Optional[Query] = None) -> int:
        """Number of documents matching the query."""
        return len(self.find(collection, query))

    @staticmethod
    def _merge(existing: Optional[Dict[str, Any]], doc_id: str,
               data: Dict[str, Any], merge: bool) -> Dict[str, Any]:
        if existing is not None and merge:
            merged = dict(existing)
            merged.update(copy.deepcopy(data))
        else:
            merged = copy.deepcopy(data)
        merged['id'] = doc_id
        return merged
