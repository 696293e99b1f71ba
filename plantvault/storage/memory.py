"""
In-process storage backend.

Holds every collection in a dict of dicts. Used by the test suite and
as the base for the JSON file backend, which only adds persistence.
"""

import copy
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from .base import Query, Storage


class MemoryStorage(Storage):
    """
    Dict-backed document store.

    A re-entrant lock guards every primitive, so a thread inside
    transaction() can keep calling get/find/upsert while other threads
    wait for it to finish.
    """

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})

    def _persist(self) -> None:
        """Hook for subclasses that write state somewhere durable."""

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            found = self._collection(collection).get(doc_id)
            return copy.deepcopy(found) if found is not None else None

    def find(self, collection: str, query: Optional[Query] = None) -> List[Dict[str, Any]]:
        with self._lock:
            documents = list(self._collection(collection).values())
            if query is not None:
                documents = query.apply(documents)
            return copy.deepcopy(documents)

    def upsert(self, collection: str, doc_id: str, data: Dict[str, Any],
               merge: bool = True) -> Dict[str, Any]:
        with self._lock:
            docs = self._collection(collection)
            record = self._merge(docs.get(doc_id), doc_id, data, merge)
            docs[doc_id] = record
            self._persist()
            return copy.deepcopy(record)

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            removed = self._collection(collection).pop(doc_id, None)
            if removed is not None:
                self._persist()
            return removed is not None

    def delete_where(self, collection: str, query: Query) -> int:
        with self._lock:
            docs = self._collection(collection)
            doomed = [doc['id'] for doc in docs.values()
                      if all(f.matches(doc) for f in query.filters)]
            for doc_id in doomed:
                del docs[doc_id]
            if doomed:
                self._persist()
            return len(doomed)

    @contextmanager
    def transaction(self) -> Iterator[Storage]:
        with self._lock:
            yield self
