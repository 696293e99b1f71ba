"""
Local JSON file backend.

The whole store lives in one JSON document on disk. It is loaded once by
initialize() and rewritten after every mutation through a temporary file
and os.replace(), so a crash mid-write never leaves a truncated store.
"""

import json
import logging
import os
import tempfile

from ..errors import StorageError
from .memory import MemoryStorage

logger = logging.getLogger(__name__)


class JsonFileStorage(MemoryStorage):
    """MemoryStorage that mirrors its state to a JSON file."""

    def __init__(self, path: str):
        super().__init__()
        self._path = os.path.abspath(path)
        self._loaded = False

    @property
    def path(self) -> str:
        return self._path

    def initialize(self) -> None:
        """
        Load the store from disk.

        A missing or empty file starts a clean store. A file that is not
        valid JSON is an error rather than silently discarded data.

        Raises:
            StorageError: If the file exists but cannot be parsed
        """
        with self._lock:
            if self._loaded:
                return
            os.makedirs(os.path.dirname(self._path), exist_ok=True)
            self._collections = self._read()
            self._loaded = True
            logger.info("JSON store opened at %s (%d collections)",
                        self._path, len(self._collections))

    def _read(self) -> dict:
        if not os.path.exists(self._path):
            return {}
        with open(self._path, 'r', encoding='utf-8') as handle:
            raw = handle.read()
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StorageError(f"Corrupt JSON store at {self._path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StorageError(f"JSON store at {self._path} is not an object")
        return {
            name: {doc['id']: doc for doc in docs}
            for name, docs in data.items()
        }

    def _persist(self) -> None:
        if not self._loaded:
            raise StorageError("JsonFileStorage used before initialize()")
        snapshot = {
            name: list(docs.values())
            for name, docs in self._collections.items()
        }
        directory = os.path.dirname(self._path)
        fd, tmp_path = tempfile.mkstemp(prefix='.local-db-', suffix='.json', dir=directory)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as handle:
                json.dump(snapshot, handle, indent=2)
            os.replace(tmp_path, self._path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def close(self) -> None:
        with self._lock:
            self._loaded = False

    def __repr__(self) -> str:
        return f"JsonFileStorage(path='{self._path}')"

