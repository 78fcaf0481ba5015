"""
Storage Module
==============
Device-local durable key-value storage for terminal state.

Failure tolerance:
- Missing or corrupt records read back as the caller's default
- Write failures are logged and reported as False, never raised
- File writes are atomic (temp file + rename)
"""

import os
import json
import logging
import tempfile
from typing import Any, Dict
from pathlib import Path

from prometheus_client import Counter


logger = logging.getLogger(__name__)


# Fixed keys, one per owning component
CURRENT_ORDER_KEY = "pos_current_order"
PENDING_ORDERS_KEY = "pos_pending_orders"


storage_failures = Counter(
    'pos_storage_failures_total',
    'Durable storage failures',
    ['operation']
)


class KeyValueStore:
    """
    Base key-value store for JSON-serializable values.

    Subclasses implement the raw string operations; this class handles
    encoding, decoding and failure tolerance.
    """

    def _read(self, key: str) -> Any:
        """Return the raw stored string, or None if absent."""
        raise NotImplementedError

    def _write(self, key: str, raw: str):
        raise NotImplementedError

    def _delete(self, key: str):
        raise NotImplementedError

    def get(self, key: str, default: Any = None) -> Any:
        """
        Read and decode a value.

        Args:
            key: Storage key
            default: Returned when the key is absent or unreadable

        Returns:
            Decoded value or default
        """
        try:
            raw = self._read(key)
        except OSError as e:
            storage_failures.labels(operation="read").inc()
            logger.error(f"Failed to read {key}: {str(e)}")
            return default

        if raw is None:
            return default

        try:
            return json.loads(raw)
        except (ValueError, TypeError) as e:
            storage_failures.labels(operation="decode").inc()
            logger.error(f"Corrupt data under {key}, using default: {str(e)}")
            return default

    def set(self, key: str, value: Any) -> bool:
        """
        Encode and write a value (last write wins).

        Returns:
            True if written
        """
        try:
            raw = json.dumps(value)
        except (ValueError, TypeError) as e:
            storage_failures.labels(operation="encode").inc()
            logger.error(f"Value for {key} is not serializable: {str(e)}")
            return False

        try:
            self._write(key, raw)
        except OSError as e:
            storage_failures.labels(operation="write").inc()
            logger.error(f"Failed to write {key}: {str(e)}")
            return False

        return True

    def remove(self, key: str) -> bool:
        """
        Remove a key entirely. Removing an absent key succeeds.

        Returns:
            True if the key no longer exists
        """
        try:
            self._delete(key)
        except OSError as e:
            storage_failures.labels(operation="delete").inc()
            logger.error(f"Failed to remove {key}: {str(e)}")
            return False

        return True


class FileStore(KeyValueStore):
    """One JSON file per key under a data directory."""

    def __init__(self, directory):
        self.directory = Path(directory)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            storage_failures.labels(operation="init").inc()
            logger.error(f"Cannot create data directory {self.directory}: {str(e)}")

        logger.info(f"FileStore initialized at {self.directory}")

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def _read(self, key: str) -> Any:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def _write(self, key: str, raw: str):
        fd, tmp_name = tempfile.mkstemp(
            dir=self.directory,
            prefix=f".{key}.",
            suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(raw)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path(key))
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _delete(self, key: str):
        path = self._path(key)
        if path.exists():
            path.unlink()

    def __repr__(self):
        return f"<FileStore directory={self.directory}>"


class MemoryStore(KeyValueStore):
    """In-process store with the same encoding behaviour as FileStore."""

    def __init__(self, initial: Dict[str, str] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def _read(self, key: str) -> Any:
        return self._data.get(key)

    def _write(self, key: str, raw: str):
        self._data[key] = raw

    def _delete(self, key: str):
        self._data.pop(key, None)

    def raw(self, key: str) -> Any:
        """Raw stored string (for inspection)."""
        return self._data.get(key)

    def __contains__(self, key: str) -> bool:
        return key in self._data
