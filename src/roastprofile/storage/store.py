"""
Key/Value Storage Module

This module provides the flash-style key/value namespace that profiles are
persisted in. Writes report the number of bytes written and return 0 when
the namespace cannot take the entry, the same way the appliance's
non-volatile storage does, so callers can retry or free space.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional, Union
import yaml

logger = logging.getLogger(__name__)

# Longest key the flash namespace accepts
MAX_KEY_LENGTH = 15

Value = Union[bytes, str]


class StorageError(Exception):
    """Base exception for storage errors"""
    pass


class StorageKeyError(StorageError):
    """Raised when a key is empty or longer than the namespace allows"""
    pass


def _entry_size(key: str, value: Value) -> int:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return len(key.encode("utf-8")) + len(value)


class KeyValueStore:
    """Base class for key/value namespaces.

    Subclasses keep entries in ``self._data`` and override ``_commit`` to
    persist them.
    """

    def __init__(self, capacity: Optional[int] = None):
        """Initialize the store.

        Args:
            capacity: Maximum bytes (keys plus values) the store may hold,
                or None for no limit
        """
        self.capacity = capacity
        self._data: Dict[str, Value] = {}
        self._lock = threading.Lock()

    def _check_key(self, key: str) -> None:
        if not key:
            raise StorageKeyError("Key must not be empty")
        if len(key) > MAX_KEY_LENGTH:
            raise StorageKeyError(f"Key '{key}' longer than {MAX_KEY_LENGTH} characters")

    def _commit(self) -> bool:
        """Persist the current entries. Returns False if persisting failed."""
        return True

    def used_bytes(self) -> int:
        return sum(_entry_size(k, v) for k, v in self._data.items())

    def _put(self, key: str, value: Value) -> int:
        self._check_key(key)
        size = _entry_size(key, value)
        with self._lock:
            previous = self._data.get(key)
            if self.capacity is not None:
                used = self.used_bytes()
                if previous is not None:
                    used -= _entry_size(key, previous)
                if used + size > self.capacity:
                    logger.warning(f"Store full: cannot write {size} bytes to '{key}' "
                                   f"({used}/{self.capacity} used)")
                    return 0

            self._data[key] = value
            if not self._commit():
                if previous is None:
                    del self._data[key]
                else:
                    self._data[key] = previous
                return 0
        written = size - len(key.encode("utf-8"))
        logger.debug(f"Wrote {written} bytes to '{key}'")
        return written

    def put_bytes(self, key: str, data: bytes) -> int:
        """Store a binary value.

        Returns:
            Number of bytes written, 0 on failure
        """
        return self._put(key, bytes(data))

    def put_string(self, key: str, value: str) -> int:
        """Store a string value.

        Returns:
            Number of bytes written, 0 on failure
        """
        return self._put(key, str(value))

    def get_bytes(self, key: str) -> Optional[bytes]:
        self._check_key(key)
        value = self._data.get(key)
        if isinstance(value, str):
            return value.encode("utf-8")
        return value

    def get_string(self, key: str, default: str = "") -> str:
        self._check_key(key)
        value = self._data.get(key)
        if value is None:
            return default
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        return value

    def is_key(self, key: str) -> bool:
        self._check_key(key)
        return key in self._data

    def remove(self, key: str) -> bool:
        """Remove a key. Returns True if the key existed."""
        self._check_key(key)
        with self._lock:
            if key not in self._data:
                return False
            value = self._data.pop(key)
            if not self._commit():
                self._data[key] = value
                return False
        return True

    def keys(self) -> List[str]:
        return list(self._data)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self._commit()


class MemoryStore(KeyValueStore):
    """Volatile store, used for tests and dry runs"""
    pass


class YamlFileStore(KeyValueStore):
    """Store persisted to a YAML document after every mutation.

    Binary values are written as ``!!binary`` scalars.
    """

    def __init__(self, path: Union[str, Path], capacity: Optional[int] = None):
        super().__init__(capacity=capacity)
        self.path = Path(os.path.expanduser(str(path)))
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            logger.info(f"No store at {self.path}, starting empty")
            return
        try:
            with open(self.path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise StorageError(f"Failed to read store {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"Store {self.path} is not a mapping")
        self._data = {str(k): v for k, v in data.items() if isinstance(v, (bytes, str))}
        logger.debug(f"Loaded {len(self._data)} keys from {self.path}")

    def _commit(self) -> bool:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w") as f:
                yaml.safe_dump(self._data, f, default_flow_style=False)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to persist store {self.path}: {e}")
            return False
        return True
