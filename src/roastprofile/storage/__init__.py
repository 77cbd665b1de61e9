"""
Storage package for roastprofile

Key/value namespaces that profile records are persisted in:
- MemoryStore: volatile, optional byte capacity
- YamlFileStore: persisted to a YAML document

Writes return the number of bytes written (0 on failure) rather than
raising, so the catalog can retry and evict.
"""

from .store import (
    KeyValueStore,
    MemoryStore,
    YamlFileStore,
    StorageError,
    StorageKeyError,
    MAX_KEY_LENGTH
)

__all__ = [
    'KeyValueStore',
    'MemoryStore',
    'YamlFileStore',
    'StorageError',
    'StorageKeyError',
    'MAX_KEY_LENGTH'
]
