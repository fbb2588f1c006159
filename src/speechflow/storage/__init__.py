"""
Persistent storage for speechflow.

    - store.py: PersistentStore with envelopes, quota and reclamation
    - backends.py: MemoryBackend and FileBackend substrates
    - compression.py: reversible run-length encoding for stored values
"""
from speechflow.storage.backends import FileBackend, MemoryBackend, StorageBackend, StorageQuota
from speechflow.storage.store import ESSENTIAL_KEYS, PersistentStore, StorageStats, StoredItem

__all__ = [
    "ESSENTIAL_KEYS",
    "FileBackend",
    "MemoryBackend",
    "PersistentStore",
    "StorageBackend",
    "StorageQuota",
    "StorageStats",
    "StoredItem",
]
