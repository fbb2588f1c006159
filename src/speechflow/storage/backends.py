"""
Storage backends for the persistent store.

A backend is a flat string-to-string mapping with an optional capacity.
The store owns envelopes, expiry and reclamation; backends only move
documents in and out.

    MemoryBackend: dict-backed, for tests and short-lived processes
    FileBackend:   one JSON file per key in a sharded directory

File Organization (FileBackend):
    {base_dir}/
        3f/
            3fa1...c9.json    {"key": "tts_cache_1x2y", "document": "..."}
        a0/
            a07e...12.json

    File names are SHA256 digests of the key, the first two hex
    characters select the shard directory. Writes go to a temp file
    first and are then renamed over the target.
"""
from __future__ import annotations

import errno
import hashlib
import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from speechflow.core.logging import get_logger, verbose, warn
from speechflow.errors import StorageQuotaError

_LOG = get_logger("speechflow.storage.backends")


@dataclass
class StorageQuota:
    """Byte accounting for a backend or store."""
    used: int
    available: int
    total: int


def entry_size(key: str, document: str) -> int:
    """Bytes charged for one stored entry."""
    return len(key) + len(document)


class StorageBackend(ABC):
    """Abstract key/value substrate."""

    @abstractmethod
    def read(self, key: str) -> Optional[str]:
        """Return the document stored under ``key`` or None."""

    @abstractmethod
    def write(self, key: str, document: str) -> None:
        """
        Store ``document`` under ``key``.

        Raises:
            StorageQuotaError: If the write would exceed capacity.
        """

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``; missing keys are ignored."""

    @abstractmethod
    def keys(self) -> List[str]:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...

    def estimate_quota(self) -> Optional[StorageQuota]:
        """Backend-side quota estimate, or None when the backend has none."""
        return None


class MemoryBackend(StorageBackend):
    """
    Dict-backed backend.

    ``capacity_bytes`` limits the total of ``len(key) + len(document)``;
    a write that would cross it raises StorageQuotaError, mimicking a
    full browser or disk store.
    """

    def __init__(self, capacity_bytes: Optional[int] = None):
        self._capacity = capacity_bytes
        self._data: Dict[str, str] = {}
        self._used = 0
        self._lock = threading.Lock()

    @property
    def used_bytes(self) -> int:
        return self._used

    def read(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def write(self, key: str, document: str) -> None:
        with self._lock:
            old = self._data.get(key)
            old_size = entry_size(key, old) if old is not None else 0
            new_used = self._used - old_size + entry_size(key, document)
            if self._capacity is not None and new_used > self._capacity:
                raise StorageQuotaError(
                    "memory backend full",
                    details={"needed": entry_size(key, document), "capacity": self._capacity},
                )
            self._data[key] = document
            self._used = new_used

    def delete(self, key: str) -> None:
        with self._lock:
            old = self._data.pop(key, None)
            if old is not None:
                self._used -= entry_size(key, old)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data.keys())

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self._used = 0


class FileBackend(StorageBackend):
    """
    Directory-backed backend with sharded JSON files.

    Args:
        base_dir: Root directory, created on demand.
        capacity_bytes: Optional ceiling; when set, ``estimate_quota``
            reports usage against it and over-capacity writes raise
            StorageQuotaError.
    """

    def __init__(self, base_dir: str | Path, capacity_bytes: Optional[int] = None):
        self._base_dir = Path(base_dir)
        self._capacity = capacity_bytes
        self._lock = threading.Lock()

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def _key_to_path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self._base_dir / digest[:2] / f"{digest}.json"

    def _iter_files(self):
        if not self._base_dir.exists():
            return
        for shard_dir in self._base_dir.iterdir():
            if not shard_dir.is_dir():
                continue
            yield from shard_dir.glob("*.json")

    def _load(self, path: Path) -> Optional[Dict[str, str]]:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            verbose(_LOG, "backend_read_error", file=path.name, error=str(e))
            return None
        if not isinstance(raw, dict) or "key" not in raw or "document" not in raw:
            return None
        return raw

    def _used_bytes(self) -> int:
        total = 0
        for path in self._iter_files():
            raw = self._load(path)
            if raw is not None:
                total += entry_size(raw["key"], raw["document"])
        return total

    def read(self, key: str) -> Optional[str]:
        p = self._key_to_path(key)
        if not p.exists():
            return None
        raw = self._load(p)
        if raw is None:
            # Unreadable wrapper: surface it so the store treats it as corrupted
            return ""
        return raw["document"]

    def write(self, key: str, document: str) -> None:
        p = self._key_to_path(key)
        with self._lock:
            if self._capacity is not None:
                old = self.read(key)
                old_size = entry_size(key, old) if old else 0
                if self._used_bytes() - old_size + entry_size(key, document) > self._capacity:
                    raise StorageQuotaError(
                        "file backend full",
                        details={"needed": entry_size(key, document), "capacity": self._capacity},
                    )

            p.parent.mkdir(parents=True, exist_ok=True)
            tmp = p.with_suffix(".tmp")
            try:
                tmp.write_text(json.dumps({"key": key, "document": document}, ensure_ascii=False), encoding="utf-8")
                tmp.replace(p)
            except OSError as e:
                if tmp.exists():
                    tmp.unlink()
                if e.errno == errno.ENOSPC:
                    raise StorageQuotaError("no space left on device", details={"path": str(p)}) from e
                raise

    def delete(self, key: str) -> None:
        p = self._key_to_path(key)
        with self._lock:
            try:
                p.unlink()
            except FileNotFoundError:
                return
            try:
                if not any(p.parent.iterdir()):
                    p.parent.rmdir()
            except OSError as e:
                verbose(_LOG, "shard_cleanup_error", shard=p.parent.name, error=str(e))

    def keys(self) -> List[str]:
        result = []
        for path in self._iter_files():
            raw = self._load(path)
            if raw is None:
                warn(_LOG, "unreadable_entry_file", file=path.name)
                continue
            result.append(raw["key"])
        return result

    def clear(self) -> None:
        with self._lock:
            for path in list(self._iter_files()):
                path.unlink(missing_ok=True)
            if self._base_dir.exists():
                for shard_dir in self._base_dir.iterdir():
                    if shard_dir.is_dir() and not any(shard_dir.iterdir()):
                        shard_dir.rmdir()

    def estimate_quota(self) -> Optional[StorageQuota]:
        if self._capacity is None:
            return None
        used = self._used_bytes()
        return StorageQuota(used=used, available=max(0, self._capacity - used), total=self._capacity)
