"""
PersistentStore - budgeted key/value persistence.

Wraps every value in a StoredItem envelope and keeps the tracked byte
total under a ceiling:

    set(key, value)
      → JSON-serialize → run-length compress (> 1 KB)
      → wrap in StoredItem → check quota
      → graduated reclamation (oldest first) → emergency reclamation
      → backend.write
      → on StorageQuotaError: emergency reclamation, one retry with a
        minimal uncompressed envelope

Storage problems never raise out of the store: ``set`` returns False and
``get`` returns None, and both log what happened.

Envelope format (JSON):
    {"payload": "...", "timestamp": 1767225600.0, "size_bytes": 1234,
     "compressed": true, "max_age": 604800}

    ``max_age`` is in seconds; null means the store default (30 days),
    0 means the item never expires.

Usage:
    store = PersistentStore(MemoryBackend())
    store.set("speechflow_limits", {"total": {"max_cost_cents": 1000}})
    store.get("speechflow_limits")
"""
from __future__ import annotations

import json
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from speechflow.core.config import Defaults
from speechflow.core.logging import debug, get_logger, info, verbose, warn
from speechflow.core.metrics import SpeechMetrics
from speechflow.errors import CorruptedEntryError, StorageQuotaError
from speechflow.storage.backends import StorageBackend, StorageQuota, entry_size
from speechflow.storage.compression import rle_compress, rle_decompress
from speechflow.utils.timeit import timeit

_LOG = get_logger("speechflow.storage")

ESSENTIAL_KEYS = (
    "speechflow_usage",
    "speechflow_daily_stats",
    "speechflow_limits",
)


@dataclass
class StoredItem:
    """Envelope around one stored value."""
    payload: str
    timestamp: float
    size_bytes: int
    compressed: bool = False
    max_age: Optional[float] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_json(cls, document: str) -> "StoredItem":
        """
        Parse an envelope.

        Raises:
            CorruptedEntryError: If the document is not a valid envelope.
        """
        try:
            raw = json.loads(document)
            return cls(
                payload=str(raw["payload"]),
                timestamp=float(raw["timestamp"]),
                size_bytes=int(raw["size_bytes"]),
                compressed=bool(raw.get("compressed", False)),
                max_age=None if raw.get("max_age") is None else float(raw["max_age"]),
            )
        except (ValueError, TypeError, KeyError) as e:
            raise CorruptedEntryError("invalid envelope", details={"error": str(e)}) from e

    def is_expired(self, now: float, default_max_age: float) -> bool:
        max_age = default_max_age if self.max_age is None else self.max_age
        if max_age == 0:
            return False
        return now - self.timestamp > max_age


@dataclass
class StorageStats:
    quota: StorageQuota
    item_count: int
    oldest_item_age: float
    largest_item: Tuple[str, int]


class PersistentStore:
    """
    Budgeted persistent key/value store.

    Thread-safe: all backend access happens under one lock, so background
    sweeps and foreground writes interleave consistently.

    Args:
        backend: Storage substrate, or None to disable persistence (every
            call becomes a no-op).
        max_bytes: Ceiling used when the backend offers no quota estimate.
        compression_threshold: Serialized length above which values are
            run-length compressed.
        max_age_s: Default item lifetime in seconds.
        essential_keys: Keys that survive reclamation.
        clock: Wall-clock source in seconds (injectable for tests).
        metrics: Optional metrics sink for the storage bytes gauge.
    """

    def __init__(
        self,
        backend: Optional[StorageBackend],
        max_bytes: int = Defaults.STORAGE_MAX_BYTES,
        compression_threshold: int = Defaults.STORAGE_COMPRESSION_THRESHOLD,
        max_age_s: float = Defaults.STORAGE_MAX_AGE_S,
        essential_keys: Iterable[str] = ESSENTIAL_KEYS,
        clock: Callable[[], float] = time.time,
        metrics: Optional[SpeechMetrics] = None,
    ):
        self._backend = backend
        self._max_bytes = max_bytes
        self._threshold = compression_threshold
        self._max_age = max_age_s
        self._essential = frozenset(essential_keys)
        self._clock = clock
        self._metrics = metrics
        self._lock = threading.RLock()

    @property
    def enabled(self) -> bool:
        return self._backend is not None

    @property
    def backend(self) -> Optional[StorageBackend]:
        return self._backend

    # ─────────────────────────────────────────────────────────────────────────
    # Read / write
    # ─────────────────────────────────────────────────────────────────────────

    def set(
        self,
        key: str,
        value: Any,
        compress: Optional[bool] = None,
        max_age: Optional[float] = None,
    ) -> bool:
        """
        Store ``value`` under ``key``.

        Args:
            key: Storage key.
            value: Any JSON-serializable value.
            compress: False disables compression; None/True compress when
                the serialized value is over the threshold.
            max_age: Lifetime in seconds (0 = never expires, None = default).

        Returns:
            True if the value was written.
        """
        if self._backend is None:
            return False

        try:
            serialized = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            warn(_LOG, "store_serialize_failed", key=key, error=str(e))
            return False

        should_compress = compress is not False and len(serialized) > self._threshold
        payload = rle_compress(serialized) if should_compress else serialized
        item = StoredItem(
            payload=payload,
            timestamp=self._clock(),
            size_bytes=len(payload),
            compressed=should_compress,
            max_age=max_age,
        )
        document = item.to_json()
        needed = entry_size(key, document)

        with self._lock:
            if not self._make_room(key, needed):
                warn(_LOG, "store_quota_exceeded", key=key, needed=needed)
                return False

            try:
                with timeit("store_write") as t:
                    self._backend.write(key, document)
            except StorageQuotaError as e:
                warn(_LOG, "store_backend_full", key=key, error=e.message)
                self._emergency_reclaim()
                minimal = StoredItem(
                    payload=serialized,
                    timestamp=self._clock(),
                    size_bytes=len(serialized),
                    compressed=False,
                    max_age=max_age,
                )
                try:
                    self._backend.write(key, minimal.to_json())
                except (StorageQuotaError, OSError) as retry_error:
                    warn(_LOG, "store_write_failed", key=key, error=str(retry_error))
                    return False
                self._publish_usage()
                return True
            except OSError as e:
                warn(_LOG, "store_write_failed", key=key, error=str(e))
                return False

        debug(
            _LOG, "stored",
            key=key, bytes=needed, compressed=should_compress,
            seconds=round(t.timing.seconds, 4) if t.timing else None,
        )
        self._publish_usage()
        return True

    def get(self, key: str) -> Any:
        """
        Return the value stored under ``key``.

        Expired and corrupted entries are removed and read as None.
        """
        if self._backend is None:
            return None

        with self._lock:
            try:
                document = self._backend.read(key)
            except OSError as e:
                warn(_LOG, "store_read_failed", key=key, error=str(e))
                return None
            if document is None:
                return None

            try:
                item = StoredItem.from_json(document)
                if item.is_expired(self._clock(), self._max_age):
                    verbose(_LOG, "store_item_expired", key=key)
                    self._delete(key)
                    return None
                data = self._unwrap(item)
            except CorruptedEntryError as e:
                warn(_LOG, "store_item_corrupted", key=key, error=e.message)
                self._delete(key)
                return None
            return data

    def remove(self, key: str) -> None:
        if self._backend is None:
            return
        with self._lock:
            self._delete(key)
        self._publish_usage()

    def keys(self, prefix: str = "") -> List[str]:
        if self._backend is None:
            return []
        with self._lock:
            return [k for k in self._backend.keys() if k.startswith(prefix)]

    def items(self, prefix: str = "") -> List[Tuple[str, StoredItem]]:
        """Parsed envelopes under ``prefix``; unreadable ones are skipped."""
        result = []
        with self._lock:
            for key in self.keys(prefix):
                item = self._read_item(key)
                if item is not None:
                    result.append((key, item))
        return result

    # ─────────────────────────────────────────────────────────────────────────
    # Accounting
    # ─────────────────────────────────────────────────────────────────────────

    def quota(self) -> StorageQuota:
        """Backend estimate when available, else tracked usage vs. max_bytes."""
        if self._backend is None:
            return StorageQuota(used=0, available=0, total=0)
        with self._lock:
            estimate = self._backend.estimate_quota()
            if estimate is not None:
                return estimate
            used = self._tracked_usage()
            return StorageQuota(used=used, available=max(0, self._max_bytes - used), total=self._max_bytes)

    def stats(self) -> StorageStats:
        now = self._clock()
        item_count = 0
        oldest = now
        largest: Tuple[str, int] = ("", 0)
        with self._lock:
            quota = self.quota()
            for key in self.keys():
                item_count += 1
                item = self._read_item(key)
                if item is None:
                    continue
                oldest = min(oldest, item.timestamp)
                if item.size_bytes > largest[1]:
                    largest = (key, item.size_bytes)
        return StorageStats(
            quota=quota,
            item_count=item_count,
            oldest_item_age=max(0.0, now - oldest) if item_count else 0.0,
            largest_item=largest,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Maintenance
    # ─────────────────────────────────────────────────────────────────────────

    def cleanup(self) -> int:
        """Remove expired and corrupted items. Returns the number removed."""
        if self._backend is None:
            return 0
        removed = 0
        now = self._clock()
        with self._lock:
            for key in self._backend.keys():
                document = self._backend.read(key)
                if document is None:
                    continue
                try:
                    item = StoredItem.from_json(document)
                except CorruptedEntryError:
                    self._delete(key)
                    removed += 1
                    continue
                if item.is_expired(now, self._max_age):
                    self._delete(key)
                    removed += 1
        if removed:
            info(_LOG, "store_cleanup", removed=removed)
            self._publish_usage()
        return removed

    def clear(self) -> None:
        if self._backend is None:
            return
        with self._lock:
            self._backend.clear()
        self._publish_usage()

    # ─────────────────────────────────────────────────────────────────────────
    # Internals (callers hold the lock)
    # ─────────────────────────────────────────────────────────────────────────

    def _unwrap(self, item: StoredItem) -> Any:
        try:
            data = rle_decompress(item.payload) if item.compressed else item.payload
            return json.loads(data)
        except ValueError as e:
            raise CorruptedEntryError("unreadable payload", details={"error": str(e)}) from e

    def _read_item(self, key: str) -> Optional[StoredItem]:
        document = self._backend.read(key)
        if document is None:
            return None
        try:
            return StoredItem.from_json(document)
        except CorruptedEntryError:
            return None

    def _delete(self, key: str) -> None:
        try:
            self._backend.delete(key)
        except OSError as e:
            warn(_LOG, "store_delete_failed", key=key, error=str(e))

    def _tracked_usage(self) -> int:
        total = 0
        for key in self._backend.keys():
            document = self._backend.read(key)
            if document is not None:
                total += entry_size(key, document)
        return total

    def _existing_size(self, key: str) -> int:
        document = self._backend.read(key)
        return entry_size(key, document) if document is not None else 0

    def _available_for(self, key: str) -> int:
        return self.quota().available + self._existing_size(key)

    def _make_room(self, key: str, needed: int) -> bool:
        available = self._available_for(key)
        if needed <= available:
            return True

        self._reclaim(needed - available, protect=key)
        if needed <= self._available_for(key):
            return True

        self._emergency_reclaim(protect=key)
        return needed <= self._available_for(key)

    def _reclaim(self, needed: int, protect: str = "") -> int:
        """Delete oldest non-essential items until ``needed`` bytes are freed."""
        candidates = []
        for key in self._backend.keys():
            if key in self._essential or key == protect:
                continue
            document = self._backend.read(key)
            if document is None:
                continue
            try:
                timestamp = StoredItem.from_json(document).timestamp
            except CorruptedEntryError:
                timestamp = float("-inf")
            candidates.append((timestamp, key, entry_size(key, document)))

        candidates.sort()
        freed = 0
        removed = 0
        for _, key, size in candidates:
            if freed >= needed:
                break
            self._delete(key)
            freed += size
            removed += 1

        verbose(_LOG, "store_reclaimed", needed=needed, freed=freed, removed=removed)
        return freed

    def _emergency_reclaim(self, protect: str = "") -> int:
        """Delete every key outside the essential allowlist."""
        removed = 0
        for key in self._backend.keys():
            if key in self._essential or key == protect:
                continue
            self._delete(key)
            removed += 1
        warn(_LOG, "store_emergency_reclaim", removed=removed)
        return removed

    def _publish_usage(self) -> None:
        if self._metrics is None:
            return
        self._metrics.set_storage_bytes(self.quota().used)
