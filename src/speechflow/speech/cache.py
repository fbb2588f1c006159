"""
ResponseCache - synthesized speech cached in the persistent store.

Entries live under the ``tts_cache_`` prefix and are keyed by a 32-bit
rolling hash of (normalized text, model id, format). Features:
    - TTL expiration (7 days from creation)
    - Hybrid LRU/LFU eviction when the cache is full
    - Hit/miss statistics
    - Collision detection: a stored entry whose text/model/format differ
      from the request reads as a miss

Eviction:
    Triggered by ``put`` when entry count >= max_entries or total payload
    bytes >= max_bytes. Each entry is scored

        score = last_access_at + access_count * 86400

    so one extra play buys a day of recency. The lowest-scoring
    ceil(25%) of entries are removed (ties broken by creation time, then
    key). Inserting into a full 100-entry cache therefore leaves 75 old
    entries plus the new one.

Example:
    >>> cache = ResponseCache(PersistentStore(MemoryBackend()))
    >>> cache.put("Hello", "aura-asteria-en", "mp3", b"ID3...")
    True
    >>> cache.get("  hello ", "aura-asteria-en", "mp3")
    b'ID3...'
"""
from __future__ import annotations

import base64
import binascii
import math
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Union

from speechflow.core.config import Defaults
from speechflow.core.logging import get_logger, info, verbose, warn
from speechflow.core.metrics import SpeechMetrics
from speechflow.storage.store import PersistentStore

_LOG = get_logger("speechflow.cache")

CACHE_PREFIX = "tts_cache_"
DAY_SECONDS = 24 * 60 * 60

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

MIME_TYPES = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "webm": "audio/webm",
    "ogg": "audio/ogg",
}


def mime_type_for(fmt: str) -> str:
    return MIME_TYPES.get(fmt, "audio/mpeg")


def normalize_text(text: str) -> str:
    return text.strip().lower()


def _to_base36(n: int) -> str:
    if n == 0:
        return "0"
    digits = []
    while n:
        n, rem = divmod(n, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def rolling_hash(value: str) -> str:
    """
    32-bit signed rolling hash (h = h * 31 + c), absolute value in base 36.

    Not cryptographic; collisions are possible and handled on read.
    """
    h = 0
    for ch in value:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return _to_base36(abs(h))


def make_key(text: str, model_id: str, fmt: str) -> str:
    return f"{CACHE_PREFIX}{rolling_hash(normalize_text(text) + model_id + fmt)}"


@dataclass
class CacheEntry:
    """
    One cached synthesis result.

    Attributes:
        key: Store key (prefix + hash).
        normalized_text: Trimmed, lower-cased input text.
        model_id: Voice model used for synthesis.
        format: Audio format ("mp3", "wav", ...).
        payload: Audio bytes.
        size_bytes: len(payload).
        created_at: Unix timestamp of the first store.
        last_access_at: Unix timestamp of the latest hit (created_at until then).
        access_count: Number of hits.
        compressed: Whether the store compressed the serialized entry.
    """
    key: str
    normalized_text: str
    model_id: str
    format: str
    payload: bytes
    size_bytes: int
    created_at: float
    last_access_at: float
    access_count: int = 0
    compressed: bool = True

    @property
    def score(self) -> float:
        return self.last_access_at + self.access_count * DAY_SECONDS

    def matches(self, normalized_text: str, model_id: str, fmt: str) -> bool:
        return (
            self.normalized_text == normalized_text
            and self.model_id == model_id
            and self.format == fmt
        )

    def to_dict(self) -> Dict[str, Any]:
        raw = asdict(self)
        raw["payload"] = base64.b64encode(self.payload).decode("ascii")
        return raw

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "CacheEntry":
        """
        Raises:
            ValueError: If the stored entry is malformed.
        """
        try:
            return cls(
                key=str(raw["key"]),
                normalized_text=str(raw["normalized_text"]),
                model_id=str(raw["model_id"]),
                format=str(raw["format"]),
                payload=base64.b64decode(raw["payload"], validate=True),
                size_bytes=int(raw["size_bytes"]),
                created_at=float(raw["created_at"]),
                last_access_at=float(raw["last_access_at"]),
                access_count=int(raw.get("access_count", 0)),
                compressed=bool(raw.get("compressed", True)),
            )
        except (KeyError, TypeError, binascii.Error) as e:
            raise ValueError(f"malformed cache entry: {e}") from e


@dataclass
class CacheStats:
    total_entries: int
    total_size: int
    hit_rate: float
    most_used: List[CacheEntry]
    oldest_entry: Optional[float]


PreloadItem = Union[Dict[str, str], Sequence[str]]
SynthesizeFn = Callable[[str, str, str], Awaitable[bytes]]


class ResponseCache:
    """
    Prefix-isolated synthesis cache on top of a PersistentStore.

    Args:
        store: Backing persistent store.
        max_entries: Entry ceiling that triggers eviction.
        max_bytes: Payload byte ceiling that triggers eviction.
        ttl_s: Entry lifetime in seconds, counted from creation.
        eviction_fraction: Share of entries removed per eviction.
        clock: Wall-clock source (injectable for tests).
        metrics: Optional metrics sink for hit/miss counters.
    """

    def __init__(
        self,
        store: PersistentStore,
        max_entries: int = Defaults.CACHE_MAX_ENTRIES,
        max_bytes: int = Defaults.CACHE_MAX_BYTES,
        ttl_s: float = Defaults.CACHE_TTL_S,
        eviction_fraction: float = Defaults.CACHE_EVICTION_FRACTION,
        clock: Callable[[], float] = time.time,
        metrics: Optional[SpeechMetrics] = None,
    ):
        self._store = store
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self.ttl_s = ttl_s
        self.eviction_fraction = eviction_fraction
        self._clock = clock
        self._metrics = metrics
        self._hits = 0
        self._misses = 0

    # ─────────────────────────────────────────────────────────────────────────
    # Lookup
    # ─────────────────────────────────────────────────────────────────────────

    def has(self, text: str, model_id: str, fmt: str) -> bool:
        """Whether a live entry exists. Does not touch statistics."""
        return self._lookup(text, model_id, fmt) is not None

    def get(self, text: str, model_id: str, fmt: str) -> Optional[bytes]:
        """
        Cached audio for the request, or None.

        A hit bumps the entry's access count and last access time and
        persists it.
        """
        entry = self._lookup(text, model_id, fmt)
        if entry is None:
            self._misses += 1
            if self._metrics is not None:
                self._metrics.record_cache("miss")
            return None

        entry.access_count += 1
        entry.last_access_at = self._clock()
        self._store.set(entry.key, entry.to_dict(), compress=True, max_age=self.ttl_s)

        self._hits += 1
        if self._metrics is not None:
            self._metrics.record_cache("hit")
        info(_LOG, "cache_hit", key=entry.key, bytes=entry.size_bytes, plays=entry.access_count)
        return entry.payload

    def _lookup(self, text: str, model_id: str, fmt: str) -> Optional[CacheEntry]:
        key = make_key(text, model_id, fmt)
        entry = self._load(key)
        if entry is None:
            return None

        if self._expired(entry):
            self._store.remove(key)
            verbose(_LOG, "cache_expired", key=key)
            return None

        if not entry.matches(normalize_text(text), model_id, fmt):
            verbose(_LOG, "cache_key_collision", key=key)
            return None
        return entry

    def _load(self, key: str) -> Optional[CacheEntry]:
        raw = self._store.get(key)
        if raw is None:
            return None
        try:
            return CacheEntry.from_dict(raw)
        except ValueError as e:
            warn(_LOG, "cache_entry_corrupted", key=key, error=str(e))
            self._store.remove(key)
            return None

    def _expired(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.created_at > self.ttl_s

    # ─────────────────────────────────────────────────────────────────────────
    # Store
    # ─────────────────────────────────────────────────────────────────────────

    def put(self, text: str, model_id: str, fmt: str, payload: bytes) -> bool:
        """Cache ``payload``, evicting first when the cache is full."""
        key = make_key(text, model_id, fmt)
        entries = self.entries()
        total_size = sum(e.size_bytes for e in entries)
        replacing = any(e.key == key for e in entries)
        if not replacing and (len(entries) >= self.max_entries or total_size >= self.max_bytes):
            self._evict(entries)

        now = self._clock()
        entry = CacheEntry(
            key=key,
            normalized_text=normalize_text(text),
            model_id=model_id,
            format=fmt,
            payload=bytes(payload),
            size_bytes=len(payload),
            created_at=now,
            last_access_at=now,
            access_count=0,
            compressed=True,
        )
        ok = self._store.set(key, entry.to_dict(), compress=True, max_age=self.ttl_s)
        if ok:
            info(_LOG, "cache_stored", key=key, text=entry.normalized_text[:50], bytes=entry.size_bytes)
        else:
            warn(_LOG, "cache_store_failed", key=key, bytes=entry.size_bytes)
        return ok

    def _evict(self, entries: List[CacheEntry]) -> int:
        ranked = sorted(entries, key=lambda e: (e.score, e.created_at, e.key))
        to_remove = math.ceil(len(ranked) * self.eviction_fraction)
        for entry in ranked[:to_remove]:
            self._store.remove(entry.key)
        info(_LOG, "cache_evicted", removed=to_remove, remaining=len(ranked) - to_remove)
        return to_remove

    def entries(self) -> List[CacheEntry]:
        """Every readable entry under the cache prefix, expired ones included."""
        result = []
        for key in self._store.keys(CACHE_PREFIX):
            entry = self._load(key)
            if entry is not None:
                result.append(entry)
        return result

    # ─────────────────────────────────────────────────────────────────────────
    # Maintenance and statistics
    # ─────────────────────────────────────────────────────────────────────────

    def hit_rate(self) -> float:
        total = self._hits + self._misses
        return self._hits / total if total > 0 else 0.0

    def stats(self) -> CacheStats:
        entries = self.entries()
        most_used = sorted(entries, key=lambda e: e.access_count, reverse=True)[:5]
        return CacheStats(
            total_entries=len(entries),
            total_size=sum(e.size_bytes for e in entries),
            hit_rate=self.hit_rate(),
            most_used=most_used,
            oldest_entry=min((e.created_at for e in entries), default=None),
        )

    async def preload(self, items: Iterable[PreloadItem], synthesize: SynthesizeFn) -> int:
        """
        Synthesize and cache each (text, model_id, format) not yet cached.

        Failures are logged and skipped.

        Returns:
            Number of entries added.
        """
        added = 0
        for item in items:
            if isinstance(item, dict):
                text, model_id, fmt = item["text"], item["model"], item.get("format", Defaults.CACHE_DEFAULT_FORMAT)
            else:
                text, model_id, fmt = item
            if self.has(text, model_id, fmt):
                continue
            try:
                payload = await synthesize(text, model_id, fmt)
            except Exception as e:
                warn(_LOG, "preload_failed", text=text[:30], error=str(e))
                continue
            if payload and self.put(text, model_id, fmt, payload):
                added += 1
        info(_LOG, "preload_done", added=added)
        return added

    def cleanup(self) -> int:
        """Remove expired and unreadable entries."""
        removed = 0
        for key in self._store.keys(CACHE_PREFIX):
            raw = self._store.get(key)
            if raw is None:
                removed += 1
                continue
            try:
                entry = CacheEntry.from_dict(raw)
            except ValueError:
                self._store.remove(key)
                removed += 1
                continue
            if self._expired(entry):
                self._store.remove(key)
                removed += 1
        if removed:
            info(_LOG, "cache_cleanup", removed=removed)
        return removed

    def clear(self) -> None:
        for key in self._store.keys(CACHE_PREFIX):
            self._store.remove(key)
        self._hits = 0
        self._misses = 0
        info(_LOG, "cache_cleared")
