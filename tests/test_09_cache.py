"""
Tests for ResponseCache.

Tests cover:
- Key derivation (normalization, base36 rolling hash)
- put/get round trip and access bookkeeping
- TTL expiry measured from creation
- Collision detection
- Eviction: a full 100-entry cache keeps 76 entries after one insert
- Hit rate and stats
- Preload
"""
import asyncio

import pytest

from speechflow.core.metrics import SpeechMetrics
from speechflow.speech.cache import (
    CACHE_PREFIX,
    CacheEntry,
    ResponseCache,
    make_key,
    mime_type_for,
    rolling_hash,
)
from speechflow.storage import MemoryBackend, PersistentStore


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return PersistentStore(MemoryBackend(), clock=clock)


@pytest.fixture
def cache(store, clock):
    return ResponseCache(store, clock=clock)


class TestKeys:

    def test_rolling_hash(self):
        assert rolling_hash("") == "0"
        assert rolling_hash("a") == "2p"

    def test_normalized(self):
        assert make_key("  Hello World ", "m", "mp3") == make_key("hello world", "m", "mp3")
        assert make_key("hello", "m", "mp3") != make_key("hello", "m", "wav")
        assert make_key("hello", "m", "mp3").startswith(CACHE_PREFIX)

    def test_mime_types(self):
        assert mime_type_for("wav") == "audio/wav"
        assert mime_type_for("flac") == "audio/mpeg"


class TestRoundTrip:

    def test_put_get(self, cache):
        assert cache.put("Hello", "aura", "mp3", b"ID3\x00audio") is True
        assert cache.get("  hello ", "aura", "mp3") == b"ID3\x00audio"

    def test_miss(self, cache):
        assert cache.get("never", "aura", "mp3") is None

    def test_hit_bumps_entry(self, cache, clock):
        cache.put("Hello", "aura", "mp3", b"x")
        clock.now += 60
        cache.get("hello", "aura", "mp3")

        entry, = cache.entries()
        assert entry.access_count == 1
        assert entry.last_access_at == clock.now
        assert entry.created_at == clock.now - 60

    def test_has_does_not_count(self, cache):
        cache.put("Hello", "aura", "mp3", b"x")
        assert cache.has("hello", "aura", "mp3")
        assert cache.hit_rate() == 0.0

    def test_entry_dict_round_trip(self):
        entry = CacheEntry("k", "t", "m", "mp3", b"\x00\x01", 2, 1.0, 1.0)
        assert CacheEntry.from_dict(entry.to_dict()) == entry


class TestExpiry:

    def test_ttl_from_creation(self, cache, clock):
        cache.put("Hello", "aura", "mp3", b"x")

        clock.now += 6 * 86400
        assert cache.get("hello", "aura", "mp3") == b"x"

        clock.now += 2 * 86400
        assert cache.get("hello", "aura", "mp3") is None
        assert cache.entries() == []

    def test_cleanup(self, cache, clock):
        cache.put("one", "m", "mp3", b"1")
        clock.now += 2 * 86400
        cache.put("two", "m", "mp3", b"2")
        clock.now += 6 * 86400

        assert cache.cleanup() == 1
        assert [e.normalized_text for e in cache.entries()] == ["two"]


class TestCollision:

    def test_mismatch_is_miss(self, cache, store, clock):
        key = make_key("hello", "aura", "mp3")
        other = CacheEntry(key, "something else", "aura", "mp3", b"wrong", 5, clock.now, clock.now)
        store.set(key, other.to_dict())

        assert cache.get("hello", "aura", "mp3") is None
        # Entry is left in place for its owner
        assert store.get(key) is not None


class TestEviction:

    def test_full_cache_keeps_76(self, cache, clock):
        for i in range(100):
            clock.now += 1
            cache.put(f"phrase {i}", "aura", "mp3", b"a")

        # A replayed entry outranks newer unplayed ones
        clock.now += 1
        cache.get("phrase 0", "aura", "mp3")

        clock.now += 1
        cache.put("phrase new", "aura", "mp3", b"b")

        texts = {e.normalized_text for e in cache.entries()}
        assert len(texts) == 76
        assert "phrase new" in texts
        assert "phrase 0" in texts
        assert all(f"phrase {i}" not in texts for i in range(1, 26))
        assert "phrase 26" in texts

    def test_replacing_entry_does_not_evict(self, cache, clock):
        for i in range(100):
            clock.now += 1
            cache.put(f"phrase {i}", "aura", "mp3", b"a")

        clock.now += 1
        assert cache.put("Phrase 50 ", "aura", "mp3", b"fresh")

        assert len(cache.entries()) == 100
        assert cache.get("phrase 50", "aura", "mp3") == b"fresh"

    def test_byte_ceiling(self, store, clock):
        cache = ResponseCache(store, max_entries=100, max_bytes=10, clock=clock)
        for i in range(4):
            clock.now += 1
            cache.put(f"p{i}", "m", "mp3", b"12345")

        # Every put past 10 payload bytes evicts ceil(25%) first
        assert len(cache.entries()) < 4


class TestStats:

    def test_hit_rate_and_metrics(self, store, clock):
        metrics = SpeechMetrics()
        cache = ResponseCache(store, clock=clock, metrics=metrics)
        cache.put("a", "m", "mp3", b"1")

        cache.get("a", "m", "mp3")
        cache.get("b", "m", "mp3")

        assert cache.hit_rate() == 0.5
        assert metrics.value("speechflow_cache_hits_total") == 1.0
        assert metrics.value("speechflow_cache_misses_total") == 1.0

    def test_stats(self, cache, clock):
        first = clock.now
        cache.put("a", "m", "mp3", b"12")
        clock.now += 1
        cache.put("b", "m", "mp3", b"345")
        cache.get("b", "m", "mp3")

        stats = cache.stats()

        assert stats.total_entries == 2
        assert stats.total_size == 5
        assert stats.oldest_entry == first
        assert stats.most_used[0].normalized_text == "b"

    def test_clear(self, cache, store):
        cache.put("a", "m", "mp3", b"1")
        store.set("speechflow_limits", {})
        cache.get("a", "m", "mp3")

        cache.clear()

        assert cache.entries() == []
        assert cache.hit_rate() == 0.0
        assert store.get("speechflow_limits") == {}


class TestPreload:

    def test_preload(self, cache):
        calls = []

        async def synthesize(text, model_id, fmt):
            calls.append(text)
            if text == "boom":
                raise RuntimeError("service down")
            return text.encode()

        cache.put("cached", "m", "mp3", b"c")
        items = [
            {"text": "hello", "model": "m"},
            ("bye", "m", "wav"),
            ("cached", "m", "mp3"),
            ("boom", "m", "mp3"),
        ]

        added = asyncio.run(cache.preload(items, synthesize))

        assert added == 2
        assert calls == ["hello", "bye", "boom"]
        assert cache.get("hello", "m", "mp3") == b"hello"
        assert cache.get("bye", "m", "wav") == b"bye"
