"""
Tests for PersistentStore.

Tests cover:
- set/get round trip, compression above the threshold
- Disabled store (backend=None) is a no-op
- Expiry with the store default, per-item max_age, and max_age=0
- Corrupted envelopes read as None and are removed
- Graduated reclamation (oldest first, essential keys kept)
- Emergency reclamation when the backend itself is full
- quota(), stats(), cleanup(), clear()
"""
import pytest

from speechflow.core.metrics import SpeechMetrics
from speechflow.storage import MemoryBackend, PersistentStore, StoredItem
from speechflow.storage.backends import StorageQuota


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return PersistentStore(MemoryBackend(), max_age_s=100, clock=clock)


def _unique(n: int) -> str:
    """A string of length >= n without runs."""
    return "".join(str(i) for i in range(n))[:n]


class TestReadWrite:

    def test_round_trip(self, store):
        assert store.set("k", {"a": [1, 2, 3], "b": "text"}) is True
        assert store.get("k") == {"a": [1, 2, 3], "b": "text"}

    def test_missing_key(self, store):
        assert store.get("nope") is None

    def test_overwrite(self, store):
        store.set("k", 1)
        store.set("k", 2)
        assert store.get("k") == 2
        assert store.keys() == ["k"]

    def test_large_values_compressed(self, store):
        store.set("big", "a" * 5000)

        (key, item), = store.items()
        assert key == "big"
        assert item.compressed is True
        assert item.size_bytes < 100
        assert store.get("big") == "a" * 5000

    def test_compression_disabled(self, store):
        store.set("big", "a" * 5000, compress=False)
        (_, item), = store.items()
        assert item.compressed is False
        assert store.get("big") == "a" * 5000

    def test_unserializable(self, store):
        assert store.set("k", object()) is False
        assert store.get("k") is None

    def test_remove_and_prefix(self, store):
        store.set("tts_cache_1", 1)
        store.set("tts_cache_2", 2)
        store.set("other", 3)

        assert sorted(store.keys("tts_cache_")) == ["tts_cache_1", "tts_cache_2"]
        store.remove("tts_cache_1")
        assert store.keys("tts_cache_") == ["tts_cache_2"]


class TestDisabled:

    def test_noop(self):
        store = PersistentStore(None)

        assert store.enabled is False
        assert store.set("k", 1) is False
        assert store.get("k") is None
        assert store.keys() == []
        assert store.cleanup() == 0
        assert store.quota() == StorageQuota(used=0, available=0, total=0)
        store.remove("k")
        store.clear()


class TestExpiry:

    def test_default_max_age(self, store, clock):
        store.set("k", "v")

        clock.now += 50
        assert store.get("k") == "v"

        clock.now += 51
        assert store.get("k") is None
        assert store.keys() == []

    def test_item_max_age(self, store, clock):
        store.set("k", "v", max_age=10)
        clock.now += 11
        assert store.get("k") is None

    def test_max_age_zero_never_expires(self, store, clock):
        store.set("k", "v", max_age=0)
        clock.now += 10 ** 9
        assert store.get("k") == "v"

    def test_envelope_expiry(self):
        item = StoredItem(payload="1", timestamp=0.0, size_bytes=1)
        assert item.is_expired(now=31.0, default_max_age=30) is True
        assert item.is_expired(now=30.0, default_max_age=30) is False


class TestCorruption:

    def test_corrupt_envelope_removed(self, store):
        store.backend.write("bad", "{not json")

        assert store.get("bad") is None
        assert "bad" not in store.keys()

    def test_corrupt_payload_removed(self, store):
        store.backend.write("bad", StoredItem(payload="~x", timestamp=1000.0, size_bytes=2, compressed=True).to_json())
        assert store.get("bad") is None
        assert store.keys() == []

    def test_cleanup_counts(self, store, clock):
        store.set("old", 1)
        store.set("forever", 2, max_age=0)
        store.backend.write("bad", "garbage")

        clock.now += 500
        assert store.cleanup() == 2
        assert store.keys() == ["forever"]


class TestReclamation:

    def test_oldest_evicted_first(self, clock):
        store = PersistentStore(MemoryBackend(), max_bytes=1000, clock=clock)
        value = _unique(300)

        store.set("speechflow_limits", value)
        clock.now += 1
        store.set("a", value)
        clock.now += 1
        assert store.set("b", value) is True

        assert sorted(store.keys()) == ["b", "speechflow_limits"]
        assert store.quota().used <= 1000

    def test_oversized_value_rejected(self, clock):
        store = PersistentStore(MemoryBackend(), max_bytes=1000, clock=clock)
        store.set("speechflow_usage", [1, 2, 3])

        assert store.set("huge", _unique(2000)) is False
        assert store.get("huge") is None
        assert store.get("speechflow_usage") == [1, 2, 3]

    def test_backend_full_triggers_emergency(self, clock):
        backend = MemoryBackend(capacity_bytes=1000)
        store = PersistentStore(backend, clock=clock)
        value = _unique(300)

        store.set("speechflow_daily_stats", {"d": 1})
        store.set("a", value)
        store.set("b", value)
        assert store.set("c", value) is True

        assert sorted(store.keys()) == ["c", "speechflow_daily_stats"]
        assert backend.used_bytes <= 1000


class TestAccounting:

    def test_quota_tracked(self, store):
        store.set("k", "v")
        quota = store.quota()

        assert quota.used == len("k") + len(store.backend.read("k"))
        assert quota.total == store.quota().used + quota.available

    def test_stats(self, store, clock):
        store.set("small", 1)
        clock.now += 20
        store.set("large", _unique(200))

        stats = store.stats()

        assert stats.item_count == 2
        assert stats.largest_item[0] == "large"
        assert stats.oldest_item_age == pytest.approx(20)

    def test_stats_empty(self, store):
        stats = store.stats()
        assert stats.item_count == 0
        assert stats.oldest_item_age == 0.0
        assert stats.largest_item == ("", 0)

    def test_storage_gauge(self, clock):
        metrics = SpeechMetrics()
        store = PersistentStore(MemoryBackend(), clock=clock, metrics=metrics)

        store.set("k", "v")
        assert metrics.value("speechflow_storage_bytes") == store.quota().used

        store.clear()
        assert metrics.value("speechflow_storage_bytes") == 0
