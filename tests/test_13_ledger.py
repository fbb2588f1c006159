"""
Tests for the cost model and UsageLedger.

Tests cover:
- Cost estimates rounded up to whole cents
- track() records and daily aggregates
- Limit checks: warnings at 80 %, not within limits at 100 %
- update_limits() merging and validation
- ensure_within_limits() enforcement
- stats(), export(), purge() and clear()
- Persistence across ledger instances sharing a store
"""
import json

import pytest

from speechflow.core.config import UsageConfig
from speechflow.errors import DailyLimitExceeded, ValidationError
from speechflow.storage import MemoryBackend, PersistentStore
from speechflow.usage import CostModel, UsageLedger
from speechflow.usage.ledger import DAILY_STATS_KEY, LIMITS_KEY, USAGE_KEY

JAN_1_2026 = 1767225600.0
DAY = 86400


class FakeClock:
    def __init__(self, now: float = JAN_1_2026 + 3600):
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
def ledger(store, clock):
    return UsageLedger(store, clock=clock)


class TestCostModel:

    def test_synthesis(self):
        costs = CostModel()
        assert costs.synthesis_cost(5000) == 10
        assert costs.synthesis_cost(1) == 2
        assert costs.synthesis_cost(1001) == 4
        assert costs.synthesis_cost(0) == 0

    def test_transcription_by_duration(self):
        costs = CostModel()
        # 3 minutes * 0.43 = 1.29 -> 2 cents
        assert costs.transcription_cost(duration=150) == 2
        assert costs.transcription_cost(duration=60) == 1

    def test_transcription_by_size(self):
        costs = CostModel()
        # 1 MB ~ 2 minutes -> 0.86 -> 1 cent
        assert costs.transcription_cost(file_size=1024 * 1024) == 1
        assert costs.transcription_minutes(file_size=3 * 1024 * 1024) == 6
        assert costs.transcription_cost() == 0

    def test_failures_cost_the_same(self):
        costs = CostModel()
        failed = costs.estimate("synthesize", {"text_length": 2500, "success": False})
        succeeded = costs.estimate("synthesize", {"text_length": 2500, "success": True})
        assert failed == succeeded == 6
        assert costs.estimate("transcribe", {"duration": 150, "success": False}) == 2
        assert costs.estimate("catalog", {"success": True}) == 0


class TestTracking:

    def test_track_synthesis(self, ledger):
        record_id = ledger.track("synthesize", "deepgram", {"text_length": 5000, "success": True})

        assert record_id.startswith("synthesize_")
        today = ledger.today()
        assert today.date == "2026-01-01"
        assert today.synthesize.count == 1
        assert today.synthesize.total_chars == 5000
        assert today.synthesize.cost_cents == 10
        assert today.total_cost_cents == 10

    def test_track_transcription(self, ledger):
        ledger.track("transcribe", metadata={"file_size": 2048, "duration": 150.0, "success": True})

        today = ledger.today()
        assert today.transcribe.count == 1
        assert today.transcribe.total_bytes == 2048
        assert today.transcribe.total_duration_sec == 150.0
        assert today.transcribe.cost_cents == 2

    def test_total_is_sum_of_parts(self, ledger):
        ledger.track("transcribe", metadata={"duration": 60, "success": True})
        ledger.track("synthesize", metadata={"text_length": 10, "success": True})
        ledger.track("catalog", metadata={"success": True})

        today = ledger.today()
        assert today.request_count == 3
        assert today.total_cost_cents == (
            today.transcribe.cost_cents + today.synthesize.cost_cents + today.catalog.cost_cents
        )

    def test_unknown_kind(self, ledger):
        with pytest.raises(ValidationError):
            ledger.track("translate")

    def test_days_are_separate(self, ledger, clock):
        ledger.track("synthesize", metadata={"text_length": 10})
        clock.now += DAY
        ledger.track("synthesize", metadata={"text_length": 10})

        assert ledger.today().date == "2026-01-02"
        assert ledger.today().synthesize.count == 1
        assert len(ledger.records()) == 2

    def test_persisted(self, ledger, store, clock):
        ledger.track("synthesize", metadata={"text_length": 10})

        reopened = UsageLedger(store, clock=clock)
        assert reopened.today().synthesize.count == 1
        assert store.get(USAGE_KEY)[0]["kind"] == "synthesize"

    def test_keys_never_expire(self, ledger, store, clock):
        ledger.track("synthesize", metadata={"text_length": 10})
        clock.now += 365 * DAY
        for key in (USAGE_KEY, DAILY_STATS_KEY, LIMITS_KEY):
            assert store.get(key) is not None

    def test_disabled_store(self, clock):
        ledger = UsageLedger(PersistentStore(None), clock=clock)
        ledger.track("synthesize", metadata={"text_length": 5000})
        assert ledger.today().synthesize.cost_cents == 10


class TestLimits:

    def test_defaults(self, ledger):
        limits = ledger.limits()
        assert limits.transcribe.max_requests == 100
        assert limits.total.max_cost_cents == 1000

    def test_fresh_ledger_within_limits(self, ledger):
        check = ledger.check_limits()
        assert check.within_limits is True
        assert check.warnings == []

    def test_warning_then_limit(self, ledger):
        ledger.update_limits({"synthesize": {"max_requests": 5}})

        for _ in range(4):
            ledger.track("synthesize", metadata={"text_length": 1})
        check = ledger.check_limits()
        assert check.within_limits is True
        assert check.warnings == ["Approaching daily synthesis limit (4/5)"]

        ledger.track("synthesize", metadata={"text_length": 1})
        check = ledger.check_limits()
        assert check.within_limits is False
        assert "Daily synthesis limit reached (5 requests)" in check.warnings

    def test_rounding_per_event_reaches_cost_limit(self, ledger):
        ledger.update_limits({"total": {"max_cost_cents": 10}})

        ledger.track("synthesize", metadata={"text_length": 2500})
        assert ledger.check_limits().warnings == []

        ledger.track("synthesize", metadata={"text_length": 1000})
        check = ledger.check_limits()
        assert check.within_limits is True
        assert check.warnings == ["Approaching daily total cost limit ($0.08/$0.10)"]

        ledger.track("synthesize", metadata={"text_length": 500})
        check = ledger.check_limits()
        # 6 + 2 + 2: each event rounds up on its own
        assert ledger.today().total_cost_cents == 10
        assert check.within_limits is False
        assert "Daily total cost limit reached ($0.10)" in check.warnings

    def test_cost_warning_in_dollars(self, ledger):
        ledger.update_limits({"total": {"max_cost_cents": 10}})
        ledger.track("synthesize", metadata={"text_length": 4000})

        check = ledger.check_limits()
        assert "Approaching daily total cost limit ($0.08/$0.10)" in check.warnings

    def test_ensure_within_limits(self, ledger):
        ledger.update_limits({"transcribe": {"max_requests": 1}})
        ledger.track("transcribe", metadata={"duration": 1})

        with pytest.raises(DailyLimitExceeded) as exc_info:
            ledger.ensure_within_limits("transcribe")
        assert exc_info.value.details["kind"] == "transcribe"

    def test_enforcement_disabled(self, store, clock):
        ledger = UsageLedger(store, UsageConfig(enforce_limits=False), clock=clock)
        ledger.update_limits({"transcribe": {"max_requests": 1}})
        ledger.track("transcribe", metadata={"duration": 1})

        assert ledger.ensure_within_limits("transcribe").within_limits is False

    def test_update_merges(self, ledger, store):
        limits = ledger.update_limits({"synthesize": {"max_cost_cents": 50}})

        assert limits.synthesize.max_cost_cents == 50
        assert limits.synthesize.max_requests == 200
        assert store.get(LIMITS_KEY)["synthesize"]["max_cost_cents"] == 50

    def test_update_unknown_section(self, ledger):
        with pytest.raises(ValidationError):
            ledger.update_limits({"translate": {"max_requests": 1}})


class TestReporting:

    def test_stats(self, ledger, clock):
        ledger.track("synthesize", metadata={"text_length": 5000})
        clock.now += 2 * DAY
        ledger.track("synthesize", metadata={"text_length": 1000})

        stats = ledger.stats()

        assert stats.total_requests == 2
        assert stats.total_cost_cents == 12
        assert stats.first_use == "2026-01-01"
        assert len(stats.last_7_days) == 7
        assert len(stats.last_30_days) == 30
        assert stats.last_7_days[-1].date == "2026-01-03"
        assert stats.last_7_days[-3].synthesize.cost_cents == 10

    def test_export(self, ledger):
        ledger.track("synthesize", metadata={"text_length": 5})

        exported = json.loads(ledger.export())

        assert set(exported) == {"export_date", "records", "stats", "limits"}
        assert exported["records"][0]["kind"] == "synthesize"
        assert exported["stats"]["total_requests"] == 1
        assert exported["limits"]["total"]["max_cost_cents"] == 1000

    def test_purge(self, ledger, store, clock):
        ledger.track("synthesize", metadata={"text_length": 5})
        clock.now += 31 * DAY
        ledger.track("synthesize", metadata={"text_length": 5})

        assert ledger.purge() == 1
        assert len(ledger.records()) == 1
        # Aggregates are kept
        assert "2026-01-01" in store.get(DAILY_STATS_KEY)

    def test_purge_on_construction(self, ledger, store, clock):
        ledger.track("synthesize", metadata={"text_length": 5})
        clock.now += 31 * DAY

        assert UsageLedger(store, clock=clock).records() == []

    def test_clear(self, ledger):
        ledger.update_limits({"total": {"max_cost_cents": 1}})
        ledger.track("synthesize", metadata={"text_length": 5})

        ledger.clear()

        assert ledger.records() == []
        assert ledger.today().request_count == 0
        assert ledger.limits().total.max_cost_cents == 1000
