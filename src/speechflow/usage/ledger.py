"""
UsageLedger - cost tracking against daily limits.

Every finished speech operation is appended as an immutable UsageRecord
and folded into the DailyAggregate of the current UTC date. Records
older than the retention window (30 days) are purged on construction;
aggregates are kept until a full ``clear``.

Persistent keys (all survive emergency storage reclamation):
    speechflow_usage        list of UsageRecord dicts
    speechflow_daily_stats  {date: DailyAggregate dict}
    speechflow_limits       DailyLimits dict

Limit checks (request counts, per-kind cost, total cost):
    >= 80 % of a limit   → warning
    >= 100 % of a limit  → within_limits = False

Example:
    >>> ledger = UsageLedger(PersistentStore(MemoryBackend()))
    >>> ledger.track("synthesize", "deepgram", {"text_length": 5000, "success": True})
    'synthesize_1767225600000_a1b2c3d4e'
    >>> ledger.today().synthesize.cost_cents
    10
"""
from __future__ import annotations

import json
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from speechflow.core.config import DailyLimits, UsageConfig
from speechflow.core.logging import get_logger, info, verbose, warn
from speechflow.core.metrics import SpeechMetrics
from speechflow.errors import DailyLimitExceeded, ValidationError
from speechflow.storage.store import PersistentStore
from speechflow.usage.pricing import USAGE_KINDS, CostModel

_LOG = get_logger("speechflow.usage")

USAGE_KEY = "speechflow_usage"
DAILY_STATS_KEY = "speechflow_daily_stats"
LIMITS_KEY = "speechflow_limits"

DAY_SECONDS = 24 * 60 * 60


def utc_date(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).date().isoformat()


@dataclass(frozen=True)
class UsageRecord:
    id: str
    timestamp: float
    kind: str
    provider: str
    metadata: Dict[str, Any]
    estimated_cost_cents: int

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "UsageRecord":
        return cls(
            id=str(raw["id"]),
            timestamp=float(raw["timestamp"]),
            kind=str(raw["kind"]),
            provider=str(raw.get("provider", "")),
            metadata=dict(raw.get("metadata") or {}),
            estimated_cost_cents=int(raw.get("estimated_cost_cents", 0)),
        )


@dataclass
class TranscribeAggregate:
    count: int = 0
    total_bytes: int = 0
    total_duration_sec: float = 0.0
    cost_cents: int = 0


@dataclass
class SynthesizeAggregate:
    count: int = 0
    total_chars: int = 0
    cost_cents: int = 0


@dataclass
class CatalogAggregate:
    count: int = 0
    cost_cents: int = 0


@dataclass
class DailyAggregate:
    """Per-UTC-date totals. ``total_cost_cents`` is the sum of the parts."""
    date: str
    transcribe: TranscribeAggregate = field(default_factory=TranscribeAggregate)
    synthesize: SynthesizeAggregate = field(default_factory=SynthesizeAggregate)
    catalog: CatalogAggregate = field(default_factory=CatalogAggregate)
    total_cost_cents: int = 0

    def add(self, record: UsageRecord) -> None:
        meta = record.metadata
        cost = record.estimated_cost_cents
        if record.kind == "transcribe":
            self.transcribe.count += 1
            self.transcribe.total_bytes += int(meta.get("file_size") or 0)
            self.transcribe.total_duration_sec += float(meta.get("duration") or 0.0)
            self.transcribe.cost_cents += cost
        elif record.kind == "synthesize":
            self.synthesize.count += 1
            self.synthesize.total_chars += int(meta.get("text_length") or 0)
            self.synthesize.cost_cents += cost
        else:
            self.catalog.count += 1
            self.catalog.cost_cents += cost
        self.total_cost_cents = (
            self.transcribe.cost_cents + self.synthesize.cost_cents + self.catalog.cost_cents
        )

    @property
    def request_count(self) -> int:
        return self.transcribe.count + self.synthesize.count + self.catalog.count

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "DailyAggregate":
        return cls(
            date=str(raw["date"]),
            transcribe=TranscribeAggregate(**(raw.get("transcribe") or {})),
            synthesize=SynthesizeAggregate(**(raw.get("synthesize") or {})),
            catalog=CatalogAggregate(**(raw.get("catalog") or {})),
            total_cost_cents=int(raw.get("total_cost_cents", 0)),
        )


@dataclass
class LimitCheck:
    within_limits: bool
    warnings: List[str]
    limits: DailyLimits
    current: DailyAggregate


@dataclass
class UsageStats:
    today: DailyAggregate
    last_7_days: List[DailyAggregate]
    last_30_days: List[DailyAggregate]
    total_requests: int
    total_cost_cents: int
    first_use: str


def _dollars(cents: float) -> str:
    return f"${cents / 100:.2f}"


class UsageLedger:
    """
    Persistent usage and cost ledger.

    Args:
        store: Persistent store holding records, aggregates and limits.
        config: Rates, retention window, warning ratio and default limits.
        clock: Wall-clock source in seconds (injectable for tests).
        metrics: Optional metrics sink for the cost counter.
    """

    def __init__(
        self,
        store: PersistentStore,
        config: Optional[UsageConfig] = None,
        clock: Callable[[], float] = time.time,
        metrics: Optional[SpeechMetrics] = None,
    ):
        self._store = store
        self._config = config or UsageConfig()
        self._costs = CostModel.from_config(self._config)
        self._clock = clock
        self._metrics = metrics
        self._lock = threading.Lock()
        # Fallback state while the store is disabled or failing
        self._memory: Dict[str, Any] = {}

        self._seed()
        self.purge()

    # ─────────────────────────────────────────────────────────────────────────
    # Persistence helpers
    # ─────────────────────────────────────────────────────────────────────────

    def _load(self, key: str, default: Any) -> Any:
        value = self._memory.get(key)
        if value is None and self._store.enabled:
            value = self._store.get(key)
            if value is not None:
                self._memory[key] = value
        return default if value is None else value

    def _save(self, key: str, value: Any) -> None:
        self._memory[key] = value
        if self._store.enabled and not self._store.set(key, value, max_age=0):
            warn(_LOG, "usage_persist_failed", key=key)

    def _seed(self) -> None:
        with self._lock:
            if self._load(USAGE_KEY, None) is None:
                self._save(USAGE_KEY, [])
            if self._load(DAILY_STATS_KEY, None) is None:
                self._save(DAILY_STATS_KEY, {})
            if self._load(LIMITS_KEY, None) is None:
                self._save(LIMITS_KEY, self._config.limits.to_dict())

    def _records(self) -> List[UsageRecord]:
        records = []
        for raw in self._load(USAGE_KEY, []):
            try:
                records.append(UsageRecord.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                verbose(_LOG, "usage_record_skipped", error=str(e))
        return records

    def _daily(self) -> Dict[str, Any]:
        daily = self._load(DAILY_STATS_KEY, {})
        return daily if isinstance(daily, dict) else {}

    def _aggregate_for(self, daily: Mapping[str, Any], date: str) -> DailyAggregate:
        raw = daily.get(date)
        if raw is None:
            return DailyAggregate(date=date)
        try:
            return DailyAggregate.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            warn(_LOG, "usage_aggregate_corrupted", date=date, error=str(e))
            return DailyAggregate(date=date)

    # ─────────────────────────────────────────────────────────────────────────
    # Tracking
    # ─────────────────────────────────────────────────────────────────────────

    def track(self, kind: str, provider: str = "deepgram", metadata: Optional[Mapping[str, Any]] = None) -> str:
        """
        Record one operation and update today's aggregate.

        Args:
            kind: "transcribe", "synthesize" or "catalog".
            provider: Service that handled the operation.
            metadata: file_size, text_length, duration, model, format,
                success, error.

        Returns:
            The new record id.
        """
        if kind not in USAGE_KINDS:
            raise ValidationError(f"unknown usage kind: {kind}", details={"kind": kind})

        now = self._clock()
        meta = dict(metadata or {})
        record = UsageRecord(
            id=f"{kind}_{int(now * 1000)}_{uuid.uuid4().hex[:9]}",
            timestamp=now,
            kind=kind,
            provider=provider,
            metadata=meta,
            estimated_cost_cents=self._costs.estimate(kind, meta),
        )

        with self._lock:
            records = self._load(USAGE_KEY, [])
            records.append(asdict(record))
            self._save(USAGE_KEY, records)

            daily = self._daily()
            date = utc_date(now)
            aggregate = self._aggregate_for(daily, date)
            aggregate.add(record)
            daily[date] = aggregate.to_dict()
            self._save(DAILY_STATS_KEY, daily)

        if self._metrics is not None:
            self._metrics.record_cost(kind, record.estimated_cost_cents)
        info(_LOG, "usage_tracked", kind=kind, provider=provider, cost_cents=record.estimated_cost_cents)
        return record.id

    # ─────────────────────────────────────────────────────────────────────────
    # Limits
    # ─────────────────────────────────────────────────────────────────────────

    def limits(self) -> DailyLimits:
        raw = self._load(LIMITS_KEY, None)
        if not isinstance(raw, dict):
            return DailyLimits.from_dict(self._config.limits.to_dict())
        return DailyLimits.from_dict(raw)

    def update_limits(self, partial: Union[DailyLimits, Mapping[str, Any]]) -> DailyLimits:
        """
        Merge ``partial`` into the current limits.

        Example:
            ledger.update_limits({"synthesize": {"max_cost_cents": 500}})
        """
        if isinstance(partial, DailyLimits):
            updates: Mapping[str, Any] = partial.to_dict()
        else:
            updates = partial

        with self._lock:
            merged = self.limits().to_dict()
            for section, values in updates.items():
                if section not in merged or not isinstance(values, Mapping):
                    raise ValidationError(f"unknown limit section: {section}", details={"section": section})
                merged[section].update({k: int(v) for k, v in values.items()})
            limits = DailyLimits.from_dict(merged)
            self._save(LIMITS_KEY, limits.to_dict())
        info(_LOG, "limits_updated", sections=",".join(updates.keys()))
        return limits

    def check_limits(self) -> LimitCheck:
        today = self.today()
        limits = self.limits()
        ratio = self._config.warning_ratio
        warnings: List[str] = []
        within = True

        checks = [
            ("transcription", today.transcribe.count, limits.transcribe.max_requests, "requests"),
            ("transcription cost", today.transcribe.cost_cents, limits.transcribe.max_cost_cents, "cents"),
            ("synthesis", today.synthesize.count, limits.synthesize.max_requests, "requests"),
            ("synthesis cost", today.synthesize.cost_cents, limits.synthesize.max_cost_cents, "cents"),
            ("total cost", today.total_cost_cents, limits.total.max_cost_cents, "cents"),
        ]
        for label, current, limit, unit in checks:
            if limit <= 0:
                continue
            shown_limit = _dollars(limit) if unit == "cents" else f"{limit} requests"
            if current >= limit:
                warnings.append(f"Daily {label} limit reached ({shown_limit})")
                within = False
            elif current >= limit * ratio:
                shown_current = _dollars(current) if unit == "cents" else str(current)
                shown_max = _dollars(limit) if unit == "cents" else str(limit)
                warnings.append(f"Approaching daily {label} limit ({shown_current}/{shown_max})")

        return LimitCheck(within_limits=within, warnings=warnings, limits=limits, current=today)

    def ensure_within_limits(self, kind: str) -> LimitCheck:
        """
        Raises:
            DailyLimitExceeded: If any daily limit is already reached.
        """
        check = self.check_limits()
        if not check.within_limits and self._config.enforce_limits:
            warn(_LOG, "daily_limit_exceeded", kind=kind, warnings=len(check.warnings))
            raise DailyLimitExceeded(
                check.warnings[0] if check.warnings else "Daily usage limit reached",
                details={"kind": kind, "warnings": check.warnings},
            )
        return check

    # ─────────────────────────────────────────────────────────────────────────
    # Reporting
    # ─────────────────────────────────────────────────────────────────────────

    def today(self) -> DailyAggregate:
        return self._aggregate_for(self._daily(), utc_date(self._clock()))

    def _window(self, days: int) -> List[DailyAggregate]:
        daily = self._daily()
        today = datetime.fromtimestamp(self._clock(), tz=timezone.utc).date()
        return [
            self._aggregate_for(daily, (today - timedelta(days=offset)).isoformat())
            for offset in range(days - 1, -1, -1)
        ]

    def stats(self) -> UsageStats:
        records = self._records()
        first = min((r.timestamp for r in records), default=None)
        return UsageStats(
            today=self.today(),
            last_7_days=self._window(7),
            last_30_days=self._window(30),
            total_requests=len(records),
            total_cost_cents=sum(r.estimated_cost_cents for r in records),
            first_use=utc_date(first if first is not None else self._clock()),
        )

    def records(self) -> List[UsageRecord]:
        return self._records()

    def export(self) -> str:
        """All records, statistics and limits as a JSON document."""
        payload = {
            "export_date": datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat(),
            "records": [asdict(r) for r in self._records()],
            "stats": asdict(self.stats()),
            "limits": self.limits().to_dict(),
        }
        return json.dumps(payload, indent=2, ensure_ascii=False)

    # ─────────────────────────────────────────────────────────────────────────
    # Maintenance
    # ─────────────────────────────────────────────────────────────────────────

    def purge(self) -> int:
        """Drop records older than the retention window. Returns the count removed."""
        cutoff = self._clock() - self._config.retention_days * DAY_SECONDS
        with self._lock:
            raw_records = self._load(USAGE_KEY, [])
            kept = [r for r in raw_records if isinstance(r, dict) and float(r.get("timestamp", 0)) > cutoff]
            removed = len(raw_records) - len(kept)
            if removed:
                self._save(USAGE_KEY, kept)
        if removed:
            info(_LOG, "usage_purged", removed=removed)
        return removed

    def clear(self) -> None:
        """Wipe records and aggregates and restore the default limits."""
        with self._lock:
            for key in (USAGE_KEY, DAILY_STATS_KEY, LIMITS_KEY):
                self._memory.pop(key, None)
                self._store.remove(key)
        self._seed()
        info(_LOG, "usage_cleared")
