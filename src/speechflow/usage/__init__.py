"""
Usage and cost tracking.

    - ledger.py: UsageLedger, records, daily aggregates, limit checks
    - pricing.py: CostModel cost heuristics in integer cents
"""
from speechflow.usage.ledger import DailyAggregate, LimitCheck, UsageLedger, UsageRecord, UsageStats
from speechflow.usage.pricing import CostModel

__all__ = [
    "CostModel",
    "DailyAggregate",
    "LimitCheck",
    "UsageLedger",
    "UsageRecord",
    "UsageStats",
]
