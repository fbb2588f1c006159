"""
Cost estimation for speech operations, in integer US cents.

    transcribe   ceil(minutes) * 0.43, minutes from the duration when known,
                 else file_size / MB * 2 (about two minutes per megabyte)
    synthesize   ceil(chars / 1000) * 2
    catalog      free

Every estimate is rounded up to a whole cent. Rates go through Decimal
so that e.g. 3 minutes costs ceil(1.29) = 2 cents exactly.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from speechflow.core.config import Defaults, UsageConfig

MB = 1024 * 1024

USAGE_KINDS = ("transcribe", "synthesize", "catalog")


def _ceil_cents(units: int, rate: float) -> int:
    return int(math.ceil(Decimal(units) * Decimal(str(rate))))


@dataclass
class CostModel:
    transcribe_cents_per_minute: float = Defaults.USAGE_TRANSCRIBE_CENTS_PER_MINUTE
    transcribe_minutes_per_mb: float = Defaults.USAGE_TRANSCRIBE_MINUTES_PER_MB
    synthesize_cents_per_1000_chars: float = Defaults.USAGE_SYNTHESIZE_CENTS_PER_1000_CHARS

    @classmethod
    def from_config(cls, config: UsageConfig) -> "CostModel":
        return cls(
            transcribe_cents_per_minute=config.transcribe_cents_per_minute,
            transcribe_minutes_per_mb=config.transcribe_minutes_per_mb,
            synthesize_cents_per_1000_chars=config.synthesize_cents_per_1000_chars,
        )

    def transcription_minutes(self, file_size: Optional[int] = None, duration: Optional[float] = None) -> int:
        if duration:
            return math.ceil(duration / 60)
        if file_size:
            return math.ceil(Decimal(file_size) / MB * Decimal(str(self.transcribe_minutes_per_mb)))
        return 0

    def transcription_cost(self, file_size: Optional[int] = None, duration: Optional[float] = None) -> int:
        return _ceil_cents(self.transcription_minutes(file_size, duration), self.transcribe_cents_per_minute)

    def synthesis_cost(self, chars: int) -> int:
        if chars <= 0:
            return 0
        return _ceil_cents(math.ceil(chars / 1000), self.synthesize_cents_per_1000_chars)

    def estimate(self, kind: str, metadata: Optional[Mapping[str, Any]] = None) -> int:
        """
        Estimated cost of one operation described by ``metadata``.

        Failed operations are estimated the same way as successful ones:
        the request size still counts against the daily limits.
        """
        meta: Dict[str, Any] = dict(metadata or {})
        if kind == "transcribe":
            return self.transcription_cost(meta.get("file_size"), meta.get("duration"))
        if kind == "synthesize":
            return self.synthesis_cost(int(meta.get("text_length") or 0))
        return 0
