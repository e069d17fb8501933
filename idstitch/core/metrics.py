"""idstitch.core.metrics

In-process ingest counters.

No Prometheus dependency here. Every known counter exists from the start, so
`/metrics` reports zeros instead of missing keys.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from threading import Lock


class Metric(StrEnum):
    EVENTS_INGESTED = "ingest.events"
    IDENTIFY_CALLS = "ingest.identify"
    PROFILE_UPDATES = "ingest.profile_updates"
    INGEST_REJECTED = "ingest.rejected"
    INGEST_FAILED = "ingest.failed"
    IDENTITY_CONFLICTS = "identity.conflicts"
    EVENTS_STITCHED = "identity.events_stitched"


@dataclass
class Counter:
    name: Metric
    _value: int = 0
    _lock: Lock = field(default_factory=Lock)

    def inc(self, amount: int = 1) -> None:
        if amount < 0:
            raise ValueError(f"counter {self.name} cannot decrease")
        with self._lock:
            self._value += amount

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


class MetricsRegistry:
    def __init__(self) -> None:
        self._counters: dict[Metric, Counter] = {m: Counter(name=m) for m in Metric}

    def counter(self, name: Metric) -> Counter:
        return self._counters[Metric(name)]

    def snapshot(self) -> dict[str, int]:
        return {str(m): c.value for m, c in self._counters.items()}


REGISTRY = MetricsRegistry()
