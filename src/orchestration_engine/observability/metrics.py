"""Run metrics: counters, gauges and sample distributions keyed by name and labels."""

from __future__ import annotations

import json
import math
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Final

from orchestration_engine.domain.models import JSONValue

DISPATCHES: Final[str] = "engine_dispatches_total"
ITERATIONS: Final[str] = "engine_iterations_total"
OUTCOMES: Final[str] = "engine_outcomes_total"
SPIRAL_PATTERNS: Final[str] = "engine_spiral_patterns_total"
BUDGET_REMAINING: Final[str] = "engine_budget_remaining_units"
COMMITMENT_LEVEL: Final[str] = "engine_commitment_level"
ITERATION_SECONDS: Final[str] = "engine_iteration_elapsed_seconds"
BATCH_SIZE: Final[str] = "engine_dispatch_batch_size"

Labels = Mapping[str, str]


@dataclass(slots=True)
class _Samples:
    values: list[float] = field(default_factory=list)

    def summary(self) -> dict[str, JSONValue]:
        count = len(self.values)
        total = math.fsum(self.values)
        return {
            "count": count,
            "sum": total,
            "min": min(self.values) if count else None,
            "max": max(self.values) if count else None,
            "avg": total / count if count else 0.0,
        }


class MetricsRegistry:
    """Thread-safe in-memory metrics. Series are identified as ``name{k=v,...}``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, float] = {}
        self._gauges: dict[str, float] = {}
        self._samples: dict[str, _Samples] = {}

    def inc(self, name: str, amount: float = 1.0, *, labels: Labels | None = None) -> None:
        delta = _finite(amount)
        if delta < 0:
            raise ValueError("counters only increase")
        series = series_id(name, labels)
        with self._lock:
            self._counters[series] = self._counters.get(series, 0.0) + delta

    def set_gauge(self, name: str, value: float, *, labels: Labels | None = None) -> None:
        series = series_id(name, labels)
        with self._lock:
            self._gauges[series] = _finite(value)

    def observe(self, name: str, value: float, *, labels: Labels | None = None) -> None:
        series = series_id(name, labels)
        sample = _finite(value)
        with self._lock:
            self._samples.setdefault(series, _Samples()).values.append(sample)

    def get_counter(self, name: str, *, labels: Labels | None = None) -> float:
        with self._lock:
            return self._counters.get(series_id(name, labels), 0.0)

    def get_gauge(self, name: str, *, labels: Labels | None = None) -> float | None:
        with self._lock:
            return self._gauges.get(series_id(name, labels))

    def get_distribution(
        self, name: str, *, labels: Labels | None = None
    ) -> dict[str, JSONValue] | None:
        with self._lock:
            samples = self._samples.get(series_id(name, labels))
            return None if samples is None else samples.summary()

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._samples.clear()

    def snapshot(self) -> dict[str, JSONValue]:
        with self._lock:
            return {
                "counters": dict(sorted(self._counters.items())),
                "gauges": dict(sorted(self._gauges.items())),
                "distributions": {
                    series: samples.summary() for series, samples in sorted(self._samples.items())
                },
            }

    def to_json(self, *, indent: int | None = None) -> str:
        separators = None if indent is not None else (",", ":")
        return json.dumps(self.snapshot(), sort_keys=True, indent=indent, separators=separators)


def series_id(name: str, labels: Labels | None = None) -> str:
    """Canonical series identifier; label order does not matter."""

    if not isinstance(name, str) or not name.strip():
        raise ValueError("metric name must be a non-empty string")
    if not labels:
        return name.strip()
    parts = []
    for key, value in sorted(labels.items()):
        if not isinstance(key, str) or not isinstance(value, str) or not key or not value:
            raise ValueError(f"invalid metric label {key!r}={value!r}")
        parts.append(f"{key}={value}")
    return f"{name.strip()}{{{','.join(parts)}}}"


def _finite(value: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValueError(f"metric value must be a finite number, got {value!r}")
    return float(value)


__all__ = [
    "BATCH_SIZE",
    "BUDGET_REMAINING",
    "COMMITMENT_LEVEL",
    "DISPATCHES",
    "ITERATIONS",
    "ITERATION_SECONDS",
    "OUTCOMES",
    "SPIRAL_PATTERNS",
    "MetricsRegistry",
    "series_id",
]
