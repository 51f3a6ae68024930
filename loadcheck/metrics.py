"""
Metrics aggregation.

Every virtual user writes into its own :class:`MetricShard`, handed out
by the shared :class:`MetricsAggregator`.  A shard has its own lock, so
the only contention on the hot path is between a virtual user and the
final merge; virtual users never wait on each other.  Once every worker
has stopped, :meth:`MetricsAggregator.finalize` merges the shards into
immutable :class:`MetricSummary` objects.

Four metric kinds are supported:

- ``counter`` -- cumulative sum (e.g. ``http_reqs``)
- ``rate`` -- fraction of non-zero samples (e.g. ``errors``)
- ``trend`` -- full distribution with avg/min/med/max/percentiles
  (e.g. ``http_req_duration``)
- ``gauge`` -- last written value plus its min/max (e.g. ``vus``)

Trends keep every sample, so percentiles are exact.

Key Concepts Demonstrated:
- Sharding by writer to avoid a global lock on the hot path
- ``str, Enum`` for JSON-friendly metric kinds
- Frozen dataclasses for finalized, read-only results
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any


class MetricKind(str, Enum):
    """Kinds of metric the aggregator understands."""

    COUNTER = "counter"
    RATE = "rate"
    TREND = "trend"
    GAUGE = "gauge"


BUILTIN_METRICS: dict[str, MetricKind] = {
    "http_reqs": MetricKind.COUNTER,
    "http_req_duration": MetricKind.TREND,
    "http_req_failed": MetricKind.RATE,
    "checks": MetricKind.RATE,
    "iterations": MetricKind.COUNTER,
    "iteration_duration": MetricKind.TREND,
    "vus": MetricKind.GAUGE,
    "vus_max": MetricKind.GAUGE,
}

# Percentiles always present in a finalized trend, as ``p(N)`` keys.
TREND_PERCENTILES = (90, 95, 99)


def percentile(sorted_values: Sequence[float], pct: float) -> float:
    """
    Return the *pct* percentile of already-sorted values.

    Uses linear interpolation between the two closest ranks, so
    ``percentile(values, 50)`` equals the median.

    Raises:
        ValueError: If *sorted_values* is empty or *pct* is outside 0..100.
    """
    if not sorted_values:
        raise ValueError("percentile of an empty sequence")
    if not 0 <= pct <= 100:
        raise ValueError(f"percentile must be within 0..100, got {pct}")

    position = (len(sorted_values) - 1) * pct / 100.0
    lower = math.floor(position)
    upper = min(lower + 1, len(sorted_values) - 1)
    fraction = position - lower
    return sorted_values[lower] + (sorted_values[upper] - sorted_values[lower]) * fraction


def format_percentile_key(pct: float) -> str:
    """``95`` -> ``"p(95)"``, ``99.9`` -> ``"p(99.9)"``."""
    return f"p({pct:g})"


# =====================================================================
# Finalized results
# =====================================================================


@dataclass(frozen=True)
class MetricSummary:
    """
    Finalized aggregate for one metric.

    Attributes:
        name: Metric name.
        kind: Metric kind.
        count: Number of samples received.
        values: Aggregates by name (``avg``, ``p(95)``, ``rate``...).
        samples: Sorted raw samples for trends; empty for other kinds
            and for summaries read back from a file.
    """

    name: str
    kind: MetricKind
    count: int
    values: Mapping[str, float]
    samples: tuple[float, ...] = field(default=(), repr=False, compare=False)

    def aggregate(self, aggregate: str, argument: float | None = None) -> float:
        """
        Resolve an aggregate such as ``("p", 95)`` or ``("rate", None)``.

        Arbitrary percentiles are computed from raw samples when they are
        available, otherwise only the stored ``p(N)`` keys can be resolved.

        Raises:
            KeyError: If the aggregate is not available for this metric.
        """
        if aggregate == "p":
            key = format_percentile_key(argument)
            if key in self.values:
                return self.values[key]
            if self.samples:
                return percentile(self.samples, argument)
            raise KeyError(key)
        return self.values[aggregate]

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind.value, "count": self.count, "values": dict(self.values)}

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> MetricSummary:
        return cls(
            name=name,
            kind=MetricKind(data["type"]),
            count=int(data["count"]),
            values=MappingProxyType({key: float(value) for key, value in data["values"].items()}),
        )


@dataclass(frozen=True)
class CheckSummary:
    """Pass/fail counts for one named check across the whole run."""

    name: str
    passes: int
    fails: int

    @property
    def total(self) -> int:
        return self.passes + self.fails


@dataclass(frozen=True)
class MetricsSnapshot:
    """Everything the aggregator collected, frozen at finalize time."""

    metrics: Mapping[str, MetricSummary]
    checks: tuple[CheckSummary, ...]


# =====================================================================
# Shards
# =====================================================================


@dataclass
class _ShardData:
    counters: dict[str, float] = field(default_factory=dict)
    counter_samples: dict[str, int] = field(default_factory=dict)
    rates: dict[str, list[int]] = field(default_factory=dict)
    trends: dict[str, list[float]] = field(default_factory=dict)
    # name -> [last_value, min, max, written_at, samples]
    gauges: dict[str, list[float]] = field(default_factory=dict)
    # check name -> [passes, fails]
    checks: dict[str, list[int]] = field(default_factory=dict)


class MetricShard:
    """
    Sample sink owned by one writer (a virtual user or the scheduler).

    The lock only guards against the final merge reading while a
    straggling worker is still writing; in normal operation it is never
    contended.
    """

    def __init__(self, definitions: Mapping[str, MetricKind]):
        self._definitions = definitions
        self._lock = threading.Lock()
        self._data = _ShardData()

    def add(self, name: str, value: float) -> None:
        """Record a single sample."""
        self.record([(name, value)])

    def record(
        self,
        samples: Iterable[tuple[str, float]],
        checks: Iterable[tuple[str, bool]] = (),
    ) -> None:
        """
        Record a batch of metric samples and check outcomes atomically.

        Args:
            samples: ``(metric_name, value)`` pairs.  For rate metrics any
                non-zero value is a hit.
            checks: ``(check_name, passed)`` pairs for per-check counts.

        Raises:
            KeyError: If a metric name has no definition.
        """
        resolved = [(name, self._kind(name), float(value)) for name, value in samples]
        now = time.monotonic()

        with self._lock:
            data = self._data
            for name, kind, value in resolved:
                if kind is MetricKind.COUNTER:
                    data.counters[name] = data.counters.get(name, 0.0) + value
                    data.counter_samples[name] = data.counter_samples.get(name, 0) + 1
                elif kind is MetricKind.RATE:
                    hits_total = data.rates.setdefault(name, [0, 0])
                    hits_total[0] += 1 if value != 0 else 0
                    hits_total[1] += 1
                elif kind is MetricKind.TREND:
                    data.trends.setdefault(name, []).append(value)
                else:
                    gauge = data.gauges.get(name)
                    if gauge is None:
                        data.gauges[name] = [value, value, value, now, 1]
                    else:
                        gauge[0] = value
                        gauge[1] = min(gauge[1], value)
                        gauge[2] = max(gauge[2], value)
                        gauge[3] = now
                        gauge[4] += 1

            for check_name, passed in checks:
                counts = data.checks.setdefault(check_name, [0, 0])
                counts[0 if passed else 1] += 1

    def snapshot(self) -> _ShardData:
        """Return a deep copy of the shard's data."""
        with self._lock:
            data = self._data
            return _ShardData(
                counters=dict(data.counters),
                counter_samples=dict(data.counter_samples),
                rates={name: list(value) for name, value in data.rates.items()},
                trends={name: list(value) for name, value in data.trends.items()},
                gauges={name: list(value) for name, value in data.gauges.items()},
                checks={name: list(value) for name, value in data.checks.items()},
            )

    def _kind(self, name: str) -> MetricKind:
        try:
            return self._definitions[name]
        except KeyError:
            raise KeyError(f"Unknown metric: {name}") from None


# =====================================================================
# Aggregator
# =====================================================================


class MetricsAggregator:
    """
    Owner of all metric shards for a run.

    Args:
        definitions: Custom metric kinds, merged over :data:`BUILTIN_METRICS`.
    """

    def __init__(self, definitions: Mapping[str, MetricKind] | None = None):
        merged = dict(BUILTIN_METRICS)
        merged.update(definitions or {})
        self.definitions: Mapping[str, MetricKind] = MappingProxyType(merged)
        self._shards: list[MetricShard] = []
        self._lock = threading.Lock()

    def new_shard(self) -> MetricShard:
        """Create and register a shard for a new writer."""
        shard = MetricShard(self.definitions)
        with self._lock:
            self._shards.append(shard)
        return shard

    def finalize(self, duration: float) -> MetricsSnapshot:
        """
        Merge every shard into finalized summaries.

        Args:
            duration: Run duration in seconds, used for per-second
                counter rates.

        Returns:
            A :class:`MetricsSnapshot` with one summary per defined metric
            (including metrics that received no samples) and per-check
            pass/fail counts in first-seen order.
        """
        with self._lock:
            shards = list(self._shards)

        merged = _ShardData()
        for shard in shards:
            data = shard.snapshot()
            for name, value in data.counters.items():
                merged.counters[name] = merged.counters.get(name, 0.0) + value
            for name, count in data.counter_samples.items():
                merged.counter_samples[name] = merged.counter_samples.get(name, 0) + count
            for name, (hits, total) in data.rates.items():
                hits_total = merged.rates.setdefault(name, [0, 0])
                hits_total[0] += hits
                hits_total[1] += total
            for name, values in data.trends.items():
                merged.trends.setdefault(name, []).extend(values)
            for name, (last, low, high, written_at, written) in data.gauges.items():
                gauge = merged.gauges.get(name)
                if gauge is None:
                    merged.gauges[name] = [last, low, high, written_at, written]
                    continue
                if written_at >= gauge[3]:
                    gauge[0], gauge[3] = last, written_at
                gauge[1] = min(gauge[1], low)
                gauge[2] = max(gauge[2], high)
                gauge[4] += written
            for name, (passes, fails) in data.checks.items():
                counts = merged.checks.setdefault(name, [0, 0])
                counts[0] += passes
                counts[1] += fails

        metrics = {
            name: _summarize(name, kind, merged, duration)
            for name, kind in self.definitions.items()
        }
        checks = tuple(
            CheckSummary(name=name, passes=passes, fails=fails)
            for name, (passes, fails) in merged.checks.items()
        )
        return MetricsSnapshot(metrics=MappingProxyType(metrics), checks=checks)


def _summarize(name: str, kind: MetricKind, data: _ShardData, duration: float) -> MetricSummary:
    values: dict[str, float] = {}
    samples: tuple[float, ...] = ()

    if kind is MetricKind.COUNTER:
        count = data.counter_samples.get(name, 0)
        total = data.counters.get(name, 0.0)
        values["count"] = total
        values["rate"] = total / duration if duration > 0 else 0.0
    elif kind is MetricKind.RATE:
        hits, count = data.rates.get(name, (0, 0))
        values["rate"] = hits / count if count else 0.0
        values["hits"] = float(hits)
        values["total"] = float(count)
    elif kind is MetricKind.TREND:
        samples = tuple(sorted(data.trends.get(name, ())))
        count = len(samples)
        if samples:
            values["avg"] = math.fsum(samples) / count
            values["min"] = samples[0]
            values["med"] = percentile(samples, 50)
            values["max"] = samples[-1]
            for pct in TREND_PERCENTILES:
                values[format_percentile_key(pct)] = percentile(samples, pct)
    else:
        gauge = data.gauges.get(name)
        count = int(gauge[4]) if gauge is not None else 0
        if gauge is not None:
            values["value"], values["min"], values["max"] = gauge[0], gauge[1], gauge[2]

    return MetricSummary(
        name=name,
        kind=kind,
        count=count,
        values=MappingProxyType(values),
        samples=samples,
    )
