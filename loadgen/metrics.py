"""Per-run metric recorder: append-only series with on-demand statistics.

Percentiles use the nearest-rank estimator: for ``p(N)`` over ``n`` sorted
values the result is the value at 1-based rank ``ceil(N / 100 * n)``, and
``p(0)`` is the minimum. It always returns an observed value, so reports are
reproducible for a given set of observations regardless of arrival order.
"""

import math
import re
import threading
import time
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from loadgen.models import CheckResult, Observation, Tags, freeze_tags


class MetricKind(str, Enum):
    TREND = "trend"
    RATE = "rate"
    COUNTER = "counter"
    GAUGE = "gauge"


BUILTIN_METRICS: Dict[str, MetricKind] = {
    "http_reqs": MetricKind.COUNTER,
    "http_req_duration": MetricKind.TREND,
    "http_req_sending": MetricKind.TREND,
    "http_req_waiting": MetricKind.TREND,
    "http_req_receiving": MetricKind.TREND,
    "http_req_connecting": MetricKind.TREND,
    "http_req_failed": MetricKind.RATE,
    "iterations": MetricKind.COUNTER,
    "iteration_duration": MetricKind.TREND,
    "checks": MetricKind.RATE,
    "vus": MetricKind.GAUGE,
    "vus_max": MetricKind.GAUGE,
}

STATISTICS_BY_KIND: Dict[MetricKind, tuple] = {
    MetricKind.TREND: ("count", "sum", "avg", "min", "max", "med", "value"),
    MetricKind.RATE: ("count", "rate", "passes", "fails"),
    MetricKind.COUNTER: ("count", "rate"),
    MetricKind.GAUGE: ("value", "min", "max"),
}

# Statistics reported by snapshot() when the caller does not ask for others.
DEFAULT_SNAPSHOT_STATS: Dict[MetricKind, List[str]] = {
    MetricKind.TREND: ["count", "avg", "min", "med", "max", "p(90)", "p(95)", "p(99)"],
    MetricKind.RATE: ["rate", "passes", "fails"],
    MetricKind.COUNTER: ["count", "rate"],
    MetricKind.GAUGE: ["value", "min", "max"],
}

_PERCENTILE_RE = re.compile(r"^p\(?(\d+(?:\.\d+)?)\)?$")


def normalize_statistic(statistic: str) -> str:
    """Canonicalise a statistic name; ``p95`` and ``p(95)`` both become ``p(95)``.

    Raises:
        ValueError: If the name is not a known statistic.
    """
    stat = statistic.strip().lower()
    match = _PERCENTILE_RE.match(stat)
    if match:
        pct = float(match.group(1))
        if pct > 100:
            raise ValueError(f"percentile out of range: {statistic!r}")
        return f"p({match.group(1)})"
    known = {s for stats in STATISTICS_BY_KIND.values() for s in stats}
    if stat not in known:
        raise ValueError(f"unknown statistic: {statistic!r}")
    return stat


def supports_statistic(kind: MetricKind, statistic: str) -> bool:
    stat = normalize_statistic(statistic)
    if stat.startswith("p("):
        return kind == MetricKind.TREND
    return stat in STATISTICS_BY_KIND[kind]


def percentile(sorted_values: List[float], pct: float) -> Optional[float]:
    """Nearest-rank percentile over an ascending list; ``None`` when empty."""
    if not sorted_values:
        return None
    if pct <= 0:
        return sorted_values[0]
    rank = math.ceil(pct * len(sorted_values) / 100.0 - 1e-9)
    return sorted_values[min(rank, len(sorted_values)) - 1]


def compute_statistic(
    kind: MetricKind,
    values: List[float],
    statistic: str,
    elapsed: float,
) -> Optional[float]:
    """Compute one statistic over a list of values in arrival order."""
    stat = normalize_statistic(statistic)
    if not supports_statistic(kind, stat):
        raise ValueError(f"statistic {stat!r} is not defined for {kind.value} metrics")
    if not values:
        return None

    if stat.startswith("p("):
        return percentile(sorted(values), float(stat[2:-1]))
    if stat == "count":
        # counters count the sum of their increments
        return float(sum(values)) if kind == MetricKind.COUNTER else float(len(values))
    if stat == "sum":
        return float(sum(values))
    if stat == "avg":
        return sum(values) / len(values)
    if stat == "min":
        return float(min(values))
    if stat == "max":
        return float(max(values))
    if stat == "med":
        return percentile(sorted(values), 50.0)
    if stat == "value":
        return float(values[-1])
    if stat == "passes":
        return float(sum(1 for v in values if v != 0))
    if stat == "fails":
        return float(sum(1 for v in values if v == 0))
    # stat == "rate"
    if kind == MetricKind.RATE:
        return sum(1 for v in values if v != 0) / len(values)
    if elapsed <= 0:
        return None
    return sum(values) / elapsed


class MetricSeries:
    """Ordered-by-arrival observations for one metric name."""

    def __init__(self, name: str, kind: MetricKind):
        self.name = name
        self.kind = kind
        self.observations: List[Observation] = []

    def add(self, observation: Observation) -> None:
        self.observations.append(observation)

    def values(self, tags: Tags = (), since: Optional[float] = None) -> List[float]:
        wanted = set(tags)
        return [
            o.value
            for o in self.observations
            if (since is None or o.timestamp >= since) and wanted.issubset(o.tags)
        ]


class MetricRecorder:
    """Collects observations for a single run.

    One instance per run; nothing here is process-global. ``record`` and
    every read take the same lock, so concurrent writers never lose updates
    and readers always see whole observations.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._started = clock()
        self._lock = threading.Lock()
        self._series: Dict[str, MetricSeries] = {}
        self._checks: Dict[str, Dict[str, int]] = {}

    def elapsed(self) -> float:
        return self._clock() - self._started

    def declare(self, name: str, kind: MetricKind = MetricKind.TREND) -> None:
        """Create an empty series so it shows up in snapshots and validation."""
        with self._lock:
            if name not in self._series:
                self._series[name] = MetricSeries(name, kind)

    def record(
        self,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None,
        kind: Optional[MetricKind] = None,
    ) -> None:
        """Append one observation, creating the series if absent.

        The kind of a series is fixed when it is created; ``kind`` is ignored
        for existing series.
        """
        observation = Observation(
            metric=name,
            value=float(value),
            timestamp=self._clock(),
            tags=freeze_tags(tags),
        )
        with self._lock:
            series = self._series.get(name)
            if series is None:
                series = MetricSeries(name, kind or BUILTIN_METRICS.get(name, MetricKind.TREND))
                self._series[name] = series
            series.add(observation)

    def record_check(self, result: CheckResult) -> None:
        tags = dict(result.tags)
        tags["check"] = result.name
        self.record("checks", 1.0 if result.passed else 0.0, tags=tags, kind=MetricKind.RATE)
        with self._lock:
            tally = self._checks.setdefault(result.name, {"passes": 0, "fails": 0})
            tally["passes" if result.passed else "fails"] += 1

    def has_metric(self, name: str) -> bool:
        with self._lock:
            return name in self._series

    def kind_of(self, name: str) -> Optional[MetricKind]:
        with self._lock:
            series = self._series.get(name)
            return series.kind if series else None

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._series)

    def aggregate(
        self,
        name: str,
        statistic: str,
        tags: Optional[Dict[str, str]] = None,
        window: Optional[float] = None,
    ) -> Optional[float]:
        """Compute ``statistic`` over the named series.

        Returns ``None`` when the series is missing or no observation matches
        the tag filter and window.
        """
        now = self._clock()
        since = now - window if window is not None else None
        with self._lock:
            series = self._series.get(name)
            if series is None:
                normalize_statistic(statistic)
                return None
            kind = series.kind
            values = series.values(freeze_tags(tags), since)
        return compute_statistic(kind, values, statistic, now - self._started)

    def check_counts(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            return {name: dict(tally) for name, tally in self._checks.items()}

    def snapshot(self, trend_stats: Optional[Iterable[str]] = None) -> Dict[str, dict]:
        """Return ``{metric: {"kind": ..., "stats": {...}}}`` for every series."""
        elapsed = self.elapsed()
        with self._lock:
            copied = {
                name: (series.kind, [o.value for o in series.observations])
                for name, series in self._series.items()
            }
        result = {}
        for name in sorted(copied):
            kind, values = copied[name]
            stats = DEFAULT_SNAPSHOT_STATS[kind]
            if kind == MetricKind.TREND and trend_stats is not None:
                stats = [normalize_statistic(s) for s in trend_stats]
            result[name] = {
                "kind": kind.value,
                "stats": {s: compute_statistic(kind, values, s, elapsed) for s in stats},
            }
        return result
