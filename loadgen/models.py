"""Data models for run configuration, observations, checks, and run summaries."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

Tags = Tuple[Tuple[str, str], ...]


def freeze_tags(tags: Optional[Dict[str, str]]) -> Tags:
    """Turn a tag mapping into a hashable, order-independent tuple."""
    if not tags:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in tags.items()))


@dataclass
class Stage:
    duration: float  # seconds
    target: int


@dataclass
class WaitRange:
    min: float = 1.0
    max: float = 5.0


@dataclass
class EndpointTarget:
    url: str
    name: str = ""
    tags: Dict[str, str] = field(default_factory=dict)
    timeout: float = 10.0
    trend: str = "response_time_trend"


@dataclass(frozen=True)
class Observation:
    metric: str
    value: float
    timestamp: float
    tags: Tags = ()


@dataclass(frozen=True)
class CheckResult:
    name: str
    passed: bool
    tags: Tags = ()


@dataclass
class Threshold:
    metric: str
    expression: str
    statistic: str  # "avg", "p(95)", "rate", ...
    operator: str  # "<", "<=", ">", ">=", "==", "!="
    bound: float
    tags: Dict[str, str] = field(default_factory=dict)
    abort_on_fail: bool = False
    window: Optional[float] = None  # seconds; None means whole run

    @property
    def selector(self) -> str:
        if not self.tags:
            return self.metric
        pairs = ",".join(f"{k}:{v}" for k, v in sorted(self.tags.items()))
        return f"{self.metric}{{{pairs}}}"


@dataclass
class ThresholdResult:
    threshold: Threshold
    value: Optional[float]
    passed: bool


@dataclass
class SummaryOptions:
    time_unit: str = "ms"
    trend_stats: List[str] = field(
        default_factory=lambda: ["avg", "min", "med", "max", "p(90)", "p(95)"]
    )


@dataclass
class TrendNames:
    wait: str = "wait_time_trend"
    requests: str = "staging_api_trend"


@dataclass
class RunConfig:
    name: str
    stages: List[Stage]
    endpoints: List[EndpointTarget]
    wait: WaitRange = field(default_factory=WaitRange)
    thresholds: List[Threshold] = field(default_factory=list)
    summary: SummaryOptions = field(default_factory=SummaryOptions)
    trends: TrendNames = field(default_factory=TrendNames)
    max_duration_ms: float = 200.0
    start_vus: int = 0
    graceful_stop: float = 30.0
    tick: float = 0.1
    abort_check_interval: float = 2.0


@dataclass
class HttpTimings:
    duration: float = 0.0  # all in milliseconds
    sending: float = 0.0
    waiting: float = 0.0
    receiving: float = 0.0
    connecting: float = 0.0


@dataclass
class HttpResponse:
    url: str
    status: int
    body: bytes = b""
    timings: HttpTimings = field(default_factory=HttpTimings)
    error: Optional[str] = None


@dataclass
class RunSummary:
    name: str
    started_at: str
    duration: float  # seconds
    metrics: Dict[str, dict] = field(default_factory=dict)  # name -> {kind, stats}
    thresholds: List[ThresholdResult] = field(default_factory=list)
    checks: Dict[str, Dict[str, int]] = field(default_factory=dict)  # name -> {passes, fails}
    iterations: int = 0
    fatal_errors: int = 0
    aborted: bool = False
    passed: bool = True
