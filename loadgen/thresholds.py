"""Parse threshold expressions and evaluate them against a metric recorder."""

import operator
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from loadgen.metrics import MetricRecorder, normalize_statistic
from loadgen.models import Threshold, ThresholdResult


class ThresholdSyntaxError(Exception):
    """Raised when a threshold expression or metric selector is malformed."""


_OPERATORS = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

_EXPRESSION_RE = re.compile(
    r"^\s*(?P<stat>[a-z]+(?:\(\s*\d+(?:\.\d+)?\s*\)|\d+(?:\.\d+)?)?)"
    r"\s*(?P<op><=|>=|==|!=|<|>)"
    r"\s*(?P<bound>-?\d+(?:\.\d+)?)\s*(?P<unit>ms|s)?\s*$"
)
_SELECTOR_RE = re.compile(r"^\s*(?P<name>[A-Za-z_][A-Za-z0-9_]*)\s*(?:\{(?P<tags>[^}]*)\})?\s*$")


def parse_selector(selector: str) -> Tuple[str, Dict[str, str]]:
    """Split ``name{key:value,...}`` into the metric name and its tag filter."""
    match = _SELECTOR_RE.match(selector)
    if not match:
        raise ThresholdSyntaxError(f"invalid metric selector: {selector!r}")
    tags = {}
    raw_tags = match.group("tags")
    if raw_tags is not None:
        for pair in raw_tags.split(","):
            key, sep, value = pair.partition(":")
            if not sep or not key.strip():
                raise ThresholdSyntaxError(f"invalid tag filter {pair!r} in {selector!r}")
            tags[key.strip()] = value.strip()
    return match.group("name"), tags


def parse_threshold(
    selector: str,
    expression: str,
    abort_on_fail: bool = False,
    window: Optional[float] = None,
) -> Threshold:
    """Build a Threshold from a selector and an expression like ``p(95)<200``.

    A trailing ``s`` unit on the bound is converted to milliseconds; ``ms``
    or no unit is taken as-is.

    Raises:
        ThresholdSyntaxError: If the selector, statistic or expression is invalid.
    """
    metric, tags = parse_selector(selector)
    match = _EXPRESSION_RE.match(expression.lower())
    if not match:
        raise ThresholdSyntaxError(f"invalid threshold expression: {expression!r}")
    try:
        statistic = normalize_statistic(match.group("stat").replace(" ", ""))
    except ValueError as exc:
        raise ThresholdSyntaxError(f"{exc} in {expression!r}") from exc

    bound = float(match.group("bound"))
    if match.group("unit") == "s":
        bound *= 1000.0

    return Threshold(
        metric=metric,
        expression=expression,
        statistic=statistic,
        operator=match.group("op"),
        bound=bound,
        tags=tags,
        abort_on_fail=abort_on_fail,
        window=window,
    )


@dataclass
class ThresholdReport:
    results: List[ThresholdResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(r.passed for r in self.results)

    @property
    def failed(self) -> List[ThresholdResult]:
        return [r for r in self.results if not r.passed]


def evaluate_threshold(threshold: Threshold, recorder: MetricRecorder) -> ThresholdResult:
    """Evaluate one threshold.

    A metric with no matching observations passes with a ``None`` value, so
    code paths that the run never exercised do not fail it.
    """
    value = recorder.aggregate(
        threshold.metric,
        threshold.statistic,
        tags=threshold.tags or None,
        window=threshold.window,
    )
    if value is None:
        return ThresholdResult(threshold=threshold, value=None, passed=True)
    passed = _OPERATORS[threshold.operator](value, threshold.bound)
    return ThresholdResult(threshold=threshold, value=value, passed=passed)


def evaluate(thresholds: List[Threshold], recorder: MetricRecorder) -> ThresholdReport:
    return ThresholdReport(results=[evaluate_threshold(t, recorder) for t in thresholds])


def run_passed(report: ThresholdReport, fatal_errors: int) -> bool:
    """Overall run status: every threshold holds and no virtual user crashed."""
    return report.passed and fatal_errors == 0
