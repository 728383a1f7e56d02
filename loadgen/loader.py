"""Load and validate run configuration files (YAML or JSON)."""

import json
import math
import os
import re
from typing import List, Optional

import httpx
import yaml

from loadgen.metrics import (
    BUILTIN_METRICS,
    MetricKind,
    normalize_statistic,
    supports_statistic,
)
from loadgen.models import (
    EndpointTarget,
    RunConfig,
    Stage,
    SummaryOptions,
    Threshold,
    TrendNames,
    WaitRange,
)
from loadgen.thresholds import ThresholdSyntaxError, parse_threshold


class ConfigValidationError(Exception):
    """Raised when a run configuration fails validation."""


_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_TIME_UNITS = ("s", "ms", "us")


def parse_duration(value) -> float:
    """Convert ``30s``, ``1m30s``, ``500ms`` or a plain number to seconds.

    Raises:
        ValueError: If the value is not a recognisable duration.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return _finite(float(value), value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration: {value!r}")
    text = value.strip().lower()
    pos = 0
    total = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if not text or pos != len(text):
        try:
            total = float(text)
        except ValueError:
            raise ValueError(f"invalid duration: {value!r}") from None
    return _finite(total, value)


def _finite(seconds: float, original) -> float:
    if not math.isfinite(seconds):
        raise ValueError(f"invalid duration: {original!r} is not finite")
    return seconds


def load_config(path: str) -> RunConfig:
    """Load a run configuration from a YAML or JSON file.

    Args:
        path: Path to the configuration file.

    Returns:
        A validated RunConfig instance.

    Raises:
        ConfigValidationError: If the file is missing, unreadable, or invalid.
    """
    if not os.path.isfile(path):
        raise ConfigValidationError(f"config file not found: {path}")

    ext = os.path.splitext(path)[1].lower()
    try:
        with open(path, "r") as f:
            if ext in (".yaml", ".yml"):
                raw = yaml.safe_load(f)
            elif ext == ".json":
                raw = json.load(f)
            else:
                raise ConfigValidationError(
                    f"unsupported file extension: {ext} (expected .yaml, .yml, or .json)"
                )
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigValidationError(f"failed to parse {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigValidationError("config must be a mapping/object at the top level")

    return build_config(raw)


def build_config(raw: dict) -> RunConfig:
    """Construct and validate a RunConfig from a raw dict."""
    errors: List[str] = []

    name = raw.get("name", "loadgen")
    if not isinstance(name, str) or not name:
        errors.append("'name' must be a non-empty string")
        name = "loadgen"

    stages = _parse_stages(raw.get("stages"), errors)
    endpoints = _parse_endpoints(raw.get("endpoints"), errors)
    wait = _parse_wait(raw.get("wait", {}), errors)
    trends = _parse_trends(raw.get("trends", {}), errors)
    summary = _parse_summary(raw.get("summary", {}), errors)

    checks_raw = raw.get("checks", {})
    if not isinstance(checks_raw, dict):
        errors.append("'checks' must be a mapping")
        checks_raw = {}
    max_duration_ms = _seconds(checks_raw.get("max_duration", "200ms"), "checks.max_duration", errors)
    if max_duration_ms is not None:
        max_duration_ms *= 1000.0

    start_vus = raw.get("start_vus", 0)
    if not isinstance(start_vus, int) or isinstance(start_vus, bool) or start_vus < 0:
        errors.append("'start_vus' must be an integer >= 0")
        start_vus = 0

    graceful_stop = _seconds(raw.get("graceful_stop", "30s"), "graceful_stop", errors, allow_zero=True)
    tick = _seconds(raw.get("tick", "100ms"), "tick", errors)
    abort_interval = _seconds(raw.get("abort_check_interval", "2s"), "abort_check_interval", errors)

    known_metrics = dict(BUILTIN_METRICS)
    known_metrics[trends.wait] = MetricKind.TREND
    known_metrics[trends.requests] = MetricKind.TREND
    for ep in endpoints:
        known_metrics[ep.trend] = MetricKind.TREND
    thresholds = _parse_thresholds(raw.get("thresholds", {}), known_metrics, errors)

    if errors:
        raise ConfigValidationError(
            "config validation failed:\n  - " + "\n  - ".join(errors)
        )

    return RunConfig(
        name=name,
        stages=stages,
        endpoints=endpoints,
        wait=wait,
        thresholds=thresholds,
        summary=summary,
        trends=trends,
        max_duration_ms=max_duration_ms,
        start_vus=start_vus,
        graceful_stop=graceful_stop,
        tick=tick,
        abort_check_interval=abort_interval,
    )


def _seconds(value, field_name: str, errors: List[str], allow_zero: bool = False) -> Optional[float]:
    try:
        seconds = parse_duration(value)
    except ValueError as exc:
        errors.append(f"'{field_name}': {exc}")
        return None
    if seconds < 0 or (seconds == 0 and not allow_zero):
        errors.append(f"'{field_name}' must be {'>= 0' if allow_zero else '> 0'}")
        return None
    return seconds


def _parse_stages(raw, errors: List[str]) -> List[Stage]:
    if not isinstance(raw, list) or not raw:
        errors.append("'stages' is required and must be a non-empty list")
        return []
    stages = []
    for i, st in enumerate(raw):
        if not isinstance(st, dict):
            errors.append(f"stages[{i}] must be a mapping")
            continue
        duration = _seconds(st.get("duration"), f"stages[{i}].duration", errors)
        target = st.get("target")
        if not isinstance(target, int) or isinstance(target, bool) or target < 0:
            errors.append(f"stages[{i}].target is required and must be an integer >= 0")
            continue
        if duration is not None:
            stages.append(Stage(duration=duration, target=target))
    return stages


def _parse_endpoints(raw, errors: List[str]) -> List[EndpointTarget]:
    if not isinstance(raw, list) or not raw:
        errors.append("'endpoints' is required and must be a non-empty list")
        return []
    endpoints = []
    for i, ep in enumerate(raw):
        if isinstance(ep, str):
            ep = {"url": ep}
        if not isinstance(ep, dict):
            errors.append(f"endpoints[{i}] must be a mapping or a URL string")
            continue
        url = ep.get("url")
        if not url or not isinstance(url, str):
            errors.append(f"endpoints[{i}].url is required")
            continue
        url_error = _url_error(url)
        if url_error:
            errors.append(f"endpoints[{i}].url {url!r}: {url_error}")
            continue
        tags = ep.get("tags", {})
        if not isinstance(tags, dict):
            errors.append(f"endpoints[{i}].tags must be a mapping")
            tags = {}
        timeout = _seconds(ep.get("timeout", "10s"), f"endpoints[{i}].timeout", errors)
        trend = ep.get("trend", "response_time_trend")
        if not isinstance(trend, str) or not trend:
            errors.append(f"endpoints[{i}].trend must be a non-empty string")
            trend = "response_time_trend"
        endpoints.append(EndpointTarget(
            url=url,
            name=str(ep.get("name", url)),
            tags={str(k): str(v) for k, v in tags.items()},
            timeout=timeout if timeout is not None else 10.0,
            trend=trend,
        ))
    return endpoints


def _url_error(url: str) -> Optional[str]:
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as exc:
        return str(exc)
    if parsed.scheme not in ("http", "https"):
        return "scheme must be http or https"
    if not parsed.host:
        return "host is required"
    return None


def _parse_wait(raw, errors: List[str]) -> WaitRange:
    if not isinstance(raw, dict):
        errors.append("'wait' must be a mapping with 'min' and 'max'")
        return WaitRange()
    low = _seconds(raw.get("min", "1s"), "wait.min", errors, allow_zero=True)
    high = _seconds(raw.get("max", "5s"), "wait.max", errors, allow_zero=True)
    if low is None or high is None:
        return WaitRange()
    if low > high:
        errors.append("'wait.min' must not exceed 'wait.max'")
    return WaitRange(min=low, max=high)


def _parse_trends(raw, errors: List[str]) -> TrendNames:
    if not isinstance(raw, dict):
        errors.append("'trends' must be a mapping")
        return TrendNames()
    trends = TrendNames(
        wait=raw.get("wait", "wait_time_trend"),
        requests=raw.get("requests", "staging_api_trend"),
    )
    for field_name in ("wait", "requests"):
        value = getattr(trends, field_name)
        if not isinstance(value, str) or not value:
            errors.append(f"'trends.{field_name}' must be a non-empty string")
        elif value in BUILTIN_METRICS:
            errors.append(f"'trends.{field_name}' must not reuse built-in metric {value!r}")
    return trends


def _parse_summary(raw, errors: List[str]) -> SummaryOptions:
    if not isinstance(raw, dict):
        errors.append("'summary' must be a mapping")
        return SummaryOptions()
    options = SummaryOptions()
    time_unit = raw.get("time_unit", options.time_unit)
    if time_unit not in _TIME_UNITS:
        errors.append(f"'summary.time_unit' must be one of {', '.join(_TIME_UNITS)}")
    else:
        options.time_unit = time_unit
    stats = raw.get("trend_stats")
    if stats is not None:
        if not isinstance(stats, list) or not stats:
            errors.append("'summary.trend_stats' must be a non-empty list")
        else:
            normalized = []
            for stat in stats:
                try:
                    stat = normalize_statistic(str(stat))
                except ValueError as exc:
                    errors.append(f"'summary.trend_stats': {exc}")
                    continue
                if not supports_statistic(MetricKind.TREND, stat):
                    errors.append(f"'summary.trend_stats': {stat!r} is not a trend statistic")
                    continue
                normalized.append(stat)
            options.trend_stats = normalized
    return options


def _parse_thresholds(raw, known_metrics: dict, errors: List[str]) -> List[Threshold]:
    if not isinstance(raw, dict):
        errors.append("'thresholds' must be a mapping of metric to expressions")
        return []
    thresholds = []
    for selector, expressions in raw.items():
        if isinstance(expressions, (str, dict)):
            expressions = [expressions]
        if not isinstance(expressions, list):
            errors.append(f"thresholds[{selector!r}] must be a list of expressions")
            continue
        for expr in expressions:
            abort_on_fail = False
            window = None
            if isinstance(expr, dict):
                abort_on_fail = bool(expr.get("abort_on_fail", False))
                if expr.get("window") is not None:
                    window = _seconds(expr["window"], f"thresholds[{selector!r}].window", errors)
                expr = expr.get("threshold")
            if not isinstance(expr, str):
                errors.append(f"thresholds[{selector!r}] entries must be strings or mappings with 'threshold'")
                continue
            try:
                threshold = parse_threshold(str(selector), expr, abort_on_fail, window)
            except ThresholdSyntaxError as exc:
                errors.append(str(exc))
                continue
            kind = known_metrics.get(threshold.metric)
            if kind is None:
                errors.append(f"threshold references unknown metric {threshold.metric!r}")
                continue
            if not supports_statistic(kind, threshold.statistic):
                errors.append(
                    f"threshold {threshold.selector}: {threshold.statistic!r} "
                    f"is not defined for {kind.value} metrics"
                )
                continue
            thresholds.append(threshold)
    return thresholds
