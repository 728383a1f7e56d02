"""Turn a run summary into machine-readable and human-readable artifacts."""

import json
import os
from typing import Dict, List, Optional

from loadgen.log import get_logger
from loadgen.models import RunSummary, SummaryOptions, ThresholdResult

logger = get_logger(__name__)

_UNIT_FACTORS = {"s": 0.001, "ms": 1.0, "us": 1000.0}
_NAME_WIDTH = 28


def summary_to_dict(summary: RunSummary) -> dict:
    """Convert a RunSummary to a plain dict suitable for JSON serialization."""
    return {
        "name": summary.name,
        "started_at": summary.started_at,
        "duration_seconds": round(summary.duration, 3),
        "status": "pass" if summary.passed else "fail",
        "passed": summary.passed,
        "aborted": summary.aborted,
        "iterations": summary.iterations,
        "fatal_errors": summary.fatal_errors,
        "checks": {name: dict(tally) for name, tally in summary.checks.items()},
        "thresholds": [_threshold_to_dict(r) for r in summary.thresholds],
        "metrics": summary.metrics,
    }


def summary_to_json(summary: RunSummary) -> str:
    return json.dumps(summary_to_dict(summary), indent=2)


def _threshold_to_dict(result: ThresholdResult) -> dict:
    t = result.threshold
    return {
        "metric": t.selector,
        "expression": t.expression,
        "statistic": t.statistic,
        "operator": t.operator,
        "bound": t.bound,
        "abort_on_fail": t.abort_on_fail,
        "window_seconds": t.window,
        "value": result.value,
        "passed": result.passed,
    }


def render_text(summary: RunSummary, options: Optional[SummaryOptions] = None) -> str:
    """Render the end-of-test summary as plain text."""
    options = options or SummaryOptions()
    lines = [
        f"Run: {summary.name}",
        f"Status: {'PASS' if summary.passed else 'FAIL'}"
        + (" (aborted by threshold)" if summary.aborted else ""),
        f"Duration: {summary.duration:.1f}s  Iterations: {summary.iterations}"
        f"  Fatal errors: {summary.fatal_errors}",
    ]

    if summary.checks:
        lines.append("")
        lines.append("Checks:")
        for name, tally in summary.checks.items():
            total = tally["passes"] + tally["fails"]
            pct = 100.0 * tally["passes"] / total if total else 0.0
            mark = "✓" if tally["fails"] == 0 else "✗"
            lines.append(f"  {mark} {name}: {pct:.2f}% ({tally['passes']}/{total})")

    if summary.thresholds:
        lines.append("")
        lines.append("Thresholds:")
        for result in summary.thresholds:
            mark = "✓" if result.passed else "✗"
            value = "no data" if result.value is None else f"{result.value:.4g}"
            lines.append(
                f"  {mark} {result.threshold.selector} {result.threshold.expression} (value: {value})"
            )

    if summary.metrics:
        lines.append("")
        lines.append("Metrics:")
        for name, metric in summary.metrics.items():
            stats = _format_stats(metric["kind"], metric["stats"], options)
            lines.append(f"  {name.ljust(_NAME_WIDTH, '.')}: {stats}")

    return "\n".join(lines)


def _format_stats(kind: str, stats: Dict[str, Optional[float]], options: SummaryOptions) -> str:
    if kind == "trend":
        factor = _UNIT_FACTORS[options.time_unit]
        parts = []
        for stat in options.trend_stats:
            value = stats.get(stat)
            if value is None:
                parts.append(f"{stat}=-")
            elif stat == "count":
                parts.append(f"{stat}={value:.0f}")
            else:
                parts.append(f"{stat}={value * factor:.2f}{options.time_unit}")
        return " ".join(parts)
    if kind == "rate":
        rate = stats.get("rate")
        shown = "-" if rate is None else f"{rate * 100:.2f}%"
        return f"rate={shown} passes={_int(stats.get('passes'))} fails={_int(stats.get('fails'))}"
    if kind == "counter":
        rate = stats.get("rate")
        shown = "-" if rate is None else f"{rate:.2f}/s"
        return f"count={_int(stats.get('count'))} rate={shown}"
    return " ".join(f"{stat}={_int(value)}" for stat, value in stats.items())


def _int(value: Optional[float]) -> str:
    return "0" if value is None else f"{value:.0f}"


def handle_summary(summary: RunSummary, options: Optional[SummaryOptions] = None) -> Dict[str, str]:
    """Produce the end-of-run artifacts as ``{filename: content}``."""
    logger.info("total_iterations", iterations=summary.iterations, run=summary.name)
    return {
        "summary.json": summary_to_json(summary) + "\n",
        "summary.txt": render_text(summary, options) + "\n",
    }


def write_reports(artifacts: Dict[str, str], out_dir: str) -> List[str]:
    """Write artifacts into ``out_dir`` (created if missing); returns the paths."""
    if out_dir and not os.path.isdir(out_dir):
        os.makedirs(out_dir, exist_ok=True)
    paths = []
    for filename, content in artifacts.items():
        path = os.path.join(out_dir, filename)
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
        paths.append(path)
    return paths
