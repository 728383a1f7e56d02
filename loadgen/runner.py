"""Run orchestration: wire recorder, client, scheduler and thresholds for one run."""

import asyncio
import random
import time
from datetime import datetime, timezone
from typing import Optional

import httpx

from loadgen.http import HttpClient
from loadgen.log import get_logger
from loadgen.metrics import DEFAULT_SNAPSHOT_STATS, MetricKind, MetricRecorder
from loadgen.models import RunConfig, RunSummary
from loadgen.scheduler import Scheduler
from loadgen.thresholds import evaluate, run_passed

logger = get_logger(__name__)


async def run_async(
    config: RunConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    rng: Optional[random.Random] = None,
) -> RunSummary:
    """Execute a load test and return its summary.

    Every call builds its own recorder and scheduler, so several runs can
    share one process without seeing each other's metrics.
    """
    recorder = MetricRecorder()
    for name in (config.trends.wait, config.trends.requests):
        recorder.declare(name, MetricKind.TREND)
    for endpoint in config.endpoints:
        recorder.declare(endpoint.trend, MetricKind.TREND)

    started_at = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    start = time.perf_counter()
    async with HttpClient(transport=transport) as client:
        scheduler = Scheduler(config, client, recorder, rng=rng)
        await scheduler.run()
    duration = time.perf_counter() - start

    report = evaluate(config.thresholds, recorder)
    passed = run_passed(report, scheduler.fatal_errors)
    trend_stats = list(dict.fromkeys(
        DEFAULT_SNAPSHOT_STATS[MetricKind.TREND] + config.summary.trend_stats
    ))
    iterations = recorder.aggregate("iterations", "count")

    summary = RunSummary(
        name=config.name,
        started_at=started_at,
        duration=duration,
        metrics=recorder.snapshot(trend_stats=trend_stats),
        thresholds=report.results,
        checks=recorder.check_counts(),
        iterations=int(iterations or 0),
        fatal_errors=scheduler.fatal_errors,
        aborted=scheduler.aborted,
        passed=passed and not scheduler.aborted,
    )
    logger.info(
        "run_finished",
        name=config.name,
        duration=round(duration, 3),
        iterations=summary.iterations,
        fatal_errors=summary.fatal_errors,
        passed=summary.passed,
    )
    return summary


def run(
    config: RunConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    rng: Optional[random.Random] = None,
) -> RunSummary:
    return asyncio.run(run_async(config, transport=transport, rng=rng))
