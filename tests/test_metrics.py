"""Tests for the metric recorder and statistics."""

import math
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from loadgen.metrics import (
    MetricKind,
    MetricRecorder,
    compute_statistic,
    normalize_statistic,
    percentile,
)
from loadgen.models import CheckResult


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


class TestNormalizeStatistic:
    def test_percentile_forms(self):
        assert normalize_statistic("p95") == "p(95)"
        assert normalize_statistic("p(95)") == "p(95)"
        assert normalize_statistic("P(99.9)") == "p(99.9)"

    def test_named(self):
        assert normalize_statistic(" AVG ") == "avg"

    def test_unknown(self):
        with pytest.raises(ValueError, match="unknown statistic"):
            normalize_statistic("mode")

    def test_out_of_range_percentile(self):
        with pytest.raises(ValueError):
            normalize_statistic("p(101)")


class TestPercentile:
    def test_nearest_rank(self):
        values = [float(v) for v in range(1, 101)]
        assert percentile(values, 95) == 95.0
        assert percentile(values, 99) == 99.0
        assert percentile(values, 100) == 100.0
        assert percentile(values, 0) == 1.0

    def test_small_series(self):
        assert percentile([10.0, 20.0], 50) == 10.0
        assert percentile([10.0, 20.0], 51) == 20.0

    def test_empty(self):
        assert percentile([], 95) is None

    def test_order_independent(self):
        values = [5.0, 1.0, 9.0, 3.0, 7.0]
        a = compute_statistic(MetricKind.TREND, values, "p(90)", 1.0)
        b = compute_statistic(MetricKind.TREND, list(reversed(values)), "p(90)", 1.0)
        assert a == b == 9.0


class TestAggregate:
    def test_avg(self):
        recorder = MetricRecorder()
        for v in (10, 20, 30):
            recorder.record("latency", v)
        assert recorder.aggregate("latency", "avg") == 20.0
        assert recorder.aggregate("latency", "min") == 10.0
        assert recorder.aggregate("latency", "max") == 30.0
        assert recorder.aggregate("latency", "count") == 3.0
        assert recorder.aggregate("latency", "med") == 20.0

    def test_empty_series_returns_sentinel(self):
        recorder = MetricRecorder()
        recorder.declare("latency")
        assert recorder.aggregate("latency", "avg") is None
        assert recorder.aggregate("missing", "avg") is None

    def test_unknown_statistic_raises(self):
        recorder = MetricRecorder()
        recorder.record("latency", 1)
        with pytest.raises(ValueError):
            recorder.aggregate("latency", "bogus")

    def test_statistic_not_defined_for_kind(self):
        recorder = MetricRecorder()
        recorder.record("http_req_failed", 1)
        with pytest.raises(ValueError, match="not defined"):
            recorder.aggregate("http_req_failed", "p(95)")

    def test_rate_metric(self):
        recorder = MetricRecorder()
        for v in (0, 0, 1, 0):
            recorder.record("http_req_failed", v)
        assert recorder.kind_of("http_req_failed") == MetricKind.RATE
        assert recorder.aggregate("http_req_failed", "rate") == 0.25
        assert recorder.aggregate("http_req_failed", "passes") == 1.0
        assert recorder.aggregate("http_req_failed", "fails") == 3.0

    def test_counter_rate_uses_elapsed_time(self):
        clock = FakeClock()
        recorder = MetricRecorder(clock=clock)
        for _ in range(10):
            recorder.record("iterations", 1)
        clock.now += 5.0
        assert recorder.aggregate("iterations", "count") == 10.0
        assert recorder.aggregate("iterations", "rate") == 2.0

    def test_gauge_keeps_last_value(self):
        recorder = MetricRecorder()
        for v in (1, 5, 3):
            recorder.record("vus", v)
        assert recorder.aggregate("vus", "value") == 3.0
        assert recorder.aggregate("vus", "max") == 5.0

    def test_kind_fixed_on_creation(self):
        recorder = MetricRecorder()
        recorder.record("custom", 1, kind=MetricKind.RATE)
        recorder.record("custom", 0, kind=MetricKind.TREND)
        assert recorder.kind_of("custom") == MetricKind.RATE

    def test_tag_filter(self):
        recorder = MetricRecorder()
        recorder.record("http_req_duration", 10, tags={"name": "health", "status": "200"})
        recorder.record("http_req_duration", 30, tags={"name": "health", "status": "500"})
        recorder.record("http_req_duration", 100, tags={"name": "banners", "status": "200"})
        assert recorder.aggregate("http_req_duration", "avg", tags={"name": "health"}) == 20.0
        assert recorder.aggregate("http_req_duration", "max", tags={"status": "200"}) == 100.0
        assert recorder.aggregate("http_req_duration", "avg", tags={"name": "nowhere"}) is None

    def test_window(self):
        clock = FakeClock()
        recorder = MetricRecorder(clock=clock)
        recorder.record("latency", 1000)
        clock.now += 30
        recorder.record("latency", 10)
        recorder.record("latency", 20)
        assert recorder.aggregate("latency", "max") == 1000.0
        assert recorder.aggregate("latency", "max", window=10) == 20.0

    def test_p95_boundary_at_rank(self):
        recorder = MetricRecorder()
        for i in range(100):
            if i == 95:
                recorder.record("latency", 1000)
            elif i > 95:
                recorder.record("latency", 300)
            else:
                recorder.record("latency", 100)
        assert recorder.aggregate("latency", "count") == 100.0
        assert recorder.aggregate("latency", "p(95)") == 100.0
        assert recorder.aggregate("latency", "p(96)") == 300.0


class TestConcurrentRecording:
    def test_no_lost_updates_across_threads(self):
        recorder = MetricRecorder()
        writers, per_writer = 16, 500
        barrier = threading.Barrier(writers)

        def write(worker):
            barrier.wait()
            for i in range(per_writer):
                recorder.record("latency", worker * per_writer + i)
                recorder.record_check(CheckResult("status is 200", i % 2 == 0))

        with ThreadPoolExecutor(max_workers=writers) as pool:
            list(pool.map(write, range(writers)))

        total = writers * per_writer
        assert recorder.aggregate("latency", "count") == total
        assert recorder.aggregate("latency", "sum") == sum(range(total))
        assert recorder.aggregate("checks", "count") == total
        counts = recorder.check_counts()["status is 200"]
        assert counts["passes"] + counts["fails"] == total

    def test_snapshot_during_writes_is_consistent(self):
        recorder = MetricRecorder()
        stop = threading.Event()

        def write():
            while not stop.is_set():
                recorder.record("latency", 5)

        thread = threading.Thread(target=write)
        thread.start()
        try:
            for _ in range(50):
                snap = recorder.snapshot()
                if "latency" in snap:
                    stats = snap["latency"]["stats"]
                    assert stats["avg"] == 5.0
                    assert stats["min"] == stats["max"] == 5.0
        finally:
            stop.set()
            thread.join()


class TestChecksAndSnapshot:
    def test_record_check_tallies_by_name(self):
        recorder = MetricRecorder()
        recorder.record_check(CheckResult("status is 200", True))
        recorder.record_check(CheckResult("status is 200", False))
        recorder.record_check(CheckResult("response body not empty", True))
        assert recorder.check_counts() == {
            "status is 200": {"passes": 1, "fails": 1},
            "response body not empty": {"passes": 1, "fails": 0},
        }
        assert recorder.aggregate("checks", "rate") == pytest.approx(2 / 3)
        assert recorder.aggregate("checks", "rate", tags={"check": "status is 200"}) == 0.5

    def test_snapshot_shapes(self):
        recorder = MetricRecorder()
        recorder.record("http_req_duration", 12)
        recorder.record("http_req_failed", 0)
        recorder.record("iterations", 1)
        recorder.declare("wait_time_trend")
        snap = recorder.snapshot(trend_stats=["avg", "p95"])
        assert list(snap) == sorted(snap)
        assert snap["http_req_duration"] == {"kind": "trend", "stats": {"avg": 12.0, "p(95)": 12.0}}
        assert snap["http_req_failed"]["stats"]["rate"] == 0.0
        assert snap["wait_time_trend"]["stats"]["avg"] is None
        assert snap["iterations"]["kind"] == "counter"

    def test_separate_recorders_do_not_share_state(self):
        a, b = MetricRecorder(), MetricRecorder()
        a.record("latency", 1)
        assert b.aggregate("latency", "count") is None
        assert not math.isnan(a.aggregate("latency", "avg"))
