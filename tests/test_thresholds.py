"""Tests for threshold parsing and evaluation."""

import pytest

from loadgen.metrics import MetricRecorder
from loadgen.thresholds import (
    ThresholdSyntaxError,
    evaluate,
    evaluate_threshold,
    parse_selector,
    parse_threshold,
    run_passed,
)


class TestParseThreshold:
    def test_percentile_expression(self):
        t = parse_threshold("http_req_duration", "p(95)<200")
        assert t.metric == "http_req_duration"
        assert t.statistic == "p(95)"
        assert t.operator == "<"
        assert t.bound == 200.0
        assert t.tags == {}

    def test_short_percentile_with_unit(self):
        t = parse_threshold("http_req_duration", "p95 < 200ms")
        assert t.statistic == "p(95)"
        assert t.bound == 200.0

    def test_seconds_unit_converted_to_ms(self):
        t = parse_threshold("http_req_duration", "max <= 1.5s")
        assert t.operator == "<="
        assert t.bound == 1500.0

    def test_rate_expression(self):
        t = parse_threshold("http_req_failed", "rate<0.01")
        assert t.statistic == "rate"
        assert t.bound == 0.01

    @pytest.mark.parametrize("op", ["<", "<=", ">", ">=", "==", "!="])
    def test_operators(self, op):
        assert parse_threshold("iterations", f"count{op}5").operator == op

    def test_selector_with_tags(self):
        name, tags = parse_selector("http_req_duration{name:health, status:200}")
        assert name == "http_req_duration"
        assert tags == {"name": "health", "status": "200"}
        t = parse_threshold("http_req_duration{name:health}", "avg<100")
        assert t.selector == "http_req_duration{name:health}"

    @pytest.mark.parametrize("expr", ["p(95)", "<200", "avg<<200", "mode<3", "avg<fast"])
    def test_invalid_expressions(self, expr):
        with pytest.raises(ThresholdSyntaxError):
            parse_threshold("http_req_duration", expr)

    def test_invalid_selector(self):
        with pytest.raises(ThresholdSyntaxError, match="selector"):
            parse_threshold("http req duration", "avg<1")
        with pytest.raises(ThresholdSyntaxError, match="tag filter"):
            parse_threshold("http_req_duration{name}", "avg<1")


class TestEvaluate:
    def test_p95_passes_when_95_percent_below_bound(self):
        recorder = MetricRecorder()
        for i in range(100):
            recorder.record("http_req_duration", 100 if i < 95 else 250)
        result = evaluate_threshold(parse_threshold("http_req_duration", "p(95)<200"), recorder)
        assert result.passed is True
        assert result.value == 100.0

    def test_outlier_at_96th_position_still_passes(self):
        recorder = MetricRecorder()
        for i in range(100):
            recorder.record("http_req_duration", 1000 if i == 95 else (250 if i > 95 else 100))
        result = evaluate_threshold(parse_threshold("http_req_duration", "p(95)<200"), recorder)
        assert result.passed is True

    def test_failing_threshold(self):
        recorder = MetricRecorder()
        for v in (100, 200, 300):
            recorder.record("staging_api_trend", v)
        result = evaluate_threshold(parse_threshold("staging_api_trend", "avg<150"), recorder)
        assert result.passed is False
        assert result.value == 200.0

    def test_zero_observations_pass_vacuously(self):
        recorder = MetricRecorder()
        recorder.declare("staging_api_trend")
        thresholds = [
            parse_threshold("staging_api_trend", "max<300"),
            parse_threshold("http_req_failed", "rate<0.01"),
        ]
        report = evaluate(thresholds, recorder)
        assert report.passed is True
        assert [r.value for r in report.results] == [None, None]

    def test_tag_filter_with_no_matches_passes(self):
        recorder = MetricRecorder()
        recorder.record("http_req_duration", 5000, tags={"name": "slow"})
        result = evaluate_threshold(
            parse_threshold("http_req_duration{name:fast}", "max<100"), recorder
        )
        assert result.passed is True
        assert result.value is None

    def test_overall_is_and_of_all(self):
        recorder = MetricRecorder()
        for v in (0, 0, 0, 1):
            recorder.record("http_req_failed", v)
        report = evaluate([
            parse_threshold("http_req_failed", "rate<0.5"),
            parse_threshold("http_req_failed", "rate<0.01"),
        ], recorder)
        assert [r.passed for r in report.results] == [True, False]
        assert report.passed is False
        assert len(report.failed) == 1


class TestRunPassed:
    def test_requires_thresholds_and_no_fatal_errors(self):
        recorder = MetricRecorder()
        recorder.record("http_req_failed", 0)
        report = evaluate([parse_threshold("http_req_failed", "rate<0.01")], recorder)
        assert run_passed(report, fatal_errors=0) is True
        assert run_passed(report, fatal_errors=1) is False

    def test_failed_threshold_fails_run(self):
        recorder = MetricRecorder()
        recorder.record("http_req_failed", 1)
        report = evaluate([parse_threshold("http_req_failed", "rate<0.01")], recorder)
        assert run_passed(report, fatal_errors=0) is False
