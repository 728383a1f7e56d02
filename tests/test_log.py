"""Tests for logging setup."""

from structlog.testing import capture_logs

from loadgen.log import get_logger, setup_logging


class TestLogging:
    def test_setup_renders_key_values_to_stderr(self, capsys):
        setup_logging("info")
        get_logger("loadgen.test").info("run_started", name="smoke", max_vus=5)
        err = capsys.readouterr().err
        assert "run_started" in err
        assert "name=smoke" in err
        assert "max_vus=5" in err

    def test_level_filtering(self, capsys):
        setup_logging("error")
        logger = get_logger("loadgen.test")
        logger.info("hidden_event")
        logger.error("request_failed", url="http://x", status=500)
        err = capsys.readouterr().err
        assert "hidden_event" not in err
        assert "request_failed" in err

    def test_events_capturable(self):
        with capture_logs() as logs:
            get_logger("loadgen.test").warning("threshold_crossed", metric="http_req_failed")
        assert logs == [{"event": "threshold_crossed", "metric": "http_req_failed", "log_level": "warning"}]
