"""Virtual user: the per-user iteration loop (wait, request each endpoint, check)."""

import asyncio
import random
import time
from typing import Dict, List, Optional

from loadgen.http import HttpClient
from loadgen.log import get_logger
from loadgen.metrics import MetricKind, MetricRecorder
from loadgen.models import CheckResult, EndpointTarget, HttpResponse, RunConfig, freeze_tags

logger = get_logger(__name__)

CHECK_STATUS = "status is 200"
CHECK_BODY = "response body not empty"
CHECK_ERROR_HANDLING = "meaningful error handling"


def latency_check_name(max_duration_ms: float) -> str:
    return f"response time < {max_duration_ms:g}ms"


def run_checks(response: HttpResponse, endpoint: EndpointTarget, max_duration_ms: float) -> List[CheckResult]:
    """Evaluate the fixed check set against one response, in declaration order."""
    tags = freeze_tags(_request_tags(endpoint, response))

    error_handled = response.status == 200
    if not error_handled:
        logger.error("request_failed", url=response.url, status=response.status, endpoint=endpoint.name)

    return [
        CheckResult(CHECK_STATUS, response.status == 200, tags),
        CheckResult(latency_check_name(max_duration_ms), response.timings.duration < max_duration_ms, tags),
        CheckResult(CHECK_BODY, len(response.body) > 0, tags),
        CheckResult(CHECK_ERROR_HANDLING, error_handled, tags),
    ]


def _request_tags(endpoint: EndpointTarget, response: HttpResponse) -> Dict[str, str]:
    tags = dict(endpoint.tags)
    tags.setdefault("name", endpoint.name)
    tags.update({"url": endpoint.url, "method": "GET", "status": str(response.status)})
    if response.error is not None:
        tags["error"] = response.error.split(":", 1)[0]
    return tags


class VirtualUser:
    """One simulated client running iterations until told to stop.

    The stop signal is checked once the wait is over. An iteration that has
    started its requests always runs every endpoint to completion; the
    scheduler's graceful stop bounds how long that may take.
    """

    def __init__(
        self,
        vu_id: int,
        config: RunConfig,
        client: HttpClient,
        recorder: MetricRecorder,
        rng: Optional[random.Random] = None,
    ):
        self.vu_id = vu_id
        self.config = config
        self.client = client
        self.recorder = recorder
        self.rng = rng or random.Random()
        self.iterations = 0
        self._stop = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        while not self.stopping:
            await self.iterate()

    async def iterate(self) -> bool:
        """Run one iteration; returns False when stopped before any request."""
        started = time.perf_counter()

        wait = self.rng.uniform(self.config.wait.min, self.config.wait.max)
        self.recorder.record(self.config.trends.wait, wait * 1000.0, kind=MetricKind.TREND)
        await asyncio.sleep(wait)
        if self.stopping:
            return False

        for endpoint in self.config.endpoints:
            await self.request(endpoint)

        self.iterations += 1
        self.recorder.record("iterations", 1)
        self.recorder.record("iteration_duration", (time.perf_counter() - started) * 1000.0)
        return True

    async def request(self, endpoint: EndpointTarget) -> List[CheckResult]:
        response = await self.client.get(endpoint.url, tags=endpoint.tags, timeout=endpoint.timeout)
        self._record_response(endpoint, response)

        results = run_checks(response, endpoint, self.config.max_duration_ms)
        for result in results:
            self.recorder.record_check(result)

        failed = [r.name for r in results if not r.passed]
        if failed:
            logger.error(
                "checks_failed",
                vu=self.vu_id,
                endpoint=endpoint.name,
                status=response.status,
                failed=failed,
                error=response.error,
            )
        return results

    def _record_response(self, endpoint: EndpointTarget, response: HttpResponse) -> None:
        tags = _request_tags(endpoint, response)
        timings = response.timings
        rec = self.recorder.record

        rec("http_reqs", 1, tags)
        rec("http_req_duration", timings.duration, tags)
        rec("http_req_sending", timings.sending, tags)
        rec("http_req_waiting", timings.waiting, tags)
        rec("http_req_receiving", timings.receiving, tags)
        rec("http_req_connecting", timings.connecting, tags)
        failed = response.error is not None or not 200 <= response.status < 400
        rec("http_req_failed", 1.0 if failed else 0.0, tags)
        rec(self.config.trends.requests, timings.duration, tags, kind=MetricKind.TREND)
        rec(endpoint.trend, timings.duration, tags, kind=MetricKind.TREND)
