"""HTTP client used by virtual users, with a per-request timing breakdown."""

import time
from typing import Dict, Optional

import httpx

from loadgen.log import get_logger
from loadgen.models import HttpResponse, HttpTimings

logger = get_logger(__name__)

DEFAULT_LIMITS = httpx.Limits(max_connections=None, max_keepalive_connections=100)


class _TraceRecorder:
    """Collects httpcore trace events as ``{event_name: perf_counter()}``."""

    def __init__(self):
        self.marks: Dict[str, float] = {}

    async def __call__(self, event_name: str, info: dict) -> None:
        # http11.send_request_headers.started -> send_request_headers.started
        _, _, short = event_name.partition(".")
        if event_name.startswith("connection."):
            short = event_name
        self.marks[short] = time.perf_counter()

    def span(self, start: str, end: str) -> Optional[float]:
        if start in self.marks and end in self.marks:
            return (self.marks[end] - self.marks[start]) * 1000.0
        return None


class HttpClient:
    """Thin wrapper over ``httpx.AsyncClient`` returning HttpResponse records.

    Transport failures and malformed URLs never raise out of ``get``; they
    come back as a response with status 0 and the error text set.
    """

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self._client = httpx.AsyncClient(
            transport=transport,
            limits=DEFAULT_LIMITS,
            headers=headers or {"user-agent": "loadgen"},
            follow_redirects=True,
        )

    async def __aenter__(self) -> "HttpClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get(self, url: str, tags: Optional[Dict[str, str]] = None, timeout: float = 10.0) -> HttpResponse:
        trace = _TraceRecorder()
        start = time.perf_counter()
        try:
            request = self._client.build_request(
                "GET", url, timeout=timeout, extensions={"trace": trace}
            )
            response = await self._client.send(request, stream=True)
            headers_at = time.perf_counter()
            try:
                body = await response.aread()
            finally:
                await response.aclose()
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            elapsed = (time.perf_counter() - start) * 1000.0
            logger.debug("request_error", url=url, error=repr(exc), tags=tags)
            return HttpResponse(
                url=url,
                status=0,
                timings=HttpTimings(duration=elapsed),
                error=f"{type(exc).__name__}: {exc}",
            )
        end = time.perf_counter()

        return HttpResponse(
            url=str(response.url),
            status=response.status_code,
            body=body,
            timings=_timings(trace, start, headers_at, end),
        )


def _timings(trace: _TraceRecorder, start: float, headers_at: float, end: float) -> HttpTimings:
    """Build the timing breakdown.

    With trace events, duration is sending + waiting + receiving as reported
    by the connection. Transports that emit no events (mock and ASGI
    transports) fall back to wall-clock spans around ``send``.
    """
    receiving = (end - headers_at) * 1000.0
    connecting = trace.span("connection.connect_tcp.started", "connection.connect_tcp.complete") or 0.0
    sending = trace.span("send_request_headers.started", "send_request_body.complete")
    waiting = trace.span("send_request_body.complete", "receive_response_headers.complete")
    if sending is None or waiting is None:
        waiting = (headers_at - start) * 1000.0
        return HttpTimings(
            duration=waiting + receiving,
            sending=0.0,
            waiting=waiting,
            receiving=receiving,
            connecting=connecting,
        )
    return HttpTimings(
        duration=sending + waiting + receiving,
        sending=sending,
        waiting=waiting,
        receiving=receiving,
        connecting=connecting,
    )
