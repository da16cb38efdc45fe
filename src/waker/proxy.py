"""
Request replay for woken projects.

The inbound body is read completely before the wake starts, since the
request stream can be consumed once and the wake may take a minute. The
buffered copy is then replayed against the project on 127.0.0.1.
"""

import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

import httpx
from fastapi import Request
from starlette.background import BackgroundTask
from starlette.responses import StreamingResponse

from .errors import ProxyConnectionError, RequestBodyTooLarge
from .logging import get_logger
from .metrics import MetricNames, MetricsCollector, get_metrics

# Connection-scoped headers, never forwarded in either direction
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


@dataclass(frozen=True)
class BufferedRequest:
    """Inbound request captured in full for replay."""

    method: str
    path: str
    headers: httpx.Headers
    body: bytes


async def capture(request: Request, max_body_bytes: int = 0) -> BufferedRequest:
    """Read the whole request body; max_body_bytes of 0 means unlimited."""
    if max_body_bytes:
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > max_body_bytes:
            raise RequestBodyTooLarge(
                f"Request body of {declared} bytes exceeds limit of {max_body_bytes} bytes"
            )

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if max_body_bytes and len(body) > max_body_bytes:
            raise RequestBodyTooLarge(f"Request body exceeds limit of {max_body_bytes} bytes")

    # The undecoded target, so escapes such as %2F, %3F and %23 replay unchanged.
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else quote(request.url.path)
    query_string = request.scope.get("query_string", b"")
    if query_string:
        path = f"{path}?{query_string.decode('latin-1')}"

    return BufferedRequest(
        method=request.method,
        path=path,
        headers=httpx.Headers(request.headers.raw),
        body=bytes(body),
    )


def outbound_headers(buffered: BufferedRequest, routing_header: str) -> httpx.Headers:
    """Headers for the replayed request, with a Content-Length matching the buffered body."""
    skipped = HOP_BY_HOP_HEADERS | {routing_header.lower(), "content-length"}
    pairs = [
        (name, value)
        for name, value in buffered.headers.multi_items()
        if name.lower() not in skipped
    ]
    pairs.append(("content-length", str(len(buffered.body))))
    return httpx.Headers(pairs)


class ReverseProxy:
    """Replays buffered requests against a local port and streams the answer back."""

    def __init__(
        self,
        routing_header: str = "x-pet-sleep-project",
        host: str = "127.0.0.1",
        timeout_seconds: float = 300.0,
        connect_timeout_seconds: float = 5.0,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.routing_header = routing_header.lower()
        self.host = host
        self.timeout = httpx.Timeout(timeout_seconds, connect=connect_timeout_seconds)
        self.metrics = metrics or get_metrics()
        self.logger = get_logger("waker.proxy")

    def target_url(self, buffered: BufferedRequest, port: int) -> str:
        return f"http://{self.host}:{port}{buffered.path}"

    async def forward(
        self, buffered: BufferedRequest, port: int, project: Optional[str] = None
    ) -> StreamingResponse:
        target = self.target_url(buffered, port)
        start_time = time.time()
        self.logger.log_proxy_start(project, target, buffered.method, buffered.path)
        self.metrics.increment_counter(
            MetricNames.PROXY_REQUESTS, project=project, labels={"method": buffered.method}
        )

        # Loopback only; HTTP_PROXY and friends must not apply.
        client = httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, trust_env=False
        )
        upstream_request = client.build_request(
            buffered.method,
            target,
            headers=outbound_headers(buffered, self.routing_header),
            content=buffered.body,
        )

        try:
            upstream = await client.send(upstream_request, stream=True)
        except httpx.TransportError as e:
            await client.aclose()
            self.metrics.increment_counter(
                MetricNames.PROXY_ERRORS, project=project, labels={"error": type(e).__name__}
            )
            raise ProxyConnectionError(
                f"Service unavailable at {target}: {type(e).__name__}",
                project=project,
                detail=str(e),
            )

        duration_ms = (time.time() - start_time) * 1000
        self.logger.log_proxy_end(project, target, upstream.status_code, duration_ms)
        self.metrics.record_timer(
            MetricNames.PROXY_DURATION,
            duration_ms,
            project=project,
            labels={"status": str(upstream.status_code)},
        )

        async def close_upstream():
            await upstream.aclose()
            await client.aclose()

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(close_upstream),
        )
        # Upstream bytes as sent: repeated headers such as Set-Cookie and non-ASCII
        # values pass through untouched.
        response.raw_headers = [
            (name, value)
            for name, value in upstream.headers.raw
            if name.decode("latin-1").lower() not in HOP_BY_HOP_HEADERS
        ]
        return response
