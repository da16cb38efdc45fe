import asyncio
import time
from typing import Optional

import httpx

from .errors import ServiceNotReady
from .logging import get_logger
from .metrics import MetricNames, MetricsCollector, get_metrics


class ReadinessProber:
    """Waits until a freshly resumed service accepts HTTP connections.

    Any completed response counts as ready, whatever its status code: the
    probe checks that something is listening, not that the application is
    healthy.
    """

    def __init__(
        self,
        max_attempts: int = 15,
        attempt_timeout_ms: int = 2000,
        retry_delay_ms: int = 500,
        host: str = "127.0.0.1",
        metrics: Optional[MetricsCollector] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.attempt_timeout_ms = attempt_timeout_ms
        self.retry_delay_ms = retry_delay_ms
        self.host = host
        self.metrics = metrics or get_metrics()
        self.logger = get_logger("waker.readiness")

    def probe_url(self, port: int) -> str:
        return f"http://{self.host}:{port}/"

    async def await_ready(self, port: int, project: Optional[str] = None) -> int:
        """Probe until the port answers; returns the attempt that succeeded."""
        url = self.probe_url(port)
        start_time = time.time()
        last_error = None

        async with httpx.AsyncClient(
            timeout=self.attempt_timeout_ms / 1000.0, trust_env=False
        ) as client:
            for attempt in range(1, self.max_attempts + 1):
                self.metrics.increment_counter(MetricNames.PROBE_ATTEMPTS, project=project)
                try:
                    response = await client.head(url)
                except httpx.TransportError as e:
                    last_error = f"{type(e).__name__}: {e}"
                    self.logger.log_probe_attempt(
                        port, attempt, self.max_attempts, last_error, project=project
                    )
                    if attempt < self.max_attempts and self.retry_delay_ms > 0:
                        await asyncio.sleep(self.retry_delay_ms / 1000.0)
                    continue

                duration_ms = (time.time() - start_time) * 1000
                self.metrics.record_timer(MetricNames.PROBE_DURATION, duration_ms, project=project)
                self.logger.log_probe_ready(
                    port, attempt, response.status_code, project=project, duration_ms=duration_ms
                )
                return attempt

        self.metrics.increment_counter(MetricNames.PROBE_FAILURES, project=project)
        self.logger.log_probe_failed(port, self.max_attempts, last_error, project=project)
        raise ServiceNotReady(
            f"Port {port} not accepting connections after {self.max_attempts} attempts",
            project=project,
            detail=last_error,
        )
