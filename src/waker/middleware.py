"""
Logging Middleware for pet-waker

Request/response logging with timing, request IDs and the project named by
the routing header, plus request counters.
"""

import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .logging import EventType, clear_request_id, get_logger, get_request_id, set_request_id
from .metrics import MetricNames, get_metrics


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for structured request/response logging and metrics."""

    def __init__(
        self,
        app: ASGIApp,
        routing_header: str = "x-pet-sleep-project",
        logger_name: str = "waker.middleware",
        exclude_paths: Optional[list] = None,
    ):
        """
        Args:
            app: ASGI application
            routing_header: Header naming the project, logged with every request
            logger_name: Name for the logger instance
            exclude_paths: Path prefixes to exclude from logging
        """
        super().__init__(app)
        self.routing_header = routing_header.lower()
        self.logger = get_logger(logger_name)
        self.metrics = get_metrics()
        self.exclude_paths = exclude_paths or ["/_waker/"]

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if self._should_exclude_path(request.url.path):
            return await call_next(request)

        request_id = self._get_or_generate_request_id(request)
        set_request_id(request_id)

        start_time = time.time()
        method = request.method
        path = request.url.path
        project = request.headers.get(self.routing_header) or None

        try:
            self.logger.log_request_start(
                method=method,
                path=path,
                project=project,
                metadata={
                    "request_id": request_id,
                    "user_agent": request.headers.get("user-agent"),
                    "client_ip": self._get_client_ip(request),
                },
            )

            response = await call_next(request)

            duration_ms = (time.time() - start_time) * 1000
            status_code = response.status_code

            self.logger.log_request_end(
                method=method,
                path=path,
                status_code=status_code,
                duration_ms=duration_ms,
                project=project,
                metadata={
                    "request_id": request_id,
                    "content_type": response.headers.get("content-type", ""),
                },
            )

            self.metrics.record_timer(MetricNames.REQUEST_DURATION, duration_ms, project=project)
            self.metrics.increment_counter(
                MetricNames.REQUESTS_TOTAL,
                labels={"method": method, "status": str(status_code)},
                project=project,
            )

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            self.logger.error(
                f"Request processing error: {method} {path}",
                event_type=EventType.GATEWAY_ERROR,
                method=method,
                path=path,
                project=project,
                duration_ms=duration_ms,
                metadata={
                    "request_id": request_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            raise

        finally:
            clear_request_id()

    def _should_exclude_path(self, path: str) -> bool:
        return any(path.startswith(excluded) for excluded in self.exclude_paths)

    def _get_or_generate_request_id(self, request: Request) -> str:
        request_id = request.headers.get("x-request-id")
        if request_id:
            return request_id

        existing_id = get_request_id()
        if existing_id:
            return existing_id

        return f"req_{uuid.uuid4().hex[:12]}"

    def _get_client_ip(self, request: Request) -> str:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip

        if request.client:
            return request.client.host

        return "unknown"


def add_logging_middleware(app, **kwargs):
    """Add logging middleware to FastAPI app."""
    app.add_middleware(LoggingMiddleware, **kwargs)
    return app
