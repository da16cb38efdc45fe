"""
Structured Logging for pet-waker

JSON log lines with request IDs, event types and the project being woken, so
a single request can be followed through buffer, wake, probe and proxy.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Union

# Context variable for tracking request ID across async operations
request_id_context: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class LogLevel(Enum):
    """Log levels for structured logging."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class EventType(Enum):
    """Event types emitted by the waker."""

    # Request/Response events
    REQUEST_START = "request_start"
    REQUEST_END = "request_end"
    REQUEST_REJECTED = "request_rejected"

    # Wake lifecycle events
    WAKE_START = "wake_start"
    WAKE_ATTACH = "wake_attach"
    WAKE_SUCCESS = "wake_success"
    WAKE_FAILURE = "wake_failure"
    WAKE_TIMEOUT = "wake_timeout"
    WAKE_EVICTED = "wake_evicted"

    # Readiness events
    PROBE_ATTEMPT = "probe_attempt"
    PROBE_READY = "probe_ready"
    PROBE_FAILED = "probe_failed"

    # Proxy events
    PROXY_START = "proxy_start"
    PROXY_END = "proxy_end"
    PROXY_ERROR = "proxy_error"

    # Gateway events
    GATEWAY_START = "gateway_start"
    GATEWAY_STOP = "gateway_stop"
    GATEWAY_ERROR = "gateway_error"


class StructuredFormatter(logging.Formatter):
    """Custom formatter for structured JSON logging."""

    _fields = (
        "event_type",
        "project",
        "stage",
        "duration_ms",
        "status_code",
        "method",
        "path",
        "metadata",
    )

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_context.get()
        if request_id:
            log_entry["request_id"] = request_id

        for field in self._fields:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_entry.update(getattr(record, "extra_fields"))

        return json.dumps(log_entry, default=str)


class SafeStreamHandler(logging.StreamHandler):
    """StreamHandler that gracefully handles closed streams during shutdown."""

    def emit(self, record):
        try:
            if hasattr(self.stream, "closed") and self.stream.closed:
                return
            super().emit(record)
        except (ValueError, OSError) as e:
            error_msg = str(e).lower()
            if any(
                phrase in error_msg
                for phrase in ["closed file", "bad file descriptor", "i/o operation on closed file"]
            ):
                return
            raise


class WakerLogger:
    """Structured logger for pet-waker."""

    def __init__(self, name: str = "waker", level: LogLevel = LogLevel.INFO):
        self.name = name
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.value))

        # Remove existing handlers to avoid duplicates
        for handler in self.logger.handlers[:]:
            self.logger.removeHandler(handler)

        handler = SafeStreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        self.logger.addHandler(handler)
        self.logger.propagate = False

    def set_level(self, level: LogLevel):
        self.logger.setLevel(getattr(logging, level.value))

    def _log(self, level: LogLevel, message: str, **kwargs):
        extra = {}

        if "event_type" in kwargs:
            event_type = kwargs.pop("event_type")
            extra["event_type"] = (
                event_type.value if isinstance(event_type, EventType) else event_type
            )

        for field in ["project", "stage", "duration_ms", "status_code", "method", "path", "metadata"]:
            if field in kwargs:
                extra[field] = kwargs.pop(field)

        if kwargs:
            extra["extra_fields"] = kwargs

        getattr(self.logger, level.value.lower())(message, extra=extra)

    def debug(self, message: str, **kwargs):
        self._log(LogLevel.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(LogLevel.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(LogLevel.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log(LogLevel.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._log(LogLevel.CRITICAL, message, **kwargs)

    def log_event(self, event_type: EventType, message: str, **kwargs):
        """Log a structured event."""
        self.info(message, event_type=event_type, **kwargs)

    def log_request_start(self, method: str, path: str, project: Optional[str] = None, **kwargs):
        self.log_event(
            EventType.REQUEST_START,
            f"{method} {path}",
            method=method,
            path=path,
            project=project,
            **kwargs,
        )

    def log_request_end(
        self,
        method: str,
        path: str,
        status_code: int,
        duration_ms: float,
        project: Optional[str] = None,
        **kwargs,
    ):
        self.log_event(
            EventType.REQUEST_END,
            f"{method} {path} - {status_code} ({duration_ms:.1f}ms)",
            method=method,
            path=path,
            status_code=status_code,
            duration_ms=duration_ms,
            project=project,
            **kwargs,
        )

    def log_wake_start(self, project: str, command: list, **kwargs):
        self.log_event(
            EventType.WAKE_START,
            f"Waking project: {project}",
            project=project,
            stage="waking",
            metadata={"command": command},
            **kwargs,
        )

    def log_wake_attach(self, project: str, state: str, **kwargs):
        self.log_event(
            EventType.WAKE_ATTACH,
            f"Joining existing wake of {project} ({state})",
            project=project,
            stage="waking",
            metadata={"wake_state": state},
            **kwargs,
        )

    def log_wake_success(self, project: str, port: int, duration_ms: float, **kwargs):
        self.log_event(
            EventType.WAKE_SUCCESS,
            f"Project {project} is awake on port {port} ({duration_ms:.1f}ms)",
            project=project,
            stage="waking",
            duration_ms=duration_ms,
            metadata={"port": port},
            **kwargs,
        )

    def log_wake_failure(
        self, project: str, error: Union[str, Exception], stage: str = "waking", **kwargs
    ):
        error_msg = str(error)
        event_type = EventType.WAKE_FAILURE
        if type(error).__name__ == "WakeTimeout":
            event_type = EventType.WAKE_TIMEOUT

        base_meta = {"error": error_msg, "error_type": type(error).__name__}
        detail = getattr(error, "detail", None)
        if detail:
            base_meta["detail"] = detail

        self.error(
            f"Failed to wake {project}: {error_msg}",
            event_type=event_type,
            project=project,
            stage=stage,
            metadata=base_meta,
            **kwargs,
        )

    def log_probe_attempt(self, port: int, attempt: int, max_attempts: int, error: str, **kwargs):
        self.debug(
            f"Probe of port {port} failed (attempt {attempt}/{max_attempts}): {error}",
            event_type=EventType.PROBE_ATTEMPT,
            stage="probing",
            metadata={"port": port, "attempt": attempt, "max_attempts": max_attempts},
            **kwargs,
        )

    def log_probe_ready(self, port: int, attempt: int, status_code: int, **kwargs):
        self.log_event(
            EventType.PROBE_READY,
            f"Port {port} accepting connections after {attempt} attempt(s)",
            stage="probing",
            status_code=status_code,
            metadata={"port": port, "attempt": attempt},
            **kwargs,
        )

    def log_probe_failed(self, port: int, attempts: int, error: Optional[str], **kwargs):
        self.warning(
            f"Port {port} not accepting connections after {attempts} attempts",
            event_type=EventType.PROBE_FAILED,
            stage="probing",
            metadata={"port": port, "attempts": attempts, "last_error": error},
            **kwargs,
        )

    def log_proxy_start(self, project: str, target_url: str, method: str, path: str, **kwargs):
        self.log_event(
            EventType.PROXY_START,
            f"Proxying {method} {path} to {target_url}",
            project=project,
            stage="proxying",
            method=method,
            path=path,
            metadata={"target_url": target_url},
            **kwargs,
        )

    def log_proxy_end(
        self, project: str, target_url: str, status_code: int, duration_ms: float, **kwargs
    ):
        self.log_event(
            EventType.PROXY_END,
            f"Proxy response from {target_url}: {status_code} ({duration_ms:.1f}ms)",
            project=project,
            stage="proxying",
            status_code=status_code,
            duration_ms=duration_ms,
            metadata={"target_url": target_url},
            **kwargs,
        )

    def log_request_failed(self, error: Exception, project: Optional[str] = None, **kwargs):
        """Log a pipeline failure with the stage it happened in."""
        stage = getattr(error, "stage", "unknown")
        event_type = EventType.REQUEST_REJECTED
        if getattr(error, "status_code", 500) >= 500:
            event_type = EventType.PROXY_ERROR if stage == "proxying" else EventType.GATEWAY_ERROR

        self.error(
            f"Request failed at {stage}: {error}",
            event_type=event_type,
            project=project,
            stage=stage,
            status_code=getattr(error, "status_code", None),
            metadata={"error_type": type(error).__name__},
            **kwargs,
        )


# Global logger instance
logger = WakerLogger()
_named_loggers: Dict[str, WakerLogger] = {}
_current_level = LogLevel.INFO


def get_logger(name: str = "waker") -> WakerLogger:
    """Get a logger instance."""
    if name == "waker":
        return logger
    if name not in _named_loggers:
        _named_loggers[name] = WakerLogger(name, _current_level)
    return _named_loggers[name]


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set request ID in context. If not provided, generates a new one."""
    if request_id is None:
        request_id = f"req_{uuid.uuid4().hex[:12]}"

    request_id_context.set(request_id)
    return request_id


def get_request_id() -> Optional[str]:
    return request_id_context.get()


def clear_request_id():
    request_id_context.set(None)


def configure_logging(level: LogLevel = LogLevel.INFO, enable_debug: bool = False):
    """Configure global logging settings."""
    global _current_level

    if enable_debug:
        level = LogLevel.DEBUG

    _current_level = level
    logger.set_level(level)
    for named in _named_loggers.values():
        named.set_level(level)

    # Keep httpx request chatter out of the structured stream unless debugging
    if level != LogLevel.DEBUG:
        for name in ["httpx", "httpcore"]:
            logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug(
        "Logging configured",
        metadata={"log_level": level.value, "debug_enabled": enable_debug},
    )
