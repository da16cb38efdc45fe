"""
Error taxonomy for the waker pipeline.

Every failure that can end a request is a WakerError subclass carrying the
project it concerns, the pipeline stage that failed and the HTTP status the
listener answers with.
"""

from typing import Optional


class WakerError(Exception):
    """Base class for request-terminating waker failures."""

    status_code = 503
    stage = "wake"
    reason = "Service Unavailable"

    def __init__(self, message: str, project: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.project = project
        self.detail = detail

    def to_response_text(self) -> str:
        """Plain-text body returned to the caller."""
        return f"{self.reason}: {type(self).__name__}: {self.message}"


class MissingRoutingHeader(WakerError):
    status_code = 400
    stage = "received"
    reason = "Bad Request"

    def to_response_text(self) -> str:
        return f"{self.reason}: {self.message}"


class RequestBodyTooLarge(WakerError):
    status_code = 413
    stage = "buffered"
    reason = "Payload Too Large"


class ConfigNotFound(WakerError):
    stage = "config"


class PortNotConfigured(WakerError):
    stage = "config"


class WakeProcessFailure(WakerError):
    pass


class WakeTimeout(WakerError):
    pass


class ServiceNotReady(WakerError):
    stage = "probing"


class ProxyConnectionError(WakerError):
    status_code = 502
    stage = "proxying"
    reason = "Bad Gateway"
