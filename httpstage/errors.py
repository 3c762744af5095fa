"""httpstage error types.

Every error raised while executing a record is a StageError subclass, or is
wrapped into one at the execution boundary. Error codes are stable strings for
programmatic handling and log filtering.
"""

from __future__ import annotations

from typing import Any


class StageError(Exception):
    """Base error for all httpstage exceptions."""

    code: str = "internal_error"
    message: str = "An internal error occurred"

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.__class__.message
        self.details = details or {}
        super().__init__(self.message)


class TemplateError(StageError):
    """A template rendered to an unusable request (bad URL or method)."""

    code = "template_error"
    message = "Template could not be resolved to a request"


class PoolUnavailableError(StageError):
    """Execution attempted while the pool is disabled or shutting down."""

    code = "pool_unavailable"
    message = "Connection pool is not available"


class TransportError(StageError):
    """Connect/read timeout, socket failure or TLS handshake failure."""

    code = "transport_error"
    message = "HTTP transport failed"


class ClientProtocolError(StageError):
    """Remote service answered with a non-2xx status."""

    code = "unexpected_status"
    message = "Unexpected response status"

    def __init__(
        self,
        status_code: int,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(
            message or f"Unexpected response status: {status_code}",
            details,
        )


class StreamingError(StageError):
    """I/O failure while reading or writing body content."""

    code = "streaming_error"
    message = "Failed to stream body content"

