"""Error taxonomy for the chat relay.

Every error raised across module boundaries derives from :class:`RelayError`
so the HTTP layer can translate it into a structured response with a single
handler. Errors raised after streaming has begun are logged instead.
"""

from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """Base relay error.

    Attributes:
        code: machine readable error code, e.g. ``"STORE_WRITE_ERROR"``.
        message: human readable message returned to the caller.
        http_status: status used when the error reaches the HTTP layer.
        extra: additional fields included in the response body.
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ValidationError(RelayError):
    """Request payload failed validation."""


class AuthenticationError(RelayError):
    """No identity was supplied by the front door."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(code="UNAUTHORIZED", message=message, http_status=401)


class NotFoundError(RelayError):
    """A referenced conversation or message does not exist."""

    def __init__(self, code: str, message: str):
        super().__init__(code=code, message=message, http_status=404)


class StoreError(RelayError):
    """The conversation store failed to read or write."""

    def __init__(self, code: str, message: str):
        super().__init__(code=code, message=message, http_status=500)


class UpstreamError(RelayError):
    """The model server refused the request or answered with a non-2xx status."""

    def __init__(self, message: str, *, upstream_status: Optional[int] = None, body: str = ""):
        super().__init__(
            code="UPSTREAM_ERROR",
            message=message,
            http_status=500,
            upstream_status=upstream_status,
            details=body,
        )
        self.upstream_status = upstream_status
        self.body = body


class UpstreamStreamError(RelayError):
    """The upstream stream broke after it was opened."""

    def __init__(self, message: str):
        super().__init__(code="UPSTREAM_STREAM_ERROR", message=message, http_status=500)


class StreamCancelled(RelayError):
    """The stream ended early because the client left or the deadline passed."""

    def __init__(self, reason: str = "client"):
        super().__init__(code="STREAM_CANCELLED", message=f"stream cancelled ({reason})", http_status=499)
        self.reason = reason
