"""Shared error definitions for the gateway.

Every failure is tagged with an ErrorKind at the point where it is detected,
so the retry policy and the HTTP layer switch on the tag instead of parsing
message text.
"""

from __future__ import annotations

from enum import Enum

# Error type mapping from HTTP status to Anthropic error type
ERROR_TYPE_MAP = {
    400: "invalid_request_error",
    401: "authentication_error",
    403: "permission_error",
    404: "not_found_error",
    429: "rate_limit_error",
    500: "api_error",
    502: "api_error",
    503: "overloaded_error",
    504: "api_error",
}

QUOTA_MARKERS = ("429", "quota", "throttl")
AUTH_MARKERS = ("401", "403", "auth error", "unauthorized", "expired token")


class ErrorKind(Enum):
    """Classification tag carried by every GatewayError."""

    AUTH = "auth"
    QUOTA = "quota"
    SERVER = "server"
    API = "api"
    VALIDATION = "validation"
    DECODE = "decode"
    CANCELLED = "cancelled"
    NO_CREDENTIAL = "no_credential"


class GatewayError(Exception):
    """Base class for all gateway failures."""

    kind: ErrorKind = ErrorKind.API
    status_code: int = 500

    def __init__(self, message: str, status_code: int | None = None, response_body: str | None = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        self.response_body = response_body

    @property
    def retryable(self) -> bool:
        return self.kind in (ErrorKind.AUTH, ErrorKind.QUOTA, ErrorKind.SERVER)

    @property
    def error_type(self) -> str:
        """Anthropic-style error type string for this error."""
        return ERROR_TYPE_MAP.get(self.status_code, "api_error")


class AuthError(GatewayError):
    """Upstream rejected the credential (401/403)."""

    kind = ErrorKind.AUTH
    status_code = 401


class QuotaError(GatewayError):
    """Upstream quota or throttling signal (429)."""

    kind = ErrorKind.QUOTA
    status_code = 429


class UpstreamServerError(GatewayError):
    """Upstream returned a 5xx status."""

    kind = ErrorKind.SERVER
    status_code = 500


class UpstreamConnectionError(UpstreamServerError):
    """Transport-level failure talking to or reading from the upstream."""

    status_code = 502


class UpstreamAPIError(GatewayError):
    """Any other non-2xx upstream status. Not retried."""

    kind = ErrorKind.API


class StreamDecodeError(GatewayError):
    """Fatal event-stream failure: in-band error frame or corrupt framing."""

    kind = ErrorKind.DECODE
    status_code = 502


class RequestValidationError(GatewayError):
    """Malformed client request body."""

    kind = ErrorKind.VALIDATION
    status_code = 400


class RequestCancelledError(GatewayError):
    """The caller cancelled the request. Never retried."""

    kind = ErrorKind.CANCELLED
    status_code = 499


class NoCredentialError(GatewayError):
    """No usable credential left in the pool."""

    kind = ErrorKind.NO_CREDENTIAL
    status_code = 503


def classify_message(message: str) -> ErrorKind | None:
    """Classify an error that only arrived as free text.

    Used for in-band upstream error frames, which carry a message but no
    HTTP status.
    """
    lowered = message.lower()
    if any(marker in lowered for marker in QUOTA_MARKERS):
        return ErrorKind.QUOTA
    if any(marker in lowered for marker in AUTH_MARKERS):
        return ErrorKind.AUTH
    return None


def error_from_stream_message(message: str) -> GatewayError:
    """Build a typed error for an in-band error frame."""
    kind = classify_message(message)
    if kind is ErrorKind.QUOTA:
        return QuotaError(message)
    if kind is ErrorKind.AUTH:
        return AuthError(message)
    return StreamDecodeError(message)
