from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    INVALID_MESSAGE = "invalid_message"
    CONFIGURATION_ERROR = "configuration_error"
    AUTHENTICATION_FAILED = "authentication_failed"
    CONNECTION_FAILED = "connection_failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    PROVIDER_REJECTED = "provider_rejected"
    UNKNOWN = "unknown"


class MailError(Exception):
    """Base class for mail dispatch errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN


class InvalidMessage(MailError):
    """Raised when a message draft fails validation."""

    kind = ErrorKind.INVALID_MESSAGE


class ConfigurationError(MailError):
    """Raised when the dispatcher or its transport is misconfigured."""

    kind = ErrorKind.CONFIGURATION_ERROR


class TransportError(MailError):
    """Raised by transports with an already classified failure kind."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


# HTTP status -> kind, shared by the HTTP-based transports.
_STATUS_KINDS = {
    401: ErrorKind.AUTHENTICATION_FAILED,
    403: ErrorKind.AUTHENTICATION_FAILED,
    400: ErrorKind.PROVIDER_REJECTED,
    413: ErrorKind.PROVIDER_REJECTED,
    422: ErrorKind.PROVIDER_REJECTED,
    429: ErrorKind.PROVIDER_REJECTED,
    502: ErrorKind.CONNECTION_FAILED,
    503: ErrorKind.CONNECTION_FAILED,
    504: ErrorKind.CONNECTION_FAILED,
}


def kind_for_status(status_code: int | None) -> ErrorKind:
    if status_code is None:
        return ErrorKind.UNKNOWN
    return _STATUS_KINDS.get(status_code, ErrorKind.UNKNOWN)
