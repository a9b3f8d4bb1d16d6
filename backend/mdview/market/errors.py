"""Error taxonomy for market data sources, queries and subscriptions.

Every error is scoped to the single request or subscription that raised it.
Transport adapters map ``kind`` to a status code or a wire ``error`` message.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Machine-readable error category."""

    INVALID_RANGE = "invalid_range"
    INVALID_SYMBOL = "invalid_symbol"
    UNSUPPORTED = "unsupported"
    UPSTREAM = "upstream"
    BACKPRESSURE = "backpressure"
    INVALID_REQUEST = "invalid_request"


class SourceError(Exception):
    """Base class for all market data errors."""

    kind: ErrorKind = ErrorKind.UPSTREAM

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidRangeError(SourceError):
    """Raised when a query's start time is not before its end time."""

    kind = ErrorKind.INVALID_RANGE


class InvalidSymbolError(SourceError):
    """Raised when a symbol is not recognized by the active source."""

    kind = ErrorKind.INVALID_SYMBOL


class UnsupportedError(SourceError):
    """Raised when a schema/symbol combination cannot be served."""

    kind = ErrorKind.UNSUPPORTED


class UpstreamError(SourceError):
    """Raised when the underlying feed or network fails."""

    kind = ErrorKind.UPSTREAM


class QueryValidationError(SourceError):
    """Raised for malformed requests (empty symbols, bad limit, bad timestamps)."""

    kind = ErrorKind.INVALID_REQUEST
