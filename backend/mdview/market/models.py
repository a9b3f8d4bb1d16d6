"""Data models for market data: fixed-point records, schemas and stream events."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_EVEN, Decimal
from enum import Enum
from typing import Any, Iterable, Union

from .errors import ErrorKind, UnsupportedError

PRICE_SCALE = 1_000_000_000  # Fixed-point prices are integers scaled by 1e9
NANOS_PER_SECOND = 1_000_000_000
U32_MAX = 2**32 - 1

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_RFC3339 = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[Tt ](\d{2}:\d{2}:\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})$"
)


def to_fixed(value: Decimal | float | int | str) -> int:
    """Convert a decimal price to fixed-point, rounding half-even at 1e-9.

    Floats go through their shortest repr so 4500.25 becomes exactly
    4_500_250_000_000 rather than picking up binary noise.
    """
    if isinstance(value, float):
        value = repr(value)
    scaled = Decimal(value) * PRICE_SCALE
    return int(scaled.to_integral_value(rounding=ROUND_HALF_EVEN))


def from_fixed(value: int) -> float:
    """Convert a fixed-point price to a float (display only)."""
    return value / PRICE_SCALE


def parse_rfc3339_ns(text: str) -> int:
    """Parse an RFC 3339 timestamp into nanoseconds since the Unix epoch.

    Keeps up to nine fractional digits. An explicit offset is required.
    Raises ValueError for anything else.
    """
    match = _RFC3339.match(text.strip())
    if not match:
        raise ValueError(f"Invalid RFC3339 timestamp '{text}'")
    date_part, time_part, fraction, offset = match.groups()
    if offset in ("Z", "z"):
        offset = "+00:00"
    parsed = datetime.fromisoformat(f"{date_part}T{time_part}{offset}")
    delta = parsed - _EPOCH
    seconds = delta.days * 86_400 + delta.seconds
    nanos = int((fraction or "0")[:9].ljust(9, "0"))
    return seconds * NANOS_PER_SECOND + nanos


def format_rfc3339_ns(ns: int) -> str:
    """Render nanoseconds since the epoch as a UTC RFC 3339 string."""
    seconds, nanos = divmod(ns, NANOS_PER_SECOND)
    moment = _EPOCH + timedelta(seconds=seconds)
    base = moment.strftime("%Y-%m-%dT%H:%M:%S")
    if nanos:
        return f"{base}.{nanos:09d}Z"
    return f"{base}Z"


def normalize_symbols(symbols: Iterable[str]) -> tuple[str, ...]:
    """Strip and upper-case symbols, dropping blanks and duplicates (order kept)."""
    seen: dict[str, None] = {}
    for raw in symbols:
        symbol = raw.strip().upper()
        if symbol:
            seen.setdefault(symbol, None)
    return tuple(seen)


class Schema(str, Enum):
    """Record shape and aggregation period of a query or subscription."""

    TRADES = "trades"
    OHLCV_1S = "ohlcv-1s"
    OHLCV_1M = "ohlcv-1m"

    @property
    def is_bar(self) -> bool:
        return self is not Schema.TRADES

    @property
    def period_ns(self) -> int | None:
        """Bar period in nanoseconds, or None for raw trades."""
        if self is Schema.OHLCV_1S:
            return NANOS_PER_SECOND
        if self is Schema.OHLCV_1M:
            return 60 * NANOS_PER_SECOND
        return None

    @classmethod
    def parse(cls, value: Schema | str) -> Schema:
        if isinstance(value, Schema):
            return value
        for member in cls:
            if member.value == value:
                return member
        raise UnsupportedError(
            f"Invalid schema: {value}. Expected: trades, ohlcv-1s, or ohlcv-1m"
        )


@dataclass(frozen=True, slots=True)
class PriceTick:
    """A single trade. ``price`` is fixed-point (scale 1e9)."""

    event_time: int  # ns since epoch
    symbol: str
    price: int
    size: int

    def __post_init__(self) -> None:
        if self.price < 0:
            raise ValueError(f"price must be non-negative, got {self.price}")
        if not 0 <= self.size <= U32_MAX:
            raise ValueError(f"size out of u32 range: {self.size}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "ts_event_unix_ns": self.event_time,
            "symbol": self.symbol,
            "price_i64": self.price,
            "size_u32": self.size,
        }

    def to_message(self) -> dict[str, Any]:
        return {"type": "trade", **self.to_dict()}


@dataclass(frozen=True, slots=True)
class Bar:
    """OHLCV bar. ``event_time`` is the closing boundary of the bar's window."""

    event_time: int
    symbol: str
    open: int
    high: int
    low: int
    close: int
    volume: int

    def __post_init__(self) -> None:
        if not (self.low <= self.open <= self.high and self.low <= self.close <= self.high):
            raise ValueError(
                f"OHLC out of order for {self.symbol}: "
                f"o={self.open} h={self.high} l={self.low} c={self.close}"
            )
        if self.volume < 0:
            raise ValueError(f"volume must be non-negative, got {self.volume}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "ts_event_unix_ns": self.event_time,
            "symbol": self.symbol,
            "open_i64": self.open,
            "high_i64": self.high,
            "low_i64": self.low,
            "close_i64": self.close,
            "volume_u64": self.volume,
        }

    def to_message(self) -> dict[str, Any]:
        return {"type": "ohlcv", **self.to_dict()}


@dataclass(frozen=True, slots=True)
class ConnectedEvent:
    """First event of every subscription: the resolved symbols and schema."""

    symbols: tuple[str, ...]
    schema: Schema

    def to_message(self) -> dict[str, Any]:
        return {"type": "connected", "symbols": list(self.symbols), "schema": self.schema.value}


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    """Error notification. ``terminal`` errors are the last event of a subscription."""

    kind: ErrorKind
    message: str
    terminal: bool = False

    def to_message(self) -> dict[str, Any]:
        return {"type": "error", "message": self.message}


Record = Union[PriceTick, Bar]
StreamEvent = Union[PriceTick, Bar, ConnectedEvent, ErrorEvent]


def decode_message(message: dict[str, Any]) -> StreamEvent:
    """Decode a wire message produced by ``to_message`` back into an event."""
    kind = message.get("type")
    if kind == "trade":
        return PriceTick(
            event_time=int(message["ts_event_unix_ns"]),
            symbol=message["symbol"],
            price=int(message["price_i64"]),
            size=int(message["size_u32"]),
        )
    if kind == "ohlcv":
        return Bar(
            event_time=int(message["ts_event_unix_ns"]),
            symbol=message["symbol"],
            open=int(message["open_i64"]),
            high=int(message["high_i64"]),
            low=int(message["low_i64"]),
            close=int(message["close_i64"]),
            volume=int(message["volume_u64"]),
        )
    if kind == "connected":
        return ConnectedEvent(
            symbols=tuple(message["symbols"]), schema=Schema.parse(message["schema"])
        )
    if kind == "error":
        # The wire format carries no category; decoded errors are upstream notices.
        return ErrorEvent(kind=ErrorKind.UPSTREAM, message=message["message"])
    raise ValueError(f"Unknown message type: {kind!r}")


@dataclass(frozen=True, slots=True)
class HistoricalQuery:
    """A request for records in ``[start_time, end_time)``. Times are ns since epoch."""

    symbols: tuple[str, ...]
    schema: Schema
    start_time: int
    end_time: int
    limit: int | None = None


@dataclass(frozen=True, slots=True)
class HistoricalResponse:
    """Schema-tagged response envelope."""

    schema: Schema
    data: list[Record] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"schema": self.schema.value, "data": [record.to_dict() for record in self.data]}
