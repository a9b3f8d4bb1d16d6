"""Rolling trade-to-OHLCV aggregation."""

from __future__ import annotations

from typing import Iterable, Iterator

from .models import Bar, PriceTick, Schema


class BarAggregator:
    """Accumulates one symbol's trades into fixed-period OHLCV bars.

    The first trade in a window sets open/high/low/close; later trades update
    high/low/close and add to volume. A trade that falls into a later window
    closes the current bar (returned) and opens a new one. Bars are stamped
    with their window's closing boundary.
    """

    def __init__(self, symbol: str, schema: Schema) -> None:
        if schema.period_ns is None:
            raise ValueError(f"{schema.value} is not a bar schema")
        self.symbol = symbol
        self.schema = schema
        self._period = schema.period_ns
        self._window_start: int | None = None
        self._open = self._high = self._low = self._close = 0
        self._volume = 0

    @property
    def window_close(self) -> int | None:
        """Closing boundary of the open window, or None before the first trade."""
        if self._window_start is None:
            return None
        return self._window_start + self._period

    def accumulate(self, trade: PriceTick) -> Bar | None:
        """Fold a trade into the current window. Returns the bar it closed, if any."""
        if trade.symbol != self.symbol:
            raise ValueError(f"{trade.symbol} trade fed to {self.symbol} aggregator")
        window_start = trade.event_time - trade.event_time % self._period

        closed: Bar | None = None
        if self._window_start is not None:
            if window_start < self._window_start:
                raise ValueError(
                    f"{self.symbol} trade at {trade.event_time} precedes open window"
                )
            if window_start > self._window_start:
                closed = self.flush()

        if self._window_start is None:
            self._window_start = window_start
            self._open = self._high = self._low = self._close = trade.price
            self._volume = trade.size
        else:
            self._high = max(self._high, trade.price)
            self._low = min(self._low, trade.price)
            self._close = trade.price
            self._volume += trade.size
        return closed

    def flush(self) -> Bar | None:
        """Close and return the open window's bar (None if no trades were seen)."""
        if self._window_start is None:
            return None
        bar = Bar(
            event_time=self._window_start + self._period,
            symbol=self.symbol,
            open=self._open,
            high=self._high,
            low=self._low,
            close=self._close,
            volume=self._volume,
        )
        self._window_start = None
        return bar


def aggregate_bars(trades: Iterable[PriceTick], symbol: str, schema: Schema) -> Iterator[Bar]:
    """Lazily turn one symbol's ordered trades into bars, flushing the last window."""
    aggregator = BarAggregator(symbol, schema)
    for trade in trades:
        bar = aggregator.accumulate(trade)
        if bar is not None:
            yield bar
    last = aggregator.flush()
    if last is not None:
        yield last
