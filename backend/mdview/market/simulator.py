"""Synthetic market data source: bounded random-walk trades and in-process bars."""

from __future__ import annotations

import asyncio
import heapq
import logging
import time
import zlib
from collections.abc import Callable, Iterator, Sequence
from itertools import islice

import numpy as np

from .aggregator import BarAggregator, aggregate_bars
from .errors import InvalidRangeError, InvalidSymbolError, UnsupportedError
from .interface import LiveStream, MarketDataSource
from .models import NANOS_PER_SECOND, HistoricalQuery, PriceTick, Record, Schema
from .seed_prices import (
    BLOCK_TRADE_MULTIPLIER,
    BLOCK_TRADE_PROBABILITY,
    DEFAULT_HISTORICAL_GAP_SECONDS,
    DEFAULT_LIVE_GAP_SECONDS,
    MAX_MOVE_TICKS,
    SIZE_GEOMETRIC_P,
    SYMBOL_SPECS,
    SymbolSpec,
)

logger = logging.getLogger(__name__)

# Stream identifiers mixed into the per-symbol seed
_HISTORICAL = 1
_LIVE = 2


class TradeSampler:
    """Random trade generator for one symbol.

    Prices walk on the symbol's tick grid, moving up to MAX_MOVE_TICKS per
    trade and reflecting off the band edges, so they stay within
    ``anchor +/- band_ticks * tick``. Gaps between trades are exponential
    with mean ``mean_gap_ns``. Sizes are geometric with rare block trades.

    Draws are made from numpy in chunks; the walk itself is sequential.
    """

    CHUNK = 1024

    def __init__(self, spec: SymbolSpec, rng: np.random.Generator, mean_gap_ns: int) -> None:
        self._spec = spec
        self._rng = rng
        self._mean_gap = mean_gap_ns
        self._offset = 0  # distance from the anchor, in ticks
        self._pos = self.CHUNK

    def next_trade(self) -> tuple[int, int, int]:
        """Advance the walk. Returns ``(gap_ns, price, size)``."""
        if self._pos >= self.CHUNK:
            self._refill()
        i = self._pos
        self._pos += 1

        band = self._spec.band_ticks
        offset = self._offset + int(self._moves[i])
        if offset > band:
            offset = 2 * band - offset
        elif offset < -band:
            offset = -2 * band - offset
        self._offset = offset

        price = self._spec.anchor + offset * self._spec.tick
        return int(self._gaps[i]), price, int(self._sizes[i])

    def _refill(self) -> None:
        n = self.CHUNK
        rng = self._rng
        self._gaps = np.maximum(rng.exponential(self._mean_gap, n), 1).astype(np.int64)
        self._moves = rng.integers(-MAX_MOVE_TICKS, MAX_MOVE_TICKS + 1, n)
        sizes = rng.geometric(SIZE_GEOMETRIC_P, n)
        blocks = rng.random(n) < BLOCK_TRADE_PROBABILITY
        low, high = BLOCK_TRADE_MULTIPLIER
        self._sizes = np.where(blocks, sizes * rng.integers(low, high + 1, n), sizes)
        self._pos = 0


class SyntheticDataSource(MarketDataSource):
    """MarketDataSource backed by a seeded generator. No network access.

    Output is a pure function of ``seed`` and the request: each symbol draws
    from its own generator seeded by ``(seed, crc32(symbol), stream id)``, so
    adding a symbol to a query never changes the other symbols' data. Live
    streams take event times from ``clock`` (ns) and are paced by
    ``live_gap`` seconds on average per symbol.
    """

    name = "synthetic"

    def __init__(
        self,
        seed: int | None = None,
        historical_gap: float = DEFAULT_HISTORICAL_GAP_SECONDS,
        live_gap: float = DEFAULT_LIVE_GAP_SECONDS,
        clock: Callable[[], int] = time.time_ns,
        symbol_specs: dict[str, SymbolSpec] | None = None,
    ) -> None:
        self._entropy = seed if seed is not None else np.random.SeedSequence().entropy
        self._historical_gap_ns = int(historical_gap * NANOS_PER_SECOND)
        self._live_gap_ns = int(live_gap * NANOS_PER_SECOND)
        self._clock = clock
        self._specs = dict(symbol_specs if symbol_specs is not None else SYMBOL_SPECS)
        self._live_sessions = 0

    @property
    def symbols(self) -> list[str]:
        return list(self._specs)

    async def validate_symbols(self, symbols: Sequence[str]) -> None:
        for symbol in symbols:
            if symbol not in self._specs:
                raise InvalidSymbolError(f"Unknown symbol: {symbol}")

    async def fetch_historical(self, query: HistoricalQuery) -> list[Record]:
        if query.start_time >= query.end_time:
            raise InvalidRangeError("start_time must be before end_time")
        for symbol in query.symbols:
            if symbol not in self._specs:
                raise UnsupportedError(f"Symbol {symbol} is not served by the synthetic source")

        # Generation is CPU-bound; keep it off the event loop
        records = await asyncio.to_thread(self._generate, query)
        logger.debug(
            "Synthetic %s: %d records for %s",
            query.schema.value,
            len(records),
            ",".join(query.symbols),
        )
        return records

    async def open_live_stream(self, symbols: Sequence[str], schema: Schema) -> LiveStream:
        schema = Schema.parse(schema)
        symbols = tuple(symbols)
        if not symbols:
            raise InvalidSymbolError("At least one symbol is required")
        await self.validate_symbols(symbols)
        self._live_sessions += 1
        logger.info("Synthetic live stream opened: %s %s", ",".join(symbols), schema.value)
        return self._live(symbols, schema, self._live_sessions)

    # --- Internals ---

    def _rng(self, symbol: str, stream: int, salt: int) -> np.random.Generator:
        return np.random.default_rng(
            [self._entropy, zlib.crc32(symbol.encode()), stream, salt & 0xFFFFFFFFFFFFFFFF]
        )

    def _generate(self, query: HistoricalQuery) -> list[Record]:
        per_symbol = [self._historical_records(symbol, query) for symbol in query.symbols]
        merged = heapq.merge(*per_symbol, key=lambda record: (record.event_time, record.symbol))
        return list(islice(merged, query.limit))

    def _historical_records(self, symbol: str, query: HistoricalQuery) -> Iterator[Record]:
        sampler = TradeSampler(
            self._specs[symbol],
            self._rng(symbol, _HISTORICAL, query.start_time),
            self._historical_gap_ns,
        )
        period = query.schema.period_ns
        if period is None:
            return _trades_between(symbol, sampler, query.start_time, query.end_time)

        # Only bars whose closing boundary lies in [start, end)
        first_close = -(-query.start_time // period) * period
        last_close = (query.end_time - 1) // period * period
        if last_close < first_close:
            return iter(())
        trades = _trades_between(symbol, sampler, first_close - period, last_close)
        return aggregate_bars(trades, symbol, query.schema)

    async def _live(self, symbols: tuple[str, ...], schema: Schema, session: int) -> LiveStream:
        """Interleave per-symbol arrival processes in real time."""
        samplers = {
            symbol: TradeSampler(self._specs[symbol], self._rng(symbol, _LIVE, session), self._live_gap_ns)
            for symbol in symbols
        }
        aggregators = {symbol: BarAggregator(symbol, schema) for symbol in symbols} if schema.is_bar else {}
        last_event = dict.fromkeys(symbols, 0)

        due: list[tuple[int, int, str, int, int]] = []
        for order, symbol in enumerate(symbols):
            gap, price, size = samplers[symbol].next_trade()
            heapq.heappush(due, (gap, order, symbol, price, size))

        elapsed = 0
        try:
            while True:
                at, order, symbol, price, size = heapq.heappop(due)
                await asyncio.sleep((at - elapsed) / NANOS_PER_SECOND)
                elapsed = at

                event_time = max(self._clock(), last_event[symbol] + 1)
                last_event[symbol] = event_time
                tick = PriceTick(event_time=event_time, symbol=symbol, price=price, size=size)

                gap, price, size = samplers[symbol].next_trade()
                heapq.heappush(due, (at + gap, order, symbol, price, size))

                if not schema.is_bar:
                    yield tick
                    continue
                bar = aggregators[symbol].accumulate(tick)
                if bar is not None:
                    yield bar
        finally:
            logger.info("Synthetic live stream closed: %s %s", ",".join(symbols), schema.value)


def _trades_between(symbol: str, sampler: TradeSampler, start: int, end: int) -> Iterator[PriceTick]:
    """Trades with strictly increasing event times in ``[start, end)``."""
    event_time = start
    while True:
        gap, price, size = sampler.next_trade()
        event_time += gap
        if event_time >= end:
            return
        yield PriceTick(event_time=event_time, symbol=symbol, price=price, size=size)
