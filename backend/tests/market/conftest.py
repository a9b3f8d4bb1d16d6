"""Fixtures for market data tests."""

import asyncio
from collections.abc import Sequence

import pytest

from mdview.market.errors import InvalidSymbolError
from mdview.market.interface import MarketDataSource
from mdview.market.models import HistoricalQuery, Record, Schema


class FakeSource(MarketDataSource):
    """In-memory source whose live streams are fed by the test."""

    name = "fake"

    def __init__(self, symbols: Sequence[str] = ("ES.FUT", "NQ.FUT")) -> None:
        self.known = set(symbols)
        self.historical: list[Record] = []
        self.fetch_error: Exception | None = None
        self.fetch_calls = 0
        self.opened: list[tuple[Schema, str]] = []
        self.closed_streams = 0
        self.validate_delay = 0.0
        self.open_delay: dict[str, float] = {}
        self.close_delay = 0.0
        self._queues: dict[tuple[Schema, str], asyncio.Queue] = {}

    def _check(self, symbols) -> None:
        for symbol in symbols:
            if symbol not in self.known:
                raise InvalidSymbolError(f"Unknown symbol: {symbol}")

    async def validate_symbols(self, symbols):
        if self.validate_delay:
            await asyncio.sleep(self.validate_delay)
        self._check(symbols)

    async def fetch_historical(self, query: HistoricalQuery):
        self.fetch_calls += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.historical)

    async def open_live_stream(self, symbols, schema):
        self._check(symbols)
        if symbols[0] in self.open_delay:
            await asyncio.sleep(self.open_delay[symbols[0]])
        key = (Schema.parse(schema), symbols[0])
        queue: asyncio.Queue = asyncio.Queue()
        self._queues[key] = queue
        self.opened.append(key)
        return self._stream(queue)

    async def _stream(self, queue: asyncio.Queue):
        try:
            while True:
                item = await queue.get()
                if item is None:
                    return
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            self.closed_streams += 1
            if self.close_delay:
                await asyncio.sleep(self.close_delay)

    def push(self, schema: Schema, symbol: str, item) -> None:
        """Emit an event on the stream for (schema, symbol). An exception is raised there; None ends it."""
        self._queues[(schema, symbol)].put_nowait(item)


@pytest.fixture
def fake_source() -> FakeSource:
    return FakeSource()
