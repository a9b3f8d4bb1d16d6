"""Abstract interface for market data sources."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Sequence

from .models import HistoricalQuery, Record, Schema

LiveStream = AsyncGenerator[Record, None]


class MarketDataSource(ABC):
    """Contract for market data providers.

    One source is selected at startup (see ``create_market_data_source``) and
    serves both channels for the life of the process: the Query Gateway calls
    ``fetch_historical`` and the Stream Multiplexer opens live streams.

    Lifecycle:
        source = create_market_data_source(settings)
        await source.validate_symbols(["ES.FUT"])
        records = await source.fetch_historical(query)
        stream = await source.open_live_stream(["ES.FUT"], Schema.TRADES)
        async for record in stream: ...
        await stream.aclose()
        # ... app shutting down ...
        await source.close()
    """

    name: str = "source"

    @abstractmethod
    async def fetch_historical(self, query: HistoricalQuery) -> list[Record]:
        """Return records in ``[start_time, end_time)`` ordered by event time.

        The result is truncated to ``query.limit`` when given. Raises
        InvalidRangeError when start >= end, UnsupportedError when the
        schema/symbol combination cannot be served, and UpstreamError when the
        underlying feed fails (never a partial result).
        """

    @abstractmethod
    async def open_live_stream(self, symbols: Sequence[str], schema: Schema) -> LiveStream:
        """Open an unbounded stream of records for ``symbols``.

        Raises InvalidSymbolError on open if a symbol is not recognized. Event
        times are non-decreasing per symbol. The stream cannot be restarted;
        callers must ``aclose()`` it to release resources. Failures while
        streaming surface as UpstreamError from the iterator.
        """

    @abstractmethod
    async def validate_symbols(self, symbols: Sequence[str]) -> None:
        """Raise InvalidSymbolError for the first symbol this source cannot serve."""

    async def close(self) -> None:
        """Release clients and connections. Safe to call multiple times."""
