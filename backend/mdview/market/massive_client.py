"""Massive (Polygon.io) API client for real market data."""

from __future__ import annotations

import asyncio
import heapq
import logging
from collections.abc import Sequence
from itertools import islice
from typing import Any

from .errors import InvalidRangeError, InvalidSymbolError, SourceError, UpstreamError
from .interface import LiveStream, MarketDataSource
from .models import Bar, HistoricalQuery, PriceTick, Record, Schema, to_fixed

logger = logging.getLogger(__name__)

_NS_PER_MS = 1_000_000

# Websocket channel prefixes: trades, per-second and per-minute aggregates
_CHANNELS: dict[Schema, str] = {
    Schema.TRADES: "T",
    Schema.OHLCV_1S: "A",
    Schema.OHLCV_1M: "AM",
}
_TIMESPANS: dict[Schema, str] = {
    Schema.OHLCV_1S: "second",
    Schema.OHLCV_1M: "minute",
}

_STREAM_END = object()


class MassiveDataSource(MarketDataSource):
    """MarketDataSource backed by the Massive (Polygon.io) REST and websocket APIs.

    Historical trades come from ``list_trades`` (SIP timestamps, ns) and bars
    from ``list_aggs`` (window start in ms, restamped to the closing
    boundary). Live data uses one websocket per opened stream. The Massive
    clients are synchronous for REST, so those calls run in worker threads.

    Vendor failures of any kind surface as UpstreamError.
    """

    name = "massive"

    def __init__(self, api_key: str, page_size: int = 50_000) -> None:
        self._api_key = api_key
        self._page_size = page_size
        self._client: Any = None  # Lazy import to avoid hard dependency at startup
        self._known_symbols: set[str] = set()

    async def validate_symbols(self, symbols: Sequence[str]) -> None:
        for symbol in symbols:
            if symbol in self._known_symbols:
                continue
            try:
                found = await asyncio.to_thread(self._ticker_exists, symbol)
            except Exception as e:
                raise UpstreamError(f"Symbol lookup failed for {symbol}: {e}") from e
            if not found:
                raise InvalidSymbolError(f"Unknown symbol: {symbol}")
            self._known_symbols.add(symbol)

    async def fetch_historical(self, query: HistoricalQuery) -> list[Record]:
        if query.start_time >= query.end_time:
            raise InvalidRangeError("start_time must be before end_time")
        try:
            per_symbol = await asyncio.gather(
                *(asyncio.to_thread(self._fetch_symbol, symbol, query) for symbol in query.symbols)
            )
        except SourceError:
            raise
        except Exception as e:
            logger.error("Massive historical request failed: %s", e)
            raise UpstreamError(f"API request failed: {e}") from e

        merged = heapq.merge(*per_symbol, key=lambda record: (record.event_time, record.symbol))
        records = list(islice(merged, query.limit))
        logger.info("Fetched %d %s records from Massive", len(records), query.schema.value)
        return records

    async def open_live_stream(self, symbols: Sequence[str], schema: Schema) -> LiveStream:
        schema = Schema.parse(schema)
        symbols = tuple(symbols)
        if not symbols:
            raise InvalidSymbolError("At least one symbol is required")
        await self.validate_symbols(symbols)
        subscriptions = [f"{_CHANNELS[schema]}.{symbol}" for symbol in symbols]
        websocket = self._websocket(subscriptions)
        logger.info("Massive live stream opened: %s", ",".join(subscriptions))
        return self._live(websocket, schema)

    async def close(self) -> None:
        self._client = None
        logger.info("Massive client released")

    # --- Internal ---

    def _rest(self) -> Any:
        if self._client is None:
            # Lazy import: only import massive when actually using real market data.
            from massive import RESTClient

            self._client = RESTClient(api_key=self._api_key)
        return self._client

    def _websocket(self, subscriptions: list[str]) -> Any:
        from massive import WebSocketClient

        return WebSocketClient(api_key=self._api_key, subscriptions=subscriptions)

    def _ticker_exists(self, symbol: str) -> bool:
        """Synchronous reference-data lookup. Runs in a thread."""
        matches = self._rest().list_tickers(ticker=symbol, limit=1)
        return next(iter(matches), None) is not None

    def _fetch_symbol(self, symbol: str, query: HistoricalQuery) -> list[Record]:
        """Synchronous paginated fetch for one symbol. Runs in a thread."""
        page_size = min(query.limit or self._page_size, self._page_size)
        if query.schema is Schema.TRADES:
            rows = self._rest().list_trades(
                ticker=symbol,
                timestamp_gte=query.start_time,
                timestamp_lt=query.end_time,
                order="asc",
                sort="timestamp",
                limit=page_size,
            )
            records: list[Record] = []
            for row in rows:
                event_time = int(row.sip_timestamp)
                if not query.start_time <= event_time < query.end_time:
                    continue
                records.append(
                    PriceTick(
                        event_time=event_time,
                        symbol=symbol,
                        price=to_fixed(row.price),
                        size=int(row.size),
                    )
                )
                if query.limit is not None and len(records) >= query.limit:
                    break
            records.sort(key=lambda record: record.event_time)
            return records

        period = query.schema.period_ns
        rows = self._rest().list_aggs(
            ticker=symbol,
            multiplier=1,
            timespan=_TIMESPANS[query.schema],
            from_=(query.start_time - period) // _NS_PER_MS,
            to=query.end_time // _NS_PER_MS,
            sort="asc",
            limit=page_size,
        )
        bars: list[Record] = []
        for agg in rows:
            close_time = int(agg.timestamp) * _NS_PER_MS + period
            if not query.start_time <= close_time < query.end_time:
                continue
            bars.append(
                Bar(
                    event_time=close_time,
                    symbol=symbol,
                    open=to_fixed(agg.open),
                    high=to_fixed(agg.high),
                    low=to_fixed(agg.low),
                    close=to_fixed(agg.close),
                    volume=int(agg.volume),
                )
            )
            if query.limit is not None and len(bars) >= query.limit:
                break
        bars.sort(key=lambda record: record.event_time)
        return bars

    async def _live(self, websocket: Any, schema: Schema) -> LiveStream:
        """Relay websocket messages as records until the socket fails or we are closed."""
        queue: asyncio.Queue = asyncio.Queue()

        async def handle(messages: list[Any]) -> None:
            for message in messages:
                record = _normalize(message, schema)
                if record is not None:
                    queue.put_nowait(record)

        task = asyncio.create_task(websocket.connect(handle), name="massive-websocket")
        task.add_done_callback(lambda _: queue.put_nowait(_STREAM_END))
        last_event: dict[str, int] = {}
        try:
            while True:
                item = await queue.get()
                if item is _STREAM_END:
                    error = None if task.cancelled() else task.exception()
                    if error is not None:
                        logger.error("Massive websocket failed: %s", error)
                        raise UpstreamError(f"Stream error: {error}") from error
                    raise UpstreamError("Massive websocket closed")
                # Keep per-symbol event times non-decreasing
                if item.event_time < last_event.get(item.symbol, 0):
                    logger.debug("Dropping out-of-order %s event at %d", item.symbol, item.event_time)
                    continue
                last_event[item.symbol] = item.event_time
                yield item
        finally:
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            try:
                await websocket.close()
            except Exception as e:
                logger.warning("Massive websocket close failed: %s", e)
            logger.info("Massive live stream closed")


def _normalize(message: Any, schema: Schema) -> Record | None:
    """Convert a websocket trade or aggregate message into a record."""
    try:
        if schema is Schema.TRADES:
            return PriceTick(
                event_time=int(message.timestamp) * _NS_PER_MS,
                symbol=message.symbol,
                price=to_fixed(message.price),
                size=int(message.size),
            )
        return Bar(
            event_time=int(message.end_timestamp) * _NS_PER_MS,
            symbol=message.symbol,
            open=to_fixed(message.open),
            high=to_fixed(message.high),
            low=to_fixed(message.low),
            close=to_fixed(message.close),
            volume=int(message.volume),
        )
    except (AttributeError, TypeError, ValueError) as e:
        logger.warning("Skipping message for %s: %s", getattr(message, "symbol", "???"), e)
        return None
