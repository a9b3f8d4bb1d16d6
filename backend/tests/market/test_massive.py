"""Tests for MassiveDataSource (mocked)."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from mdview.market.errors import InvalidRangeError, InvalidSymbolError, UpstreamError
from mdview.market.massive_client import MassiveDataSource, _normalize
from mdview.market.models import Bar, ConnectedEvent, HistoricalQuery, PriceTick, Schema, parse_rfc3339_ns
from mdview.market.multiplexer import StreamMultiplexer

START = parse_rfc3339_ns("2024-02-10T15:00:00Z")
MINUTE = 60_000_000_000
START_MS = START // 1_000_000


def _make_trade(sip_ns: int, price: float, size: int) -> MagicMock:
    """Create a mock Massive REST trade."""
    row = MagicMock()
    row.sip_timestamp = sip_ns
    row.price = price
    row.size = size
    return row


def _make_agg(start_ms: int, o: float, h: float, l: float, c: float, v: float) -> MagicMock:
    """Create a mock Massive REST aggregate (timestamp is the window start)."""
    agg = MagicMock()
    agg.timestamp = start_ms
    agg.open, agg.high, agg.low, agg.close, agg.volume = o, h, l, c, v
    return agg


def _make_ws_trade(symbol: str, timestamp_ms: int, price: float, size: int) -> MagicMock:
    message = MagicMock()
    message.symbol = symbol
    message.timestamp = timestamp_ms
    message.price = price
    message.size = size
    return message


def _query(symbols=("AAPL",), schema=Schema.TRADES, start=START, end=START + MINUTE, limit=None):
    return HistoricalQuery(symbols=tuple(symbols), schema=schema, start_time=start, end_time=end, limit=limit)


class _FakeWebSocket:
    """Stands in for massive.WebSocketClient."""

    def __init__(self, messages, error=None, stay_open=True):
        self.messages = messages
        self.error = error
        self.stay_open = stay_open
        self.closed = False

    async def connect(self, handler):
        await handler(self.messages)
        if self.error is not None:
            raise self.error
        if self.stay_open:
            await asyncio.Event().wait()

    async def close(self):
        self.closed = True


def _source_with_client(client: MagicMock) -> MassiveDataSource:
    source = MassiveDataSource(api_key="test-key")
    source._client = client
    return source


@pytest.mark.asyncio
class TestMassiveHistorical:
    """Unit tests for historical fetches with a mocked REST client."""

    async def test_trades_converted_and_filtered(self):
        """SIP timestamps, fixed-point prices, and only rows inside the range."""
        client = MagicMock()
        client.list_trades.return_value = [
            _make_trade(START + 300, 190.50, 10),
            _make_trade(START + 100, 190.25, 5),
            _make_trade(START + MINUTE, 191.00, 1),
        ]
        source = _source_with_client(client)

        records = await source.fetch_historical(_query())

        assert records == [
            PriceTick(event_time=START + 100, symbol="AAPL", price=190_250_000_000, size=5),
            PriceTick(event_time=START + 300, symbol="AAPL", price=190_500_000_000, size=10),
        ]
        kwargs = client.list_trades.call_args.kwargs
        assert kwargs["ticker"] == "AAPL"
        assert kwargs["timestamp_gte"] == START
        assert kwargs["timestamp_lt"] == START + MINUTE

    async def test_symbols_merged_by_time(self):
        client = MagicMock()
        rows = {
            "AAPL": [_make_trade(START + 10, 190.0, 1), _make_trade(START + 30, 190.0, 1)],
            "MSFT": [_make_trade(START + 20, 410.0, 1)],
        }
        client.list_trades.side_effect = lambda ticker, **_: rows[ticker]
        source = _source_with_client(client)

        records = await source.fetch_historical(_query(["AAPL", "MSFT"]))

        assert [(r.symbol, r.event_time) for r in records] == [
            ("AAPL", START + 10),
            ("MSFT", START + 20),
            ("AAPL", START + 30),
        ]

    async def test_limit(self):
        client = MagicMock()
        client.list_trades.return_value = [_make_trade(START + n, 190.0, 1) for n in range(10)]
        source = _source_with_client(client)

        records = await source.fetch_historical(_query(limit=3))

        assert [r.event_time for r in records] == [START, START + 1, START + 2]
        assert client.list_trades.call_args.kwargs["limit"] == 3

    async def test_minute_bars_stamped_at_close(self):
        """Aggregate window starts become closing boundaries."""
        client = MagicMock()
        client.list_aggs.return_value = [
            _make_agg(START_MS - 60_000, 10.0, 11.0, 9.5, 10.5, 1200),
            _make_agg(START_MS, 10.5, 10.75, 10.25, 10.25, 800),
            _make_agg(START_MS + 120_000, 10.25, 10.5, 10.0, 10.0, 500),
        ]
        source = _source_with_client(client)

        records = await source.fetch_historical(_query(schema=Schema.OHLCV_1M, end=START + 2 * MINUTE))

        assert records == [
            Bar(
                event_time=START,
                symbol="AAPL",
                open=10_000_000_000,
                high=11_000_000_000,
                low=9_500_000_000,
                close=10_500_000_000,
                volume=1200,
            ),
            Bar(
                event_time=START + MINUTE,
                symbol="AAPL",
                open=10_500_000_000,
                high=10_750_000_000,
                low=10_250_000_000,
                close=10_250_000_000,
                volume=800,
            ),
        ]
        kwargs = client.list_aggs.call_args.kwargs
        assert kwargs["timespan"] == "minute"
        assert kwargs["multiplier"] == 1
        assert kwargs["from_"] == START_MS - 60_000

    async def test_api_error_is_upstream(self):
        """Any vendor failure surfaces as UpstreamError, never a partial result."""
        client = MagicMock()
        client.list_trades.side_effect = Exception("429 Too Many Requests")
        source = _source_with_client(client)

        with pytest.raises(UpstreamError, match="429"):
            await source.fetch_historical(_query(["AAPL", "MSFT"]))

    async def test_invalid_range(self):
        client = MagicMock()
        source = _source_with_client(client)
        with pytest.raises(InvalidRangeError):
            await source.fetch_historical(_query(end=START))
        client.list_trades.assert_not_called()


@pytest.mark.asyncio
class TestMassiveSymbols:
    """Unit tests for symbol validation."""

    async def test_unknown_symbol(self):
        client = MagicMock()
        client.list_tickers.return_value = []
        source = _source_with_client(client)

        with pytest.raises(InvalidSymbolError, match="NOPE"):
            await source.validate_symbols(["NOPE"])

    async def test_known_symbol_cached(self):
        client = MagicMock()
        client.list_tickers.return_value = [MagicMock()]
        source = _source_with_client(client)

        await source.validate_symbols(["AAPL"])
        await source.validate_symbols(["AAPL"])

        client.list_tickers.assert_called_once_with(ticker="AAPL", limit=1)

    async def test_lookup_failure_is_upstream(self):
        client = MagicMock()
        client.list_tickers.side_effect = Exception("network error")
        source = _source_with_client(client)

        with pytest.raises(UpstreamError):
            await source.validate_symbols(["AAPL"])

    async def test_close_releases_client(self):
        source = _source_with_client(MagicMock())
        await source.close()
        assert source._client is None
        await source.close()  # Should not raise


@pytest.mark.asyncio
class TestMassiveLive:
    """Unit tests for the websocket relay."""

    async def test_relays_trades(self):
        """Messages become ticks; out-of-order events per symbol are dropped."""
        ws = _FakeWebSocket(
            [
                _make_ws_trade("AAPL", 1_000, 190.5, 3),
                _make_ws_trade("AAPL", 900, 190.0, 1),
                _make_ws_trade("AAPL", 1_000, 190.75, 2),
            ]
        )
        source = MassiveDataSource(api_key="test-key")
        source._known_symbols = {"AAPL"}

        with patch.object(source, "_websocket", return_value=ws) as factory:
            stream = await source.open_live_stream(["AAPL"], Schema.TRADES)
            first = await asyncio.wait_for(anext(stream), 1.0)
            second = await asyncio.wait_for(anext(stream), 1.0)
            await stream.aclose()

        factory.assert_called_once_with(["T.AAPL"])
        assert first == PriceTick(event_time=1_000_000_000, symbol="AAPL", price=190_500_000_000, size=3)
        assert second.price == 190_750_000_000
        assert ws.closed

    async def test_subscribers_share_one_websocket(self):
        """Two subscriptions to the same ticker ride a single websocket connection."""
        gate = asyncio.Event()

        class _GatedWebSocket(_FakeWebSocket):
            async def connect(self, handler):
                await gate.wait()
                await super().connect(handler)

        ws = _GatedWebSocket([_make_ws_trade("AAPL", 1_000, 190.5, 3)])
        source = MassiveDataSource(api_key="test-key")
        source._known_symbols = {"AAPL"}
        mux = StreamMultiplexer(source)

        with patch.object(source, "_websocket", return_value=ws) as factory:
            first = await mux.subscribe(["AAPL"], Schema.TRADES)
            second = await mux.subscribe(["aapl"], "trades")
            gate.set()
            for subscription in (first, second):
                assert isinstance(await asyncio.wait_for(subscription.next_event(), 1.0), ConnectedEvent)
                tick = await asyncio.wait_for(subscription.next_event(), 1.0)
                assert tick.symbol == "AAPL"
            assert mux.refcount(Schema.TRADES, "AAPL") == 2
            await mux.close()

        factory.assert_called_once_with(["T.AAPL"])
        assert ws.closed

    async def test_minute_aggregates_channel(self):
        message = MagicMock()
        message.symbol = "AAPL"
        message.end_timestamp = START_MS
        message.open, message.high, message.low, message.close, message.volume = 1.0, 2.0, 0.5, 1.5, 100
        ws = _FakeWebSocket([message])
        source = MassiveDataSource(api_key="test-key")
        source._known_symbols = {"AAPL"}

        with patch.object(source, "_websocket", return_value=ws) as factory:
            stream = await source.open_live_stream(["AAPL"], Schema.OHLCV_1M)
            bar = await asyncio.wait_for(anext(stream), 1.0)
            await stream.aclose()

        factory.assert_called_once_with(["AM.AAPL"])
        assert bar.event_time == START
        assert bar.volume == 100

    async def test_connection_error_is_upstream(self):
        """Events received before the failure are delivered, then UpstreamError."""
        ws = _FakeWebSocket([_make_ws_trade("AAPL", 1_000, 190.5, 3)], error=ConnectionError("reset"))
        source = MassiveDataSource(api_key="test-key")
        source._known_symbols = {"AAPL"}

        with patch.object(source, "_websocket", return_value=ws):
            stream = await source.open_live_stream(["AAPL"], Schema.TRADES)
            assert (await asyncio.wait_for(anext(stream), 1.0)).symbol == "AAPL"
            with pytest.raises(UpstreamError, match="reset"):
                await asyncio.wait_for(anext(stream), 1.0)

        assert ws.closed

    async def test_socket_closed_by_server(self):
        ws = _FakeWebSocket([], stay_open=False)
        source = MassiveDataSource(api_key="test-key")
        source._known_symbols = {"AAPL"}

        with patch.object(source, "_websocket", return_value=ws):
            stream = await source.open_live_stream(["AAPL"], Schema.TRADES)
            with pytest.raises(UpstreamError, match="closed"):
                await asyncio.wait_for(anext(stream), 1.0)

    async def test_unknown_symbol_rejected_before_connecting(self):
        client = MagicMock()
        client.list_tickers.return_value = []
        source = _source_with_client(client)

        with patch.object(source, "_websocket") as factory:
            with pytest.raises(InvalidSymbolError):
                await source.open_live_stream(["NOPE"], Schema.TRADES)

        factory.assert_not_called()


class TestNormalize:
    """Unit tests for websocket message conversion."""

    def test_malformed_message_skipped(self):
        """Test that malformed messages are skipped gracefully."""
        bad = _make_ws_trade("AAPL", 1_000, None, 1)
        assert _normalize(bad, Schema.TRADES) is None

    def test_trade(self):
        record = _normalize(_make_ws_trade("AAPL", 2, 1.5, 7), Schema.TRADES)
        assert record == PriceTick(event_time=2_000_000, symbol="AAPL", price=1_500_000_000, size=7)
