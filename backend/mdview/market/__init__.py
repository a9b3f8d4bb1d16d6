"""Market data subsystem for the Market Data Viewer.

Public API:
    PriceTick, Bar      - Fixed-point trade and OHLCV records
    Schema              - Record shape / aggregation period selector
    MarketDataSource    - Abstract interface for data providers
    create_market_data_source - Factory that selects synthetic or Massive
    StreamMultiplexer   - Live subscriptions with per-subscriber backpressure
    QueryGateway        - Validated historical queries
    create_history_router - FastAPI router factory for historical queries
    create_stream_router  - FastAPI router factory for the SSE endpoint
"""

from .factory import create_market_data_source
from .gateway import QueryGateway
from .history import create_history_router
from .interface import MarketDataSource
from .models import Bar, PriceTick, Schema
from .multiplexer import StreamMultiplexer
from .stream import create_stream_router

__all__ = [
    "Bar",
    "PriceTick",
    "Schema",
    "MarketDataSource",
    "create_market_data_source",
    "StreamMultiplexer",
    "QueryGateway",
    "create_history_router",
    "create_stream_router",
]
