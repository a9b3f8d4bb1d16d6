"""Factory for creating market data sources."""

from __future__ import annotations

import logging

from ..config import DataSourceMode, Settings
from .interface import MarketDataSource

logger = logging.getLogger(__name__)


def create_market_data_source(settings: Settings | None = None) -> MarketDataSource:
    """Create the data source selected by the process settings.

    - MASSIVE_API_KEY set and non-empty → MassiveDataSource (real market data)
    - Otherwise → SyntheticDataSource (seeded generator)

    Called once at startup; the selection is fixed for the life of the process.
    """
    settings = settings or Settings.from_env()

    if settings.mode is DataSourceMode.VENDOR:
        from .massive_client import MassiveDataSource

        logger.info("Market data source: Massive API (real data)")
        return MassiveDataSource(api_key=settings.massive_api_key)

    from .simulator import SyntheticDataSource

    logger.info("Market data source: synthetic generator (seed=%s)", settings.synthetic_seed)
    return SyntheticDataSource(seed=settings.synthetic_seed)
