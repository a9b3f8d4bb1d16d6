"""Historical query gateway: validation, delegation and response shaping."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from .errors import InvalidRangeError, QueryValidationError
from .interface import MarketDataSource
from .models import (
    HistoricalQuery,
    HistoricalResponse,
    Schema,
    normalize_symbols,
    parse_rfc3339_ns,
)

logger = logging.getLogger(__name__)


class QueryGateway:
    """Stateless translation of historical requests into source calls.

    Invalid queries are rejected before the source is touched. The public
    contract (ordered, in range, at most ``limit`` records) holds whatever the
    source does, so it is enforced here as well. Safe to share between
    concurrent callers.
    """

    def __init__(self, source: MarketDataSource) -> None:
        self._source = source

    @staticmethod
    def build_query(
        symbols: Iterable[str],
        schema: Schema | str,
        start_rfc3339: str,
        end_rfc3339: str,
        limit: int | None = None,
    ) -> HistoricalQuery:
        """Parse wire values into a HistoricalQuery (not yet validated)."""
        parsed_schema = Schema.parse(schema)
        try:
            start = parse_rfc3339_ns(start_rfc3339)
        except ValueError as exc:
            raise QueryValidationError(f"start_rfc3339: {exc}") from exc
        try:
            end = parse_rfc3339_ns(end_rfc3339)
        except ValueError as exc:
            raise QueryValidationError(f"end_rfc3339: {exc}") from exc
        return HistoricalQuery(
            symbols=normalize_symbols(symbols),
            schema=parsed_schema,
            start_time=start,
            end_time=end,
            limit=limit,
        )

    @staticmethod
    def validate(query: HistoricalQuery) -> None:
        if not query.symbols:
            raise QueryValidationError("At least one symbol is required")
        if query.start_time >= query.end_time:
            raise InvalidRangeError("start_rfc3339 must be before end_rfc3339")
        if query.limit is not None and query.limit <= 0:
            raise QueryValidationError(f"limit must be positive, got {query.limit}")

    async def fetch(self, query: HistoricalQuery) -> HistoricalResponse:
        """Validate ``query``, run it against the source and shape the response."""
        self.validate(query)
        logger.info(
            "Historical %s for %s via %s (limit=%s)",
            query.schema.value,
            ",".join(query.symbols),
            self._source.name,
            query.limit,
        )
        records = await self._source.fetch_historical(query)

        in_range = [r for r in records if query.start_time <= r.event_time < query.end_time]
        if len(in_range) != len(records):
            logger.warning(
                "%s returned %d records outside the query window",
                self._source.name,
                len(records) - len(in_range),
            )
        if any(a.event_time > b.event_time for a, b in zip(in_range, in_range[1:])):
            in_range.sort(key=lambda record: record.event_time)
        if query.limit is not None and len(in_range) > query.limit:
            in_range = in_range[: query.limit]
        return HistoricalResponse(schema=query.schema, data=in_range)
