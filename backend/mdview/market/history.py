"""HTTP endpoint for historical market data queries."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, ConfigDict, Field

from .gateway import QueryGateway

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 1000


class HistoricalRequest(BaseModel):
    """Request body for ``POST /api/historical``."""

    model_config = ConfigDict(populate_by_name=True)

    symbols: list[str]
    schema_name: str = Field(alias="schema")
    stype_in: str = "parent"  # Accepted for client compatibility; Massive resolves tickers itself
    start_rfc3339: str
    end_rfc3339: str
    limit: int = Field(DEFAULT_LIMIT, gt=0)  # Always bounded; null is rejected


def create_history_router(gateway: QueryGateway) -> APIRouter:
    """Create the historical query router around a QueryGateway.

    Errors raised by the gateway propagate to the app's exception handlers,
    which render them as ``{"error": "..."}``.
    """
    router = APIRouter(prefix="/api", tags=["historical"])

    @router.post("/historical")
    async def historical(request: HistoricalRequest) -> dict[str, Any]:
        """Return ``{"schema": ..., "data": [...]}`` for the requested window."""
        query = QueryGateway.build_query(
            symbols=request.symbols,
            schema=request.schema_name,
            start_rfc3339=request.start_rfc3339,
            end_rfc3339=request.end_rfc3339,
            limit=request.limit,
        )
        response = await gateway.fetch(query)
        return response.to_dict()

    return router
