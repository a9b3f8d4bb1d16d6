"""SSE streaming endpoint for live market data."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator

from fastapi import APIRouter, Query, Request
from fastapi.responses import StreamingResponse

from .errors import SourceError
from .models import ErrorEvent, StreamEvent
from .multiplexer import StreamMultiplexer

logger = logging.getLogger(__name__)


def create_stream_router(multiplexer: StreamMultiplexer) -> APIRouter:
    """Create the SSE streaming router with a reference to the multiplexer.

    This factory pattern lets us inject the StreamMultiplexer without globals.
    """
    router = APIRouter(prefix="/api/stream", tags=["streaming"])

    @router.get("/live")
    async def stream_live(
        request: Request,
        symbols: str = Query("ES.FUT", description="Comma-separated symbols"),
        schema: str = Query("trades", description="trades, ohlcv-1s or ohlcv-1m"),
    ) -> StreamingResponse:
        """SSE endpoint for live trades or bars.

        The first message is ``{"type": "connected", ...}``, followed by
        ``trade`` or ``ohlcv`` messages and occasional ``error`` notices:

            data: {"type": "trade", "ts_event_unix_ns": ..., "symbol": "ES.FUT", ...}

        Includes a retry directive so the browser auto-reconnects on
        disconnection (EventSource built-in behavior).
        """
        return StreamingResponse(
            _generate_events(multiplexer, request, symbols.split(","), schema),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",  # Disable nginx buffering if proxied
            },
        )

    return router


def _format(event: StreamEvent) -> str:
    return f"data: {json.dumps(event.to_message())}\n\n"


async def _generate_events(
    multiplexer: StreamMultiplexer,
    request: Request,
    symbols: list[str],
    schema: str,
    disconnect_poll: float = 0.5,
) -> AsyncGenerator[str, None]:
    """Async generator that relays one subscription as SSE messages.

    Stops when the client disconnects (checked at least every
    ``disconnect_poll`` seconds) or the subscription closes, and always
    releases the subscription on the way out.
    """
    # Tell the client to retry after 1 second if the connection drops
    yield "retry: 1000\n\n"

    client_ip = request.client.host if request.client else "unknown"
    try:
        subscription = await multiplexer.subscribe(symbols, schema)
    except SourceError as e:
        logger.info("SSE subscribe rejected for %s: %s", client_ip, e)
        yield _format(ErrorEvent(kind=e.kind, message=str(e), terminal=True))
        return

    logger.info("SSE client connected: %s (subscription %d)", client_ip, subscription.id)
    try:
        while True:
            # Check for client disconnect
            if await request.is_disconnected():
                logger.info("SSE client disconnected: %s", client_ip)
                break
            try:
                event = await asyncio.wait_for(subscription.next_event(), timeout=disconnect_poll)
            except asyncio.TimeoutError:
                continue
            if event is None:
                break
            yield _format(event)
    except asyncio.CancelledError:
        logger.info("SSE stream cancelled for: %s", client_ip)
    finally:
        await multiplexer.unsubscribe(subscription)
