"""FastAPI application: historical queries, live SSE streams and health check.

Runs against the synthetic source unless MASSIVE_API_KEY is set.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import cast

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import DataSourceMode, Settings
from .market import (
    MarketDataSource,
    QueryGateway,
    StreamMultiplexer,
    create_history_router,
    create_market_data_source,
    create_stream_router,
)
from .market.errors import ErrorKind, SourceError
from .market.subscription import DEFAULT_QUEUE_CAPACITY

logger = logging.getLogger(__name__)

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.INVALID_RANGE: 400,
    ErrorKind.INVALID_SYMBOL: 400,
    ErrorKind.UNSUPPORTED: 400,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.UPSTREAM: 502,
}


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def source_error_handler(_request: Request, error: Exception) -> JSONResponse:
    """Render a SourceError as ``{"error": message}`` with a status for its kind."""
    source_error = cast(SourceError, error)
    status_code = _STATUS_BY_KIND.get(source_error.kind, 500)
    if status_code >= 500:
        logger.warning("Request failed upstream: %s", source_error)
    return JSONResponse(status_code=status_code, content={"error": str(source_error)})


def request_validation_error_handler(_request: Request, error: Exception) -> JSONResponse:
    """Render body validation failures in the same ``{"error": ...}`` envelope."""
    validation_error = cast(RequestValidationError, error)
    problems = "; ".join(
        f"{'.'.join(str(part) for part in item['loc'] if part != 'body')}: {item['msg']}"
        for item in validation_error.errors()
    )
    return JSONResponse(status_code=400, content={"error": f"Invalid request: {problems}"})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SourceError, source_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)


def create_app(
    settings: Settings | None = None,
    source: MarketDataSource | None = None,
) -> FastAPI:
    """Wire the selected source, the gateway and the multiplexer into an app.

    The source is chosen once here and held for the app's lifetime.
    """
    settings = settings or Settings.from_env()
    source = source or create_market_data_source(settings)
    multiplexer = StreamMultiplexer(
        source, queue_capacity=settings.stream_queue_capacity or DEFAULT_QUEUE_CAPACITY
    )
    gateway = QueryGateway(source)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        logger.info("Using source: %s", source.name)
        yield
        await multiplexer.close()
        await source.close()

    app = FastAPI(title="Market Data Viewer", lifespan=lifespan)
    app.state.source = source
    app.state.multiplexer = multiplexer

    # Open CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)
    app.include_router(create_history_router(gateway))
    app.include_router(create_stream_router(multiplexer))

    @app.get("/api/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "source": source.name}

    return app


def main() -> None:
    import uvicorn

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    if settings.mode is DataSourceMode.SYNTHETIC:
        logger.info("MASSIVE_API_KEY not set - serving synthetic data")
    app = create_app(settings)
    logger.info("Historical API: POST http://%s:%d/api/historical", settings.host, settings.port)
    logger.info("Live stream: GET http://%s:%d/api/stream/live", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
