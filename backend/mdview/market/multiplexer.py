"""Fan-out of live source streams to many concurrent subscribers."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Iterable

from .errors import ErrorKind, InvalidSymbolError, SourceError, UpstreamError
from .interface import LiveStream, MarketDataSource
from .models import ErrorEvent, Schema, normalize_symbols
from .subscription import DEFAULT_QUEUE_CAPACITY, Subscription, SubscriptionState

logger = logging.getLogger(__name__)

FeedKey = tuple[Schema, str]


class _UpstreamFeed:
    """One live source stream for a (schema, symbol), shared by its subscribers."""

    def __init__(self, key: FeedKey, stream: LiveStream) -> None:
        self.key = key
        self.stream = stream
        self.subscribers: dict[int, Subscription] = {}
        self.task: asyncio.Task | None = None

    @property
    def schema(self) -> Schema:
        return self.key[0]

    @property
    def refcount(self) -> int:
        return len(self.subscribers)

    async def close(self) -> None:
        """Cancel the pump task and close the source stream."""
        if self.task and not self.task.done() and self.task is not asyncio.current_task():
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        self.task = None
        await self.stream.aclose()


class StreamMultiplexer:
    """Owns live subscriptions and routes source events to them.

    Each subscription attaches to one upstream feed per requested symbol.
    Feeds are opened on first use, shared by every subscription with the same
    schema and symbol, and closed when the last one detaches. A pump task per
    feed offers each event to the attached subscriptions; a slow subscriber
    only ever loses its own events.

    Lifecycle:
        mux = StreamMultiplexer(source)
        sub = await mux.subscribe(["ES.FUT"], Schema.TRADES)
        async for event in sub: ...
        await mux.unsubscribe(sub)
        # ... app shutting down ...
        await mux.close()
    """

    def __init__(self, source: MarketDataSource, queue_capacity: int = DEFAULT_QUEUE_CAPACITY) -> None:
        self._source = source
        self._capacity = queue_capacity
        self._ids = itertools.count(1)
        self._subscriptions: dict[int, Subscription] = {}
        self._feeds: dict[FeedKey, _UpstreamFeed] = {}
        self._lock = asyncio.Lock()

    # --- Public API ---

    async def subscribe(self, symbols: Iterable[str], schema: Schema | str) -> Subscription:
        """Register a subscriber. Raises SourceError if the request cannot be served.

        On success the subscription is Streaming and its first queued event is
        the connected acknowledgement. If the caller is cancelled part way
        through, everything acquired so far is released before the
        cancellation propagates.
        """
        schema = Schema.parse(schema)
        subscription = Subscription(
            next(self._ids), normalize_symbols(symbols), schema, capacity=self._capacity
        )
        self._subscriptions[subscription.id] = subscription

        try:
            if not subscription.symbols:
                raise InvalidSymbolError("At least one symbol is required")
            await self._source.validate_symbols(subscription.symbols)
        except SourceError as exc:
            logger.info("Subscription %d rejected: %s", subscription.id, exc)
            self._reject(subscription, ErrorEvent(kind=exc.kind, message=str(exc), terminal=True))
            raise
        except BaseException:
            logger.info("Subscription %d abandoned during validation", subscription.id)
            self._reject(
                subscription,
                ErrorEvent(kind=ErrorKind.UPSTREAM, message="Subscription aborted", terminal=True),
            )
            raise

        subscription.mark_streaming()
        try:
            async with self._lock:
                for symbol in subscription.symbols:
                    await self._attach(subscription, (schema, symbol))
        except SourceError as exc:
            logger.warning("Subscription %d failed to open feeds: %s", subscription.id, exc)
            await asyncio.shield(
                self._close(subscription, ErrorEvent(kind=exc.kind, message=str(exc), terminal=True))
            )
            raise
        except BaseException:
            logger.info("Subscription %d abandoned while opening feeds", subscription.id)
            await asyncio.shield(self._close(subscription, None))
            raise

        logger.info(
            "Subscription %d streaming %s %s (%d active, %d feeds)",
            subscription.id,
            ",".join(subscription.symbols),
            schema.value,
            len(self._subscriptions),
            len(self._feeds),
        )
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        """Release a subscription and any feed no longer referenced. Idempotent."""
        if subscription.state is not SubscriptionState.STREAMING:
            return
        await self._close(subscription, None)
        logger.info("Subscription %d closed (%d dropped events)", subscription.id, subscription.dropped)

    async def close(self) -> None:
        """Close every subscription and feed (process shutdown)."""
        for subscription in list(self._subscriptions.values()):
            await self.unsubscribe(subscription)
        async with self._lock:
            feeds = list(self._feeds.values())
            self._feeds.clear()
        for feed in feeds:
            await feed.close()

    def refcount(self, schema: Schema | str, symbol: str) -> int:
        """Number of subscriptions attached to the feed for (schema, symbol)."""
        feed = self._feeds.get((Schema.parse(schema), symbol))
        return feed.refcount if feed else 0

    @property
    def active_subscriptions(self) -> int:
        return len(self._subscriptions)

    @property
    def feed_count(self) -> int:
        return len(self._feeds)

    # --- Internals ---

    async def _attach(self, subscription: Subscription, key: FeedKey) -> None:
        """Attach to the feed for ``key``, opening it if needed. Caller holds the lock."""
        feed = self._feeds.get(key)
        if feed is None:
            schema, symbol = key
            try:
                stream = await self._source.open_live_stream([symbol], schema)
            except SourceError:
                raise
            except Exception as exc:
                raise UpstreamError(f"Failed to open live stream for {symbol}: {exc}") from exc
            feed = _UpstreamFeed(key, stream)
            self._feeds[key] = feed
            feed.task = asyncio.create_task(self._pump(feed), name=f"feed-{schema.value}-{symbol}")
            logger.info("Opened upstream feed %s %s", symbol, schema.value)
        feed.subscribers[subscription.id] = subscription

    def _reject(self, subscription: Subscription, error: ErrorEvent) -> None:
        """Opening -> Closed; the subscription never held a feed."""
        subscription.reject(error)
        self._subscriptions.pop(subscription.id, None)

    def _detach_all(self, subscription: Subscription) -> list[_UpstreamFeed]:
        """Detach from every feed. Caller holds the lock.

        Returns the feeds left unreferenced; they are already out of the table
        and the caller closes them after releasing the lock.
        """
        orphaned = []
        for symbol in subscription.symbols:
            key = (subscription.schema, symbol)
            feed = self._feeds.get(key)
            if feed is None or feed.subscribers.pop(subscription.id, None) is None:
                continue
            if feed.refcount == 0:
                del self._feeds[key]
                orphaned.append(feed)
        return orphaned

    async def _close(self, subscription: Subscription, error: ErrorEvent | None) -> None:
        """Streaming -> Closing -> Closed, releasing feed references in between."""
        subscription.begin_closing(error)
        async with self._lock:
            orphaned = self._detach_all(subscription)
        self._subscriptions.pop(subscription.id, None)
        subscription.finish_closing(discard_pending=error is None)
        for feed in orphaned:
            await feed.close()
            logger.info("Closed upstream feed %s %s", feed.key[1], feed.schema.value)

    async def _pump(self, feed: _UpstreamFeed) -> None:
        """Fan a feed's events out to its subscribers until it fails or is cancelled."""
        symbol = feed.key[1]
        try:
            async for event in feed.stream:
                for subscription in list(feed.subscribers.values()):
                    if subscription.accepts(event, feed.schema):
                        subscription.offer(event)
            message = f"Live stream for {symbol} ended"
        except SourceError as exc:
            message = str(exc)
        except Exception as exc:
            logger.exception("Upstream feed %s %s failed", symbol, feed.schema.value)
            message = f"Upstream failure: {exc}"

        logger.warning("Upstream feed %s %s terminated: %s", symbol, feed.schema.value, message)
        await self._abort_feed(feed, message)

    async def _abort_feed(self, feed: _UpstreamFeed, message: str) -> None:
        """Terminate every subscription attached to a failed feed."""
        async with self._lock:
            if self._feeds.get(feed.key) is feed:
                del self._feeds[feed.key]
            victims = list(feed.subscribers.values())
            feed.subscribers.clear()
        await feed.stream.aclose()

        for subscription in victims:
            if subscription.state is not SubscriptionState.STREAMING:
                continue
            error = ErrorEvent(kind=ErrorKind.UPSTREAM, message=message, terminal=True)
            await self._close(subscription, error)
            logger.info("Subscription %d closed after upstream failure", subscription.id)
