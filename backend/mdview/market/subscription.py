"""Per-connection live subscription: bounded delivery queue and lifecycle."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from enum import Enum

from .errors import ErrorKind
from .models import ConnectedEvent, ErrorEvent, Schema, StreamEvent

logger = logging.getLogger(__name__)

# Data events held per subscriber before new ones are dropped. At a few
# hundred events per second this absorbs a consumer stall of several seconds.
DEFAULT_QUEUE_CAPACITY = 1024


class SubscriptionState(str, Enum):
    OPENING = "opening"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"


_TRANSITIONS: dict[SubscriptionState, frozenset[SubscriptionState]] = {
    SubscriptionState.OPENING: frozenset({SubscriptionState.STREAMING, SubscriptionState.CLOSED}),
    SubscriptionState.STREAMING: frozenset({SubscriptionState.CLOSING}),
    SubscriptionState.CLOSING: frozenset({SubscriptionState.CLOSED}),
    SubscriptionState.CLOSED: frozenset(),
}


class Subscription:
    """A consumer's interest in a symbol set and schema.

    Created and mutated only by the StreamMultiplexer; consumers read from it
    with ``next_event()`` or ``async for``. Data events are held in a bounded
    queue: when it is full the incoming event is dropped, and the first drop
    queues a single backpressure notice. Control events (connected, error)
    are never dropped.
    """

    def __init__(
        self,
        subscription_id: int,
        symbols: tuple[str, ...],
        schema: Schema,
        capacity: int = DEFAULT_QUEUE_CAPACITY,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.id = subscription_id
        self.symbols = symbols
        self.schema = schema
        self.capacity = capacity
        self.dropped = 0
        self.transitions: list[SubscriptionState] = [SubscriptionState.OPENING]
        self._symbol_set = frozenset(symbols)
        self._state = SubscriptionState.OPENING
        self._pending: deque[StreamEvent] = deque()
        self._data_pending = 0
        self._backpressure_reported = False
        self._wakeup = asyncio.Event()

    def __repr__(self) -> str:
        return f"Subscription(id={self.id}, symbols={self.symbols}, schema={self.schema.value}, state={self._state.value})"

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state is SubscriptionState.CLOSED

    @property
    def pending(self) -> int:
        """Number of queued events (data and control)."""
        return len(self._pending)

    def accepts(self, event: StreamEvent, schema: Schema) -> bool:
        """Whether an event produced under ``schema`` belongs to this subscription."""
        return schema is self.schema and getattr(event, "symbol", None) in self._symbol_set

    # --- Producer side (multiplexer only) ---

    def offer(self, event: StreamEvent) -> bool:
        """Queue a data event. Returns False if it was dropped."""
        if self._state is not SubscriptionState.STREAMING:
            return False
        if self._data_pending >= self.capacity:
            self.dropped += 1
            if not self._backpressure_reported:
                self._backpressure_reported = True
                logger.warning(
                    "Subscription %d saturated (%d queued); dropping new events",
                    self.id,
                    self._data_pending,
                )
                self._push(
                    ErrorEvent(
                        kind=ErrorKind.BACKPRESSURE,
                        message=(
                            f"Consumer is too slow; events are being dropped "
                            f"(queue capacity {self.capacity})"
                        ),
                    )
                )
            return False
        self._data_pending += 1
        self._push(event)
        return True

    def mark_streaming(self) -> None:
        """Validation passed: queue the connected acknowledgement and start accepting data."""
        self._push(ConnectedEvent(symbols=self.symbols, schema=self.schema))
        self._transition(SubscriptionState.STREAMING)

    def reject(self, error: ErrorEvent) -> None:
        """Validation failed: queue the error and go straight to Closed."""
        self._push(error)
        self._transition(SubscriptionState.CLOSED)

    def begin_closing(self, error: ErrorEvent | None = None) -> None:
        """Stop accepting data. A terminal error, if given, stays readable.

        Queued data is dropped in favour of the error, but an unread
        connected acknowledgement is kept ahead of it.
        """
        if error is not None:
            self._pending = deque(e for e in self._pending if isinstance(e, ConnectedEvent))
            self._data_pending = 0
            self._push(error)
        self._transition(SubscriptionState.CLOSING)

    def finish_closing(self, *, discard_pending: bool) -> None:
        if discard_pending:
            self._pending.clear()
            self._data_pending = 0
        self._transition(SubscriptionState.CLOSED)
        self._wakeup.set()

    # --- Consumer side ---

    async def next_event(self) -> StreamEvent | None:
        """Wait for the next event. Returns None once closed and drained."""
        while not self._pending:
            if self._state in (SubscriptionState.CLOSING, SubscriptionState.CLOSED):
                return None
            self._wakeup.clear()
            await self._wakeup.wait()
        event = self._pending.popleft()
        if not isinstance(event, (ConnectedEvent, ErrorEvent)):
            self._data_pending -= 1
        return event

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> StreamEvent:
        event = await self.next_event()
        if event is None:
            raise StopAsyncIteration
        return event

    # --- Internals ---

    def _push(self, event: StreamEvent) -> None:
        self._pending.append(event)
        self._wakeup.set()

    def _transition(self, new_state: SubscriptionState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise RuntimeError(
                f"Subscription {self.id}: illegal transition {self._state.value} -> {new_state.value}"
            )
        logger.debug("Subscription %d: %s -> %s", self.id, self._state.value, new_state.value)
        self._state = new_state
        self.transitions.append(new_state)
