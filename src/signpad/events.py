"""In-process change-event stream.

Stands in for a database's realtime channel: the record store publishes a
``ChangeEvent`` after each insert and any number of subscribers receive
the ones matching their table, kind and predicate.

Delivery guarantees:

- in publish order, per subscription
- at most once per open subscription
- nothing is replayed to a subscription opened after the event; a
  networked transport must provide at-least-once redelivery on reconnect
  (or the caller must re-subscribe and backfill) to keep hand-off safe
  across dropped connections
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger("signpad.events")


class ChangeKind(str, Enum):
    """Kinds of row changes carried on the feed."""

    INSERT = "insert"


class ChangeEvent(BaseModel):
    """A notification that a row changed. ``record`` is the new row."""

    table: str
    kind: ChangeKind
    record: dict[str, Any]
    occurred_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    model_config = ConfigDict(frozen=True)


Predicate = Callable[[ChangeEvent], bool]


class Subscription:
    """One subscriber's view of the feed.

    Iterate it (``async for``) or call ``next_event``. Use it as an async
    context manager, or call ``close()``, so it detaches from the feed.
    """

    def __init__(
        self,
        feed: "ChangeFeed",
        table: str,
        kind: ChangeKind,
        predicate: Optional[Predicate] = None,
    ) -> None:
        self._feed = feed
        self.table = table
        self.kind = kind
        self._predicate = predicate
        self._queue: asyncio.Queue[Optional[ChangeEvent]] = asyncio.Queue()
        self._closed = False
        try:
            self._loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

    @property
    def closed(self) -> bool:
        return self._closed

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table or event.kind != self.kind:
            return False
        return self._predicate is None or bool(self._predicate(event))

    def _deliver(self, event: ChangeEvent) -> None:
        if self._closed:
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            self._queue.put_nowait(event)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._queue.put_nowait(event)
        else:
            # Published from a worker thread (e.g. a store insert run via
            # asyncio.to_thread); hand over to the subscriber's loop.
            loop.call_soon_threadsafe(self._queue.put_nowait, event)

    async def next_event(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """Wait for the next matching event.

        Args:
            timeout: Seconds to wait; None waits forever.

        Returns:
            The event, or None once the subscription is closed.

        Raises:
            asyncio.TimeoutError: If nothing arrived in time.
        """
        if self._closed and self._queue.empty():
            return None
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout)

    def poll(self) -> Optional[ChangeEvent]:
        """Return an already-delivered event without waiting, else None."""
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._feed._detach(self)
        # Sentinel wakes any pending reader.
        self._queue.put_nowait(None)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ChangeEvent]:
        while True:
            event = await self.next_event()
            if event is None:
                return
            yield event


class ChangeFeed:
    """Fan-out of change events to open subscriptions."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(
        self,
        table: str,
        kind: ChangeKind = ChangeKind.INSERT,
        predicate: Optional[Predicate] = None,
    ) -> Subscription:
        """Open a subscription for ``kind`` changes on ``table``.

        Args:
            table: Table name to watch.
            kind: Change kind to watch.
            predicate: Optional filter applied to each event.

        Returns:
            An open Subscription.
        """
        sub = Subscription(self, table, kind, predicate)
        self._subscriptions.append(sub)
        logger.debug("Subscribed to %s %s (%d open)", kind.value, table, len(self._subscriptions))
        return sub

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish_nowait(self, event: ChangeEvent) -> int:
        """Deliver ``event`` to every matching subscription.

        Returns:
            Number of subscriptions the event was delivered to.
        """
        delivered = 0
        for sub in list(self._subscriptions):
            try:
                matched = sub.matches(event)
            except Exception:
                logger.exception("Subscription predicate failed on %s event", event.table)
                continue
            if matched:
                sub._deliver(event)
                delivered += 1
        return delivered

    async def publish(self, event: ChangeEvent) -> int:
        return self.publish_nowait(event)

    def _detach(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)
            logger.debug("Unsubscribed from %s (%d open)", sub.table, len(self._subscriptions))
