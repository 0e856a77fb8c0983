"""Fan-out channel for file change notifications.

The file index publishes from worker threads; each subscriber owns an
``asyncio.Queue`` on its own event loop and consumes with ``async for``.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator

import structlog

from codescout.index.models import FileChange

logger = structlog.get_logger()

_CLOSED = object()


class ChangeSubscription:
    """One consumer's view of the feed."""

    def __init__(self, feed: ChangeFeed, loop: asyncio.AbstractEventLoop, maxsize: int) -> None:
        self._feed = feed
        self._loop = loop
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def _deliver(self, item: object) -> None:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("change_feed.dropped", dropped=self.dropped)

    def _offer(self, item: object) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._deliver(item)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._deliver, item)

    async def get(self) -> FileChange | None:
        """Next change, or None once the subscription is closed."""
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        assert isinstance(item, FileChange)
        return item

    def get_nowait(self) -> FileChange | None:
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        return item if isinstance(item, FileChange) else None

    def close(self) -> None:
        self._feed._unsubscribe(self)
        self._offer(_CLOSED)

    def __aiter__(self) -> AsyncIterator[FileChange]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[FileChange]:
        while True:
            change = await self.get()
            if change is None:
                return
            yield change


class ChangeFeed:
    """Publishes ``FileChange`` events to every subscriber."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[ChangeSubscription] = []

    def subscribe(self, maxsize: int = 0) -> ChangeSubscription:
        """Subscribe from inside a running event loop."""
        sub = ChangeSubscription(self, asyncio.get_running_loop(), maxsize)
        with self._lock:
            self._subscribers.append(sub)
        return sub

    def _unsubscribe(self, sub: ChangeSubscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    def publish(self, change: FileChange) -> None:
        """Thread-safe. Never blocks the publisher."""
        with self._lock:
            subscribers = list(self._subscribers)
        for sub in subscribers:
            sub._offer(change)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
