"""Cancellation tokens shared by a query and everything it spawns.

A token is thread-safe: worker threads poll ``raise_if_cancelled()`` while
asyncio code awaits ``wait()`` or wraps work in ``run_cancellable()``.
Child tokens are cancelled with their parent but can be cancelled alone,
which is how a losing strategy attempt is stopped without touching its
siblings.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Awaitable, Callable
from typing import TypeVar

from codescout.core.errors import CancellationError

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation signal."""

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self._reason: str | None = None
        self._detach: Callable[[], None] | None = None
        if parent is not None:
            self._detach = parent.on_cancel(lambda: self.cancel(parent.reason or "parent cancelled"))

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Cancel this token and every child. Idempotent."""
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError.cancelled(self._reason or "cancelled")

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register *callback* to run on cancellation.

        Runs immediately if already cancelled. Returns a function that
        unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                registered = True
            else:
                registered = False
        if not registered:
            callback()

        def _unregister() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return _unregister

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    def release(self) -> None:
        """Detach from the parent so a finished child is not kept alive."""
        if self._detach is not None:
            self._detach()
            self._detach = None

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        if self._event.is_set():
            return
        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[None] = loop.create_future()

        def _wake() -> None:
            if not waiter.done():
                waiter.set_result(None)

        unregister = self.on_cancel(lambda: loop.call_soon_threadsafe(_wake))
        try:
            await waiter
        finally:
            unregister()


async def run_cancellable(awaitable: Awaitable[T], token: CancellationToken | None) -> T:
    """Await *awaitable*, cancelling it as soon as *token* fires.

    Raises:
        CancellationError: If the token fired first.
    """
    if token is None:
        return await awaitable
    token.raise_if_cancelled()

    work = asyncio.ensure_future(awaitable)
    stop = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        stop.cancel()

    if work.done():
        return work.result()

    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    raise CancellationError.cancelled(token.reason or "cancelled")
