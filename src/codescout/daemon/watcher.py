"""File watcher using watchfiles for async filesystem monitoring.

Raw events are filtered (excluded folders dropped, then ``should_index``
for anything the index does not already track) and handed to a
``PathDebouncer``. The debouncer keeps one timer per path: every new event
for a path restarts its timer, and only when a path has been quiet for
``delay_sec`` is it put on the output queue. A burst of saves to one file
therefore re-indexes it once, while edits to other files are not held back.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path

import structlog
from watchfiles import Change, awatch

from codescout.core.excludes import is_excluded_dir

logger = structlog.get_logger()


class PathDebouncer:
    """Per-path quiet-window timers feeding an ``asyncio.Queue``."""

    def __init__(
        self,
        queue: asyncio.Queue[Path],
        delay_sec: float = 0.5,
        on_overflow: Callable[[], None] | None = None,
    ) -> None:
        self.queue = queue
        self.delay_sec = delay_sec
        self.on_overflow = on_overflow
        self.dropped = 0
        self._timers: dict[Path, asyncio.TimerHandle] = {}

    @property
    def pending(self) -> int:
        return len(self._timers)

    def push(self, path: Path) -> None:
        """Record an event for *path*, restarting its timer."""
        loop = asyncio.get_running_loop()
        previous = self._timers.pop(path, None)
        if previous is not None:
            previous.cancel()
        self._timers[path] = loop.call_later(self.delay_sec, self._fire, path)

    def push_many(self, paths: Iterable[Path]) -> None:
        for path in paths:
            self.push(path)

    def _fire(self, path: Path) -> None:
        self._timers.pop(path, None)
        try:
            self.queue.put_nowait(path)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("debouncer.queue_full", path=str(path), dropped=self.dropped)
            if self.on_overflow is not None:
                self.on_overflow()

    def flush(self) -> None:
        """Emit every pending path now."""
        timers, self._timers = self._timers, {}
        for path, handle in timers.items():
            handle.cancel()
            self._fire(path)

    def cancel_all(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()


@dataclass
class FileWatcher:
    """
    Async file watcher over the workspace roots.

    Deletions pass the filter as long as the path is outside excluded
    folders: the file is gone, so its extension and contents can no longer
    be checked, and the indexer ignores paths it never knew. Paths the
    index already tracks always pass, so a file that grew too large or
    turned binary is reconciled away instead of keeping its old chunks.
    """

    roots: list[Path]
    should_index: Callable[[Path], bool]
    debouncer: PathDebouncer
    is_known: Callable[[Path], bool] = lambda _path: False

    _watch_task: asyncio.Task[None] | None = field(default=None, init=False)
    _stop_event: asyncio.Event = field(default_factory=asyncio.Event, init=False)

    @property
    def running(self) -> bool:
        return self._watch_task is not None and not self._watch_task.done()

    async def start(self) -> None:
        """Start watching for file changes."""
        if self._watch_task is not None:
            return
        self._stop_event.clear()
        self._watch_task = asyncio.create_task(self._watch_loop())
        logger.info(
            "file_watcher_started",
            roots=[str(r) for r in self.roots],
            debounce_sec=self.debouncer.delay_sec,
        )

    async def stop(self) -> None:
        """Stop watching and emit whatever is still debouncing."""
        self._stop_event.set()
        if self._watch_task is not None:
            self._watch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, asyncio.TimeoutError):
                await asyncio.wait_for(self._watch_task, timeout=2.0)
            self._watch_task = None
        self.debouncer.flush()
        logger.info("file_watcher_stopped")

    def _relative(self, path: Path) -> Path | None:
        for root in self.roots:
            if path.is_relative_to(root):
                return path.relative_to(root)
        return None

    def _accept(self, change: Change, path: Path) -> bool:
        rel = self._relative(path)
        if rel is None or any(is_excluded_dir(part) for part in rel.parts[:-1]):
            return False
        if change == Change.deleted:
            return True
        return self.should_index(path) or self.is_known(path)

    def handle_changes(self, changes: Iterable[tuple[Change, str]]) -> int:
        """Filter a batch of raw events into the debouncer. Returns accepted count."""
        accepted: set[Path] = set()
        for change, raw in changes:
            path = Path(raw)
            if path not in accepted and self._accept(change, path):
                accepted.add(path)
        self.debouncer.push_many(accepted)
        if accepted:
            logger.debug("changes_detected", count=len(accepted))
        return len(accepted)

    async def _watch_loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                try:
                    async for changes in awatch(
                        *self.roots,
                        stop_event=self._stop_event,
                        ignore_permission_denied=True,
                        rust_timeout=10_000,
                    ):
                        self.handle_changes(changes)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    if self._stop_event.is_set():
                        return
                    logger.error("watcher_error", error=str(e))
                    await asyncio.sleep(1.0)
        except asyncio.CancelledError:
            pass
