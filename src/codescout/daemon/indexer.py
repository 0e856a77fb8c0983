"""Background indexer draining the debounced change queue."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from codescout.index.models import IndexStats

if TYPE_CHECKING:
    from codescout.index.pipeline import IndexingPipeline

logger = structlog.get_logger()


class IndexerState(Enum):
    """Background indexer state."""

    IDLE = "idle"
    INDEXING = "indexing"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class IndexerStatus:
    """Current indexer status."""

    state: IndexerState
    queue_size: int
    last_stats: IndexStats | None = None
    last_error: str | None = None


@dataclass
class BackgroundIndexer:
    """
    Long-lived task that re-indexes paths as they come off the queue.

    Design:
    - The watcher's debouncer is the only producer
    - Whatever is queued when a batch starts is drained together, one
      pipeline call per distinct path, run concurrently
    - A queue overflow loses events, so the next batch is a full rebuild
    - Queries never wait on this task
    """

    pipeline: IndexingPipeline
    queue: asyncio.Queue[Path]

    _state: IndexerState = field(default=IndexerState.STOPPED, init=False)
    _task: asyncio.Task[None] | None = field(default=None, init=False)
    _rescan_requested: bool = field(default=False, init=False)
    _last_stats: IndexStats | None = field(default=None, init=False)
    _last_error: str | None = field(default=None, init=False)
    _on_complete: Callable[[IndexStats], Awaitable[None]] | None = field(default=None, init=False)

    def start(self) -> None:
        """Start the background indexer."""
        if self._task is not None:
            return
        self._state = IndexerState.IDLE
        self._task = asyncio.create_task(self._run(), name="codescout-indexer")
        logger.info("background_indexer_started")

    async def stop(self) -> None:
        """Stop the background indexer, abandoning queued paths."""
        self._state = IndexerState.STOPPING
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        self._state = IndexerState.STOPPED
        logger.info("background_indexer_stopped")

    def request_rescan(self) -> None:
        """Rebuild the whole workspace on the next batch."""
        self._rescan_requested = True

    def _drain(self, first: Path) -> list[Path]:
        paths = {first}
        while True:
            try:
                paths.add(self.queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        return sorted(paths)

    async def _run(self) -> None:
        while True:
            first = await self.queue.get()
            paths = self._drain(first)
            await self._flush(paths)

    async def _flush(self, paths: list[Path]) -> None:
        if self._state is IndexerState.STOPPING:
            return
        self._state = IndexerState.INDEXING
        try:
            if self._rescan_requested:
                self._rescan_requested = False
                stats = await self.pipeline.build(reason="queue_overflow")
            else:
                stats = IndexStats()
                results = await asyncio.gather(*(self.pipeline.index_file(p) for p in paths))
                for result in results:
                    stats.merge(result)
            self._last_stats = stats
            self._last_error = "; ".join(stats.errors) if stats.errors else None
            logger.info(
                "reindex_complete",
                paths=len(paths),
                added=stats.files_added,
                updated=stats.files_updated,
                removed=stats.files_removed,
                errors=len(stats.errors),
            )
            if self._on_complete is not None:
                await self._on_complete(stats)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._last_error = str(e)
            logger.error("indexing_failed", error=str(e))
        finally:
            if self._state is IndexerState.INDEXING:
                self._state = IndexerState.IDLE

    def set_on_complete(self, callback: Callable[[IndexStats], Awaitable[None]]) -> None:
        """Set callback to invoke after each batch."""
        self._on_complete = callback

    @property
    def status(self) -> IndexerStatus:
        """Get current indexer status."""
        return IndexerStatus(
            state=self._state,
            queue_size=self.queue.qsize(),
            last_stats=self._last_stats,
            last_error=self._last_error,
        )
