"""Process-wide index state, published as immutable snapshots.

One writer path (the service and its background indexer) builds a new
``IndexState`` and swaps it in; readers take the current reference and never
lock. Snapshots carry a monotonically increasing version so consumers can
tell whether anything changed between two reads.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum

import structlog

from codescout.index.models import ReadinessState

log = structlog.get_logger()


class RemoteStatus(str, Enum):
    UNKNOWN = "unknown"
    NOT_CONFIGURED = "not_configured"
    UNAVAILABLE = "unavailable"
    AUTH_REQUIRED = "auth_required"
    NOT_INDEXED = "not_indexed"
    INDEXING = "indexing"
    READY = "ready"


@dataclass(frozen=True, slots=True)
class RemoteIndexState:
    status: RemoteStatus = RemoteStatus.UNKNOWN
    repos: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class LocalIndexState:
    status: ReadinessState = ReadinessState.REQUIRES_INDEXING
    file_count: int = 0
    stale_files: int = 0


@dataclass(frozen=True, slots=True)
class IndexState:
    version: int = 0
    remote: RemoteIndexState = field(default_factory=RemoteIndexState)
    local: LocalIndexState = field(default_factory=LocalIndexState)

    def to_dict(self) -> dict[str, object]:
        return {
            "version": self.version,
            "remote": {"status": self.remote.status.value, "repos": list(self.remote.repos)},
            "local": {
                "status": self.local.status.value,
                "file_count": self.local.file_count,
                "stale_files": self.local.stale_files,
            },
        }


class IndexStateStore:
    """Holds the current snapshot and notifies waiters on every swap."""

    def __init__(self, initial: IndexState | None = None) -> None:
        self._state = initial or IndexState()
        self._write_lock = threading.Lock()
        self._listeners: list[Callable[[IndexState], None]] = []

    @property
    def current(self) -> IndexState:
        return self._state

    def update(
        self,
        *,
        remote: RemoteIndexState | None = None,
        local: LocalIndexState | None = None,
    ) -> IndexState:
        """Publish a new snapshot replacing the given parts."""
        with self._write_lock:
            old = self._state
            new = replace(
                old,
                version=old.version + 1,
                remote=remote if remote is not None else old.remote,
                local=local if local is not None else old.local,
            )
            if new.remote == old.remote and new.local == old.local:
                return old
            self._state = new
            listeners = list(self._listeners)
        log.debug(
            "index_state.updated",
            version=new.version,
            remote=new.remote.status.value,
            local=new.local.status.value,
        )
        for listener in listeners:
            listener(new)
        return new

    def subscribe(self, listener: Callable[[IndexState], None]) -> Callable[[], None]:
        with self._write_lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._write_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    async def wait_for(
        self,
        predicate: Callable[[IndexState], bool],
        timeout: float | None = None,
    ) -> IndexState:
        """Resolve with the first snapshot satisfying *predicate*."""
        state = self._state
        if predicate(state):
            return state
        loop = asyncio.get_running_loop()
        future: asyncio.Future[IndexState] = loop.create_future()

        def _check(new: IndexState) -> None:
            if predicate(new):
                loop.call_soon_threadsafe(_resolve, new)

        def _resolve(new: IndexState) -> None:
            if not future.done():
                future.set_result(new)

        unsubscribe = self.subscribe(_check)
        try:
            if predicate(self._state):
                return self._state
            return await asyncio.wait_for(future, timeout)
        finally:
            unsubscribe()
