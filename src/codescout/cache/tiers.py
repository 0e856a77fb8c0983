"""Cache storage tiers.

Every tier stores opaque byte values under string keys, tagged with a
namespace and optionally the file the value was derived from so that
file-driven invalidation can find it.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import structlog

from codescout.index.models import CacheEntryRecord

if TYPE_CHECKING:
    from codescout.index._internal.db import Database

log = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class CacheEntry:
    key: str
    value: bytes
    namespace: str
    file_id: int | None = None
    expiry: float | None = None
    tier: str = ""

    @property
    def size_bytes(self) -> int:
        return len(self.key) + len(self.value)

    def expired(self, now: float) -> bool:
        return self.expiry is not None and now >= self.expiry


@runtime_checkable
class CacheTier(Protocol):
    """One storage level. Implementations must be thread-safe."""

    name: str

    def get(self, key: str, now: float) -> CacheEntry | None: ...

    def put_many(self, entries: list[CacheEntry]) -> None: ...

    def delete_file(self, file_id: int) -> int: ...

    def delete_namespace(self, namespace: str) -> int: ...

    def purge_expired(self, now: float) -> int: ...

    def clear(self) -> None: ...


class MemoryTier:
    """In-process LRU bounded by entry count and total bytes."""

    name = "memory"

    def __init__(self, max_entries: int = 20000, max_bytes: int = 128 * 1024 * 1024) -> None:
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._bytes = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def total_bytes(self) -> int:
        with self._lock:
            return self._bytes

    def get(self, key: str, now: float) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expired(now):
                self._drop(key)
                return None
            self._entries.move_to_end(key)
            return entry

    def put_many(self, entries: list[CacheEntry]) -> None:
        with self._lock:
            for entry in entries:
                if entry.size_bytes > self.max_bytes:
                    continue
                if entry.key in self._entries:
                    self._drop(entry.key)
                self._entries[entry.key] = entry
                self._bytes += entry.size_bytes
            self._evict()

    def _drop(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._bytes -= entry.size_bytes

    def _evict(self) -> None:
        """Enforce bounds, oldest first. Caller holds lock."""
        while self._entries and (
            len(self._entries) > self.max_entries or self._bytes > self.max_bytes
        ):
            _, entry = self._entries.popitem(last=False)
            self._bytes -= entry.size_bytes

    def _drop_where(self, predicate: Callable[[CacheEntry], bool]) -> int:
        with self._lock:
            doomed = [k for k, e in self._entries.items() if predicate(e)]
            for key in doomed:
                self._drop(key)
            return len(doomed)

    def delete_file(self, file_id: int) -> int:
        return self._drop_where(lambda e: e.file_id == file_id)

    def delete_namespace(self, namespace: str) -> int:
        return self._drop_where(lambda e: e.namespace == namespace)

    def purge_expired(self, now: float) -> int:
        return self._drop_where(lambda e: e.expired(now))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._bytes = 0


class DiskTier:
    """Rows of the ``cache_entries`` table in the index database."""

    name = "disk"

    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, key: str, now: float) -> CacheEntry | None:
        rows = self._db.fetch_all(
            "SELECT key, value, namespace, file_id, expiry FROM cache_entries WHERE key = :key",
            {"key": key},
        )
        if not rows:
            return None
        row = rows[0]
        entry = CacheEntry(
            key=row[0],
            value=bytes(row[1]),
            namespace=row[2],
            file_id=row[3],
            expiry=row[4],
            tier=self.name,
        )
        if entry.expired(now):
            with self._db.bulk_writer() as writer:
                writer.delete_where(CacheEntryRecord, "key = :key", {"key": key})
            return None
        return entry

    def put_many(self, entries: list[CacheEntry]) -> None:
        if not entries:
            return
        now = time.time()
        records = [
            {
                "key": e.key,
                "namespace": e.namespace,
                "file_id": e.file_id,
                "value": e.value,
                "size_bytes": e.size_bytes,
                "expiry": e.expiry,
                "created_at": now,
            }
            for e in entries
        ]
        with self._db.bulk_writer() as writer:
            writer.upsert_many(
                CacheEntryRecord,
                records,
                conflict_columns=["key"],
                update_columns=["namespace", "file_id", "value", "size_bytes", "expiry", "created_at"],
            )

    def _delete(self, condition: str, params: dict[str, object]) -> int:
        with self._db.bulk_writer() as writer:
            return writer.delete_where(CacheEntryRecord, condition, params)

    def delete_file(self, file_id: int) -> int:
        return self._delete("file_id = :fid", {"fid": file_id})

    def delete_namespace(self, namespace: str) -> int:
        return self._delete("namespace = :ns", {"ns": namespace})

    def purge_expired(self, now: float) -> int:
        removed = self._delete("expiry IS NOT NULL AND expiry <= :now", {"now": now})
        if removed:
            log.debug("cache.disk_purged", removed=removed)
        return removed

    def clear(self) -> None:
        self._delete("1 = 1", {})
