"""Multi-tier cache with change-driven invalidation.

Tiers are consulted fastest first. A hit in a slower tier is copied into
the faster ones. Writes go to every tier.

Correctness never depends on expiry: values derived from a file are tagged
with its id and dropped as soon as the file index reports a change, and
query results (which may mention any file) are dropped on every change.
"""

from __future__ import annotations

import hashlib
import time
from collections.abc import Generator, Sequence
from contextlib import contextmanager
from typing import TYPE_CHECKING

import structlog

from codescout.cache.tiers import CacheEntry, CacheTier
from codescout.index.models import FileChangeKind

if TYPE_CHECKING:
    from codescout.core.cancellation import CancellationToken
    from codescout.index._internal.discovery import ChangeSubscription

log = structlog.get_logger()

SEARCH_NAMESPACE = "search"
_KEY_SEPARATOR = "\x1f"


def query_embedding_namespace(model_id: str) -> str:
    return f"query_embedding:{model_id}"


def chunk_embedding_namespace(model_id: str) -> str:
    return f"chunk_embedding:{model_id}"


def make_key(namespace: str, *parts: object) -> str:
    """Stable key for *parts* within *namespace*."""
    digest = hashlib.sha256(_KEY_SEPARATOR.join(str(p) for p in parts).encode("utf-8"))
    return f"{namespace}:{digest.hexdigest()}"


class PendingWrites:
    """Writes collected during one operation, committed all at once."""

    def __init__(self) -> None:
        self.entries: list[CacheEntry] = []

    def put(
        self,
        key: str,
        value: bytes,
        *,
        namespace: str,
        file_id: int | None = None,
        ttl_sec: float | None = None,
    ) -> None:
        expiry = time.time() + ttl_sec if ttl_sec is not None else None
        self.entries.append(CacheEntry(key, value, namespace, file_id, expiry))

    def __len__(self) -> int:
        return len(self.entries)


class CacheLayer:
    """Ordered cache tiers, e.g. memory -> disk -> remote."""

    def __init__(self, tiers: Sequence[CacheTier]) -> None:
        self.tiers = list(tiers)
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> bytes | None:
        now = time.time()
        for depth, tier in enumerate(self.tiers):
            entry = tier.get(key, now)
            if entry is None:
                continue
            if depth:
                for faster in self.tiers[:depth]:
                    faster.put_many([entry])
            self.hits += 1
            return entry.value
        self.misses += 1
        return None

    def put(
        self,
        key: str,
        value: bytes,
        *,
        namespace: str,
        file_id: int | None = None,
        ttl_sec: float | None = None,
    ) -> None:
        batch = PendingWrites()
        batch.put(key, value, namespace=namespace, file_id=file_id, ttl_sec=ttl_sec)
        self.commit(batch)

    def commit(self, batch: PendingWrites) -> None:
        if not batch.entries:
            return
        for tier in self.tiers:
            tier.put_many(batch.entries)

    @contextmanager
    def pending(self, token: CancellationToken | None = None) -> Generator[PendingWrites, None, None]:
        """Collect writes; commit them only if the block finishes uncancelled.

        An exception (including task cancellation) or a cancelled token
        discards the batch.
        """
        batch = PendingWrites()
        yield batch
        if token is not None and token.is_cancelled:
            log.debug("cache.pending_discarded", entries=len(batch), reason=token.reason)
            return
        self.commit(batch)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate_file(self, file_id: int) -> int:
        """Drop everything derived from *file_id* plus every cached query result."""
        removed = 0
        for tier in self.tiers:
            removed += tier.delete_file(file_id)
            removed += tier.delete_namespace(SEARCH_NAMESPACE)
        log.debug("cache.invalidate_file", file_id=file_id, removed=removed)
        return removed

    def invalidate_namespace(self, namespace: str) -> int:
        return sum(tier.delete_namespace(namespace) for tier in self.tiers)

    def invalidate_model(self, model_id: str) -> int:
        """Drop every embedding produced by *model_id*."""
        removed = self.invalidate_namespace(query_embedding_namespace(model_id))
        removed += self.invalidate_namespace(chunk_embedding_namespace(model_id))
        removed += self.invalidate_namespace(SEARCH_NAMESPACE)
        log.info("cache.invalidate_model", model=model_id, removed=removed)
        return removed

    def purge_expired(self) -> int:
        now = time.time()
        return sum(tier.purge_expired(now) for tier in self.tiers)

    def clear(self) -> None:
        for tier in self.tiers:
            tier.clear()

    async def consume_changes(self, subscription: ChangeSubscription) -> None:
        """Invalidate on every file change until the subscription closes."""
        async for change in subscription:
            if change.kind is FileChangeKind.ADDED or change.file_id is None:
                self.invalidate_namespace(SEARCH_NAMESPACE)
            else:
                self.invalidate_file(change.file_id)
