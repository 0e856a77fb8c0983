"""Indexing pipeline: file change -> chunks -> lexical postings -> embeddings.

The pipeline is the only writer of derived data. For one file it runs, in
order:

1. reconcile the file record (hash, size, mtime) through the file index
2. in a single transaction: drop the file's old embeddings and postings,
   replace its chunks, index the new chunks lexically, mark it indexed
3. invalidate cache entries derived from the file
4. when vector indexing is enabled, embed the new chunks and upsert them

Work on one path is serialised by a per-path lock; distinct paths run in
parallel up to ``max_concurrent_files``. A failure on one file is recorded
in ``IndexStats.errors`` and never aborts the rest of a build.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from codescout.core.errors import CancellationError
from codescout.index._internal.chunking import ChunkSource
from codescout.index._internal.db import batched
from codescout.index._internal.discovery.file_index import hash_file
from codescout.index._internal.discovery.filters import to_local_path
from codescout.index.models import ChunkRecord, FileChange, FileChangeKind, FileRecord, IndexStats

if TYPE_CHECKING:
    from codescout.cache.embeddings import EmbeddingCache
    from codescout.cache.layer import CacheLayer
    from codescout.core.cancellation import CancellationToken
    from codescout.index._internal.chunking import Chunker
    from codescout.index._internal.db import ChunkStore, Database
    from codescout.index._internal.discovery import FileIndex
    from codescout.index._internal.indexing import LexicalIndex, VectorIndex
    from codescout.index.models import Chunk

log = structlog.get_logger()


@dataclass
class _PathLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class IndexingPipeline:
    """Keeps chunks, postings, embeddings and caches in step with the files."""

    def __init__(
        self,
        *,
        db: Database,
        file_index: FileIndex,
        chunk_store: ChunkStore,
        chunker: Chunker,
        lexical: LexicalIndex,
        vector: VectorIndex | None = None,
        embeddings: EmbeddingCache | None = None,
        cache: CacheLayer | None = None,
        max_concurrent_files: int = 50,
        embed_batch_size: int = 64,
    ) -> None:
        self.db = db
        self.file_index = file_index
        self.chunk_store = chunk_store
        self.chunker = chunker
        self.lexical = lexical
        self.vector = vector
        self.embeddings = embeddings
        self.cache = cache
        self.embed_batch_size = embed_batch_size
        self.embedding_enabled = False
        self._semaphore = asyncio.Semaphore(max_concurrent_files)
        self._path_locks: dict[str, _PathLock] = {}

    @contextlib.asynccontextmanager
    async def _path_lock(self, path: str) -> AsyncIterator[None]:
        """Serialise work on *path*. The entry is dropped once nobody holds or awaits it."""
        entry = self._path_locks.get(path)
        if entry is None:
            entry = self._path_locks[path] = _PathLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._path_locks[path]

    @property
    def can_embed(self) -> bool:
        return self.embedding_enabled and self.vector is not None and self.embeddings is not None

    # ------------------------------------------------------------------
    # Single path
    # ------------------------------------------------------------------

    async def index_file(
        self,
        path: str | Path,
        token: CancellationToken | None = None,
    ) -> IndexStats:
        """Re-index one path after a file system event.

        Handles creation, modification and deletion. Only this path's
        derived data is touched.
        """
        stats = IndexStats()
        start = time.monotonic()
        local = to_local_path(path)
        if local is None:
            return stats
        key = str(local.absolute())
        async with self._semaphore, self._path_lock(key):
            if token is not None:
                token.raise_if_cancelled()
            try:
                change = await asyncio.to_thread(self.file_index.refresh_path, key)
                if change is None:
                    record = await asyncio.to_thread(self.file_index.get, key)
                    if record is not None and record.indexed_at is None:
                        await self._index_record(record, stats, token)
                    else:
                        stats.files_unchanged += 1
                else:
                    await self.apply_change(change, stats, token)
            except (CancellationError, asyncio.CancelledError):
                raise
            except Exception as e:
                self._record_failure(stats, key, e)
        stats.duration_seconds = time.monotonic() - start
        return stats

    async def apply_change(
        self,
        change: FileChange,
        stats: IndexStats,
        token: CancellationToken | None = None,
    ) -> None:
        if change.file_id is None:
            return
        if change.kind is FileChangeKind.REMOVED:
            await asyncio.to_thread(self._remove_derived, change.file_id)
            stats.files_removed += 1
            return

        record = await asyncio.to_thread(self.file_index.get_by_id, change.file_id)
        if record is None:
            return
        if await self._index_record(record, stats, token):
            if change.kind is FileChangeKind.ADDED:
                stats.files_added += 1
            else:
                stats.files_updated += 1

    def _remove_derived(self, file_id: int) -> None:
        with self.db.bulk_writer() as writer:
            if self.vector is not None:
                self.vector.invalidate_in(writer, file_id)
            self.lexical.remove_in(writer, file_id)
            writer.delete_where(ChunkRecord, "file_id = :fid", {"fid": file_id})
        if self.vector is not None:
            self.vector.forget(file_id)
            self.vector.set_file_count(self.file_index.file_count())
        if self.cache is not None:
            self.cache.invalidate_file(file_id)
        log.debug("pipeline.file_removed", file_id=file_id)

    # ------------------------------------------------------------------
    # Chunk + index one file revision
    # ------------------------------------------------------------------

    def _read_current(self, record: FileRecord) -> str | None:
        """File text, or None if it no longer matches the recorded hash."""
        path = Path(record.path)
        try:
            if hash_file(path) != record.content_hash:
                return None
            return path.read_bytes().decode("utf-8", errors="replace")
        except FileNotFoundError:
            return None

    def _rechunk(self, record: FileRecord) -> list[Chunk] | None:
        assert record.id is not None
        text = self._read_current(record)
        if text is None:
            log.debug("pipeline.content_moved_on", path=record.path)
            return None
        source = ChunkSource(record.id, record.path, record.content_hash)
        chunks = list(self.chunker.chunk(source, text))

        with self.db.bulk_writer() as writer:
            if self.vector is not None:
                self.vector.invalidate_in(writer, record.id)
            self.lexical.remove_in(writer, record.id)
            stored = self.chunk_store.replace_in(writer, record.id, chunks)
            self.lexical.index_in(writer, stored)
            writer.update_where(
                FileRecord,
                {"indexed_at": time.time()},
                "id = :fid AND content_hash = :hash",
                {"fid": record.id, "hash": record.content_hash},
            )
        if self.cache is not None:
            self.cache.invalidate_file(record.id)
        return stored

    async def _index_record(
        self,
        record: FileRecord,
        stats: IndexStats,
        token: CancellationToken | None,
    ) -> bool:
        stored = await asyncio.to_thread(self._rechunk, record)
        if stored is None:
            return False
        stats.chunks_indexed += len(stored)
        if self.can_embed and stored:
            stats.embeddings_computed += await self._embed(stored, token)
        log.debug("pipeline.file_indexed", path=record.path, chunks=len(stored))
        return True

    async def _embed(self, chunks: Sequence[Chunk], token: CancellationToken | None) -> int:
        assert self.vector is not None and self.embeddings is not None
        vector = self.vector
        done = 0
        file_ids: set[int] = set()
        for batch in batched(list(chunks), self.embed_batch_size):
            vectors = await self.embeddings.embed_chunks(batch, token)
            items = [
                (c.chunk_id, v)
                for c, v in zip(batch, vectors, strict=True)
                if c.chunk_id is not None
            ]
            done += await asyncio.to_thread(vector.upsert_many, items)
            file_ids.update(c.file_id for c in batch)
        for file_id in file_ids:
            vector.mark_fresh(file_id)
        return done

    def _record_failure(self, stats: IndexStats, path: str, error: Exception) -> None:
        stats.errors.append(f"{path}: {type(error).__name__}: {error}")
        log.warning(
            "pipeline.file_failed",
            path=path,
            error=str(error),
            error_type=type(error).__name__,
        )

    # ------------------------------------------------------------------
    # Whole workspace
    # ------------------------------------------------------------------

    async def _guarded(
        self,
        record: FileRecord,
        token: CancellationToken | None,
    ) -> IndexStats:
        stats = IndexStats()
        async with self._semaphore, self._path_lock(record.path):
            if token is not None:
                token.raise_if_cancelled()
            try:
                if await self._index_record(record, stats, token):
                    stats.files_updated += 1
            except (CancellationError, asyncio.CancelledError):
                raise
            except Exception as e:
                self._record_failure(stats, record.path, e)
        return stats

    async def build(
        self,
        reason: str = "manual",
        token: CancellationToken | None = None,
    ) -> IndexStats:
        """Scan the workspace and bring every derived index up to date."""
        start = time.monotonic()
        log.info("pipeline.build_started", reason=reason)
        stats = IndexStats()

        changes = await asyncio.to_thread(self.file_index.scan)
        added = {c.file_id for c in changes if c.kind is FileChangeKind.ADDED}
        for change in changes:
            if change.kind is FileChangeKind.REMOVED and change.file_id is not None:
                await asyncio.to_thread(self._remove_derived, change.file_id)
                stats.files_removed += 1
        await asyncio.to_thread(self._purge_orphans)

        pending = await asyncio.to_thread(self.file_index.unindexed)
        results = await asyncio.gather(*(self._guarded(r, token) for r in pending))
        for record, result in zip(pending, results, strict=True):
            if record.id in added:
                result.files_added, result.files_updated = result.files_updated, 0
            stats.merge(result)

        if self.can_embed:
            try:
                stats.embeddings_computed += await self.embed_missing(token)
            except (CancellationError, asyncio.CancelledError):
                raise
            except Exception as e:
                self._record_failure(stats, "<embeddings>", e)

        if self.vector is not None:
            self.vector.set_file_count(self.file_index.file_count())
        stats.duration_seconds = time.monotonic() - start
        log.info(
            "pipeline.build_finished",
            reason=reason,
            added=stats.files_added,
            updated=stats.files_updated,
            removed=stats.files_removed,
            chunks=stats.chunks_indexed,
            embeddings=stats.embeddings_computed,
            errors=len(stats.errors),
            duration_s=round(stats.duration_seconds, 2),
        )
        return stats

    def _purge_orphans(self) -> None:
        """Drop chunks whose file is gone or changed while nobody was watching."""
        orphans = self.chunk_store.orphan_chunk_ids()
        if not orphans:
            return
        self.lexical.remove_chunks(orphans)
        if self.vector is not None:
            self.vector.delete_chunks(orphans)
        with self.db.bulk_writer() as writer:
            writer.delete_in(ChunkRecord, "id", orphans)
        log.debug("pipeline.orphans_purged", chunks=len(orphans))

    def missing_embedding_ids(self) -> list[int]:
        """Fresh chunks with no vector for the current model."""
        if self.vector is None:
            return []
        rows = self.db.fetch_all(
            "SELECT c.id FROM chunks c "
            "JOIN files f ON f.id = c.file_id AND f.content_hash = c.content_hash "
            "LEFT JOIN embeddings e ON e.chunk_id = c.id AND e.model_id = :model "
            "WHERE e.chunk_id IS NULL ORDER BY c.id",
            {"model": self.vector.model_id},
        )
        return [int(r[0]) for r in rows]

    async def embed_missing(self, token: CancellationToken | None = None) -> int:
        """Embed every fresh chunk that has no vector for the current model."""
        if not self.can_embed:
            return 0
        ids = await asyncio.to_thread(self.missing_embedding_ids)
        done = 0
        for batch in batched(ids, self.embed_batch_size):
            if token is not None:
                token.raise_if_cancelled()
            found = await asyncio.to_thread(self.chunk_store.get_chunks, list(batch))
            chunks = [found[i] for i in batch if i in found]
            if chunks:
                done += await self._embed(chunks, token)
        if ids:
            log.info("pipeline.embedded", chunks=done)
        return done
