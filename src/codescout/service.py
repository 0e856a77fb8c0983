"""Workspace chunk search: the public entry point.

``WorkspaceChunkSearch`` wires the file index, chunker, lexical and vector
indexes, cache layer, search orchestrator and background indexer for one
workspace, and exposes the query and indexing-control surface:

- ``get_index_state()``: current immutable ``IndexState`` snapshot
- ``has_fast_search(sizing)``: whether a query would be answered without
  falling back to lexical-only search
- ``search(sizing, query, options, token)``: ranked chunks for a query
- ``trigger_local_indexing(reason)`` / ``trigger_remote_indexing(reason)``

Usage::

    async with WorkspaceChunkSearch(Path("~/src/project").expanduser()) as ws:
        response = await ws.search(Sizing(max_results=10), "parse config")
"""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path
from types import TracebackType

import structlog

from codescout.cache import SEARCH_NAMESPACE, CacheLayer, DiskTier, EmbeddingCache, MemoryTier
from codescout.cache.tiers import CacheTier
from codescout.config import CodeScoutConfig, get_index_dir, load_config
from codescout.core.cancellation import CancellationToken
from codescout.core.errors import (
    CancellationError,
    ConfigurationError,
    ErrorCode,
    ResourceExhaustedError,
    TransientProviderError,
)
from codescout.core.tokens import ApproxTokenizer, Tokenizer
from codescout.daemon import BackgroundIndexer, FileWatcher, PathDebouncer
from codescout.embedding import EmbeddingProvider, create_embedding_provider
from codescout.index._internal.chunking import Chunker
from codescout.index._internal.db import ChunkStore, Database
from codescout.index._internal.discovery import ChangeSubscription, FileIndex, PathFilter
from codescout.index._internal.indexing import LexicalIndex, VectorIndex
from codescout.index.models import EmbeddingRecord, IndexStats, ReadinessState
from codescout.index.pipeline import IndexingPipeline
from codescout.index.state import (
    IndexState,
    IndexStateStore,
    LocalIndexState,
    RemoteIndexState,
    RemoteStatus,
)
from codescout.search import (
    SearchContext,
    SearchOptions,
    SearchOrchestrator,
    SearchResponse,
    Sizing,
    StrategyKind,
    TriggerError,
    TriggerResult,
    build_strategies,
)
from codescout.search.remote import RemoteIndexProvider
from codescout.search.strategies import FullInclusionStrategy

log = structlog.get_logger()


class WorkspaceChunkSearch:
    """Chunk search over one workspace."""

    def __init__(
        self,
        workspace_root: Path,
        *,
        config: CodeScoutConfig | None = None,
        tokenizer: Tokenizer | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        use_embeddings: bool = True,
        remote: RemoteIndexProvider | None = None,
        watch: bool = True,
    ) -> None:
        self.workspace_root = workspace_root.resolve()
        self.config = config or load_config(self.workspace_root)
        self.watch = watch
        cfg = self.config

        index_dir = get_index_dir(self.workspace_root, cfg)
        self.db = Database(
            index_dir / "index.db",
            max_retries=cfg.database.max_retries,
            retry_base_delay=cfg.database.retry_base_delay_sec,
            busy_timeout_ms=cfg.database.busy_timeout_ms,
        )
        self.db.create_all()

        path_filter = PathFilter(
            [self.workspace_root],
            max_file_size=cfg.index.max_file_size_bytes,
            sniff_bytes=cfg.index.binary_sniff_bytes,
            extra_excluded_extensions=frozenset(cfg.index.extra_excluded_extensions),
        )
        self.file_index = FileIndex(self.db, path_filter)
        self.chunks = ChunkStore(self.db)
        self.tokenizer = tokenizer or ApproxTokenizer()
        self.chunker = Chunker(
            self.tokenizer,
            max_tokens=cfg.chunking.max_tokens,
            remove_empty_lines=cfg.chunking.remove_empty_lines,
        )
        self.lexical = LexicalIndex(self.db)

        tiers: list[CacheTier] = [
            MemoryTier(cfg.cache.memory_max_entries, cfg.cache.memory_max_bytes)
        ]
        if cfg.cache.disk_enabled:
            tiers.append(DiskTier(self.db))
        self.cache = CacheLayer(tiers)

        if use_embeddings and embedding_provider is None:
            embedding_provider = create_embedding_provider(cfg.embedding)
        self.embedding_provider = embedding_provider if use_embeddings else None
        self.embeddings: EmbeddingCache | None = None
        self.vector: VectorIndex | None = None
        if self.embedding_provider is not None:
            self.embeddings = EmbeddingCache(
                self.embedding_provider, self.cache, query_ttl_sec=cfg.cache.query_ttl_sec
            )
            self.vector = VectorIndex(
                self.db,
                self.embedding_provider.model_id,
                max_files=cfg.indexer.max_vector_files,
                stale_fraction_threshold=cfg.indexer.stale_fraction_threshold,
            )

        self.remote = remote
        self.state = IndexStateStore(
            IndexState(
                remote=RemoteIndexState(
                    RemoteStatus.NOT_CONFIGURED if remote is None else RemoteStatus.UNKNOWN
                )
            )
        )

        self.pipeline = IndexingPipeline(
            db=self.db,
            file_index=self.file_index,
            chunk_store=self.chunks,
            chunker=self.chunker,
            lexical=self.lexical,
            vector=self.vector,
            embeddings=self.embeddings,
            cache=self.cache,
            max_concurrent_files=cfg.indexer.max_concurrent_files,
            embed_batch_size=cfg.indexer.embed_batch_size,
        )

        self.context = SearchContext(
            config=cfg.search,
            tokenizer=self.tokenizer,
            file_index=self.file_index,
            chunks=self.chunks,
            lexical=self.lexical,
            state=self.state,
            vector=self.vector,
            embeddings=self.embeddings,
            remote=remote,
            request_indexing=self._request_vector_indexing,
        )
        self.orchestrator = SearchOrchestrator(
            self.context, build_strategies(self.context), cache=self.cache
        )

        self.queue: asyncio.Queue[Path] = asyncio.Queue(maxsize=cfg.indexer.queue_max_size)
        self.indexer = BackgroundIndexer(self.pipeline, self.queue)
        self.indexer.set_on_complete(self._after_reindex)
        self.debouncer = PathDebouncer(
            self.queue, cfg.indexer.debounce_sec, on_overflow=self.indexer.request_rescan
        )
        self.watcher = FileWatcher(
            roots=self.file_index.roots,
            should_index=self.file_index.should_index,
            debouncer=self.debouncer,
            is_known=self.file_index.is_known,
        )

        self._lifetime = CancellationToken()
        self._vector_task: asyncio.Task[None] | None = None
        self._cache_task: asyncio.Task[None] | None = None
        self._purge_task: asyncio.Task[None] | None = None
        self._subscription: ChangeSubscription | None = None
        self._built = False
        self._started = False

        self._statuses = (self.state.current.local.status, self.state.current.remote.status)
        self._unsubscribe_state = self.state.subscribe(self._on_state_change)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> IndexStats:
        """Build the lexical index, load vectors, and start watching."""
        if self._started:
            return IndexStats()
        self._started = True
        log.info("workspace.starting", root=str(self.workspace_root))

        self._subscription = self.file_index.feed.subscribe()
        self._cache_task = asyncio.create_task(self.cache.consume_changes(self._subscription))
        self._purge_task = asyncio.create_task(self._purge_loop())
        await asyncio.to_thread(self._drop_foreign_embeddings)

        if self.remote is not None:
            await self.refresh_remote_status()

        # Vectors already on disk stay usable; files changed since are re-embedded by the build
        vector_ready = False
        if self.vector is not None:
            file_count = self.file_index.file_count()
            state = await asyncio.to_thread(self.vector.load, file_count)
            vector_ready = state is ReadinessState.READY
            self.pipeline.embedding_enabled = vector_ready

        stats = await self.pipeline.build("startup", self._lifetime)
        self._built = True
        if self.vector is not None and not vector_ready:
            self._request_vector_indexing("startup")
        self._publish_local()

        if self.watch:
            self.indexer.start()
            await self.watcher.start()
        return stats

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.watcher.stop()
        await self.indexer.stop()
        self._lifetime.cancel("workspace stopped")
        for task in (self._vector_task, self._cache_task, self._purge_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, CancellationError):
                    await task
        if self._subscription is not None:
            self._subscription.close()
        self._unsubscribe_state()
        for closable in (self.remote, self.embedding_provider):
            aclose = getattr(closable, "aclose", None)
            if aclose is not None:
                await aclose()
        self.db.checkpoint("TRUNCATE")
        self.db.dispose()
        log.info("workspace.stopped", root=str(self.workspace_root))

    async def __aenter__(self) -> WorkspaceChunkSearch:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    def _drop_foreign_embeddings(self) -> None:
        """Embeddings from a previously configured model are never reused."""
        if self.vector is None:
            return
        model = self.vector.model_id
        rows = self.db.fetch_all(
            "SELECT DISTINCT model_id FROM embeddings WHERE model_id != :model", {"model": model}
        )
        old_models = [str(r[0]) for r in rows]
        if not old_models:
            return
        with self.db.bulk_writer() as writer:
            writer.delete_where(EmbeddingRecord, "model_id != :model", {"model": model})
        for old in old_models:
            self.cache.invalidate_model(old)
        log.info("workspace.embeddings_invalidated", old_models=old_models, model=model)

    def _on_state_change(self, state: IndexState) -> None:
        statuses = (state.local.status, state.remote.status)
        if statuses == self._statuses:
            return
        self._statuses = statuses
        removed = self.cache.invalidate_namespace(SEARCH_NAMESPACE)
        log.debug(
            "workspace.search_cache_invalidated",
            local=statuses[0].value,
            remote=statuses[1].value,
            removed=removed,
        )

    async def _purge_loop(self) -> None:
        interval = self.config.cache.purge_interval_sec
        while True:
            removed = await asyncio.to_thread(self.cache.purge_expired)
            if removed:
                log.debug("workspace.cache_purged", removed=removed)
            await asyncio.sleep(interval)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def get_index_state(self) -> IndexState:
        return self.state.current

    def _publish_local(self) -> None:
        if self.vector is not None:
            status = self.vector.readiness_state()
            stale = self.vector.stale_file_count
        else:
            status = ReadinessState.READY if self._built else ReadinessState.REQUIRES_INDEXING
            stale = 0
        self.state.update(
            local=LocalIndexState(status, self.file_index.file_count(), stale)
        )

    async def _after_reindex(self, stats: IndexStats) -> None:
        self._publish_local()

    def has_fast_search(self, sizing: Sizing) -> bool:
        """True if a query would be served by something better than lexical fallback."""
        full = self.orchestrator.strategy(StrategyKind.FULL_INCLUSION)
        if isinstance(full, FullInclusionStrategy) and full.applicable(sizing):
            return True
        if self.state.current.remote.status is RemoteStatus.READY:
            return True
        return self.vector is not None and self.vector.readiness_state() is ReadinessState.READY

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    async def search(
        self,
        sizing: Sizing,
        query: str,
        options: SearchOptions | None = None,
        token: CancellationToken | None = None,
    ) -> SearchResponse:
        return await self.orchestrator.search(sizing, query, options, token)

    # ------------------------------------------------------------------
    # Indexing control
    # ------------------------------------------------------------------

    def _request_vector_indexing(self, reason: str) -> None:
        result = self._start_vector_indexing(reason)
        if not result.ok:
            log.debug("workspace.vector_indexing_not_started", reason=reason, error=result.message)

    def _start_vector_indexing(self, reason: str) -> TriggerResult:
        vector = self.vector
        if vector is None:
            return TriggerResult.failure(
                TriggerError.NOT_SUPPORTED, "No embedding provider is configured"
            )
        if self._vector_task is not None and not self._vector_task.done():
            return TriggerResult.failure(
                TriggerError.ALREADY_INDEXING, "Vector indexing is already running"
            )
        try:
            vector.begin_indexing(self.file_index.file_count())
        except ResourceExhaustedError as e:
            self._publish_local()
            return TriggerResult.failure(TriggerError.WORKSPACE_TOO_LARGE, e.message)

        self.pipeline.embedding_enabled = True
        self._vector_task = asyncio.create_task(self._run_vector_indexing(reason))
        self._publish_local()
        return TriggerResult.success(f"Vector indexing started ({reason})")

    async def _run_vector_indexing(self, reason: str) -> None:
        assert self.vector is not None
        success = False
        log.info("workspace.vector_indexing_started", reason=reason)
        try:
            stats = await self.pipeline.build(reason, self._lifetime)
            missing = await asyncio.to_thread(self.pipeline.missing_embedding_ids)
            success = not missing
            log.info(
                "workspace.vector_indexing_finished",
                success=success,
                embeddings=stats.embeddings_computed,
                missing=len(missing),
            )
        except (CancellationError, asyncio.CancelledError):
            raise
        except Exception as e:
            log.error("workspace.vector_indexing_failed", error=str(e))
        finally:
            if not success:
                self.pipeline.embedding_enabled = False
            self.vector.finish_indexing(success=success)
            self._publish_local()

    async def trigger_local_indexing(self, reason: str) -> TriggerResult:
        """Start building the vector index in the background."""
        return self._start_vector_indexing(reason)

    async def wait_for_local_indexing(self) -> None:
        """Resolve once the running vector indexing task (if any) finishes."""
        if self._vector_task is not None:
            with contextlib.suppress(asyncio.CancelledError, CancellationError):
                await self._vector_task

    async def set_embedding_provider(self, provider: EmbeddingProvider) -> bool:
        """Swap the embedding provider. Returns True if the model changed.

        A new model invalidates every stored embedding and schedules a
        background rebuild; until it finishes, searches fall back to the
        lexical index.
        """
        if self.vector is None or self.embeddings is None:
            raise ConfigurationError.invalid_value(
                "embedding_provider", provider.model_id, "embeddings are disabled"
            )
        task = self._vector_task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, CancellationError):
                await task

        old = self.embedding_provider
        self.embedding_provider = provider
        self.embeddings.provider = provider
        changed = self.vector.set_model(provider.model_id)
        if changed:
            self.pipeline.embedding_enabled = False
            await asyncio.to_thread(self._drop_foreign_embeddings)
            self._publish_local()
            if self._started:
                self._request_vector_indexing("model_change")
        if old is not None and old is not provider:
            aclose = getattr(old, "aclose", None)
            if aclose is not None:
                await aclose()
        return changed

    async def trigger_remote_indexing(self, reason: str) -> TriggerResult:
        if self.remote is None:
            return TriggerResult.failure(
                TriggerError.NOT_SUPPORTED, "No remote index provider is configured"
            )
        try:
            await self.remote.trigger_indexing(reason, self._lifetime)
        except TransientProviderError as e:
            if e.code is ErrorCode.PROVIDER_AUTH_REQUIRED:
                self.state.update(remote=RemoteIndexState(RemoteStatus.AUTH_REQUIRED))
                return TriggerResult.failure(TriggerError.AUTHENTICATION_REQUIRED, e.message)
            return TriggerResult.failure(TriggerError.NETWORK_ERROR, e.message)
        current = self.state.current.remote
        self.state.update(remote=RemoteIndexState(RemoteStatus.INDEXING, current.repos))
        log.info("workspace.remote_indexing_triggered", reason=reason)
        return TriggerResult.success(f"Remote indexing requested ({reason})")

    async def refresh_remote_status(self) -> RemoteIndexState:
        if self.remote is None:
            return self.state.current.remote
        remote_state = await self.remote.status(self._lifetime)
        self.state.update(remote=remote_state)
        return remote_state
