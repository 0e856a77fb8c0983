"""The five search strategies.

Every strategy answers ``search(...)`` with a ``StrategyResult`` or ``None``
("nothing to contribute"), distinct from raising. A strategy whose index is
not ready yet raises ``IndexUnavailableError``, which the orchestrator also
counts as absent. Strategies only read the indexes; the indexing pipeline
is the sole writer.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar

import structlog

from codescout.core.errors import IndexUnavailableError
from codescout.index.models import Chunk, ReadinessState
from codescout.index.state import RemoteStatus
from codescout.search.models import ScoredChunk, SearchOptions, Sizing, StrategyKind, StrategyResult

if TYPE_CHECKING:
    from codescout.cache.embeddings import EmbeddingCache
    from codescout.config.models import SearchConfig
    from codescout.core.cancellation import CancellationToken
    from codescout.core.tokens import Tokenizer
    from codescout.index._internal.db import ChunkStore
    from codescout.index._internal.discovery import FileIndex
    from codescout.index._internal.indexing import LexicalIndex, VectorIndex
    from codescout.index.state import IndexStateStore
    from codescout.search.remote import RemoteHit, RemoteIndexProvider

log = structlog.get_logger()


@dataclass
class SearchContext:
    """Everything a strategy may read."""

    config: SearchConfig
    tokenizer: Tokenizer
    file_index: FileIndex
    chunks: ChunkStore
    lexical: LexicalIndex
    state: IndexStateStore
    vector: VectorIndex | None = None
    embeddings: EmbeddingCache | None = None
    remote: RemoteIndexProvider | None = None
    request_indexing: Callable[[str], None] | None = None

    def result_limit(self, sizing: Sizing) -> int:
        return sizing.max_results or self.config.default_max_results

    def candidate_limit(self, sizing: Sizing) -> int:
        return self.result_limit(sizing) * self.config.lexical_candidate_multiplier


def _resolve(ctx: SearchContext, ranked: Sequence[tuple[int, float]]) -> list[Chunk]:
    """Chunk ids to fresh chunks, keeping order. Stale ids drop out."""
    found = ctx.chunks.get_chunks([chunk_id for chunk_id, _ in ranked])
    return [found[chunk_id] for chunk_id, _ in ranked if chunk_id in found]


class SearchStrategy(ABC):
    kind: ClassVar[StrategyKind]

    def __init__(self, ctx: SearchContext) -> None:
        self.ctx = ctx

    @property
    def timeout_sec(self) -> float | None:
        """Deadline for one attempt, or None for strategies that run to completion."""
        return None

    async def prepare(self, correlation_id: str, token: CancellationToken) -> None:  # noqa: B027
        """Optional warm-up."""

    @abstractmethod
    async def search(
        self,
        sizing: Sizing,
        query: str,
        options: SearchOptions,
        correlation_id: str,
        token: CancellationToken,
    ) -> StrategyResult | None: ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.kind.value}>"


class FullInclusionStrategy(SearchStrategy):
    """Whole workspace, unranked, when it is small enough to fit the budget."""

    kind = StrategyKind.FULL_INCLUSION

    def applicable(self, sizing: Sizing) -> bool:
        if sizing.token_budget is None:
            return False
        ctx = self.ctx
        file_count = ctx.file_index.file_count()
        if file_count == 0 or file_count > ctx.config.full_workspace_max_files:
            return False
        if ctx.file_index.unindexed_count():
            return False
        _, total_tokens = ctx.chunks.fresh_stats()
        return total_tokens <= sizing.token_budget

    def _collect(self, sizing: Sizing) -> StrategyResult | None:
        if not self.applicable(sizing):
            return None
        chunks = self.ctx.chunks.all_chunks()
        if not chunks:
            return None
        return StrategyResult(self.kind, [ScoredChunk(c) for c in chunks], used_full_workspace=True)

    async def search(
        self,
        sizing: Sizing,
        query: str,
        options: SearchOptions,
        correlation_id: str,
        token: CancellationToken,
    ) -> StrategyResult | None:
        token.raise_if_cancelled()
        return await asyncio.to_thread(self._collect, sizing)


class RemoteIndexStrategy(SearchStrategy):
    """Delegates to the remote index provider."""

    kind = StrategyKind.REMOTE

    def __init__(self, ctx: SearchContext) -> None:
        super().__init__(ctx)
        self._last_poll: float | None = None

    @property
    def timeout_sec(self) -> float | None:
        return self.ctx.config.remote_timeout_sec

    async def prepare(self, correlation_id: str, token: CancellationToken) -> None:
        """Re-poll the remote status once it is older than ``remote_status_ttl_sec``."""
        remote = self.ctx.remote
        if remote is None:
            return
        now = time.monotonic()
        ttl = self.ctx.config.remote_status_ttl_sec
        if self._last_poll is not None and now - self._last_poll < ttl:
            return
        self._last_poll = now
        status = await asyncio.wait_for(remote.status(token), self.ctx.config.remote_timeout_sec)
        previous = self.ctx.state.current.remote
        self.ctx.state.update(remote=status)
        if status != previous:
            log.info(
                "search.remote_status_changed",
                old=previous.status.value,
                new=status.status.value,
                correlation_id=correlation_id,
            )

    def _hit_to_chunk(self, hit: RemoteHit, index: int) -> Chunk:
        record = self.ctx.file_index.get(hit.path)
        return Chunk(
            file_id=record.id if record is not None and record.id is not None else -1,
            path=hit.path,
            content_hash=record.content_hash if record is not None else "",
            index=index,
            text=hit.text,
            raw_text=hit.text,
            start_line=hit.start_line,
            end_line=hit.end_line,
            token_count=self.ctx.tokenizer.length(hit.text),
        )

    async def search(
        self,
        sizing: Sizing,
        query: str,
        options: SearchOptions,
        correlation_id: str,
        token: CancellationToken,
    ) -> StrategyResult | None:
        remote = self.ctx.remote
        if remote is None or not options.allow_remote:
            return None
        status = self.ctx.state.current.remote.status
        if status is not RemoteStatus.READY:
            raise IndexUnavailableError.not_ready("remote", status.value)
        hits = await remote.search(query, self.ctx.candidate_limit(sizing), token)
        if not hits:
            return None
        chunks = await asyncio.to_thread(
            lambda: [self._hit_to_chunk(hit, i) for i, hit in enumerate(hits)]
        )
        return StrategyResult(
            self.kind,
            [ScoredChunk(chunk, score=hit.score) for chunk, hit in zip(chunks, hits, strict=True)],
        )


class VectorStrategy(SearchStrategy):
    """Nearest neighbours of the query embedding."""

    kind = StrategyKind.VECTOR

    @property
    def timeout_sec(self) -> float | None:
        return self.ctx.config.vector_timeout_sec

    async def prepare(self, correlation_id: str, token: CancellationToken) -> None:
        vector = self.ctx.vector
        if vector is None or self.ctx.request_indexing is None:
            return
        if vector.readiness_state() is ReadinessState.REQUIRES_INDEXING:
            self.ctx.request_indexing(f"search:{correlation_id}")

    async def search(
        self,
        sizing: Sizing,
        query: str,
        options: SearchOptions,
        correlation_id: str,
        token: CancellationToken,
    ) -> StrategyResult | None:
        vector, embeddings = self.ctx.vector, self.ctx.embeddings
        if vector is None or embeddings is None:
            return None
        state = vector.readiness_state()
        if state is not ReadinessState.READY:
            raise IndexUnavailableError.not_ready("vector", state.value)
        query_vector = await embeddings.embed_query(query, token)
        token.raise_if_cancelled()
        k = self.ctx.candidate_limit(sizing)

        def _lookup() -> list[ScoredChunk]:
            ranked = vector.search(query_vector, k)
            sims = dict(ranked)
            return [
                ScoredChunk(c, score=sims[c.chunk_id], similarity=sims[c.chunk_id])
                for c in _resolve(self.ctx, ranked)
                if c.chunk_id is not None
            ]

        hits = await asyncio.to_thread(_lookup)
        if not hits:
            return None
        return StrategyResult(self.kind, hits)


class HybridStrategy(SearchStrategy):
    """Lexical candidates re-ordered by stored embedding similarity."""

    kind = StrategyKind.HYBRID

    async def search(
        self,
        sizing: Sizing,
        query: str,
        options: SearchOptions,
        correlation_id: str,
        token: CancellationToken,
    ) -> StrategyResult | None:
        vector, embeddings = self.ctx.vector, self.ctx.embeddings
        if vector is None or embeddings is None:
            return None
        lexical = self.ctx.lexical
        if not await asyncio.to_thread(lambda: lexical.is_populated):
            return None
        k = self.ctx.candidate_limit(sizing)

        def _candidates() -> tuple[list[tuple[int, float]], list[Chunk]]:
            ranked = lexical.search(query, k)
            return ranked, _resolve(self.ctx, ranked)

        ranked, chunks = await asyncio.to_thread(_candidates)
        if not chunks:
            return None
        token.raise_if_cancelled()

        query_vector = await embeddings.embed_query(query, token)
        token.raise_if_cancelled()
        lexical_scores = dict(ranked)
        ids = [c.chunk_id for c in chunks if c.chunk_id is not None]
        sims = await asyncio.to_thread(vector.similarities, query_vector, ids)

        hits = [
            ScoredChunk(
                c,
                score=lexical_scores.get(c.chunk_id or -1),
                similarity=sims.get(c.chunk_id or -1),
            )
            for c in chunks
        ]
        # Chunks without a stored embedding keep lexical order after the scored ones
        hits.sort(key=lambda h: (h.similarity is None, -(h.similarity or 0.0)))
        return StrategyResult(self.kind, hits)


class LexicalStrategy(SearchStrategy):
    """Plain TF-IDF. Always answers, possibly with no hits."""

    kind = StrategyKind.LEXICAL

    async def search(
        self,
        sizing: Sizing,
        query: str,
        options: SearchOptions,
        correlation_id: str,
        token: CancellationToken,
    ) -> StrategyResult | None:
        token.raise_if_cancelled()
        k = self.ctx.candidate_limit(sizing)

        def _lookup() -> list[ScoredChunk]:
            ranked = self.ctx.lexical.search(query, k)
            scores = dict(ranked)
            return [
                ScoredChunk(c, score=scores[c.chunk_id])
                for c in _resolve(self.ctx, ranked)
                if c.chunk_id is not None
            ]

        return StrategyResult(self.kind, await asyncio.to_thread(_lookup))


STRATEGY_CLASSES: tuple[type[SearchStrategy], ...] = (
    FullInclusionStrategy,
    RemoteIndexStrategy,
    VectorStrategy,
    HybridStrategy,
    LexicalStrategy,
)


def build_strategies(ctx: SearchContext) -> list[SearchStrategy]:
    """One instance per strategy, in fallback order."""
    return [cls(ctx) for cls in STRATEGY_CLASSES]
