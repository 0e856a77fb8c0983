"""Similarity re-ranking, ratio filtering and budget truncation.

Full-inclusion results pass through untouched. Everything else is scored
against the query embedding (stored vectors first, then freshly embedded
ones), filtered to chunks within ``ratio`` of the best similarity, then cut
to the result count or token budget, whichever binds first.

If no embedding is obtainable the strategy's own order is kept and the
ratio filter is skipped; the response carries a RERANK_DEGRADED alert.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from codescout.core.errors import CancellationError, CodeScoutError
from codescout.index._internal.indexing.vector import cosine_similarity
from codescout.search.models import (
    AlertKind,
    RankedChunk,
    ScoredChunk,
    SearchAlert,
    Sizing,
    StrategyResult,
)

if TYPE_CHECKING:
    from codescout.cache.embeddings import EmbeddingCache
    from codescout.core.cancellation import CancellationToken
    from codescout.index._internal.indexing.vector import EmbeddingVector, VectorIndex

log = structlog.get_logger()


@dataclass
class RerankOutcome:
    chunks: list[RankedChunk]
    alerts: list[SearchAlert] = field(default_factory=list)


def ratio_filter(hits: Sequence[ScoredChunk], ratio: float) -> list[ScoredChunk]:
    """Keep hits whose similarity is at least ``ratio`` x the best one.

    Hits without a similarity are dropped once any hit has one.
    """
    scored = [h for h in hits if h.similarity is not None]
    if not scored:
        return list(hits)
    top = max(h.similarity for h in scored if h.similarity is not None)
    threshold = ratio * top if top > 0 else top
    return [h for h in scored if h.similarity is not None and h.similarity >= threshold]


def truncate(hits: Sequence[ScoredChunk], sizing: Sizing, default_max: int) -> list[ScoredChunk]:
    """Cut to ``max_results`` or ``token_budget``, whichever is reached first."""
    limit = sizing.max_results or default_max
    kept: list[ScoredChunk] = []
    used = 0
    for hit in hits:
        if len(kept) >= limit:
            break
        tokens = hit.chunk.token_count
        if sizing.max_tokens_per_chunk is not None and tokens > sizing.max_tokens_per_chunk:
            continue
        if sizing.token_budget is not None and used + tokens > sizing.token_budget:
            break
        kept.append(hit)
        used += tokens
    return kept


def _to_ranked(hits: Sequence[ScoredChunk]) -> list[RankedChunk]:
    return [
        RankedChunk(chunk=h.chunk, rank=i, similarity=h.similarity, score=h.score)
        for i, h in enumerate(hits)
    ]


class Reranker:
    def __init__(
        self,
        *,
        ratio: float,
        default_max_results: int,
        embeddings: EmbeddingCache | None = None,
        vector: VectorIndex | None = None,
    ) -> None:
        self.ratio = ratio
        self.default_max_results = default_max_results
        self.embeddings = embeddings
        self.vector = vector

    async def _fill_similarities(
        self,
        hits: list[ScoredChunk],
        query_vector: EmbeddingVector,
        token: CancellationToken,
    ) -> list[ScoredChunk]:
        missing = [h for h in hits if h.similarity is None]
        if not missing:
            return hits

        stored: dict[int, float] = {}
        vector = self.vector
        if vector is not None and vector.model_id == query_vector.model_id:
            ids = [h.chunk.chunk_id for h in missing if h.chunk.chunk_id is not None]
            stored = await asyncio.to_thread(vector.similarities, query_vector, ids)

        to_embed = [h for h in missing if h.chunk.chunk_id not in stored]
        computed: dict[int, float] = {}
        if to_embed:
            assert self.embeddings is not None
            vectors = await self.embeddings.embed_chunks([h.chunk for h in to_embed], token)
            for h, v in zip(to_embed, vectors, strict=True):
                computed[id(h)] = cosine_similarity(query_vector, v)

        filled: list[ScoredChunk] = []
        for h in hits:
            if h.similarity is not None:
                filled.append(h)
            elif h.chunk.chunk_id in stored:
                filled.append(ScoredChunk(h.chunk, h.score, stored[h.chunk.chunk_id]))
            else:
                filled.append(ScoredChunk(h.chunk, h.score, computed[id(h)]))
        return filled

    async def rerank(
        self,
        result: StrategyResult,
        query: str,
        sizing: Sizing,
        token: CancellationToken,
    ) -> RerankOutcome:
        if result.used_full_workspace:
            return RerankOutcome(_to_ranked(result.chunks))

        hits = list(result.chunks)
        alerts: list[SearchAlert] = []
        if self.embeddings is None:
            degraded = True
            alerts.append(
                SearchAlert(
                    AlertKind.RERANK_DEGRADED,
                    "No embedding provider; results keep strategy order",
                    result.strategy,
                )
            )
        else:
            try:
                query_vector = await self.embeddings.embed_query(query, token)
                hits = await self._fill_similarities(hits, query_vector, token)
                degraded = False
            except CancellationError:
                raise
            except CodeScoutError as e:
                log.warning("rerank.degraded", strategy=result.strategy.value, error=e.message)
                alerts.append(
                    SearchAlert(AlertKind.RERANK_DEGRADED, e.message, result.strategy, e.to_dict())
                )
                degraded = True

        if not degraded:
            # Stable: equal similarities keep the strategy's order
            hits.sort(key=lambda h: -(h.similarity or 0.0))
            before = len(hits)
            hits = ratio_filter(hits, self.ratio)
            log.debug("rerank.filtered", kept=len(hits), dropped=before - len(hits))

        return RerankOutcome(_to_ranked(truncate(hits, sizing, self.default_max_results)), alerts)
