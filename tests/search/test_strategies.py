"""Tests for the concrete search strategies over a real index."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from codescout.config.models import SearchConfig
from codescout.core.cancellation import CancellationToken
from codescout.core.errors import IndexUnavailableError
from codescout.core.tokens import ApproxTokenizer
from codescout.index.models import ReadinessState
from codescout.index.state import IndexStateStore, RemoteIndexState, RemoteStatus
from codescout.search import (
    FullInclusionStrategy,
    HybridStrategy,
    LexicalStrategy,
    RemoteHit,
    RemoteIndexStrategy,
    SearchContext,
    SearchOptions,
    SearchOrchestrator,
    Sizing,
    StrategyKind,
    VectorStrategy,
    build_strategies,
)

OPTIONS = SearchOptions()


def context(env: Any, *, config: SearchConfig | None = None, **kwargs: Any) -> SearchContext:
    return SearchContext(
        config=config or SearchConfig(),
        tokenizer=ApproxTokenizer(),
        file_index=env.file_index,
        chunks=env.chunks,
        lexical=env.lexical,
        state=IndexStateStore(),
        **kwargs,
    )


def embedding_context(env: Any, **kwargs: Any) -> SearchContext:
    return context(env, vector=env.vector, embeddings=env.pipeline.embeddings, **kwargs)


async def run(
    strategy: Any, sizing: Sizing, query: str = "query", options: SearchOptions = OPTIONS
) -> Any:
    return await strategy.search(sizing, query, options, "cid", CancellationToken())


async def build_sample(env: Any) -> None:
    env.write("config.py", "def load_config(path):\n    return read_settings(path)\n")
    env.write("widgets.py", "class WidgetRenderer:\n    def paint(self):\n        pass\n")
    env.write("helpers.py", "def widget_helper():\n    return None\n")
    await env.pipeline.build()


class TestFullInclusion:
    """Small workspaces are returned whole when the budget fits."""

    @pytest_asyncio.fixture
    async def small_workspace(self, index_env: Any) -> Any:
        for name in ("a.py", "b.py", "c.py"):
            index_env.write(name, "x = 1\n" * 80)
        await index_env.pipeline.build()
        return index_env

    @pytest.mark.asyncio
    async def test_whole_files_within_budget(self, small_workspace: Any) -> None:
        # Given
        strategy = FullInclusionStrategy(context(small_workspace))

        # When
        result = await run(strategy, Sizing(token_budget=1000))

        # Then
        assert result is not None
        assert result.used_full_workspace
        assert len(result.chunks) == 3
        assert all(h.chunk.is_full_file for h in result.chunks)
        assert [(h.chunk.start_line, h.chunk.end_line) for h in result.chunks] == [(0, 79)] * 3

    @pytest.mark.asyncio
    async def test_absent_when_budget_too_small(self, small_workspace: Any) -> None:
        strategy = FullInclusionStrategy(context(small_workspace))
        assert await run(strategy, Sizing(token_budget=100)) is None

    @pytest.mark.asyncio
    async def test_absent_without_token_budget(self, small_workspace: Any) -> None:
        strategy = FullInclusionStrategy(context(small_workspace))
        assert await run(strategy, Sizing(max_results=10)) is None

    @pytest.mark.asyncio
    async def test_absent_with_too_many_files(self, small_workspace: Any) -> None:
        config = SearchConfig(full_workspace_max_files=2)
        strategy = FullInclusionStrategy(context(small_workspace, config=config))
        assert await run(strategy, Sizing(token_budget=1000)) is None

    @pytest.mark.asyncio
    async def test_absent_while_files_are_unindexed(self, small_workspace: Any) -> None:
        path = small_workspace.write("d.py", "y = 2\n")
        small_workspace.file_index.refresh_path(path)
        strategy = FullInclusionStrategy(context(small_workspace))

        assert not strategy.applicable(Sizing(token_budget=1000))


class TestLexicalStrategy:
    @pytest.mark.asyncio
    async def test_ranks_matching_chunks(self, index_env: Any) -> None:
        await build_sample(index_env)
        strategy = LexicalStrategy(context(index_env))

        result = await run(strategy, Sizing(max_results=5), "widget renderer")

        assert result.strategy is StrategyKind.LEXICAL
        paths = [h.chunk.path for h in result.chunks]
        assert paths[0].endswith("widgets.py")
        assert any(p.endswith("helpers.py") for p in paths)
        assert all(h.score is not None for h in result.chunks)

    @pytest.mark.asyncio
    async def test_no_match_is_an_empty_result(self, index_env: Any) -> None:
        await build_sample(index_env)
        result = await run(LexicalStrategy(context(index_env)), Sizing(), "zeppelin")
        assert result is not None
        assert result.is_empty


class TestVectorStrategy:
    @pytest.mark.asyncio
    async def test_unavailable_until_ready(self, embedding_env: Any) -> None:
        # Given
        await build_sample(embedding_env)
        request_indexing = MagicMock()
        ctx = embedding_context(embedding_env, request_indexing=request_indexing)
        strategy = VectorStrategy(ctx)

        # When
        await strategy.prepare("cid-1", CancellationToken())
        with pytest.raises(IndexUnavailableError) as exc_info:
            await run(strategy, Sizing(), "widget renderer")

        # Then
        assert exc_info.value.details["index"] == "vector"
        request_indexing.assert_called_once_with("search:cid-1")

    @pytest.mark.asyncio
    async def test_nearest_chunks_when_ready(self, embedding_env: Any) -> None:
        await build_sample(embedding_env)
        embedding_env.vector.begin_indexing(3)
        embedding_env.vector.finish_indexing()
        strategy = VectorStrategy(embedding_context(embedding_env))

        result = await run(strategy, Sizing(max_results=2), "widget renderer paint")

        assert result.chunks[0].chunk.path.endswith("widgets.py")
        similarities = [h.similarity for h in result.chunks]
        assert similarities == sorted(similarities, reverse=True)

    @pytest.mark.asyncio
    async def test_absent_without_embeddings(self, index_env: Any) -> None:
        strategy = VectorStrategy(context(index_env))
        assert await run(strategy, Sizing()) is None
        assert strategy.timeout_sec == SearchConfig().vector_timeout_sec


class TestHybridStrategy:
    @pytest.mark.asyncio
    async def test_lexical_candidates_ordered_by_similarity(self, embedding_env: Any) -> None:
        await build_sample(embedding_env)
        strategy = HybridStrategy(embedding_context(embedding_env))

        result = await run(strategy, Sizing(max_results=5), "widget renderer paint")

        assert result.strategy is StrategyKind.HYBRID
        assert result.chunks[0].chunk.path.endswith("widgets.py")
        similarities = [h.similarity for h in result.chunks]
        assert None not in similarities
        assert similarities == sorted(similarities, reverse=True)

    @pytest.mark.asyncio
    async def test_absent_without_lexical_candidates(self, embedding_env: Any) -> None:
        await build_sample(embedding_env)
        strategy = HybridStrategy(embedding_context(embedding_env))
        assert await run(strategy, Sizing(), "zeppelin") is None


class TestRemoteIndexStrategy:
    @pytest.fixture
    def remote(self) -> AsyncMock:
        provider = AsyncMock()
        provider.search.return_value = [
            RemoteHit("/elsewhere/a.py", 3, 9, "def remote_thing(): pass", 0.8),
        ]
        return provider

    @pytest.mark.asyncio
    async def test_hits_become_chunks(self, index_env: Any, remote: AsyncMock) -> None:
        ctx = context(index_env, remote=remote)
        ctx.state.update(remote=RemoteIndexState(RemoteStatus.READY))

        result = await run(RemoteIndexStrategy(ctx), Sizing(max_results=5))

        [hit] = result.chunks
        assert hit.chunk.path == "/elsewhere/a.py"
        assert (hit.chunk.start_line, hit.chunk.end_line) == (3, 9)
        assert hit.chunk.chunk_id is None
        assert hit.score == 0.8
        remote.search.assert_awaited_once()
        assert remote.search.await_args.args[1] == 5 * SearchConfig().lexical_candidate_multiplier

    @pytest.mark.asyncio
    async def test_unavailable_unless_remote_ready(
        self, index_env: Any, remote: AsyncMock
    ) -> None:
        ctx = context(index_env, remote=remote)
        ctx.state.update(remote=RemoteIndexState(RemoteStatus.INDEXING))

        with pytest.raises(IndexUnavailableError):
            await run(RemoteIndexStrategy(ctx), Sizing())
        remote.search.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_prepare_picks_up_remote_becoming_ready(
        self, index_env: Any, remote: AsyncMock
    ) -> None:
        """A remote that finishes indexing is used without a restart."""
        # Given
        remote.status.side_effect = [
            RemoteIndexState(RemoteStatus.INDEXING),
            RemoteIndexState(RemoteStatus.READY, ("org/repo",)),
        ]
        config = SearchConfig(remote_status_ttl_sec=0.0)
        ctx = context(index_env, config=config, remote=remote)
        strategy = RemoteIndexStrategy(ctx)

        # When
        await strategy.prepare("cid-1", CancellationToken())
        with pytest.raises(IndexUnavailableError):
            await run(strategy, Sizing(max_results=5))
        await strategy.prepare("cid-2", CancellationToken())
        result = await run(strategy, Sizing(max_results=5))

        # Then
        assert ctx.state.current.remote == RemoteIndexState(RemoteStatus.READY, ("org/repo",))
        assert [h.chunk.path for h in result.chunks] == ["/elsewhere/a.py"]

    @pytest.mark.asyncio
    async def test_status_poll_is_rate_limited(self, index_env: Any, remote: AsyncMock) -> None:
        remote.status.return_value = RemoteIndexState(RemoteStatus.READY)
        strategy = RemoteIndexStrategy(context(index_env, remote=remote))

        await strategy.prepare("cid-1", CancellationToken())
        await strategy.prepare("cid-2", CancellationToken())

        assert remote.status.await_count == 1

    @pytest.mark.asyncio
    async def test_absent_when_remote_disallowed(self, index_env: Any, remote: AsyncMock) -> None:
        ctx = context(index_env, remote=remote)
        ctx.state.update(remote=RemoteIndexState(RemoteStatus.READY))

        result = await run(
            RemoteIndexStrategy(ctx), Sizing(), options=SearchOptions(allow_remote=False)
        )

        assert result is None


class TestChainOverRealIndex:
    @pytest.mark.asyncio
    async def test_falls_back_to_lexical(self, index_env: Any) -> None:
        """No remote, no embeddings, no budget: lexical answers."""
        # Given
        await build_sample(index_env)
        ctx = context(index_env)
        orchestrator = SearchOrchestrator(ctx, build_strategies(ctx))

        # When
        response = await orchestrator.search(Sizing(max_results=5), "load config")

        # Then
        assert response.strategy_used is StrategyKind.LEXICAL
        assert response.chunks[0].chunk.path.endswith("config.py")
        assert not response.used_full_workspace

    @pytest.mark.asyncio
    async def test_vector_not_ready_falls_back_to_hybrid(self, embedding_env: Any) -> None:
        await build_sample(embedding_env)
        assert embedding_env.vector.readiness_state() is ReadinessState.REQUIRES_INDEXING
        ctx = embedding_context(embedding_env)
        orchestrator = SearchOrchestrator(ctx, build_strategies(ctx))

        response = await orchestrator.search(Sizing(max_results=5), "widget renderer")

        assert response.strategy_used is StrategyKind.HYBRID
        assert response.chunks[0].chunk.path.endswith("widgets.py")
        assert response.alerts == []
