"""End-to-end tests for WorkspaceChunkSearch."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from codescout.config import CodeScoutConfig
from codescout.core.errors import ConfigurationError, TransientProviderError
from codescout.embedding import InputType
from codescout.index.models import ReadinessState
from codescout.index.state import RemoteIndexState, RemoteStatus
from codescout.search import Sizing, StrategyKind, TriggerError
from codescout.service import WorkspaceChunkSearch


def populate(root: Path) -> None:
    (root / "config.py").write_text("def load_config(path):\n    return read_settings(path)\n")
    (root / "widgets.py").write_text("class WidgetRenderer:\n    def paint(self):\n        pass\n")
    (root / "notes.png").write_bytes(b"\x89PNG\r\n\x1a\n\x00\x00")


def service(workspace: Path, **kwargs: Any) -> WorkspaceChunkSearch:
    kwargs.setdefault("config", CodeScoutConfig())
    kwargs.setdefault("watch", False)
    return WorkspaceChunkSearch(workspace, **kwargs)


class TestLexicalOnly:
    """Without embeddings the workspace is searchable as soon as it is built."""

    @pytest.mark.asyncio
    async def test_start_builds_and_searches(self, workspace: Path) -> None:
        # Given
        populate(workspace)
        ws = service(workspace, use_embeddings=False)

        # When
        stats = await ws.start()
        response = await ws.search(Sizing(max_results=5), "load config")

        # Then
        assert stats.files_added == 2
        assert (workspace / ".codescout" / "index.db").exists()
        assert ws.get_index_state().local.status is ReadinessState.READY
        assert ws.get_index_state().local.file_count == 2
        assert ws.get_index_state().remote.status is RemoteStatus.NOT_CONFIGURED
        assert response.strategy_used is StrategyKind.LEXICAL
        assert response.chunks[0].chunk.path.endswith("config.py")
        await ws.stop()

    @pytest.mark.asyncio
    async def test_local_indexing_is_not_supported(self, workspace: Path) -> None:
        async with service(workspace, use_embeddings=False) as ws:
            result = await ws.trigger_local_indexing("manual")

        assert not result.ok
        assert result.error is TriggerError.NOT_SUPPORTED

    @pytest.mark.asyncio
    async def test_remote_indexing_is_not_supported(self, workspace: Path) -> None:
        async with service(workspace, use_embeddings=False) as ws:
            result = await ws.trigger_remote_indexing("manual")

        assert result.error is TriggerError.NOT_SUPPORTED

    @pytest.mark.asyncio
    async def test_full_workspace_with_budget(self, workspace: Path) -> None:
        populate(workspace)
        async with service(workspace, use_embeddings=False) as ws:
            assert ws.has_fast_search(Sizing(token_budget=10_000))
            assert not ws.has_fast_search(Sizing(max_results=5))

            response = await ws.search(Sizing(token_budget=10_000), "anything")

        assert response.used_full_workspace
        assert response.strategy_used is StrategyKind.FULL_INCLUSION
        assert {Path(h.chunk.path).name for h in response.chunks} == {"config.py", "widgets.py"}

    @pytest.mark.asyncio
    async def test_custom_index_path(self, workspace: Path, tmp_path: Path) -> None:
        config = CodeScoutConfig.model_validate({"index": {"index_path": str(tmp_path / "idx")}})
        async with service(workspace, config=config, use_embeddings=False):
            pass

        assert (tmp_path / "idx" / "index.db").exists()
        assert not (workspace / ".codescout").exists()


class TestVectorIndexing:
    @pytest.mark.asyncio
    async def test_startup_indexes_vectors(self, workspace: Path, fake_provider: Any) -> None:
        """A fresh workspace kicks off vector indexing and becomes ready."""
        # Given
        populate(workspace)
        ws = service(workspace, embedding_provider=fake_provider)

        # When
        await ws.start()
        await ws.wait_for_local_indexing()

        # Then
        assert ws.get_index_state().local.status is ReadinessState.READY
        assert ws.vector is not None
        assert ws.vector.embedded_count() == 2
        assert ws.has_fast_search(Sizing(max_results=5))

        response = await ws.search(Sizing(max_results=1), "widget renderer paint")
        assert response.strategy_used is StrategyKind.VECTOR
        assert response.chunks[0].chunk.path.endswith("widgets.py")
        await ws.stop()

    @pytest.mark.asyncio
    async def test_trigger_while_running(self, workspace: Path, fake_provider: Any) -> None:
        populate(workspace)
        ws = service(workspace, embedding_provider=fake_provider)
        await ws.start()

        result = await ws.trigger_local_indexing("manual")

        assert result.error is TriggerError.ALREADY_INDEXING
        await ws.wait_for_local_indexing()
        assert (await ws.trigger_local_indexing("manual")).ok
        await ws.wait_for_local_indexing()
        await ws.stop()

    @pytest.mark.asyncio
    async def test_workspace_too_large(self, workspace: Path, fake_provider: Any) -> None:
        populate(workspace)
        config = CodeScoutConfig.model_validate({"indexer": {"max_vector_files": 1}})
        async with service(workspace, config=config, embedding_provider=fake_provider) as ws:
            result = await ws.trigger_local_indexing("manual")
            state = ws.get_index_state().local.status

        assert result.error is TriggerError.WORKSPACE_TOO_LARGE
        assert state is ReadinessState.REQUIRES_INDEXING

    @pytest.mark.asyncio
    async def test_vectors_survive_restart(self, workspace: Path, fake_provider: Any) -> None:
        populate(workspace)
        async with service(workspace, embedding_provider=fake_provider) as ws:
            await ws.wait_for_local_indexing()
        fake_provider.calls.clear()

        async with service(workspace, embedding_provider=fake_provider) as ws:
            assert ws.get_index_state().local.status is ReadinessState.READY

        assert all(input_type is not InputType.DOCUMENT for _, input_type in fake_provider.calls)

    @pytest.mark.asyncio
    async def test_answer_from_before_indexing_is_not_reused(
        self, workspace: Path, fake_provider: Any
    ) -> None:
        """A query answered while vectors were building is answered by vectors afterwards."""
        # Given
        populate(workspace)
        ws = service(workspace, embedding_provider=fake_provider)
        await ws.start()
        await ws.search(Sizing(max_results=1), "widget renderer paint")

        # When
        await ws.wait_for_local_indexing()
        response = await ws.search(Sizing(max_results=1), "widget renderer paint")

        # Then
        assert response.strategy_used is StrategyKind.VECTOR
        assert response.alerts == []
        await ws.stop()

    @pytest.mark.asyncio
    async def test_new_model_rebuilds_vectors(self, workspace: Path, fake_provider: Any) -> None:
        # Given
        populate(workspace)
        ws = service(workspace, embedding_provider=fake_provider)
        await ws.start()
        await ws.wait_for_local_indexing()
        replacement = type(fake_provider)(model_id="fake-embed-v2")

        # When
        changed = await ws.set_embedding_provider(replacement)
        await ws.wait_for_local_indexing()

        # Then
        assert changed
        assert ws.get_index_state().local.status is ReadinessState.READY
        models = {str(r[0]) for r in ws.db.fetch_all("SELECT DISTINCT model_id FROM embeddings")}
        assert models == {"fake-embed-v2"}
        response = await ws.search(Sizing(max_results=1), "widget renderer paint")
        assert response.strategy_used is StrategyKind.VECTOR
        assert response.chunks[0].chunk.path.endswith("widgets.py")
        await ws.stop()

    @pytest.mark.asyncio
    async def test_same_model_keeps_vectors(self, workspace: Path, fake_provider: Any) -> None:
        populate(workspace)
        async with service(workspace, embedding_provider=fake_provider) as ws:
            await ws.wait_for_local_indexing()

            changed = await ws.set_embedding_provider(type(fake_provider)())

            assert not changed
            assert ws.get_index_state().local.status is ReadinessState.READY
            assert ws.vector is not None
            assert ws.vector.embedded_count() == 2

    @pytest.mark.asyncio
    async def test_provider_swap_requires_embeddings(
        self, workspace: Path, fake_provider: Any
    ) -> None:
        ws = service(workspace, use_embeddings=False)

        with pytest.raises(ConfigurationError):
            await ws.set_embedding_provider(fake_provider)
        ws.db.dispose()


class TestRemote:
    @pytest.fixture
    def remote(self) -> AsyncMock:
        provider = AsyncMock()
        provider.status.return_value = RemoteIndexState(RemoteStatus.NOT_INDEXED, ("org/repo",))
        return provider

    @pytest.mark.asyncio
    async def test_start_refreshes_remote_status(
        self, workspace: Path, remote: AsyncMock
    ) -> None:
        async with service(workspace, use_embeddings=False, remote=remote) as ws:
            state = ws.get_index_state().remote

        assert state.status is RemoteStatus.NOT_INDEXED
        assert state.repos == ("org/repo",)

    @pytest.mark.asyncio
    async def test_trigger_marks_remote_indexing(
        self, workspace: Path, remote: AsyncMock
    ) -> None:
        async with service(workspace, use_embeddings=False, remote=remote) as ws:
            result = await ws.trigger_remote_indexing("manual")
            state = ws.get_index_state().remote

        assert result.ok
        assert state.status is RemoteStatus.INDEXING
        assert state.repos == ("org/repo",)
        remote.trigger_indexing.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_trigger_auth_required(self, workspace: Path, remote: AsyncMock) -> None:
        remote.trigger_indexing.side_effect = TransientProviderError.auth_required("remote", 401)
        async with service(workspace, use_embeddings=False, remote=remote) as ws:
            result = await ws.trigger_remote_indexing("manual")
            state = ws.get_index_state().remote

        assert result.error is TriggerError.AUTHENTICATION_REQUIRED
        assert state.status is RemoteStatus.AUTH_REQUIRED

    @pytest.mark.asyncio
    async def test_trigger_network_error(self, workspace: Path, remote: AsyncMock) -> None:
        remote.trigger_indexing.side_effect = TransientProviderError.network("remote", "refused")
        async with service(workspace, use_embeddings=False, remote=remote) as ws:
            result = await ws.trigger_remote_indexing("manual")

        assert result.error is TriggerError.NETWORK_ERROR


class TestCacheMaintenance:
    @pytest.mark.asyncio
    async def test_start_purges_expired_entries(self, workspace: Path) -> None:
        # Given
        ws = service(workspace, use_embeddings=False)
        ws.cache.put("stale", b"x", namespace="scratch", ttl_sec=-1.0)
        ws.cache.put("live", b"y", namespace="scratch")

        # When
        await ws.start()
        await asyncio.sleep(0.05)

        # Then
        keys = {str(r[0]) for r in ws.db.fetch_all("SELECT key FROM cache_entries")}
        assert keys == {"live"}
        await ws.stop()
