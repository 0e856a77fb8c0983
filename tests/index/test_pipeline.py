"""Tests for the indexing pipeline."""

from __future__ import annotations

import asyncio
from typing import Any

import numpy as np
import pytest

from codescout.cache import SEARCH_NAMESPACE
from codescout.index._internal.indexing import EmbeddingVector


class TestBuild:
    """build() reconciles the whole workspace."""

    @pytest.mark.asyncio
    async def test_indexes_every_file(self, index_env: Any) -> None:
        # Given
        index_env.write("a.py", "def load_config():\n    return read_settings()\n")
        index_env.write("pkg/b.py", "class WidgetRenderer:\n    pass\n")

        # When
        stats = await index_env.pipeline.build("startup")

        # Then
        assert stats.files_added == 2
        assert stats.chunks_indexed == 2
        assert stats.errors == []
        assert index_env.file_index.unindexed_count() == 0
        assert [cid for cid, _ in index_env.lexical.search("widget", k=5)]

    @pytest.mark.asyncio
    async def test_second_build_is_a_no_op(self, index_env: Any) -> None:
        index_env.write("a.py", "alpha = 1\n")
        await index_env.pipeline.build()

        stats = await index_env.pipeline.build()

        assert (stats.files_added, stats.files_updated, stats.chunks_indexed) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_failure_is_isolated_per_file(
        self, index_env: Any, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """One broken file is reported and the rest are indexed."""
        # Given
        index_env.write("good.py", "alpha = 1\n")
        index_env.write("bad.py", "bravo = 2\n")
        original = index_env.chunker.chunk

        def _chunk(source: Any, text: str, *args: Any, **kwargs: Any) -> Any:
            if source.path.endswith("bad.py"):
                raise RuntimeError("chunker exploded")
            return original(source, text, *args, **kwargs)

        monkeypatch.setattr(index_env.chunker, "chunk", _chunk)

        # When
        stats = await index_env.pipeline.build()

        # Then
        assert stats.files_added == 1
        assert len(stats.errors) == 1
        assert "bad.py" in stats.errors[0]
        assert "chunker exploded" in stats.errors[0]
        assert index_env.file_index.unindexed_count() == 1

    @pytest.mark.asyncio
    async def test_removed_files_are_purged(self, index_env: Any) -> None:
        path = index_env.write("gone.py", "charlie = 3\n")
        await index_env.pipeline.build()
        path.unlink()

        stats = await index_env.pipeline.build()

        assert stats.files_removed == 1
        assert index_env.lexical.document_count() == 0
        assert index_env.chunks.all_chunks() == []


class TestIndexFile:
    """index_file() touches only one path's derived data."""

    @pytest.mark.asyncio
    async def test_modification_leaves_no_stale_chunks(self, index_env: Any) -> None:
        # Given
        path = index_env.write("a.py", "alpha = 1\n")
        index_env.write("b.py", "delta = 4\n")
        await index_env.pipeline.build()

        # When
        path.write_text("bravo = 22\n")
        stats = await index_env.pipeline.index_file(path)

        # Then
        assert stats.files_updated == 1
        record = index_env.file_index.get(path)
        texts = [c.text for c in index_env.chunks.chunks_for_file(record.id)]
        assert texts == ["bravo = 22"]
        assert index_env.lexical.search("alpha", k=5) == []
        assert index_env.lexical.search("bravo", k=5)
        assert index_env.lexical.search("delta", k=5)
        assert index_env.chunks.orphan_chunk_ids() == []

    @pytest.mark.asyncio
    async def test_deletion_removes_chunks_and_postings(self, index_env: Any) -> None:
        path = index_env.write("a.py", "echo = 5\n")
        await index_env.pipeline.build()
        record = index_env.file_index.get(path)
        path.unlink()

        stats = await index_env.pipeline.index_file(path)

        assert stats.files_removed == 1
        assert index_env.chunks.chunk_ids_for_file(record.id) == []
        assert index_env.lexical.document_frequency("echo") == 0

    @pytest.mark.asyncio
    async def test_unchanged_file_is_counted(self, index_env: Any) -> None:
        path = index_env.write("a.py", "foxtrot = 6\n")
        await index_env.pipeline.build()

        stats = await index_env.pipeline.index_file(path)

        assert stats.files_unchanged == 1
        assert stats.chunks_indexed == 0

    @pytest.mark.asyncio
    async def test_non_file_uri_is_ignored(self, index_env: Any) -> None:
        stats = await index_env.pipeline.index_file("untitled:Untitled-1")
        assert stats.chunks_indexed == 0
        assert stats.errors == []

    @pytest.mark.asyncio
    async def test_path_locks_are_released(self, index_env: Any) -> None:
        path = index_env.write("a.py", "golf = 7\n")
        await index_env.pipeline.build()

        path.write_text("hotel = 8\n")
        await index_env.pipeline.index_file(path)

        assert index_env.pipeline._path_locks == {}

    @pytest.mark.asyncio
    async def test_concurrent_events_for_one_path(self, index_env: Any) -> None:
        # Given
        path = index_env.write("a.py", "india = 9\n")
        await index_env.pipeline.build()
        path.write_text("juliet = 10\n")

        # When
        results = await asyncio.gather(*(index_env.pipeline.index_file(path) for _ in range(5)))

        # Then
        assert sum(r.files_updated for r in results) == 1
        assert sum(r.files_unchanged for r in results) == 4
        assert index_env.pipeline._path_locks == {}
        assert index_env.lexical.search("india", k=5) == []


class TestEmbedding:
    @pytest.mark.asyncio
    async def test_build_embeds_new_chunks(self, embedding_env: Any, fake_provider: Any) -> None:
        # Given
        embedding_env.write("a.py", "def load_config():\n    return read_settings()\n")
        embedding_env.write("b.py", "class WidgetRenderer:\n    pass\n")

        # When
        stats = await embedding_env.pipeline.build()

        # Then
        assert stats.embeddings_computed == 2
        assert embedding_env.pipeline.missing_embedding_ids() == []
        query = EmbeddingVector(fake_provider.model_id, fake_provider.vector_for("widget renderer"))
        [(best, _), *_] = embedding_env.vector.search(query, k=2)
        chunk = embedding_env.chunks.get_chunks([best])[best]
        assert chunk.path.endswith("b.py")

    @pytest.mark.asyncio
    async def test_disabled_embedding_skips_provider(
        self, embedding_env: Any, fake_provider: Any
    ) -> None:
        embedding_env.pipeline.embedding_enabled = False
        embedding_env.write("a.py", "golf = 7\n")

        stats = await embedding_env.pipeline.build()

        assert stats.embeddings_computed == 0
        assert fake_provider.calls == []
        assert embedding_env.pipeline.missing_embedding_ids() != []

    @pytest.mark.asyncio
    async def test_embed_missing_backfills(self, embedding_env: Any, fake_provider: Any) -> None:
        """Chunks indexed while embedding was off are embedded later."""
        # Given
        embedding_env.pipeline.embedding_enabled = False
        embedding_env.write("a.py", "hotel = 8\n")
        embedding_env.write("b.py", "india = 9\n")
        await embedding_env.pipeline.build()

        # When
        embedding_env.pipeline.embedding_enabled = True
        done = await embedding_env.pipeline.embed_missing()

        # Then
        assert done == 2
        assert embedding_env.pipeline.missing_embedding_ids() == []
        assert embedding_env.vector.embedded_count() == 2

    @pytest.mark.asyncio
    async def test_modification_replaces_embeddings(self, embedding_env: Any) -> None:
        path = embedding_env.write("a.py", "juliet = 10\n")
        await embedding_env.pipeline.build()

        path.write_text("kilo_value = 110\n")
        stats = await embedding_env.pipeline.index_file(path)

        assert stats.embeddings_computed == 1
        assert embedding_env.vector.embedded_count() == 1
        assert embedding_env.vector.stale_file_count == 0

    @pytest.mark.asyncio
    async def test_change_invalidates_search_cache(self, embedding_env: Any) -> None:
        path = embedding_env.write("a.py", "lima = 12\n")
        await embedding_env.pipeline.build()
        layer = embedding_env.pipeline.cache
        layer.put("search:cached", b"results", namespace=SEARCH_NAMESPACE)

        path.write_text("mike = 1300\n")
        await embedding_env.pipeline.index_file(path)

        assert layer.get("search:cached") is None


class TestEmbeddingVector:
    def test_bytes_round_trip(self) -> None:
        original = EmbeddingVector("m", np.array([0.5, -1.0, 2.0], dtype=np.float32))
        restored = EmbeddingVector.from_bytes("m", original.to_bytes())
        assert restored.model_id == "m"
        assert np.array_equal(restored.values, original.values)
