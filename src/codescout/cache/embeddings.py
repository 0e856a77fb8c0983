"""Embedding memoisation on top of the cache layer.

Query vectors are keyed by (query text, model) and expire after a TTL.
Chunk vectors are keyed by (file id, content hash, chunk index, model) and
tagged with the file id so a file change evicts them.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

import numpy as np

from codescout.cache.layer import (
    CacheLayer,
    chunk_embedding_namespace,
    make_key,
    query_embedding_namespace,
)
from codescout.embedding.base import InputType
from codescout.index._internal.indexing.vector import EmbeddingVector

if TYPE_CHECKING:
    from codescout.core.cancellation import CancellationToken
    from codescout.embedding.base import EmbeddingProvider
    from codescout.index.models import Chunk


class EmbeddingCache:
    """Cache-through wrapper around an embedding provider."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        layer: CacheLayer,
        *,
        query_ttl_sec: float | None = 3600.0,
    ) -> None:
        self.provider = provider
        self.layer = layer
        self.query_ttl_sec = query_ttl_sec

    @property
    def model_id(self) -> str:
        return self.provider.model_id

    def _decode(self, blob: bytes) -> EmbeddingVector:
        return EmbeddingVector(self.model_id, np.frombuffer(blob, dtype=np.float32))

    @staticmethod
    def _chunk_key(namespace: str, chunk: Chunk) -> str:
        if chunk.chunk_id is not None:
            return make_key(namespace, *chunk.key)
        # Not from the local index (remote hits): key by content
        return make_key(namespace, "text", chunk.text)

    async def embed_query(
        self,
        query: str,
        token: CancellationToken | None = None,
    ) -> EmbeddingVector:
        namespace = query_embedding_namespace(self.model_id)
        key = make_key(namespace, query)
        cached = self.layer.get(key)
        if cached is not None:
            return self._decode(cached)

        with self.layer.pending(token) as batch:
            [vector] = await self.provider.embed([query], InputType.QUERY, token)
            batch.put(key, vector.to_bytes(), namespace=namespace, ttl_sec=self.query_ttl_sec)
        return vector

    async def embed_chunks(
        self,
        chunks: Sequence[Chunk],
        token: CancellationToken | None = None,
    ) -> list[EmbeddingVector]:
        """Vectors for *chunks*, in order. Only cache misses reach the provider."""
        namespace = chunk_embedding_namespace(self.model_id)
        keys = [self._chunk_key(namespace, chunk) for chunk in chunks]
        found: list[EmbeddingVector | None] = []
        for key in keys:
            blob = self.layer.get(key)
            found.append(self._decode(blob) if blob is not None else None)

        missing = [i for i, v in enumerate(found) if v is None]
        if missing:
            with self.layer.pending(token) as batch:
                vectors = await self.provider.embed(
                    [chunks[i].text for i in missing], InputType.DOCUMENT, token
                )
                for i, vector in zip(missing, vectors, strict=True):
                    found[i] = vector
                    batch.put(
                        keys[i],
                        vector.to_bytes(),
                        namespace=namespace,
                        file_id=chunks[i].file_id if chunks[i].chunk_id is not None else None,
                    )
        return [v for v in found if v is not None]
