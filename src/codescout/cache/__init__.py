"""Cache layer: memory and disk tiers with change-driven invalidation."""

from codescout.cache.embeddings import EmbeddingCache
from codescout.cache.layer import (
    SEARCH_NAMESPACE,
    CacheLayer,
    PendingWrites,
    chunk_embedding_namespace,
    make_key,
    query_embedding_namespace,
)
from codescout.cache.tiers import CacheEntry, CacheTier, DiskTier, MemoryTier

__all__ = [
    "SEARCH_NAMESPACE",
    "CacheEntry",
    "CacheLayer",
    "CacheTier",
    "DiskTier",
    "EmbeddingCache",
    "MemoryTier",
    "PendingWrites",
    "chunk_embedding_namespace",
    "make_key",
    "query_embedding_namespace",
]
