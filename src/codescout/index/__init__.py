"""Index module - chunk storage, lexical and vector indexes.

This module provides:
- File discovery with content hashing and a change feed
- Token-bounded chunking with content-hash lineage
- Lexical TF-IDF postings and persisted embeddings with cosine search
- IndexStateStore: versioned snapshots of remote/local readiness

The indexing pipeline lives in `codescout.index.pipeline`.
Internal implementations are in `codescout.index._internal/`.
"""

from codescout.index.models import (
    Chunk,
    ChunkKey,
    ChunkRecord,
    EmbeddingRecord,
    FileChange,
    FileChangeKind,
    FileRecord,
    IndexStats,
    ReadinessState,
)
from codescout.index.state import (
    IndexState,
    IndexStateStore,
    LocalIndexState,
    RemoteIndexState,
    RemoteStatus,
)

__all__ = [
    "Chunk",
    "ChunkKey",
    "ChunkRecord",
    "EmbeddingRecord",
    "FileChange",
    "FileChangeKind",
    "FileRecord",
    "IndexState",
    "IndexStateStore",
    "IndexStats",
    "LocalIndexState",
    "ReadinessState",
    "RemoteIndexState",
    "RemoteStatus",
]
