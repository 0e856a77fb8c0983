"""Token-bounded chunking of file text."""

from codescout.index._internal.chunking.chunker import (
    Chunker,
    ChunkSequence,
    ChunkSource,
)

__all__ = ["Chunker", "ChunkSequence", "ChunkSource"]
