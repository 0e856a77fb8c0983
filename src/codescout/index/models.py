"""SQLModel tables and value types for the chunk index.

Single source of truth for the persisted layout (one SQLite file):

- files          FileRecord, owned by the file index
- chunks         ChunkRecord, derived from a file at one content hash
- embeddings     EmbeddingRecord, one row per (chunk, model)
- lexical_docs   one row per lexically indexed chunk (N in TF-IDF)
- postings       (term, chunk) term frequencies
- term_stats     per-term document frequency
- cache_entries  key-value cache with explicit expiry

Every derived row carries the content hash lineage of its file. Readers join
back to ``files.content_hash`` so stale rows are never served.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import NamedTuple

from sqlalchemy import Column, LargeBinary, UniqueConstraint
from sqlmodel import Field, SQLModel

# ============================================================================
# ENUMS
# ============================================================================


class ReadinessState(str, Enum):
    """Lifecycle stage of a derived index."""

    REQUIRES_INDEXING = "requires_indexing"
    INDEXING = "indexing"
    READY = "ready"


class FileChangeKind(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


# ============================================================================
# TABLES
# ============================================================================


class FileRecord(SQLModel, table=True):
    """Indexable file in the workspace."""

    __tablename__ = "files"

    id: int | None = Field(default=None, primary_key=True)
    path: str = Field(unique=True, index=True)
    content_hash: str
    size: int
    language: str | None = None
    last_modified: float
    indexed_at: float | None = None


class ChunkRecord(SQLModel, table=True):
    """Persisted chunk. Identified by (file_id, content_hash, chunk_index)."""

    __tablename__ = "chunks"
    __table_args__ = (UniqueConstraint("file_id", "content_hash", "chunk_index"),)

    id: int | None = Field(default=None, primary_key=True)
    file_id: int = Field(index=True)
    content_hash: str
    chunk_index: int
    text: str
    raw_text: str
    start_line: int
    end_line: int
    token_count: int
    is_full_file: bool = False


class EmbeddingRecord(SQLModel, table=True):
    """Chunk embedding for one model, stored as a float32 blob."""

    __tablename__ = "embeddings"

    chunk_id: int = Field(primary_key=True)
    model_id: str = Field(primary_key=True, index=True)
    dim: int
    vector: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    created_at: float


class LexicalDoc(SQLModel, table=True):
    """One row per lexically indexed chunk."""

    __tablename__ = "lexical_docs"

    chunk_id: int = Field(primary_key=True)
    file_id: int = Field(index=True)
    term_count: int = 0


class Posting(SQLModel, table=True):
    """Term frequency of one term in one chunk."""

    __tablename__ = "postings"

    term: str = Field(primary_key=True)
    chunk_id: int = Field(primary_key=True, index=True)
    tf: int


class TermStat(SQLModel, table=True):
    """Number of indexed chunks containing a term."""

    __tablename__ = "term_stats"

    term: str = Field(primary_key=True)
    df: int


class CacheEntryRecord(SQLModel, table=True):
    """Disk cache tier row."""

    __tablename__ = "cache_entries"

    key: str = Field(primary_key=True)
    namespace: str = Field(index=True)
    file_id: int | None = Field(default=None, index=True)
    value: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    size_bytes: int
    expiry: float | None = Field(default=None, index=True)
    created_at: float


# ============================================================================
# VALUE TYPES
# ============================================================================


class ChunkKey(NamedTuple):
    file_id: int
    content_hash: str
    index: int


@dataclass(frozen=True, slots=True)
class Chunk:
    """Bounded slice of a file's text. Immutable; superseded, never edited.

    ``start_line`` and ``end_line`` are 0-based and inclusive.
    ``chunk_id`` is assigned once the chunk has been persisted.
    """

    file_id: int
    path: str
    content_hash: str
    index: int
    text: str
    raw_text: str
    start_line: int
    end_line: int
    token_count: int
    is_full_file: bool = False
    chunk_id: int | None = None

    @property
    def key(self) -> ChunkKey:
        return ChunkKey(self.file_id, self.content_hash, self.index)


@dataclass(frozen=True, slots=True)
class FileChange:
    """Change notification published by the file index."""

    kind: FileChangeKind
    path: Path
    file_id: int | None = None
    content_hash: str | None = None
    previous_hash: str | None = None


@dataclass
class IndexStats:
    """Statistics from an indexing run."""

    files_added: int = 0
    files_updated: int = 0
    files_removed: int = 0
    files_unchanged: int = 0
    chunks_indexed: int = 0
    embeddings_computed: int = 0
    duration_seconds: float = 0.0
    errors: list[str] = field(default_factory=list)

    def merge(self, other: "IndexStats") -> None:
        self.files_added += other.files_added
        self.files_updated += other.files_updated
        self.files_removed += other.files_removed
        self.files_unchanged += other.files_unchanged
        self.chunks_indexed += other.chunks_indexed
        self.embeddings_computed += other.embeddings_computed
        self.errors.extend(other.errors)
