"""Dense vector index over chunk embeddings.

Embeddings are persisted as float32 blobs in the ``embeddings`` table and
mirrored in memory as one L2-normalised matrix per model, rebuilt lazily
after writes. Cosine similarity then reduces to a matrix-vector product.

Readiness follows RequiresIndexing -> Indexing -> Ready. The index drops
back to RequiresIndexing when the embedding model changes or when more than
``stale_fraction_threshold`` of the tracked files have changed since they
were last embedded.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
import structlog

from codescout.core.errors import ConfigurationError, ResourceExhaustedError
from codescout.index.models import EmbeddingRecord, ReadinessState

if TYPE_CHECKING:
    from codescout.index._internal.db import BulkWriter, Database

log = structlog.get_logger()

_NORM_FLOOR = 1e-10

_FRESH_EMBEDDINGS = """
    SELECT e.chunk_id, e.vector FROM embeddings e
    JOIN chunks c ON c.id = e.chunk_id
    JOIN files f ON f.id = c.file_id AND f.content_hash = c.content_hash
    WHERE e.model_id = :model
"""


@dataclass(frozen=True, slots=True, eq=False)
class EmbeddingVector:
    """A vector tagged with the model that produced it."""

    model_id: str
    values: np.ndarray

    @property
    def dim(self) -> int:
        return int(self.values.shape[0])

    def to_bytes(self) -> bytes:
        return np.asarray(self.values, dtype=np.float32).tobytes()

    @classmethod
    def from_bytes(cls, model_id: str, blob: bytes) -> EmbeddingVector:
        return cls(model_id, np.frombuffer(blob, dtype=np.float32))


def _check_compatible(a: EmbeddingVector, b: EmbeddingVector) -> None:
    if a.model_id != b.model_id:
        raise ConfigurationError.model_mismatch(a.model_id, b.model_id)
    if a.dim != b.dim:
        raise ConfigurationError.invalid_value(
            "embedding.dim", b.dim, f"expected {a.dim} dimensions for {a.model_id}"
        )


def cosine_similarity(a: EmbeddingVector, b: EmbeddingVector) -> float:
    """dot(a, b) / (|a| * |b|). Zero vectors have similarity 0.

    Raises:
        ConfigurationError: Vectors come from different models.
    """
    _check_compatible(a, b)
    va = np.asarray(a.values, dtype=np.float64)
    vb = np.asarray(b.values, dtype=np.float64)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / denom, -1.0, 1.0))


def _normalize_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    return matrix / np.maximum(norms, _NORM_FLOOR)


class VectorIndex:
    """Cosine-similarity search over persisted chunk embeddings."""

    def __init__(
        self,
        db: Database,
        model_id: str,
        *,
        max_files: int = 5000,
        stale_fraction_threshold: float = 0.1,
    ) -> None:
        self._db = db
        self._model_id = model_id
        self.max_files = max_files
        self.stale_fraction_threshold = stale_fraction_threshold

        self._lock = threading.RLock()
        self._state = ReadinessState.REQUIRES_INDEXING
        self._stale_files: set[int] = set()
        self._file_count = 0

        # Lazily rebuilt mirror of the fresh embeddings for the current model
        self._ids: np.ndarray | None = None
        self._matrix: np.ndarray | None = None
        self._dirty = True

    @property
    def model_id(self) -> str:
        return self._model_id

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def load(self, file_count: int) -> ReadinessState:
        """Derive readiness from what is already on disk (startup)."""
        rows = self._db.fetch_all(
            "SELECT DISTINCT c.file_id FROM chunks c "
            "JOIN files f ON f.id = c.file_id AND f.content_hash = c.content_hash "
            "LEFT JOIN embeddings e ON e.chunk_id = c.id AND e.model_id = :model "
            "WHERE e.chunk_id IS NULL",
            {"model": self._model_id},
        )
        embedded = self._db.fetch_all(
            "SELECT COUNT(*) FROM embeddings WHERE model_id = :model", {"model": self._model_id}
        )
        with self._lock:
            self._file_count = file_count
            self._stale_files = {int(r[0]) for r in rows}
            has_any = int(embedded[0][0]) > 0
            self._state = (
                ReadinessState.READY
                if has_any and file_count <= self.max_files
                else ReadinessState.REQUIRES_INDEXING
            )
            self._dirty = True
        log.info(
            "vector_index.loaded",
            model=self._model_id,
            state=self._state.value,
            stale_files=len(self._stale_files),
        )
        return self.readiness_state()

    def readiness_state(self) -> ReadinessState:
        with self._lock:
            if self._state is ReadinessState.READY and self._over_stale_threshold():
                self._state = ReadinessState.REQUIRES_INDEXING
                log.info(
                    "vector_index.stale_threshold_exceeded",
                    stale_files=len(self._stale_files),
                    file_count=self._file_count,
                )
            return self._state

    def _over_stale_threshold(self) -> bool:
        if not self._stale_files:
            return False
        total = max(self._file_count, 1)
        return len(self._stale_files) / total > self.stale_fraction_threshold

    def check_bound(self, file_count: int) -> None:
        """Raise if a workspace of *file_count* files may not be embedded."""
        if file_count > self.max_files:
            raise ResourceExhaustedError.workspace_too_large(file_count, self.max_files)

    def begin_indexing(self, file_count: int) -> None:
        """Enter Indexing. Workspaces above ``max_files`` stay RequiresIndexing."""
        with self._lock:
            self._file_count = file_count
            try:
                self.check_bound(file_count)
            except ResourceExhaustedError:
                self._state = ReadinessState.REQUIRES_INDEXING
                raise
            self._state = ReadinessState.INDEXING

    def finish_indexing(self, *, success: bool = True) -> None:
        with self._lock:
            if self._state is not ReadinessState.INDEXING:
                return
            if success:
                self._stale_files.clear()
                self._state = ReadinessState.READY
            else:
                self._state = ReadinessState.REQUIRES_INDEXING

    def set_file_count(self, file_count: int) -> None:
        with self._lock:
            self._file_count = file_count

    def mark_fresh(self, file_id: int) -> None:
        with self._lock:
            self._stale_files.discard(file_id)

    def set_model(self, model_id: str) -> bool:
        """Switch the active model. Returns True if the model changed."""
        with self._lock:
            if model_id == self._model_id:
                return False
            log.info("vector_index.model_changed", old=self._model_id, new=model_id)
            self._model_id = model_id
            self._state = ReadinessState.REQUIRES_INDEXING
            self._dirty = True
            return True

    @property
    def stale_file_count(self) -> int:
        with self._lock:
            return len(self._stale_files)

    # ------------------------------------------------------------------
    # Writes (indexing pipeline only)
    # ------------------------------------------------------------------

    def upsert(self, chunk_id: int, embedding: EmbeddingVector) -> None:
        self.upsert_many([(chunk_id, embedding)])

    def upsert_many(self, items: Sequence[tuple[int, EmbeddingVector]]) -> int:
        with self._db.bulk_writer() as writer:
            return self.upsert_in(writer, items)

    def upsert_in(self, writer: BulkWriter, items: Sequence[tuple[int, EmbeddingVector]]) -> int:
        if not items:
            return 0
        now = time.time()
        records: list[dict[str, Any]] = []
        for chunk_id, embedding in items:
            if embedding.model_id != self._model_id:
                raise ConfigurationError.model_mismatch(self._model_id, embedding.model_id)
            records.append(
                {
                    "chunk_id": chunk_id,
                    "model_id": embedding.model_id,
                    "dim": embedding.dim,
                    "vector": embedding.to_bytes(),
                    "created_at": now,
                }
            )
        writer.upsert_many(
            EmbeddingRecord,
            records,
            conflict_columns=["chunk_id", "model_id"],
            update_columns=["dim", "vector", "created_at"],
        )
        with self._lock:
            self._dirty = True
        return len(records)

    def invalidate(self, file_id: int) -> int:
        """Drop every embedding derived from *file_id* and mark the file stale."""
        with self._db.bulk_writer() as writer:
            return self.invalidate_in(writer, file_id)

    def invalidate_in(self, writer: BulkWriter, file_id: int) -> int:
        removed = writer.delete_where(
            EmbeddingRecord,
            "chunk_id IN (SELECT id FROM chunks WHERE file_id = :fid)",
            {"fid": file_id},
        )
        with self._lock:
            self._stale_files.add(file_id)
            self._dirty = True
        return removed

    def forget(self, file_id: int) -> None:
        """Stop tracking a removed file."""
        with self._lock:
            self._stale_files.discard(file_id)

    def delete_chunks(self, chunk_ids: Iterable[int]) -> int:
        ids = list(chunk_ids)
        with self._db.bulk_writer() as writer:
            removed = writer.delete_in(EmbeddingRecord, "chunk_id", ids)
        with self._lock:
            self._dirty = True
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def missing_chunk_ids(self, chunk_ids: Sequence[int]) -> list[int]:
        """Subset of *chunk_ids* with no embedding for the current model."""
        present = {
            int(r[0])
            for r in self._db.fetch_in(
                "SELECT chunk_id FROM embeddings WHERE model_id = :model AND chunk_id IN :values",
                list(chunk_ids),
                {"model": self._model_id},
            )
        }
        return [c for c in chunk_ids if c not in present]

    def embedded_count(self) -> int:
        rows = self._db.fetch_all(
            "SELECT COUNT(*) FROM embeddings WHERE model_id = :model", {"model": self._model_id}
        )
        return int(rows[0][0])

    def _snapshot(self) -> tuple[np.ndarray | None, np.ndarray | None]:
        with self._lock:
            if not self._dirty:
                return self._ids, self._matrix
            model = self._model_id
        rows = self._db.fetch_all(_FRESH_EMBEDDINGS, {"model": model})
        if rows:
            ids = np.array([int(r[0]) for r in rows], dtype=np.int64)
            matrix = _normalize_rows(
                np.vstack([np.frombuffer(r[1], dtype=np.float32) for r in rows])
            )
        else:
            ids, matrix = None, None
        with self._lock:
            if model == self._model_id:
                self._ids, self._matrix = ids, matrix
                self._dirty = False
        return ids, matrix

    def _query_vector(self, query: EmbeddingVector, dim: int) -> np.ndarray:
        if query.model_id != self._model_id:
            raise ConfigurationError.model_mismatch(self._model_id, query.model_id)
        if query.dim != dim:
            raise ConfigurationError.invalid_value(
                "embedding.dim", query.dim, f"index holds {dim}-dimensional vectors"
            )
        q = np.asarray(query.values, dtype=np.float32)
        return q / max(float(np.linalg.norm(q)), _NORM_FLOOR)

    def search(
        self,
        query: EmbeddingVector,
        k: int,
        candidates: Iterable[int] | None = None,
    ) -> list[tuple[int, float]]:
        """Top-*k* chunks by cosine similarity to *query*.

        Returns:
            [(chunk_id, similarity), ...] sorted descending, ties by chunk id.
        """
        if k <= 0:
            return []
        if query.model_id != self._model_id:
            raise ConfigurationError.model_mismatch(self._model_id, query.model_id)
        ids, matrix = self._snapshot()
        if ids is None or matrix is None:
            return []
        q = self._query_vector(query, matrix.shape[1])

        if candidates is not None:
            wanted = np.fromiter(candidates, dtype=np.int64)
            mask = np.isin(ids, wanted)
            ids, matrix = ids[mask], matrix[mask]
            if ids.size == 0:
                return []

        scores = matrix @ q
        k = min(k, scores.shape[0])
        top = np.argpartition(scores, -k)[-k:]
        ranked = [(int(ids[i]), float(scores[i])) for i in top]
        ranked.sort(key=lambda x: (-x[1], x[0]))
        return ranked

    def similarities(self, query: EmbeddingVector, chunk_ids: Iterable[int]) -> dict[int, float]:
        """Similarity of *query* to each listed chunk that has an embedding."""
        wanted = list(chunk_ids)
        if not wanted:
            return {}
        return dict(self.search(query, len(wanted), candidates=wanted))
