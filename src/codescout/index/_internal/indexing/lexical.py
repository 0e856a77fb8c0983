"""TF-IDF lexical index stored in SQLite.

Scoring:
    score(chunk) = sum over query terms t present in chunk of tf(t, chunk) * ln(N / df(t))

N is the number of indexed chunks, df(t) the number of indexed chunks that
contain t. Only chunks sharing at least one query term are scored.

Maintenance is incremental: removing a file deletes its postings and
decrements df for exactly the terms those postings carried.
"""

from __future__ import annotations

import math
import time
from collections import defaultdict
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING

import structlog

from codescout.index._internal.indexing.terms import query_terms, term_frequencies
from codescout.index.models import Chunk, LexicalDoc, Posting, TermStat

if TYPE_CHECKING:
    from codescout.index._internal.db import BulkWriter, Database

log = structlog.get_logger()


class LexicalIndex:
    """Keyword search over chunk postings."""

    def __init__(self, db: Database) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def index(self, chunks: Iterable[Chunk]) -> int:
        """Add postings for persisted chunks. Re-indexing a chunk id replaces it."""
        with self._db.bulk_writer() as writer:
            return self.index_in(writer, chunks)

    def index_in(self, writer: BulkWriter, chunks: Iterable[Chunk]) -> int:
        batch = [c for c in chunks if c.chunk_id is not None]
        if not batch:
            return 0
        self._remove_chunk_ids(writer, [c.chunk_id for c in batch if c.chunk_id is not None])

        docs: list[dict[str, object]] = []
        postings: list[dict[str, object]] = []
        df_delta: dict[str, int] = defaultdict(int)
        for chunk in batch:
            tf = term_frequencies(chunk.text)
            docs.append(
                {"chunk_id": chunk.chunk_id, "file_id": chunk.file_id, "term_count": sum(tf.values())}
            )
            for term, count in tf.items():
                postings.append({"term": term, "chunk_id": chunk.chunk_id, "tf": count})
                df_delta[term] += 1

        writer.insert_many(LexicalDoc, docs)
        writer.insert_many(Posting, postings)
        writer.increment_many(TermStat, "term", "df", df_delta)
        return len(batch)

    def remove(self, file_id: int) -> int:
        """Drop every posting for *file_id*. Returns the number of chunks removed."""
        with self._db.bulk_writer() as writer:
            return self.remove_in(writer, file_id)

    def remove_in(self, writer: BulkWriter, file_id: int) -> int:
        rows = writer.fetch_all(
            "SELECT chunk_id FROM lexical_docs WHERE file_id = :fid", {"fid": file_id}
        )
        chunk_ids = [int(r[0]) for r in rows]
        self._remove_chunk_ids(writer, chunk_ids)
        return len(chunk_ids)

    def remove_chunks(self, chunk_ids: Sequence[int]) -> None:
        with self._db.bulk_writer() as writer:
            self._remove_chunk_ids(writer, chunk_ids)

    def _remove_chunk_ids(self, writer: BulkWriter, chunk_ids: Sequence[int]) -> None:
        if not chunk_ids:
            return
        df_delta: dict[str, int] = defaultdict(int)
        for start in range(0, len(chunk_ids), 500):
            batch = ",".join(str(int(c)) for c in chunk_ids[start : start + 500])
            for term, count in writer.fetch_all(
                f"SELECT term, COUNT(*) FROM postings WHERE chunk_id IN ({batch}) GROUP BY term"
            ):
                df_delta[term] -= int(count)
        writer.increment_many(TermStat, "term", "df", df_delta)
        writer.delete_where(TermStat, "df <= 0", {})
        writer.delete_in(Posting, "chunk_id", chunk_ids)
        writer.delete_in(LexicalDoc, "chunk_id", chunk_ids)

    def clear(self) -> None:
        with self._db.bulk_writer() as writer:
            for model in (Posting, TermStat, LexicalDoc):
                writer.delete_where(model, "1 = 1", {})

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def document_count(self) -> int:
        return int(self._db.fetch_all("SELECT COUNT(*) FROM lexical_docs")[0][0])

    def document_frequency(self, term: str) -> int:
        rows = self._db.fetch_all("SELECT df FROM term_stats WHERE term = :t", {"t": term})
        return int(rows[0][0]) if rows else 0

    @property
    def is_populated(self) -> bool:
        return bool(self._db.fetch_all("SELECT 1 FROM lexical_docs LIMIT 1"))

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, query: str | Sequence[str], k: int) -> list[tuple[int, float]]:
        """Rank chunks by TF-IDF over the query terms.

        Args:
            query: Raw query text, or pre-extracted terms.
            k: Maximum results.

        Returns:
            [(chunk_id, score), ...] sorted by score descending, ties by chunk id.
            Only chunks whose content hash matches their file's current hash.
        """
        terms = query_terms(query) if isinstance(query, str) else list(dict.fromkeys(query))
        if not terms or k <= 0:
            return []
        start = time.monotonic()

        n_docs = self.document_count()
        if n_docs == 0:
            return []

        df_rows = self._db.fetch_in(
            "SELECT term, df FROM term_stats WHERE term IN :values AND df > 0", terms
        )
        idf = {term: math.log(n_docs / df) for term, df in df_rows}
        if not idf:
            return []

        rows = self._db.fetch_in(
            "SELECT p.term, p.chunk_id, p.tf FROM postings p "
            "JOIN chunks c ON c.id = p.chunk_id "
            "JOIN files f ON f.id = c.file_id AND f.content_hash = c.content_hash "
            "WHERE p.term IN :values",
            list(idf),
        )
        scores: dict[int, float] = defaultdict(float)
        for term, chunk_id, tf in rows:
            scores[int(chunk_id)] += tf * idf[term]

        ranked = sorted(scores.items(), key=lambda x: (-x[1], x[0]))[:k]
        log.debug(
            "lexical.search",
            terms=len(terms),
            candidates=len(scores),
            elapsed_ms=round((time.monotonic() - start) * 1000, 1),
        )
        return ranked
