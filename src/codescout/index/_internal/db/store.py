"""Chunk persistence.

Chunks are written per file: a re-index deletes every row for the file and
inserts the new set in one transaction. Reads join back to ``files`` and only
return chunks whose content hash matches the file's current hash, so a chunk
from an older revision is invisible the moment the file index records the
new hash, before the pipeline has cleaned it up.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from codescout.index.models import Chunk, ChunkRecord

if TYPE_CHECKING:
    from codescout.index._internal.db.database import BulkWriter, Database

_FRESH_CHUNK_COLUMNS = """
    c.id, c.file_id, f.path, c.content_hash, c.chunk_index, c.text, c.raw_text,
    c.start_line, c.end_line, c.token_count, c.is_full_file
"""

_FRESH_JOIN = "FROM chunks c JOIN files f ON f.id = c.file_id AND f.content_hash = c.content_hash"


def _row_to_chunk(row: Any) -> Chunk:
    return Chunk(
        chunk_id=row[0],
        file_id=row[1],
        path=row[2],
        content_hash=row[3],
        index=row[4],
        text=row[5],
        raw_text=row[6],
        start_line=row[7],
        end_line=row[8],
        token_count=row[9],
        is_full_file=bool(row[10]),
    )


class ChunkStore:
    """Reads and writes the ``chunks`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def replace_file_chunks(self, file_id: int, chunks: Iterable[Chunk]) -> list[Chunk]:
        """Replace every chunk of *file_id*, returning the new chunks with ids."""
        with self._db.bulk_writer() as writer:
            return self.replace_in(writer, file_id, chunks)

    def replace_in(self, writer: BulkWriter, file_id: int, chunks: Iterable[Chunk]) -> list[Chunk]:
        writer.delete_where(ChunkRecord, "file_id = :fid", {"fid": file_id})
        stored: list[Chunk] = []
        for chunk in chunks:
            chunk_id = writer.insert_returning_id(
                ChunkRecord,
                {
                    "file_id": chunk.file_id,
                    "content_hash": chunk.content_hash,
                    "chunk_index": chunk.index,
                    "text": chunk.text,
                    "raw_text": chunk.raw_text,
                    "start_line": chunk.start_line,
                    "end_line": chunk.end_line,
                    "token_count": chunk.token_count,
                    "is_full_file": chunk.is_full_file,
                },
            )
            stored.append(replace(chunk, chunk_id=chunk_id))
        return stored

    def chunk_ids_for_file(self, file_id: int) -> list[int]:
        rows = self._db.fetch_all("SELECT id FROM chunks WHERE file_id = :fid", {"fid": file_id})
        return [int(r[0]) for r in rows]

    def get_chunks(self, chunk_ids: Sequence[int]) -> dict[int, Chunk]:
        """Fetch fresh chunks by id. Stale or missing ids are absent from the result."""
        rows = self._db.fetch_in(
            f"SELECT {_FRESH_CHUNK_COLUMNS} {_FRESH_JOIN} WHERE c.id IN :values",
            list(chunk_ids),
        )
        return {int(r[0]): _row_to_chunk(r) for r in rows}

    def chunks_for_file(self, file_id: int) -> list[Chunk]:
        rows = self._db.fetch_all(
            f"SELECT {_FRESH_CHUNK_COLUMNS} {_FRESH_JOIN} WHERE c.file_id = :fid "
            "ORDER BY c.chunk_index",
            {"fid": file_id},
        )
        return [_row_to_chunk(r) for r in rows]

    def all_chunks(self) -> list[Chunk]:
        """Every fresh chunk, ordered by path then chunk index."""
        rows = self._db.fetch_all(
            f"SELECT {_FRESH_CHUNK_COLUMNS} {_FRESH_JOIN} ORDER BY f.path, c.chunk_index"
        )
        return [_row_to_chunk(r) for r in rows]

    def fresh_stats(self) -> tuple[int, int]:
        """(file count with fresh chunks, total fresh tokens)."""
        rows = self._db.fetch_all(
            f"SELECT COUNT(DISTINCT c.file_id), COALESCE(SUM(c.token_count), 0) {_FRESH_JOIN}"
        )
        return int(rows[0][0]), int(rows[0][1])

    def orphan_chunk_ids(self) -> list[int]:
        """Chunks whose file is gone or whose hash no longer matches."""
        rows = self._db.fetch_all(
            "SELECT c.id FROM chunks c LEFT JOIN files f ON f.id = c.file_id "
            "WHERE f.id IS NULL OR f.content_hash != c.content_hash"
        )
        return [int(r[0]) for r in rows]
