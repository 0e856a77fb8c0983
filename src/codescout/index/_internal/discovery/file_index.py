"""Workspace file index: discovery, content hashing and change detection.

The ``files`` table is owned here. ``scan()`` reconciles the whole workspace;
``refresh_path()`` reconciles one path without walking anything else. Every
detected change is written first and then published on the change feed, so
a subscriber that reacts to an event always sees the new row.
"""

from __future__ import annotations

import hashlib
import os
import time
from collections.abc import Iterator
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from sqlmodel import select

from codescout.core.languages import detect_language
from codescout.index._internal.discovery.changes import ChangeFeed
from codescout.index._internal.discovery.filters import FilterDecision, PathFilter
from codescout.index.models import FileChange, FileChangeKind, FileRecord

if TYPE_CHECKING:
    from codescout.index._internal.db import Database

logger = structlog.get_logger()

_HASH_BLOCK = 1 << 16


def hash_file(path: Path) -> str:
    """sha256 of the file's bytes."""
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for block in iter(lambda: f.read(_HASH_BLOCK), b""):
            digest.update(block)
    return digest.hexdigest()


class FileIndex:
    """Tracks indexable files and publishes their changes."""

    def __init__(
        self,
        db: Database,
        path_filter: PathFilter,
        feed: ChangeFeed | None = None,
    ) -> None:
        self._db = db
        self._filter = path_filter
        self.feed = feed or ChangeFeed()

    @property
    def roots(self) -> list[Path]:
        return list(self._filter.roots)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def should_index(self, location: str | Path) -> bool:
        return self._filter.should_index(location)

    def check(self, location: str | Path) -> FilterDecision:
        return self._filter.check(location)

    def is_known(self, location: str | Path) -> bool:
        """True if the files table already tracks *location*."""
        return self.get(str(location)) is not None

    def files(self) -> list[FileRecord]:
        with self._db.session() as session:
            return list(session.exec(select(FileRecord).order_by(FileRecord.path)).all())

    def get(self, path: str | Path) -> FileRecord | None:
        with self._db.session() as session:
            return session.exec(select(FileRecord).where(FileRecord.path == str(path))).first()

    def get_by_id(self, file_id: int) -> FileRecord | None:
        with self._db.session() as session:
            return session.get(FileRecord, file_id)

    def file_count(self) -> int:
        rows = self._db.fetch_all("SELECT COUNT(*) FROM files")
        return int(rows[0][0])

    def unindexed_count(self) -> int:
        """Files whose current content has not been chunked yet."""
        rows = self._db.fetch_all("SELECT COUNT(*) FROM files WHERE indexed_at IS NULL")
        return int(rows[0][0])

    def unindexed(self) -> list[FileRecord]:
        with self._db.session() as session:
            unindexed = FileRecord.indexed_at.is_(None)  # type: ignore[union-attr]
            stmt = select(FileRecord).where(unindexed)
            return list(session.exec(stmt.order_by(FileRecord.path)).all())

    def walk(self) -> Iterator[Path]:
        """Yield candidate file paths under every root, pruning excluded folders."""
        for root in self._filter.roots:
            for dirpath, dirnames, filenames in os.walk(root):
                dirnames[:] = [d for d in dirnames if not self._filter.should_prune_dir(d)]
                for name in filenames:
                    yield Path(dirpath) / name

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def scan(self) -> list[FileChange]:
        """Reconcile the whole workspace against the files table."""
        start = time.monotonic()
        known = {r.path: r for r in self.files()}
        seen: set[str] = set()
        changes: list[FileChange] = []

        for path in self.walk():
            try:
                stat = path.stat()
            except OSError:
                continue
            decision = self._filter.check(path, size=stat.st_size)
            if not decision.accepted:
                continue
            key = str(path)
            seen.add(key)
            existing = known.get(key)
            if (
                existing is not None
                and existing.size == stat.st_size
                and existing.last_modified == stat.st_mtime
            ):
                continue
            change = self._reconcile(path, existing, stat.st_size, stat.st_mtime)
            if change is not None:
                changes.append(change)

        for key, record in known.items():
            if key not in seen:
                changes.append(self._remove(record))

        logger.info(
            "file_index.scan",
            changes=len(changes),
            files=len(seen),
            elapsed_ms=round((time.monotonic() - start) * 1000, 1),
        )
        for change in changes:
            self.feed.publish(change)
        return changes

    def refresh_path(self, location: str | Path) -> FileChange | None:
        """Reconcile a single path. Returns the change, or None if nothing changed."""
        decision = self._filter.check(location)
        path = decision.path
        key = str(path) if path is not None else str(location)
        existing = self.get(key)

        if not decision.accepted:
            if existing is None:
                return None
            change = self._remove(existing)
        else:
            assert path is not None
            try:
                stat = path.stat()
            except OSError:
                if existing is None:
                    return None
                change = self._remove(existing)
            else:
                reconciled = self._reconcile(path, existing, stat.st_size, stat.st_mtime)
                if reconciled is None:
                    return None
                change = reconciled

        self.feed.publish(change)
        return change

    def _reconcile(
        self,
        path: Path,
        existing: FileRecord | None,
        size: int,
        mtime: float,
    ) -> FileChange | None:
        try:
            content_hash = hash_file(path)
        except OSError as e:
            logger.warning("file_index.hash_failed", path=str(path), error=str(e))
            return None

        if existing is not None and existing.content_hash == content_hash:
            # Touched but unchanged: refresh stat fields only
            with self._db.bulk_writer() as writer:
                writer.update_where(
                    FileRecord,
                    {"size": size, "last_modified": mtime},
                    "id = :fid",
                    {"fid": existing.id},
                )
            return None

        with self._db.bulk_writer() as writer:
            if existing is None:
                file_id = writer.insert_returning_id(
                    FileRecord,
                    {
                        "path": str(path),
                        "content_hash": content_hash,
                        "size": size,
                        "language": detect_language(path),
                        "last_modified": mtime,
                        "indexed_at": None,
                    },
                )
                return FileChange(FileChangeKind.ADDED, path, file_id, content_hash)

            writer.update_where(
                FileRecord,
                {
                    "content_hash": content_hash,
                    "size": size,
                    "last_modified": mtime,
                    "indexed_at": None,
                },
                "id = :fid",
                {"fid": existing.id},
            )
        return FileChange(
            FileChangeKind.MODIFIED,
            path,
            existing.id,
            content_hash,
            previous_hash=existing.content_hash,
        )

    def _remove(self, record: FileRecord) -> FileChange:
        with self._db.bulk_writer() as writer:
            writer.delete_where(FileRecord, "id = :fid", {"fid": record.id})
        return FileChange(
            FileChangeKind.REMOVED,
            Path(record.path),
            record.id,
            None,
            previous_hash=record.content_hash,
        )

