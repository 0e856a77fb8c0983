"""File watching and background re-indexing."""

from codescout.daemon.indexer import BackgroundIndexer, IndexerState, IndexerStatus
from codescout.daemon.watcher import FileWatcher, PathDebouncer

__all__ = [
    "BackgroundIndexer",
    "FileWatcher",
    "IndexerState",
    "IndexerStatus",
    "PathDebouncer",
]
