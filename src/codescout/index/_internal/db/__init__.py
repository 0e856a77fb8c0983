"""Database layer for the index."""

from codescout.index._internal.db.database import BulkWriter, Database, batched
from codescout.index._internal.db.store import ChunkStore

__all__ = [
    "Database",
    "BulkWriter",
    "ChunkStore",
    "batched",
]
