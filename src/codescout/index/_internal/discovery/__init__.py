"""Workspace file discovery and change tracking."""

from codescout.index._internal.discovery.changes import ChangeFeed, ChangeSubscription
from codescout.index._internal.discovery.file_index import FileIndex, hash_file
from codescout.index._internal.discovery.filters import (
    FilterDecision,
    PathFilter,
    RejectReason,
    is_binary_content,
)

__all__ = [
    "ChangeFeed",
    "ChangeSubscription",
    "FileIndex",
    "FilterDecision",
    "PathFilter",
    "RejectReason",
    "hash_file",
    "is_binary_content",
]
