"""Ordered, short-circuiting path filter for workspace discovery.

Checks run cheapest first and stop at the first rejection:

1. location: non-``file`` URI scheme, or outside every workspace root
2. folder: any directory component in EXCLUDED_DIRS
3. file name: lockfiles and OS metadata
4. extension: binary, media, archive and build-artifact suffixes
5. size: above the configured ceiling
6. content: unknown extensions only, sniff a prefix for binary data
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from urllib.parse import unquote, urlparse

from codescout.core.excludes import excluded_extension, is_excluded_dir, is_excluded_filename
from codescout.core.languages import is_known_text_file

# Bytes that appear in text files: printable ASCII, common whitespace,
# backspace, form feed, escape, and everything >= 0x80 (UTF-8 sequences).
_TEXT_BYTES = bytes({7, 8, 9, 10, 12, 13, 27} | set(range(0x20, 0x100)) - {0x7F})
BINARY_DENSITY_THRESHOLD = 0.30


class RejectReason(str, Enum):
    OUTSIDE_WORKSPACE = "outside_workspace"
    EXCLUDED_DIR = "excluded_dir"
    EXCLUDED_NAME = "excluded_name"
    EXCLUDED_EXTENSION = "excluded_extension"
    TOO_LARGE = "too_large"
    BINARY = "binary"
    UNREADABLE = "unreadable"


@dataclass(frozen=True, slots=True)
class FilterDecision:
    accepted: bool
    reason: RejectReason | None = None
    path: Path | None = None

    def __bool__(self) -> bool:
        return self.accepted


def is_binary_content(prefix: bytes) -> bool:
    """Classify a content prefix: null bytes or dense control characters mean binary."""
    if not prefix:
        return False
    if b"\x00" in prefix:
        return True
    nontext = len(prefix.translate(None, _TEXT_BYTES))
    return nontext / len(prefix) > BINARY_DENSITY_THRESHOLD


def to_local_path(location: str | Path) -> Path | None:
    """Resolve a path or ``file://`` URI. Other schemes return None."""
    if isinstance(location, Path):
        return location
    if "://" in location or location.startswith(("untitled:", "vscode-")):
        parsed = urlparse(location)
        if parsed.scheme != "file":
            return None
        return Path(unquote(parsed.path))
    return Path(location)


class PathFilter:
    """Decides which files the index may contain."""

    def __init__(
        self,
        roots: Sequence[Path],
        *,
        max_file_size: int,
        sniff_bytes: int = 8192,
        extra_excluded_extensions: frozenset[str] = frozenset(),
    ) -> None:
        self.roots = [r.resolve() for r in roots]
        self.max_file_size = max_file_size
        self.sniff_bytes = sniff_bytes
        self.extra_excluded_extensions = extra_excluded_extensions

    def root_for(self, path: Path) -> Path | None:
        for root in self.roots:
            if path == root or path.is_relative_to(root):
                return root
        return None

    def should_prune_dir(self, dirname: str) -> bool:
        return is_excluded_dir(dirname)

    def check(self, location: str | Path, *, size: int | None = None) -> FilterDecision:
        """Run every filter in order. ``size`` skips a stat when the caller has one."""
        path = to_local_path(location)
        if path is None:
            return FilterDecision(False, RejectReason.OUTSIDE_WORKSPACE)
        path = path.absolute()
        root = self.root_for(path)
        if root is None:
            # Symlinked roots: compare the resolved form too
            path = path.resolve()
            root = self.root_for(path)
            if root is None:
                return FilterDecision(False, RejectReason.OUTSIDE_WORKSPACE, path)

        rel = path.relative_to(root)
        if any(is_excluded_dir(part) for part in rel.parts[:-1]):
            return FilterDecision(False, RejectReason.EXCLUDED_DIR, path)

        if is_excluded_filename(path.name):
            return FilterDecision(False, RejectReason.EXCLUDED_NAME, path)

        if excluded_extension(path, self.extra_excluded_extensions) is not None:
            return FilterDecision(False, RejectReason.EXCLUDED_EXTENSION, path)

        if size is None:
            try:
                size = path.stat().st_size
            except OSError:
                return FilterDecision(False, RejectReason.UNREADABLE, path)
        if size > self.max_file_size:
            return FilterDecision(False, RejectReason.TOO_LARGE, path)

        if not is_known_text_file(path):
            try:
                with path.open("rb") as f:
                    prefix = f.read(self.sniff_bytes)
            except OSError:
                return FilterDecision(False, RejectReason.UNREADABLE, path)
            if is_binary_content(prefix):
                return FilterDecision(False, RejectReason.BINARY, path)

        return FilterDecision(True, None, path)

    def should_index(self, location: str | Path) -> bool:
        return self.check(location).accepted
