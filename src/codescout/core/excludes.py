"""Canonical exclusion sets for workspace file discovery.

Three fixed sets, checked in this order by the file index:

EXCLUDED_DIRS: any path component matching one of these is never indexed.
    - VCS internals and the CodeScout data directory
    - Dependencies, caches, build outputs
EXCLUDED_FILENAMES: exact file names (lockfiles, OS metadata).
EXCLUDED_EXTENSIONS: binary, media, archive and build-artifact suffixes.
"""

from __future__ import annotations

from pathlib import PurePath

# =============================================================================
# Directories
# =============================================================================

HARDCODED_DIRS: frozenset[str] = frozenset(
    (
        # VCS internals
        ".git",
        ".svn",
        ".hg",
        ".bzr",
        # CodeScout data
        ".codescout",
    )
)

DEFAULT_PRUNABLE_DIRS: frozenset[str] = frozenset(
    (
        # JavaScript/Node.js
        "node_modules",
        ".npm",
        ".yarn",
        ".pnpm-store",
        "bower_components",
        ".next",
        ".nuxt",
        ".turbo",
        # Python
        "venv",
        ".venv",
        ".virtualenv",
        "virtualenv",
        "__pycache__",
        ".pytest_cache",
        ".mypy_cache",
        ".ruff_cache",
        ".tox",
        ".nox",
        ".eggs",
        "site-packages",
        ".ipynb_checkpoints",
        ".hypothesis",
        "htmlcov",
        # Ruby
        ".bundle",
        # Rust
        "target",
        # Elixir/Erlang
        "_build",
        "deps",
        # Haskell
        ".stack-work",
        # JVM
        ".gradle",
        ".m2",
        # .NET
        "bin",
        "obj",
        # Dart/Flutter
        ".dart_tool",
        # iOS/macOS
        "pods",
        "deriveddata",
        # Infrastructure
        ".terraform",
        # Generic build/output directories
        "dist",
        "build",
        "out",
        "coverage",
        ".nyc_output",
        # IDE/Editor directories
        ".idea",
        ".vscode",
        ".vs",
        # Misc caches
        ".cache",
        "vendor",
    )
)

EXCLUDED_DIRS: frozenset[str] = HARDCODED_DIRS | DEFAULT_PRUNABLE_DIRS

# =============================================================================
# File names
# =============================================================================

EXCLUDED_FILENAMES: frozenset[str] = frozenset(
    (
        # Lockfiles
        "package-lock.json",
        "yarn.lock",
        "pnpm-lock.yaml",
        "bun.lockb",
        "poetry.lock",
        "pipfile.lock",
        "uv.lock",
        "cargo.lock",
        "gemfile.lock",
        "composer.lock",
        "podfile.lock",
        "mix.lock",
        "packages.lock.json",
        "pubspec.lock",
        "flake.lock",
        # OS metadata
        ".ds_store",
        "thumbs.db",
        "desktop.ini",
        "ehthumbs.db",
        ".directory",
    )
)

# =============================================================================
# Extensions
# =============================================================================

EXCLUDED_EXTENSIONS: frozenset[str] = frozenset(
    (
        # Compiled objects and bytecode
        ".pyc",
        ".pyo",
        ".pyd",
        ".class",
        ".o",
        ".obj",
        ".a",
        ".lib",
        ".so",
        ".dylib",
        ".dll",
        ".exe",
        ".beam",
        ".hi",
        ".cmo",
        ".cmi",
        ".cmx",
        ".dill",
        ".wasm",
        ".pdb",
        ".ilk",
        # Archives
        ".zip",
        ".tar",
        ".gz",
        ".tgz",
        ".bz2",
        ".xz",
        ".7z",
        ".rar",
        ".jar",
        ".war",
        ".ear",
        ".whl",
        ".egg",
        ".nupkg",
        ".deb",
        ".rpm",
        ".dmg",
        ".iso",
        # Images
        ".png",
        ".jpg",
        ".jpeg",
        ".gif",
        ".bmp",
        ".ico",
        ".icns",
        ".tif",
        ".tiff",
        ".webp",
        ".psd",
        ".heic",
        # Audio/video
        ".mp3",
        ".wav",
        ".ogg",
        ".flac",
        ".aac",
        ".mp4",
        ".mov",
        ".avi",
        ".mkv",
        ".webm",
        # Fonts
        ".ttf",
        ".otf",
        ".woff",
        ".woff2",
        ".eot",
        # Documents and data blobs
        ".pdf",
        ".doc",
        ".docx",
        ".xls",
        ".xlsx",
        ".ppt",
        ".pptx",
        ".db",
        ".sqlite",
        ".sqlite3",
        ".npz",
        ".npy",
        ".pkl",
        ".parquet",
        ".onnx",
        ".pt",
        ".bin",
        # Generated web artifacts
        ".map",
        ".min.js",
        ".min.css",
        # Logs and swap files
        ".log",
        ".swp",
        ".swo",
        ".tmp",
    )
)


def is_excluded_dir(dirname: str) -> bool:
    """Check if a directory name is in the exclusion set (case-insensitive)."""
    return dirname in EXCLUDED_DIRS or dirname.lower() in EXCLUDED_DIRS


def is_excluded_filename(filename: str) -> bool:
    return filename.lower() in EXCLUDED_FILENAMES


def excluded_extension(path: str | PurePath, extra: frozenset[str] = frozenset()) -> str | None:
    """Return the matching excluded suffix for *path*, or None.

    Compound suffixes such as ``.min.js`` are checked before the plain suffix.
    """
    name = PurePath(path).name.lower()
    suffixes = PurePath(name).suffixes
    for i in range(len(suffixes)):
        candidate = "".join(suffixes[i:])
        if candidate in EXCLUDED_EXTENSIONS or candidate in extra:
            return candidate
    return None
