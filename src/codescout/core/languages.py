"""Canonical language definitions.

Maps file extensions and exact file names to a language name. A file whose
language is known is treated as text; unknown files go through binary
sniffing before they are indexed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PurePath


@dataclass(frozen=True, slots=True)
class Language:
    """Canonical definition for a language name.

    Attributes:
        name: Unique identifier (lowercase, e.g., "python", "javascript")
        extensions: File extensions including dot (e.g., ".py", ".js")
        filenames: Special filenames to detect (lowercase, EXACT match only)
    """

    name: str
    extensions: frozenset[str]
    filenames: frozenset[str] = field(default_factory=frozenset)


ALL_LANGUAGES: tuple[Language, ...] = (
    Language("python", frozenset({".py", ".pyi", ".pyx"})),
    Language(
        "javascript",
        frozenset({".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx", ".mts", ".cts", ".vue", ".svelte"}),
    ),
    Language("go", frozenset({".go"}), frozenset({"go.mod", "go.sum"})),
    Language("rust", frozenset({".rs"})),
    Language("java", frozenset({".java"})),
    Language("kotlin", frozenset({".kt", ".kts"})),
    Language("scala", frozenset({".scala", ".sc"})),
    Language("csharp", frozenset({".cs", ".csx"})),
    Language("fsharp", frozenset({".fs", ".fsi", ".fsx"})),
    Language("c_cpp", frozenset({".c", ".h", ".cc", ".cpp", ".cxx", ".hpp", ".hh", ".hxx"})),
    Language("objc", frozenset({".m", ".mm"})),
    Language("swift", frozenset({".swift"})),
    Language("ruby", frozenset({".rb", ".rake", ".gemspec"}), frozenset({"gemfile", "rakefile"})),
    Language("php", frozenset({".php"})),
    Language("elixir", frozenset({".ex", ".exs", ".erl", ".hrl"})),
    Language("haskell", frozenset({".hs", ".lhs"})),
    Language("ocaml", frozenset({".ml", ".mli"})),
    Language("clojure", frozenset({".clj", ".cljs", ".cljc", ".edn"})),
    Language("lua", frozenset({".lua"})),
    Language("perl", frozenset({".pl", ".pm"})),
    Language("r", frozenset({".r"})),
    Language("julia", frozenset({".jl"})),
    Language("dart", frozenset({".dart"})),
    Language("zig", frozenset({".zig"})),
    Language(
        "shell",
        frozenset({".sh", ".bash", ".zsh", ".fish", ".ps1"}),
        frozenset({".bashrc", ".zshrc"}),
    ),
    Language("sql", frozenset({".sql"})),
    Language("html", frozenset({".html", ".htm", ".xhtml"})),
    Language("css", frozenset({".css", ".scss", ".sass", ".less"})),
    Language("markdown", frozenset({".md", ".markdown", ".rst", ".txt", ".adoc"})),
    Language("json_yaml", frozenset({".json", ".jsonc", ".yaml", ".yml"})),
    Language("config", frozenset({".toml", ".ini", ".cfg", ".conf", ".properties", ".env"})),
    Language("xml", frozenset({".xml", ".xsd", ".svg", ".plist"})),
    Language("terraform", frozenset({".tf", ".tfvars", ".hcl"})),
    Language("protobuf", frozenset({".proto"})),
    Language("graphql", frozenset({".graphql", ".gql"})),
    Language("docker", frozenset(), frozenset({"dockerfile", "containerfile"})),
    Language("make", frozenset({".mk"}), frozenset({"makefile", "gnumakefile", "cmakelists.txt"})),
)


def _build_extension_map() -> dict[str, str]:
    result: dict[str, str] = {}
    for lang in ALL_LANGUAGES:
        for ext in lang.extensions:
            result.setdefault(ext, lang.name)
    return result


def _build_filename_map() -> dict[str, str]:
    result: dict[str, str] = {}
    for lang in ALL_LANGUAGES:
        for name in lang.filenames:
            result.setdefault(name, lang.name)
    return result


EXTENSION_TO_LANGUAGE: dict[str, str] = _build_extension_map()
FILENAME_TO_LANGUAGE: dict[str, str] = _build_filename_map()


def detect_language(path: str | PurePath) -> str | None:
    """Detect language name from path. Exact file name wins over extension."""
    p = PurePath(path)
    name = p.name.lower()
    if name in FILENAME_TO_LANGUAGE:
        return FILENAME_TO_LANGUAGE[name]
    return EXTENSION_TO_LANGUAGE.get(p.suffix.lower())


def is_known_text_file(path: str | PurePath) -> bool:
    return detect_language(path) is not None
