"""Pydantic configuration models with env var support.

Configuration Hierarchy (highest to lowest precedence):
1. Direct kwargs to load_config()
2. Environment variables (CODESCOUT__SECTION__KEY)
3. Workspace YAML (.codescout/config.yaml)
4. Global YAML (~/.config/codescout/config.yaml)
5. Built-in defaults (this file)

Environment Variable Format:
    CODESCOUT__<SECTION>__<KEY>=<VALUE>

Examples:
    CODESCOUT__LOGGING__LEVEL=DEBUG
    CODESCOUT__CHUNKING__MAX_TOKENS=400
    CODESCOUT__SEARCH__RERANK_RATIO=0.5
    CODESCOUT__EMBEDDING__BACKEND=http
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class LogOutputConfig(BaseModel):
    """Single logging output configuration.

    Env vars: Not directly configurable via env (use YAML for multi-output).
    """

    format: Literal["json", "console"] = "console"
    destination: str = "stderr"  # stderr, stdout, or absolute file path
    level: LogLevel | None = None  # Inherits from parent if None

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        if v in ("stderr", "stdout"):
            return v
        path = Path(v).expanduser()
        if not path.is_absolute():
            raise ValueError(f"File destination must be absolute path: {v}")
        return str(path)


class LoggingConfig(BaseModel):
    """Logging configuration.

    Env vars:
        CODESCOUT__LOGGING__LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    level: LogLevel = Field(
        default="INFO",
        description="Root log level. DEBUG is verbose and may impact performance.",
    )
    outputs: list[LogOutputConfig] = Field(default_factory=lambda: [LogOutputConfig()])


class IndexConfig(BaseModel):
    """File discovery configuration.

    Env vars:
        CODESCOUT__INDEX__MAX_FILE_SIZE_MB: Skip files larger than this
        CODESCOUT__INDEX__INDEX_PATH: Override index storage location
    """

    max_file_size_mb: float = Field(
        default=1.0,
        description="Skip files larger than this (MB). Large files are rarely useful context.",
    )
    extra_excluded_extensions: list[str] = Field(
        default_factory=list,
        description="Extensions excluded in addition to the built-in set (e.g. '.snap').",
    )
    binary_sniff_bytes: int = Field(
        default=8192,
        description="Prefix size read when classifying files with unknown extensions.",
    )
    index_path: str | None = Field(
        default=None,
        description="Override index storage location. Default: .codescout/ in the workspace.",
    )

    @field_validator("extra_excluded_extensions")
    @classmethod
    def normalize_extensions(cls, v: list[str]) -> list[str]:
        return [e.lower() if e.startswith(".") else f".{e.lower()}" for e in v]

    @property
    def max_file_size_bytes(self) -> int:
        return int(self.max_file_size_mb * 1024 * 1024)


class ChunkingConfig(BaseModel):
    """Chunk sizing.

    Env vars:
        CODESCOUT__CHUNKING__MAX_TOKENS: Token ceiling per chunk
        CODESCOUT__CHUNKING__REMOVE_EMPTY_LINES: Drop blank lines before chunking
    """

    max_tokens: int = Field(
        default=250,
        description="Maximum tokens per chunk. Lines longer than 4x this many characters "
        "are truncated.",
    )
    remove_empty_lines: bool = Field(
        default=True,
        description="Skip blank lines when accumulating chunks.",
    )

    @field_validator("max_tokens")
    @classmethod
    def validate_max_tokens(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"max_tokens must be positive, got {v}")
        return v


class EmbeddingConfig(BaseModel):
    """Embedding provider configuration.

    Env vars:
        CODESCOUT__EMBEDDING__BACKEND: fastembed (local ONNX) or http
        CODESCOUT__EMBEDDING__MODEL: Model identifier
        CODESCOUT__EMBEDDING__API_BASE: Base URL for the http backend
        CODESCOUT__EMBEDDING__API_KEY: Bearer token for the http backend
    """

    backend: Literal["fastembed", "http"] = Field(
        default="fastembed",
        description="fastembed runs locally; http calls an OpenAI-compatible /embeddings API.",
    )
    model: str = Field(
        default="BAAI/bge-small-en-v1.5",
        description="Model identifier. Changing it invalidates every stored embedding.",
    )
    api_base: str | None = Field(default=None, description="Base URL for the http backend.")
    api_key: str | None = Field(default=None, description="API key for the http backend.")
    batch_size: int = Field(default=64, description="Texts per embedding request.")
    timeout_sec: float = Field(default=30.0, description="Per-request timeout.")
    max_retries: int = Field(
        default=3,
        description="Retries on 429/5xx and transport errors before giving up.",
    )
    max_text_chars: int = Field(
        default=2000,
        description="Inputs are truncated to this many characters before embedding.",
    )


class SearchConfig(BaseModel):
    """Search orchestration.

    Env vars:
        CODESCOUT__SEARCH__RERANK_RATIO: Keep results scoring >= ratio x top score
        CODESCOUT__SEARCH__VECTOR_TIMEOUT_SEC: Vector strategy deadline
        CODESCOUT__SEARCH__REMOTE_TIMEOUT_SEC: Remote strategy deadline
        CODESCOUT__SEARCH__REMOTE_STATUS_TTL_SEC: Remote status refresh interval
        CODESCOUT__SEARCH__RACE_POLICY: prefer_primary or first_success

    ``race_policy`` defaults to ``prefer_primary``: a bounded strategy (Remote,
    Vector) that succeeds before its deadline is used even if its fallback
    branch finished earlier. Set ``first_success`` to take whichever branch
    resolves successfully first.
    """

    full_workspace_max_files: int = Field(
        default=100,
        description="Full inclusion is only considered for workspaces with at most this many "
        "files.",
    )
    rerank_ratio: float = Field(
        default=0.65,
        description="Results scoring below ratio x top similarity are dropped.",
    )
    remote_timeout_sec: float = Field(default=12.5, description="Remote index deadline.")
    remote_status_ttl_sec: float = Field(
        default=30.0,
        ge=0.0,
        description="Queries re-poll the remote index status once it is older than this.",
    )
    vector_timeout_sec: float = Field(default=8.0, description="Vector strategy deadline.")
    lexical_candidate_multiplier: int = Field(
        default=4,
        description="Hybrid search pulls max_results x this many lexical candidates.",
    )
    race_policy: Literal["prefer_primary", "first_success"] = Field(
        default="prefer_primary",
        description="prefer_primary waits for the bounded strategy until its deadline; "
        "first_success takes whichever branch succeeds first.",
    )
    default_max_results: int = Field(default=20, description="Result cap when sizing omits one.")

    @field_validator("rerank_ratio")
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        if not (0.0 < v <= 1.0):
            raise ValueError(f"rerank_ratio must be in (0, 1], got {v}")
        return v

    @field_validator("remote_timeout_sec", "vector_timeout_sec")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"timeout must be positive, got {v}")
        return v


class IndexerConfig(BaseModel):
    """Background indexer configuration.

    Env vars:
        CODESCOUT__INDEXER__DEBOUNCE_SEC: Per-path debounce window
        CODESCOUT__INDEXER__MAX_CONCURRENT_FILES: Parallel file-processing bound
        CODESCOUT__INDEXER__MAX_VECTOR_FILES: Largest workspace embedded automatically
    """

    debounce_sec: float = Field(
        default=0.5,
        description="Quiet time per path before a change is re-indexed.",
    )
    max_concurrent_files: int = Field(
        default=50,
        description="Files processed at once. Bounds memory during large re-indexes.",
    )
    max_vector_files: int = Field(
        default=5000,
        description="Workspaces with more files stay RequiresIndexing for vector search "
        "unless the bound is raised.",
    )
    stale_fraction_threshold: float = Field(
        default=0.1,
        description="Vector index falls back to RequiresIndexing once this fraction of "
        "files has unembedded changes.",
    )
    queue_max_size: int = Field(
        default=10000,
        description="Max queued change events. Excess events are dropped (logged).",
    )
    embed_batch_size: int = Field(default=64, description="Chunks embedded per provider call.")


class CacheConfig(BaseModel):
    """Cache layer configuration.

    Env vars:
        CODESCOUT__CACHE__MEMORY_MAX_ENTRIES: In-process entry cap
        CODESCOUT__CACHE__QUERY_TTL_SEC: Lifetime of cached query embeddings
        CODESCOUT__CACHE__PURGE_INTERVAL_SEC: Seconds between sweeps of expired entries
    """

    memory_max_entries: int = Field(default=20000, description="In-process LRU entry cap.")
    memory_max_bytes: int = Field(
        default=128 * 1024 * 1024,
        description="In-process LRU byte cap.",
    )
    query_ttl_sec: float = Field(default=3600.0, description="Query embedding lifetime.")
    disk_enabled: bool = Field(default=True, description="Persist entries in index.db.")
    purge_interval_sec: float = Field(
        default=600.0,
        gt=0.0,
        description="Seconds between sweeps that drop expired cache entries.",
    )


class DatabaseConfig(BaseModel):
    """Database connection configuration.

    Env vars:
        CODESCOUT__DATABASE__BUSY_TIMEOUT_MS: SQLite busy timeout
        CODESCOUT__DATABASE__MAX_RETRIES: Max retry attempts for locked DB
    """

    busy_timeout_ms: int = Field(
        default=30000,
        description="SQLite busy timeout (ms). How long to wait for locks.",
    )
    max_retries: int = Field(
        default=3,
        description="Max retry attempts for locked database errors.",
    )
    retry_base_delay_sec: float = Field(
        default=0.1,
        description="Base delay between retries (exponential backoff).",
    )


class CodeScoutConfig(BaseModel):
    """Root configuration for CodeScout.

    All settings can be configured via:
    1. Environment variables: CODESCOUT__SECTION__KEY
    2. YAML config files (workspace or global)
    3. Direct kwargs to load_config()
    """

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    index: IndexConfig = Field(default_factory=IndexConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    indexer: IndexerConfig = Field(default_factory=IndexerConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
