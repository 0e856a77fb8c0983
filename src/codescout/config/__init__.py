"""Config module exports."""

from codescout.config.loader import get_index_dir, load_config
from codescout.config.models import (
    CacheConfig,
    ChunkingConfig,
    CodeScoutConfig,
    DatabaseConfig,
    EmbeddingConfig,
    IndexConfig,
    IndexerConfig,
    LoggingConfig,
    LogOutputConfig,
    SearchConfig,
)

__all__ = [
    "load_config",
    "get_index_dir",
    "CodeScoutConfig",
    "CacheConfig",
    "ChunkingConfig",
    "DatabaseConfig",
    "EmbeddingConfig",
    "IndexConfig",
    "IndexerConfig",
    "LoggingConfig",
    "LogOutputConfig",
    "SearchConfig",
]
