"""Search request and response types."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from codescout.core.errors import CodeScoutError, ConfigurationError, ErrorCode
from codescout.index.models import Chunk


class StrategyKind(str, Enum):
    """The closed set of search strategies, in fallback order."""

    FULL_INCLUSION = "full_inclusion"
    REMOTE = "remote"
    VECTOR = "vector"
    HYBRID = "hybrid"
    LEXICAL = "lexical"


FALLBACK_ORDER: tuple[StrategyKind, ...] = tuple(StrategyKind)


@dataclass(frozen=True, slots=True)
class Sizing:
    """Per-query budget.

    ``max_results`` caps the number of chunks; ``token_budget`` caps their
    summed token counts and decides whether the whole workspace fits.
    Chunks larger than ``max_tokens_per_chunk`` are never returned.
    """

    max_results: int | None = None
    token_budget: int | None = None
    max_tokens_per_chunk: int | None = None

    def __post_init__(self) -> None:
        for name in ("max_results", "token_budget", "max_tokens_per_chunk"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigurationError.invalid_sizing(name, value)


@dataclass(frozen=True, slots=True)
class SearchOptions:
    use_cache: bool = True
    allow_remote: bool = True
    correlation_id: str | None = None


@dataclass(frozen=True, slots=True)
class ScoredChunk:
    """A strategy hit. Either score may be missing."""

    chunk: Chunk
    score: float | None = None
    similarity: float | None = None


@dataclass(frozen=True, slots=True)
class StrategyResult:
    strategy: StrategyKind
    chunks: list[ScoredChunk]
    used_full_workspace: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.chunks


@dataclass(frozen=True, slots=True)
class RankedChunk:
    chunk: Chunk
    rank: int
    similarity: float | None = None
    score: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.chunk.path,
            "start_line": self.chunk.start_line,
            "end_line": self.chunk.end_line,
            "text": self.chunk.text,
            "token_count": self.chunk.token_count,
            "is_full_file": self.chunk.is_full_file,
            "rank": self.rank,
            "similarity": self.similarity,
            "score": self.score,
        }


class AlertKind(str, Enum):
    WORKSPACE_TOO_LARGE = "workspace_too_large"
    STRATEGY_FAILED = "strategy_failed"
    STRATEGY_TIMEOUT = "strategy_timeout"
    RERANK_DEGRADED = "rerank_degraded"


@dataclass(frozen=True, slots=True)
class SearchAlert:
    """Non-fatal condition the caller should know about."""

    kind: AlertKind
    message: str
    strategy: StrategyKind | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_error(cls, error: BaseException, strategy: StrategyKind | None) -> SearchAlert:
        if isinstance(error, CodeScoutError):
            kind = (
                AlertKind.WORKSPACE_TOO_LARGE
                if error.code is ErrorCode.INDEX_WORKSPACE_TOO_LARGE
                else AlertKind.STRATEGY_FAILED
            )
            return cls(kind, error.message, strategy, error.to_dict())
        return cls(AlertKind.STRATEGY_FAILED, f"{type(error).__name__}: {error}", strategy)


@dataclass(frozen=True, slots=True)
class SearchResponse:
    chunks: list[RankedChunk]
    used_full_workspace: bool
    strategy_used: StrategyKind
    alerts: list[SearchAlert] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunks": [c.to_dict() for c in self.chunks],
            "used_full_workspace": self.used_full_workspace,
            "strategy_used": self.strategy_used.value,
            "alerts": [
                {
                    "kind": a.kind.value,
                    "message": a.message,
                    "strategy": a.strategy.value if a.strategy else None,
                }
                for a in self.alerts
            ],
        }


class TriggerError(str, Enum):
    ALREADY_INDEXING = "already_indexing"
    WORKSPACE_TOO_LARGE = "workspace_too_large"
    NOT_SUPPORTED = "not_supported"
    AUTHENTICATION_REQUIRED = "authentication_required"
    NETWORK_ERROR = "network_error"


@dataclass(frozen=True, slots=True)
class TriggerResult:
    ok: bool
    error: TriggerError | None = None
    message: str = ""

    @classmethod
    def success(cls, message: str = "") -> TriggerResult:
        return cls(True, None, message)

    @classmethod
    def failure(cls, error: TriggerError, message: str) -> TriggerResult:
        return cls(False, error, message)
