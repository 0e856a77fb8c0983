"""Multi-strategy chunk search.

Public API:
- SearchOrchestrator: races the strategy chain for one query
- Sizing, SearchOptions, SearchResponse: request and response types
- StrategyKind: the closed set of strategies, in fallback order
"""

from codescout.search.models import (
    FALLBACK_ORDER,
    AlertKind,
    RankedChunk,
    ScoredChunk,
    SearchAlert,
    SearchOptions,
    SearchResponse,
    Sizing,
    StrategyKind,
    StrategyResult,
    TriggerError,
    TriggerResult,
)
from codescout.search.orchestrator import SearchOrchestrator
from codescout.search.remote import HttpRemoteIndexProvider, RemoteHit, RemoteIndexProvider
from codescout.search.rerank import Reranker, ratio_filter, truncate
from codescout.search.strategies import (
    FullInclusionStrategy,
    HybridStrategy,
    LexicalStrategy,
    RemoteIndexStrategy,
    SearchContext,
    SearchStrategy,
    VectorStrategy,
    build_strategies,
)

__all__ = [
    "FALLBACK_ORDER",
    "AlertKind",
    "FullInclusionStrategy",
    "HttpRemoteIndexProvider",
    "HybridStrategy",
    "LexicalStrategy",
    "RankedChunk",
    "RemoteHit",
    "RemoteIndexProvider",
    "RemoteIndexStrategy",
    "Reranker",
    "ScoredChunk",
    "SearchAlert",
    "SearchContext",
    "SearchOptions",
    "SearchOrchestrator",
    "SearchResponse",
    "SearchStrategy",
    "Sizing",
    "StrategyKind",
    "StrategyResult",
    "TriggerError",
    "TriggerResult",
    "VectorStrategy",
    "build_strategies",
    "ratio_filter",
    "truncate",
]
