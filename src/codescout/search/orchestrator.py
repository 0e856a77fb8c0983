"""Search orchestration: the fixed fallback chain with racing.

Chain order is Full-inclusion -> Remote -> Vector -> Hybrid -> Lexical.
A strategy with a deadline (Remote, Vector) is raced against the rest of
the chain, started at the same time rather than after the deadline:

    race(Remote, race(Vector, Hybrid -> Lexical))

Under ``prefer_primary`` the bounded strategy wins if it succeeds before its
deadline, otherwise the fallback branch's result is used. Under
``first_success`` whichever branch succeeds first wins. Either way the loser
is cancelled: its task is cancelled and its child cancellation token fires,
which also stops worker-thread and HTTP sub-operations.

A strategy succeeds when it returns a non-empty result. Absent results and
errors fall through, except cancellation and configuration errors, which
end the query. Lexical anchors the chain: its
(possibly empty) result is returned as-is, so only a chain in which every
strategy was absent or failed raises ``SearchExhaustedError``.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from codescout.cache.layer import SEARCH_NAMESPACE, make_key
from codescout.core.cancellation import CancellationToken, run_cancellable
from codescout.core.errors import (
    CancellationError,
    ConfigurationError,
    ErrorCode,
    IndexUnavailableError,
    ResourceExhaustedError,
    SearchExhaustedError,
)
from codescout.core.logging import get_correlation_id, set_correlation_id
from codescout.search.models import (
    AlertKind,
    RankedChunk,
    SearchAlert,
    SearchOptions,
    SearchResponse,
    Sizing,
    StrategyKind,
    StrategyResult,
)
from codescout.search.rerank import Reranker

if TYPE_CHECKING:
    from codescout.cache.layer import CacheLayer
    from codescout.search.strategies import SearchContext, SearchStrategy

log = structlog.get_logger()


def _succeeded(result: StrategyResult | None) -> bool:
    return result is not None and not result.is_empty


@dataclass
class QueryRun:
    """Mutable bookkeeping for one query."""

    sizing: Sizing
    query: str
    options: SearchOptions
    correlation_id: str
    attempts: dict[str, str] = field(default_factory=dict)
    alerts: list[SearchAlert] = field(default_factory=list)

    def record(self, kind: StrategyKind, outcome: str) -> None:
        self.attempts[kind.value] = outcome


Branch = Callable[[CancellationToken], Awaitable[StrategyResult | None]]


class SearchOrchestrator:
    """Runs the strategy chain for each query."""

    def __init__(
        self,
        ctx: SearchContext,
        strategies: Sequence[SearchStrategy],
        *,
        cache: CacheLayer | None = None,
    ) -> None:
        kinds = [s.kind for s in strategies]
        if kinds != sorted(kinds, key=list(StrategyKind).index):
            raise ValueError(f"strategies out of fallback order: {[k.value for k in kinds]}")
        self.ctx = ctx
        self.strategies = list(strategies)
        self.cache = cache
        self.reranker = Reranker(
            ratio=ctx.config.rerank_ratio,
            default_max_results=ctx.config.default_max_results,
            embeddings=ctx.embeddings,
            vector=ctx.vector,
        )

    def strategy(self, kind: StrategyKind) -> SearchStrategy | None:
        for s in self.strategies:
            if s.kind is kind:
                return s
        return None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def search(
        self,
        sizing: Sizing,
        query: str,
        options: SearchOptions | None = None,
        token: CancellationToken | None = None,
    ) -> SearchResponse:
        """Answer *query*.

        Raises:
            CancellationError: *token* fired before a result was produced.
            ConfigurationError: A strategy hit a model or sizing mismatch.
            SearchExhaustedError: No strategy produced a result.
        """
        options = options or SearchOptions()
        token = token or CancellationToken()
        correlation_id = options.correlation_id or get_correlation_id() or uuid.uuid4().hex[:12]
        set_correlation_id(correlation_id)
        run = QueryRun(sizing, query, options, correlation_id)

        start = time.monotonic()
        response = await run_cancellable(self._search(run, token), token)
        log.info(
            "search.completed",
            strategy=response.strategy_used.value,
            results=len(response.chunks),
            full_workspace=response.used_full_workspace,
            alerts=len(response.alerts),
            elapsed_ms=round((time.monotonic() - start) * 1000, 1),
        )
        return response

    async def _search(self, run: QueryRun, token: CancellationToken) -> SearchResponse:
        # Keyed on the state seen before any strategy runs, so a state change
        # mid-query leaves the stored answer unreachable
        key = self._cache_key(run) if run.options.use_cache else None
        cached = await self._cached_response(key) if key is not None else None
        if cached is not None:
            return cached

        for strategy in self.strategies:
            await self._prepare(strategy, run, token)

        result = await self._run_chain(self.strategies, run, token)
        if result is None:
            log.warning("search.exhausted", attempts=run.attempts)
            raise SearchExhaustedError.exhausted(run.attempts)

        outcome = await self.reranker.rerank(result, run.query, run.sizing, token)
        response = SearchResponse(
            chunks=outcome.chunks,
            used_full_workspace=result.used_full_workspace,
            strategy_used=result.strategy,
            alerts=run.alerts + outcome.alerts,
        )
        if key is not None:
            self._store_response(key, response, token)
        return response

    async def _prepare(
        self, strategy: SearchStrategy, run: QueryRun, token: CancellationToken
    ) -> None:
        try:
            await strategy.prepare(run.correlation_id, token)
        except (CancellationError, asyncio.CancelledError):
            raise
        except Exception as e:
            log.warning("search.prepare_failed", strategy=strategy.kind.value, error=str(e))

    # ------------------------------------------------------------------
    # Chain and racing
    # ------------------------------------------------------------------

    async def _run_chain(
        self,
        chain: Sequence[SearchStrategy],
        run: QueryRun,
        token: CancellationToken,
    ) -> StrategyResult | None:
        if not chain:
            return None
        head, rest = chain[0], chain[1:]

        if head.timeout_sec is not None and rest:
            return await self._race(
                head,
                lambda t: self._run_chain(rest, run, t),
                run,
                token,
            )

        result = await self._attempt(head, run, token)
        if _succeeded(result) or not rest:
            return result
        fallback = await self._run_chain(rest, run, token)
        return fallback if fallback is not None else result

    async def _attempt(
        self,
        strategy: SearchStrategy,
        run: QueryRun,
        token: CancellationToken,
    ) -> StrategyResult | None:
        """Run one strategy, converting failures into an absent result.

        Cancellation and configuration errors propagate. An unusable embedding
        or remote provider is treated like any other strategy failure.
        """
        kind = strategy.kind
        start = time.monotonic()
        try:
            result = await strategy.search(
                run.sizing, run.query, run.options, run.correlation_id, token
            )
        except (CancellationError, asyncio.CancelledError):
            run.attempts.setdefault(kind.value, "cancelled")
            raise
        except IndexUnavailableError as e:
            run.record(kind, "absent")
            log.debug("search.strategy_unavailable", strategy=kind.value, error=e.message)
            return None
        except ConfigurationError as e:
            if e.code is not ErrorCode.CONFIG_PROVIDER_UNAVAILABLE:
                run.record(kind, e.error_name)
                log.error("search.configuration_error", strategy=kind.value, error=e.message)
                raise
            run.record(kind, f"error: {e}")
            run.alerts.append(SearchAlert.from_error(e, kind))
            log.warning("search.provider_unavailable", strategy=kind.value, error=e.message)
            return None
        except ResourceExhaustedError as e:
            run.record(kind, e.error_name)
            run.alerts.append(SearchAlert.from_error(e, kind))
            log.info("search.strategy_resource_exhausted", strategy=kind.value, error=e.message)
            return None
        except Exception as e:
            run.record(kind, f"error: {e}")
            run.alerts.append(SearchAlert.from_error(e, kind))
            log.warning(
                "search.strategy_failed",
                strategy=kind.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        elapsed_ms = round((time.monotonic() - start) * 1000, 1)
        if result is None:
            run.record(kind, "absent")
        else:
            run.record(kind, f"{len(result.chunks)} results")
        log.debug(
            "search.strategy_finished",
            strategy=kind.value,
            absent=result is None,
            results=0 if result is None else len(result.chunks),
            elapsed_ms=elapsed_ms,
        )
        return result

    async def _race(
        self,
        primary: SearchStrategy,
        fallback: Branch,
        run: QueryRun,
        token: CancellationToken,
    ) -> StrategyResult | None:
        timeout = primary.timeout_sec
        assert timeout is not None
        primary_token = token.child()
        fallback_token = token.child()
        primary_task = asyncio.create_task(
            self._attempt(primary, run, primary_token), name=f"search:{primary.kind.value}"
        )
        fallback_task = asyncio.create_task(fallback(fallback_token), name="search:fallback")
        deadline = asyncio.get_running_loop().time() + timeout

        try:
            if self.ctx.config.race_policy == "first_success":
                return await self._race_first_success(
                    primary,
                    primary_task,
                    primary_token,
                    fallback_task,
                    fallback_token,
                    deadline,
                    run,
                )
            return await self._race_prefer_primary(
                primary, primary_task, primary_token, fallback_task, fallback_token, timeout, run
            )
        finally:
            for task, child in ((primary_task, primary_token), (fallback_task, fallback_token)):
                if not task.done():
                    await _cancel(task, child, "query finished")
                child.release()

    async def _race_prefer_primary(
        self,
        primary: SearchStrategy,
        primary_task: asyncio.Task[StrategyResult | None],
        primary_token: CancellationToken,
        fallback_task: asyncio.Task[StrategyResult | None],
        fallback_token: CancellationToken,
        timeout: float,
        run: QueryRun,
    ) -> StrategyResult | None:
        done, _ = await asyncio.wait({primary_task}, timeout=timeout)
        if primary_task in done:
            result = primary_task.result()
            if _succeeded(result):
                log.info("search.race_won", strategy=primary.kind.value)
                await _cancel(fallback_task, fallback_token, f"{primary.kind.value} won")
                return result
        else:
            self._timed_out(primary, timeout, run)
            await _cancel(primary_task, primary_token, "deadline exceeded")
        return await fallback_task

    async def _race_first_success(
        self,
        primary: SearchStrategy,
        primary_task: asyncio.Task[StrategyResult | None],
        primary_token: CancellationToken,
        fallback_task: asyncio.Task[StrategyResult | None],
        fallback_token: CancellationToken,
        deadline: float,
        run: QueryRun,
    ) -> StrategyResult | None:
        loop = asyncio.get_running_loop()
        pending: set[asyncio.Task[StrategyResult | None]] = {primary_task, fallback_task}
        fallback_result: StrategyResult | None = None

        while pending:
            wait_for = max(0.0, deadline - loop.time()) if primary_task in pending else None
            done, pending = await asyncio.wait(
                pending, timeout=wait_for, return_when=asyncio.FIRST_COMPLETED
            )
            if not done:
                self._timed_out(primary, primary.timeout_sec or 0.0, run)
                await _cancel(primary_task, primary_token, "deadline exceeded")
                pending.discard(primary_task)
                continue
            for task in done:
                result = task.result()
                if _succeeded(result):
                    loser, loser_token = (
                        (fallback_task, fallback_token)
                        if task is primary_task
                        else (primary_task, primary_token)
                    )
                    await _cancel(loser, loser_token, "race lost")
                    return result
                if task is fallback_task:
                    fallback_result = result
        return fallback_result

    def _timed_out(self, strategy: SearchStrategy, timeout: float, run: QueryRun) -> None:
        run.record(strategy.kind, "timeout")
        run.alerts.append(
            SearchAlert(
                AlertKind.STRATEGY_TIMEOUT,
                f"{strategy.kind.value} did not finish within {timeout}s",
                strategy.kind,
                {"timeout_sec": timeout},
            )
        )
        log.info("search.strategy_timeout", strategy=strategy.kind.value, timeout_sec=timeout)

    # ------------------------------------------------------------------
    # Result cache
    # ------------------------------------------------------------------

    def _cache_key(self, run: QueryRun) -> str:
        """Key on the query and on everything that decides which strategy answers it."""
        model = self.ctx.embeddings.model_id if self.ctx.embeddings is not None else ""
        vector = self.ctx.vector.readiness_state().value if self.ctx.vector is not None else ""
        state = self.ctx.state.current
        return make_key(
            SEARCH_NAMESPACE,
            state.version,
            state.remote.status.value,
            vector,
            run.query,
            run.sizing.max_results,
            run.sizing.token_budget,
            run.sizing.max_tokens_per_chunk,
            run.options.allow_remote,
            model,
        )

    async def _cached_response(self, key: str) -> SearchResponse | None:
        if self.cache is None:
            return None
        blob = self.cache.get(key)
        if blob is None:
            return None
        payload = json.loads(blob)
        items = payload["items"]
        found = await asyncio.to_thread(self.ctx.chunks.get_chunks, [i[0] for i in items])
        if len(found) != len(items):
            # Something went stale between write and read
            return None
        chunks = [
            RankedChunk(chunk=found[chunk_id], rank=rank, similarity=sim, score=score)
            for rank, (chunk_id, sim, score) in enumerate(items)
        ]
        log.debug("search.cache_hit", results=len(chunks))
        alerts = [
            SearchAlert(AlertKind(kind), message, StrategyKind(strategy) if strategy else None)
            for kind, message, strategy in payload.get("alerts", [])
        ]
        return SearchResponse(
            chunks=chunks,
            used_full_workspace=payload["full"],
            strategy_used=StrategyKind(payload["strategy"]),
            alerts=alerts,
        )

    def _store_response(self, key: str, response: SearchResponse, token: CancellationToken) -> None:
        if self.cache is None or response.strategy_used is StrategyKind.REMOTE:
            return
        if any(_is_transient(a) for a in response.alerts):
            return
        if any(c.chunk.chunk_id is None for c in response.chunks):
            return
        payload = {
            "strategy": response.strategy_used.value,
            "full": response.used_full_workspace,
            "items": [[c.chunk.chunk_id, c.similarity, c.score] for c in response.chunks],
            "alerts": [
                [a.kind.value, a.message, a.strategy.value if a.strategy else None]
                for a in response.alerts
            ],
        }
        with self.cache.pending(token) as batch:
            batch.put(
                key,
                json.dumps(payload).encode("utf-8"),
                namespace=SEARCH_NAMESPACE,
            )


def _is_transient(alert: SearchAlert) -> bool:
    """Alerts raised by a failure rather than by configuration; such answers are not reused."""
    return alert.kind in (AlertKind.STRATEGY_FAILED, AlertKind.STRATEGY_TIMEOUT) or bool(
        alert.details
    )


async def _cancel(
    task: asyncio.Task[StrategyResult | None],
    token: CancellationToken,
    reason: str,
) -> None:
    """Cancel a losing branch and wait for it to unwind."""
    token.cancel(reason)
    task.cancel()
    await asyncio.wait({task})
    if not task.cancelled():
        # Retrieve so a late failure is not reported as never retrieved
        task.exception()
