"""Remote code-search index adapter.

The remote index is an opaque collaborator: it reports whether it is
reachable and has indexed the workspace, answers queries with ranked
snippets, and can be asked to (re)index. ``HttpRemoteIndexProvider`` speaks
a small JSON protocol:

    GET  /status  -> {"status": "ready" | "indexing" | "not_indexed", "repos": [...]}
    POST /search  {"query": str, "limit": int} -> {"results": [{path, start_line, end_line, text, score}]}
    POST /index   {"reason": str} -> {"accepted": bool}
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog

from codescout.core.cancellation import CancellationToken
from codescout.core.errors import ErrorCode, TransientProviderError
from codescout.core.http import RetryPolicy, request_json
from codescout.index.state import RemoteIndexState, RemoteStatus

log = structlog.get_logger()

_PROVIDER = "remote-index"


@dataclass(frozen=True, slots=True)
class RemoteHit:
    path: str
    start_line: int
    end_line: int
    text: str
    score: float | None = None


@runtime_checkable
class RemoteIndexProvider(Protocol):
    async def status(self, token: CancellationToken | None = None) -> RemoteIndexState: ...

    async def is_available(self, token: CancellationToken | None = None) -> bool: ...

    async def search(
        self,
        query: str,
        limit: int,
        token: CancellationToken | None = None,
    ) -> list[RemoteHit]: ...

    async def trigger_indexing(
        self,
        reason: str,
        token: CancellationToken | None = None,
    ) -> None: ...


def _parse_status(value: Any) -> RemoteStatus:
    try:
        return RemoteStatus(str(value))
    except ValueError:
        return RemoteStatus.UNKNOWN


class HttpRemoteIndexProvider:
    """JSON-over-HTTP remote index."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout_sec: float = 10.0,
        max_retries: int = 1,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout_sec,
        )
        self._policy = RetryPolicy(max_retries=max_retries)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(
        self,
        method: str,
        url: str,
        payload: dict[str, Any] | None,
        token: CancellationToken | None,
    ) -> dict[str, Any]:
        data = await request_json(
            self._client,
            method,
            url,
            provider=_PROVIDER,
            json=payload,
            policy=self._policy,
            token=token,
        )
        if not isinstance(data, dict):
            raise TransientProviderError.bad_response(
                _PROVIDER, f"expected a JSON object, got {type(data).__name__}"
            )
        return data

    async def status(self, token: CancellationToken | None = None) -> RemoteIndexState:
        """Current remote state. Never raises for reachability problems."""
        try:
            data = await self._call("GET", "/status", None, token)
        except TransientProviderError as e:
            if e.code is ErrorCode.PROVIDER_AUTH_REQUIRED:
                return RemoteIndexState(RemoteStatus.AUTH_REQUIRED)
            log.debug("remote_index.unavailable", error=e.message)
            return RemoteIndexState(RemoteStatus.UNAVAILABLE)
        repos = data.get("repos") or []
        return RemoteIndexState(
            _parse_status(data.get("status")),
            tuple(str(r) for r in repos if isinstance(r, str)),
        )

    async def is_available(self, token: CancellationToken | None = None) -> bool:
        state = await self.status(token)
        return state.status is RemoteStatus.READY

    async def search(
        self,
        query: str,
        limit: int,
        token: CancellationToken | None = None,
    ) -> list[RemoteHit]:
        data = await self._call("POST", "/search", {"query": query, "limit": limit}, token)
        results = data.get("results")
        if not isinstance(results, list):
            raise TransientProviderError.bad_response(_PROVIDER, "'results' must be a list")
        hits: list[RemoteHit] = []
        for item in results:
            if not isinstance(item, dict):
                continue
            try:
                hits.append(
                    RemoteHit(
                        path=str(item["path"]),
                        start_line=int(item.get("start_line", 0)),
                        end_line=int(item.get("end_line", 0)),
                        text=str(item.get("text", "")),
                        score=float(item["score"]) if item.get("score") is not None else None,
                    )
                )
            except (KeyError, TypeError, ValueError):
                continue
        return hits[:limit]

    async def trigger_indexing(self, reason: str, token: CancellationToken | None = None) -> None:
        data = await self._call("POST", "/index", {"reason": reason}, token)
        if data.get("accepted") is False:
            raise TransientProviderError.bad_response(
                _PROVIDER, str(data.get("message") or "indexing request rejected")
            )
