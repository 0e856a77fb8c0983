"""Tests for the HTTP remote index provider."""

from __future__ import annotations

import json

import httpx
import pytest

from codescout.core.errors import ErrorCode, TransientProviderError
from codescout.index.state import RemoteStatus
from codescout.search import HttpRemoteIndexProvider, RemoteIndexProvider


def _provider(handler) -> HttpRemoteIndexProvider:  # type: ignore[no-untyped-def]
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://remote")
    return HttpRemoteIndexProvider("http://remote", max_retries=0, client=client)


class TestStatus:
    def test_satisfies_provider_protocol(self) -> None:
        assert isinstance(_provider(lambda r: httpx.Response(200, json={})), RemoteIndexProvider)

    @pytest.mark.asyncio
    async def test_ready_with_repos(self) -> None:
        provider = _provider(
            lambda r: httpx.Response(200, json={"status": "ready", "repos": ["org/app", 7]})
        )

        state = await provider.status()

        assert state.status is RemoteStatus.READY
        assert state.repos == ("org/app",)
        assert await provider.is_available()

    @pytest.mark.asyncio
    async def test_unknown_status_value(self) -> None:
        provider = _provider(lambda r: httpx.Response(200, json={"status": "sleeping"}))
        assert (await provider.status()).status is RemoteStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_auth_failure_is_reported_not_raised(self) -> None:
        provider = _provider(lambda r: httpx.Response(401))

        state = await provider.status()

        assert state.status is RemoteStatus.AUTH_REQUIRED
        assert not await provider.is_available()

    @pytest.mark.asyncio
    async def test_unreachable_is_reported_not_raised(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        state = await _provider(handler).status()

        assert state.status is RemoteStatus.UNAVAILABLE


class TestSearch:
    @pytest.mark.asyncio
    async def test_parses_results(self) -> None:
        # Given
        seen: list[dict[str, object]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={
                    "results": [
                        {
                            "path": "src/a.py",
                            "start_line": 1,
                            "end_line": 4,
                            "text": "a",
                            "score": 2,
                        },
                        {"start_line": 1},
                        "garbage",
                        {"path": "src/b.py", "text": "b"},
                    ]
                },
            )

        # When
        hits = await _provider(handler).search("find things", limit=10)

        # Then
        assert seen == [{"query": "find things", "limit": 10}]
        assert [h.path for h in hits] == ["src/a.py", "src/b.py"]
        assert hits[0].score == 2.0
        assert hits[1].score is None
        assert (hits[1].start_line, hits[1].end_line) == (0, 0)

    @pytest.mark.asyncio
    async def test_results_are_capped_at_limit(self) -> None:
        results = [{"path": f"f{i}.py", "text": "t"} for i in range(5)]
        provider = _provider(lambda r: httpx.Response(200, json={"results": results}))

        assert len(await provider.search("q", limit=2)) == 2

    @pytest.mark.asyncio
    async def test_malformed_body_raises(self) -> None:
        provider = _provider(lambda r: httpx.Response(200, json={"results": "nope"}))

        with pytest.raises(TransientProviderError) as exc_info:
            await provider.search("q", limit=5)

        assert exc_info.value.code is ErrorCode.PROVIDER_BAD_RESPONSE

    @pytest.mark.asyncio
    async def test_server_error_raises(self) -> None:
        provider = _provider(lambda r: httpx.Response(503))

        with pytest.raises(TransientProviderError) as exc_info:
            await provider.search("q", limit=5)

        assert exc_info.value.code is ErrorCode.PROVIDER_RATE_LIMITED


class TestTriggerIndexing:
    @pytest.mark.asyncio
    async def test_accepted(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"accepted": True})

        await _provider(handler).trigger_indexing("user request")

        assert requests[0].method == "POST"
        assert requests[0].url.path == "/index"
        assert json.loads(requests[0].content) == {"reason": "user request"}

    @pytest.mark.asyncio
    async def test_rejected(self) -> None:
        provider = _provider(
            lambda r: httpx.Response(200, json={"accepted": False, "message": "quota exceeded"})
        )

        with pytest.raises(TransientProviderError, match="quota exceeded"):
            await provider.trigger_indexing("user request")

    @pytest.mark.asyncio
    async def test_auth_required(self) -> None:
        provider = _provider(lambda r: httpx.Response(403))

        with pytest.raises(TransientProviderError) as exc_info:
            await provider.trigger_indexing("user request")

        assert exc_info.value.code is ErrorCode.PROVIDER_AUTH_REQUIRED
