"""Tests for the embedding providers and their factory."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import httpx
import numpy as np
import pytest

from codescout.config.models import EmbeddingConfig
from codescout.core.cancellation import CancellationToken
from codescout.core.errors import CancellationError, ConfigurationError, TransientProviderError
from codescout.embedding import (
    EmbeddingProvider,
    FastEmbedProvider,
    HttpEmbeddingProvider,
    InputType,
    create_embedding_provider,
)


def _http_provider(handler, **kwargs) -> HttpEmbeddingProvider:  # type: ignore[no-untyped-def]
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://embed")
    return HttpEmbeddingProvider(
        api_base="http://embed", model="test-embed", max_retries=0, client=client, **kwargs
    )


def _echo_handler(requests: list[dict]):  # type: ignore[no-untyped-def,type-arg]
    """Embeds each input as [len(text), position], rows returned in reverse."""

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        requests.append(body)
        rows = [
            {"index": i, "embedding": [float(len(text)), float(i)]}
            for i, text in enumerate(body["input"])
        ]
        return httpx.Response(200, json={"data": list(reversed(rows))})

    return handler


class TestHttpEmbeddingProvider:
    @pytest.mark.asyncio
    async def test_embeds_in_batches(self) -> None:
        # Given
        requests: list[dict] = []  # type: ignore[type-arg]
        provider = _http_provider(_echo_handler(requests), batch_size=2)

        # When
        vectors = await provider.embed(["a", "bb", "ccc"], InputType.DOCUMENT)

        # Then
        assert [r["input"] for r in requests] == [["a", "bb"], ["ccc"]]
        assert requests[0]["model"] == "test-embed"
        assert requests[0]["input_type"] == "document"
        assert [v.values.tolist() for v in vectors] == [[1.0, 0.0], [2.0, 1.0], [3.0, 0.0]]
        assert all(v.model_id == "test-embed" for v in vectors)

    @pytest.mark.asyncio
    async def test_long_inputs_are_clipped(self) -> None:
        requests: list[dict] = []  # type: ignore[type-arg]
        provider = _http_provider(_echo_handler(requests), max_text_chars=5)

        await provider.embed(["x" * 50], InputType.QUERY)

        assert requests[0]["input"] == ["xxxxx"]
        assert requests[0]["input_type"] == "query"

    @pytest.mark.asyncio
    async def test_missing_rows_raise(self) -> None:
        provider = _http_provider(
            lambda r: httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0]}]})
        )

        with pytest.raises(TransientProviderError, match="1/2 embeddings missing"):
            await provider.embed(["a", "b"], InputType.DOCUMENT)

    @pytest.mark.asyncio
    async def test_rejected_credentials_are_a_configuration_error(self) -> None:
        provider = _http_provider(lambda r: httpx.Response(401))

        with pytest.raises(ConfigurationError):
            await provider.embed(["a"], InputType.QUERY)

    @pytest.mark.asyncio
    async def test_cancelled_token(self) -> None:
        provider = _http_provider(lambda r: httpx.Response(200, json={"data": []}))
        token = CancellationToken()
        token.cancel()

        with pytest.raises(CancellationError):
            await provider.embed(["a"], InputType.QUERY, token)

    def test_requires_api_base(self) -> None:
        with pytest.raises(ConfigurationError):
            HttpEmbeddingProvider(api_base="", model="m")


class TestFastEmbedProvider:
    @pytest.fixture
    def provider(self) -> FastEmbedProvider:
        provider = FastEmbedProvider("local-model", batch_size=2, max_text_chars=4)
        model = MagicMock()
        model.query_embed.side_effect = lambda batch: [np.ones(3) for _ in batch]
        model.passage_embed.side_effect = lambda batch, batch_size: [np.zeros(3) for _ in batch]
        provider._model = model
        return provider

    @pytest.mark.asyncio
    async def test_query_and_passage_paths(self, provider: FastEmbedProvider) -> None:
        queries = await provider.embed(["find this"], InputType.QUERY)
        passages = await provider.embed(["one", "two", "three"], InputType.DOCUMENT)

        assert queries[0].values.tolist() == [1.0, 1.0, 1.0]
        assert len(passages) == 3
        assert all(v.model_id == "local-model" for v in passages)
        assert provider._model.passage_embed.call_count == 2
        provider._model.query_embed.assert_called_once_with(["find"])

    @pytest.mark.asyncio
    async def test_empty_input(self, provider: FastEmbedProvider) -> None:
        assert await provider.embed([], InputType.DOCUMENT) == []
        provider._model.passage_embed.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancellation_between_batches(self, provider: FastEmbedProvider) -> None:
        token = CancellationToken()
        token.cancel("stop")

        with pytest.raises(CancellationError):
            await provider.embed(["a", "b", "c"], InputType.DOCUMENT, token)


class TestFactory:
    def test_fastembed_backend(self) -> None:
        provider = create_embedding_provider(EmbeddingConfig(model="local-model"))
        assert isinstance(provider, FastEmbedProvider)
        assert isinstance(provider, EmbeddingProvider)
        assert provider.model_id == "local-model"

    def test_http_backend(self) -> None:
        config = EmbeddingConfig(backend="http", api_base="http://embed/v1", model="remote-model")
        provider = create_embedding_provider(config)
        assert isinstance(provider, HttpEmbeddingProvider)
        assert provider.model_id == "remote-model"

    def test_http_backend_requires_api_base(self) -> None:
        with pytest.raises(ConfigurationError):
            create_embedding_provider(EmbeddingConfig(backend="http"))
