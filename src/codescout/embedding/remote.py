"""OpenAI-compatible embeddings endpoint over HTTP."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import httpx
import numpy as np

from codescout.core.cancellation import CancellationToken
from codescout.core.errors import ConfigurationError, ErrorCode, TransientProviderError
from codescout.core.http import RetryPolicy, request_json
from codescout.embedding.base import InputType
from codescout.index._internal.indexing.vector import EmbeddingVector

_PROVIDER = "embedding-api"


class HttpEmbeddingProvider:
    """Calls ``POST {api_base}/embeddings`` in batches.

    Rejected credentials are a configuration problem, not a transient one,
    so 401/403 raise ``ConfigurationError``.
    """

    def __init__(
        self,
        *,
        api_base: str,
        model: str,
        api_key: str | None = None,
        batch_size: int = 64,
        timeout_sec: float = 30.0,
        max_retries: int = 3,
        max_text_chars: int = 2000,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_base:
            raise ConfigurationError.invalid_value("embedding.api_base", api_base, "required")
        self._model = model
        self.batch_size = batch_size
        self.max_text_chars = max_text_chars
        self._policy = RetryPolicy(max_retries=max_retries)
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(
            base_url=api_base.rstrip("/"),
            headers=headers,
            timeout=timeout_sec,
        )

    @property
    def model_id(self) -> str:
        return self._model

    async def aclose(self) -> None:
        await self._client.aclose()

    async def embed(
        self,
        texts: Sequence[str],
        input_type: InputType,
        token: CancellationToken | None = None,
    ) -> list[EmbeddingVector]:
        vectors: list[EmbeddingVector] = []
        for start in range(0, len(texts), self.batch_size):
            batch = [t[: self.max_text_chars] for t in texts[start : start + self.batch_size]]
            vectors.extend(await self._embed_batch(batch, input_type, token))
        return vectors

    async def _embed_batch(
        self,
        batch: list[str],
        input_type: InputType,
        token: CancellationToken | None,
    ) -> list[EmbeddingVector]:
        payload: dict[str, Any] = {
            "model": self._model,
            "input": batch,
            "input_type": input_type.value,
        }
        try:
            data = await request_json(
                self._client,
                "POST",
                "/embeddings",
                provider=_PROVIDER,
                json=payload,
                policy=self._policy,
                token=token,
            )
        except TransientProviderError as e:
            if e.code is ErrorCode.PROVIDER_AUTH_REQUIRED:
                raise ConfigurationError.provider_unavailable(_PROVIDER, e.message) from e
            raise
        return self._parse(data, len(batch))

    def _parse(self, data: Any, expected: int) -> list[EmbeddingVector]:
        if not isinstance(data, dict) or not isinstance(data.get("data"), list):
            raise TransientProviderError.bad_response(_PROVIDER, "missing 'data' list")
        rows: list[np.ndarray | None] = [None] * expected
        for position, item in enumerate(data["data"]):
            if not isinstance(item, dict) or not isinstance(item.get("embedding"), list):
                continue
            index = item.get("index", position)
            if isinstance(index, int) and 0 <= index < expected:
                rows[index] = np.asarray(item["embedding"], dtype=np.float32)
        missing = sum(1 for r in rows if r is None)
        if missing:
            raise TransientProviderError.bad_response(
                _PROVIDER, f"{missing}/{expected} embeddings missing"
            )
        return [EmbeddingVector(self._model, r) for r in rows if r is not None]
