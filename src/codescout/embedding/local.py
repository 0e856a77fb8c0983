"""Local ONNX embeddings via fastembed."""

from __future__ import annotations

import asyncio
import os
import threading
import time
from collections.abc import Sequence
from typing import Any

import numpy as np
import structlog

from codescout.core.cancellation import CancellationToken
from codescout.core.errors import ConfigurationError
from codescout.embedding.base import InputType
from codescout.index._internal.indexing.vector import EmbeddingVector

log = structlog.get_logger()

DEFAULT_MODEL = "BAAI/bge-small-en-v1.5"


def _detect_providers() -> list[str]:
    """Detect available ONNX Runtime execution providers."""
    try:
        import onnxruntime as ort  # type: ignore[import-not-found]

        available = set(ort.get_available_providers())
    except Exception:
        return []

    providers: list[str] = []
    if "CUDAExecutionProvider" in available:
        providers.append("CUDAExecutionProvider")
    providers.append("CPUExecutionProvider")
    return providers


class FastEmbedProvider:
    """fastembed ``TextEmbedding`` wrapper. The model is loaded on first use.

    Inference runs on a worker thread in batches; the cancellation token is
    checked between batches.
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        *,
        batch_size: int = 64,
        max_text_chars: int = 2000,
        threads: int | None = None,
    ) -> None:
        self._model_name = model
        self.batch_size = batch_size
        self.max_text_chars = max_text_chars
        self._threads = threads
        self._model: Any | None = None
        self._load_lock = threading.Lock()

    @property
    def model_id(self) -> str:
        return self._model_name

    def _ensure_model(self) -> Any:
        """Lazy-load fastembed TextEmbedding model with GPU auto-detect."""
        if self._model is not None:
            return self._model
        with self._load_lock:
            if self._model is not None:
                return self._model
            from fastembed import TextEmbedding

            providers = _detect_providers()
            threads = self._threads or max(1, (os.cpu_count() or 4) // 2)
            start = time.monotonic()
            kwargs: dict[str, Any] = {"model_name": self._model_name, "threads": threads}
            if providers:
                kwargs["providers"] = providers
            try:
                self._model = TextEmbedding(**kwargs)
            except ValueError as e:
                # fastembed raises ValueError for unsupported model names
                raise ConfigurationError.provider_unavailable("fastembed", str(e)) from e
            log.info(
                "embedding.model_loaded",
                model=self._model_name,
                providers=providers or ["CPUExecutionProvider"],
                threads=threads,
                elapsed_s=round(time.monotonic() - start, 2),
            )
            return self._model

    def _embed_sync(
        self,
        texts: list[str],
        input_type: InputType,
        token: CancellationToken | None,
    ) -> list[np.ndarray]:
        model = self._ensure_model()
        vectors: list[np.ndarray] = []
        for start in range(0, len(texts), self.batch_size):
            if token is not None:
                token.raise_if_cancelled()
            batch = texts[start : start + self.batch_size]
            if input_type is InputType.QUERY:
                produced = model.query_embed(batch)
            else:
                produced = model.passage_embed(batch, batch_size=self.batch_size)
            vectors.extend(np.asarray(v, dtype=np.float32) for v in produced)
        return vectors

    async def embed(
        self,
        texts: Sequence[str],
        input_type: InputType,
        token: CancellationToken | None = None,
    ) -> list[EmbeddingVector]:
        if not texts:
            return []
        clipped = [t[: self.max_text_chars] for t in texts]
        raw = await asyncio.to_thread(self._embed_sync, clipped, input_type, token)
        return [EmbeddingVector(self._model_name, v) for v in raw]
