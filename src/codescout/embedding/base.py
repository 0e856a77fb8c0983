"""Embedding provider contract."""

from __future__ import annotations

from collections.abc import Sequence
from enum import Enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from codescout.core.cancellation import CancellationToken
    from codescout.index._internal.indexing.vector import EmbeddingVector


class InputType(str, Enum):
    """Asymmetric models embed queries and documents differently."""

    QUERY = "query"
    DOCUMENT = "document"


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Turns strings into vectors tagged with the producing model.

    Implementations raise ``TransientProviderError`` for network, timeout and
    rate-limit failures and ``ConfigurationError`` for unusable settings.
    """

    @property
    def model_id(self) -> str: ...

    async def embed(
        self,
        texts: Sequence[str],
        input_type: InputType,
        token: CancellationToken | None = None,
    ) -> list[EmbeddingVector]: ...
