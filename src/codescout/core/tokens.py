"""Token counting used for chunk sizing and result budgets."""

from __future__ import annotations

import math
from typing import Protocol, runtime_checkable


@runtime_checkable
class Tokenizer(Protocol):
    """Counts tokens in a string. Must be deterministic."""

    def length(self, text: str) -> int: ...


class ApproxTokenizer:
    """Character-ratio estimate, about four characters per token for code and English."""

    def __init__(self, chars_per_token: int = 4) -> None:
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")
        self.chars_per_token = chars_per_token

    def length(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)
