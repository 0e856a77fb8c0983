"""Line-based chunker.

Splits file text into token-bounded chunks along line boundaries, keeping
line ranges and de-indenting each chunk by the whitespace its lines share.

The output is a ``ChunkSequence``: a lazy, restartable iterable. Each
iteration re-runs the split, so nothing larger than one chunk is held beyond
the caller's own references.
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from codescout.core.errors import ConfigurationError
from codescout.index.models import Chunk

if TYPE_CHECKING:
    from codescout.core.tokens import Tokenizer

# A single line is cut to this many characters per allowed token
LINE_CHARS_PER_TOKEN = 4
# Chunks with fewer alphanumeric characters are noise
MIN_ALNUM_CHARS = 2


@dataclass(frozen=True, slots=True)
class ChunkSource:
    """Identity of the file being chunked."""

    file_id: int
    path: str
    content_hash: str


def _leading_whitespace(line: str) -> str:
    return line[: len(line) - len(line.lstrip())]


def _alnum_count(text: str, stop_at: int) -> int:
    count = 0
    for ch in text:
        if ch.isalnum():
            count += 1
            if count >= stop_at:
                break
    return count


class ChunkSequence:
    """Lazy, restartable sequence of chunks for one file revision."""

    def __init__(
        self,
        source: ChunkSource,
        text: str,
        *,
        max_tokens: int,
        remove_empty_lines: bool,
        tokenizer: Tokenizer,
    ) -> None:
        self._source = source
        self._text = text
        self._max_tokens = max_tokens
        self._remove_empty_lines = remove_empty_lines
        self._tokenizer = tokenizer

    def __iter__(self) -> Iterator[Chunk]:
        # Hold one chunk back: is_full_file is only known once we see
        # whether a second chunk follows.
        pending: Chunk | None = None
        emitted = 0
        first_line, last_line = self._content_bounds()
        for chunk in self._split():
            if pending is not None:
                yield pending
            pending = chunk
            emitted += 1
        if pending is None:
            return
        if emitted == 1 and pending.start_line == first_line and pending.end_line == last_line:
            pending = replace(pending, is_full_file=True)
        yield pending

    def _lines(self) -> list[str]:
        return self._text.splitlines()

    def _content_bounds(self) -> tuple[int, int]:
        """First and last line the chunker considers part of the file."""
        lines = self._lines()
        if not self._remove_empty_lines:
            return 0, len(lines) - 1
        kept = [i for i, line in enumerate(lines) if line.strip()]
        if not kept:
            return 0, -1
        return kept[0], kept[-1]

    def _fit_line(self, raw: str) -> tuple[str, int]:
        """Truncate a line so it never exceeds max_tokens on its own."""
        line = raw[: LINE_CHARS_PER_TOKEN * self._max_tokens]
        tokens = self._tokenizer.length(line)
        while tokens > self._max_tokens and line:
            keep = max(0, min(len(line) - 1, len(line) * self._max_tokens // tokens))
            line = line[:keep]
            tokens = self._tokenizer.length(line)
        return line, tokens

    def _split(self) -> Iterator[Chunk]:
        max_tokens = self._max_tokens
        lines: list[str] = []
        start_line = 0
        end_line = 0
        token_total = 0
        indent: str | None = None
        index = 0

        for lineno, raw in enumerate(self._lines()):
            is_blank = not raw.strip()
            if is_blank and self._remove_empty_lines:
                continue
            line, tokens = self._fit_line(raw)

            if lines and token_total + tokens > max_tokens:
                chunk = self._build(lines, indent, start_line, end_line, token_total, index)
                if chunk is not None:
                    yield chunk
                    index += 1
                lines = []
                token_total = 0
                indent = None

            if not lines:
                start_line = lineno
            lines.append(line)
            token_total += tokens
            end_line = lineno
            if not is_blank:
                lead = _leading_whitespace(line)
                indent = lead if indent is None else os.path.commonprefix([indent, lead])

        if lines:
            chunk = self._build(lines, indent, start_line, end_line, token_total, index)
            if chunk is not None:
                yield chunk

    def _build(
        self,
        lines: list[str],
        indent: str | None,
        start_line: int,
        end_line: int,
        token_count: int,
        index: int,
    ) -> Chunk | None:
        raw_text = "\n".join(lines)
        if indent:
            cut = len(indent)
            text = "\n".join(line[cut:] if line.startswith(indent) else line.lstrip() for line in lines)
        else:
            text = raw_text
        if _alnum_count(text, MIN_ALNUM_CHARS) < MIN_ALNUM_CHARS:
            return None
        return Chunk(
            file_id=self._source.file_id,
            path=self._source.path,
            content_hash=self._source.content_hash,
            index=index,
            text=text,
            raw_text=raw_text,
            start_line=start_line,
            end_line=end_line,
            token_count=token_count,
        )


class Chunker:
    """Chunk factory bound to a tokenizer and default sizing."""

    def __init__(
        self,
        tokenizer: Tokenizer,
        *,
        max_tokens: int = 250,
        remove_empty_lines: bool = True,
    ) -> None:
        if max_tokens <= 0:
            raise ConfigurationError.invalid_sizing("max_tokens", max_tokens)
        self.tokenizer = tokenizer
        self.max_tokens = max_tokens
        self.remove_empty_lines = remove_empty_lines

    def chunk(
        self,
        source: ChunkSource,
        text: str,
        max_tokens: int | None = None,
        remove_empty_lines: bool | None = None,
    ) -> ChunkSequence:
        limit = self.max_tokens if max_tokens is None else max_tokens
        if limit <= 0:
            raise ConfigurationError.invalid_sizing("max_tokens", limit)
        return ChunkSequence(
            source,
            text,
            max_tokens=limit,
            remove_empty_lines=(
                self.remove_empty_lines if remove_empty_lines is None else remove_empty_lines
            ),
            tokenizer=self.tokenizer,
        )
