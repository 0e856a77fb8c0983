"""Tests for the line-based chunker."""

from __future__ import annotations

import pytest

from codescout.core.errors import ConfigurationError
from codescout.core.tokens import ApproxTokenizer
from codescout.index._internal.chunking import Chunker, ChunkSource

SOURCE = ChunkSource(file_id=1, path="/ws/src/app.py", content_hash="abc123")


class WordTokenizer:
    """One token per whitespace-separated word."""

    def length(self, text: str) -> int:
        return len(text.split())


@pytest.fixture
def chunker() -> Chunker:
    return Chunker(ApproxTokenizer(), max_tokens=250)


class TestChunkBounds:
    """Every chunk respects the token ceiling."""

    @pytest.mark.parametrize("max_tokens", [5, 20, 64, 250])
    def test_no_chunk_exceeds_max_tokens(self, max_tokens: int) -> None:
        # Given
        text = "\n".join(f"value_{i} = compute(alpha, beta, gamma, {i})" for i in range(200))
        chunker = Chunker(ApproxTokenizer(), max_tokens=max_tokens)

        # When
        chunks = list(chunker.chunk(SOURCE, text))

        # Then
        assert chunks
        assert all(c.token_count <= max_tokens for c in chunks)

    def test_overlong_line_is_truncated(self) -> None:
        chunker = Chunker(WordTokenizer(), max_tokens=3)

        [chunk] = list(chunker.chunk(SOURCE, "one two three four five six"))

        assert chunk.token_count <= 3
        assert chunk.text.startswith("one two")

    @pytest.mark.parametrize("max_tokens", [0, -5])
    def test_non_positive_max_tokens_raise(self, max_tokens: int) -> None:
        with pytest.raises(ConfigurationError):
            Chunker(ApproxTokenizer(), max_tokens=max_tokens)

    def test_non_positive_override_raises(self, chunker: Chunker) -> None:
        with pytest.raises(ConfigurationError):
            chunker.chunk(SOURCE, "x = 1", max_tokens=0)


class TestChunkContent:
    def test_chunks_are_contiguous_and_ordered(self) -> None:
        """Line ranges are increasing, inclusive and cover every kept line."""
        # Given
        lines = [f"line_{i} = {i}" for i in range(60)]
        chunker = Chunker(ApproxTokenizer(), max_tokens=20)

        # When
        chunks = list(chunker.chunk(SOURCE, "\n".join(lines)))

        # Then
        assert [c.index for c in chunks] == list(range(len(chunks)))
        assert chunks[0].start_line == 0
        assert chunks[-1].end_line == 59
        for prev, nxt in zip(chunks, chunks[1:], strict=False):
            assert nxt.start_line == prev.end_line + 1

    def test_chunks_carry_source_identity(self, chunker: Chunker) -> None:
        [chunk] = list(chunker.chunk(SOURCE, "def main():\n    return 0\n"))

        assert chunk.file_id == 1
        assert chunk.path == "/ws/src/app.py"
        assert chunk.content_hash == "abc123"
        assert chunk.key == (1, "abc123", 0)
        assert chunk.chunk_id is None

    def test_shared_indentation_is_removed(self, chunker: Chunker) -> None:
        text = "    def method(self):\n        return self.value\n"

        [chunk] = list(chunker.chunk(SOURCE, text))

        assert chunk.text == "def method(self):\n    return self.value"
        assert chunk.raw_text == "    def method(self):\n        return self.value"

    def test_blank_lines_removed_by_default(self, chunker: Chunker) -> None:
        [chunk] = list(chunker.chunk(SOURCE, "a = 1\n\n\nb = 2\n"))
        assert chunk.text == "a = 1\nb = 2"

    def test_blank_lines_kept_when_disabled(self, chunker: Chunker) -> None:
        [chunk] = list(chunker.chunk(SOURCE, "a = 1\n\nb = 2", remove_empty_lines=False))
        assert chunk.text == "a = 1\n\nb = 2"

    def test_punctuation_only_chunks_are_dropped(self) -> None:
        chunker = Chunker(WordTokenizer(), max_tokens=3)
        text = "alpha beta\n} ) ;\ngamma delta"

        chunks = list(chunker.chunk(SOURCE, text))

        assert [c.text for c in chunks] == ["alpha beta", "gamma delta"]

    def test_empty_text_yields_nothing(self, chunker: Chunker) -> None:
        assert list(chunker.chunk(SOURCE, "")) == []
        assert list(chunker.chunk(SOURCE, "\n\n   \n")) == []


class TestFullFileFlag:
    def test_single_chunk_covering_file_is_full_file(self, chunker: Chunker) -> None:
        text = "\n\nimport os\n\nprint(os.getcwd())\n\n"

        [chunk] = list(chunker.chunk(SOURCE, text))

        assert chunk.is_full_file

    def test_split_file_has_no_full_file_chunk(self) -> None:
        chunker = Chunker(ApproxTokenizer(), max_tokens=10)
        text = "\n".join(f"item_{i} = {i}" for i in range(30))

        chunks = list(chunker.chunk(SOURCE, text))

        assert len(chunks) > 1
        assert not any(c.is_full_file for c in chunks)

    def test_eighty_short_lines_fit_in_one_chunk(self, chunker: Chunker) -> None:
        text = "\n".join("x = 1" for _ in range(80))

        chunks = list(chunker.chunk(SOURCE, text))

        assert len(chunks) == 1
        assert chunks[0].is_full_file
        assert (chunks[0].start_line, chunks[0].end_line) == (0, 79)


class TestChunkSequence:
    def test_sequence_is_restartable_and_deterministic(self, chunker: Chunker) -> None:
        """Iterating twice yields identical chunks."""
        text = "\n".join(f"def f{i}(x):\n    return x * {i}" for i in range(100))
        sequence = chunker.chunk(SOURCE, text, max_tokens=30)

        first = list(sequence)
        second = list(sequence)

        assert first == second
        assert len(first) > 1
