"""Tests for the word-window chunker."""

import pytest

from knowledge_rag.chunker import DEFAULT_WORDS_PER_CHUNK, chunk_text


class TestChunkText:
    def test_short_text_is_one_chunk(self) -> None:
        assert chunk_text("Lev-Boots reduce gravity.") == ["Lev-Boots reduce gravity."]

    def test_whitespace_is_normalized(self) -> None:
        assert chunk_text("a b  c\nd e", words_per_chunk=3) == ["a b c", "d e"]

    def test_empty_and_blank_input_produce_no_chunks(self) -> None:
        assert chunk_text("") == []
        assert chunk_text("   \n\t  ") == []

    def test_windows_do_not_overlap(self) -> None:
        words = [f"w{i}" for i in range(1000)]
        chunks = chunk_text(" ".join(words))

        assert len(chunks) == 3
        assert [len(c.split()) for c in chunks] == [400, 400, 200]
        # Concatenating the chunks gives back every word exactly once, in order.
        assert " ".join(chunks).split() == words

    def test_exact_multiple_has_no_trailing_empty_chunk(self) -> None:
        text = " ".join(["word"] * (DEFAULT_WORDS_PER_CHUNK * 2))
        assert len(chunk_text(text)) == 2

    @pytest.mark.parametrize("size", [0, -1])
    def test_invalid_window_size_raises(self, size: int) -> None:
        with pytest.raises(ValueError):
            chunk_text("some text", words_per_chunk=size)
