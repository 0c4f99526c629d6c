"""Tests for the text chunker."""

import pytest

from docsync.services.chunker import chunk_text


class TestChunkText:
    """Test overlapping window chunking."""

    def test_empty_content_has_no_chunks(self):
        assert chunk_text("", "a.md") == []

    def test_short_content_is_single_chunk(self):
        chunks = chunk_text("hello", "a.md", size=1000, overlap=200)

        assert len(chunks) == 1
        assert chunks[0].content == "hello"
        assert chunks[0].path == "a.md"
        assert chunks[0].chunk_index == 0

    def test_windows_overlap(self):
        content = "".join(str(i % 10) for i in range(2500))

        chunks = chunk_text(content, "a.md", size=1000, overlap=200)

        assert [c.chunk_index for c in chunks] == [0, 1, 2]
        assert chunks[0].content == content[0:1000]
        assert chunks[1].content == content[800:1800]
        assert chunks[2].content == content[1600:2500]

    def test_overlap_not_smaller_than_size_still_advances(self):
        content = "x" * 25

        chunks = chunk_text(content, "a.md", size=10, overlap=10)

        # Cursor moves one character at a time until the last window reaches the end
        assert len(chunks) == 16
        assert chunks[-1].content == content[15:25]

    def test_max_chunks_caps_output(self):
        chunks = chunk_text("a" * 100, "a.md", size=10, overlap=0, max_chunks=3)

        assert len(chunks) == 3

    def test_invalid_size_raises(self):
        with pytest.raises(ValueError):
            chunk_text("abc", "a.md", size=0)

    def test_negative_overlap_raises(self):
        with pytest.raises(ValueError):
            chunk_text("abc", "a.md", size=10, overlap=-1)
