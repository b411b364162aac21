"""
Unit Tests — ParagraphChunker
═════════════════════════════
Properties checked on every layout:
  • len(content) <= size
  • content is the whitespace-collapsed slice text[char_start:char_end]
  • chunk_index is dense 0..n-1 and ranges are in source order
  • consecutive ranges overlap, or only whitespace lies between them
"""

from __future__ import annotations

import pytest

from knowledge_ingest.core.errors import ChunkingError
from knowledge_ingest.processing.chunking import (
    ParagraphChunker,
    build_page_map,
    lookup_page,
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _paragraph(n: int, words: int = 12) -> str:
    return " ".join(f"p{n}w{i}" for i in range(words)) + "."


def _assert_invariants(text: str, chunks, size: int) -> None:
    assert chunks, "expected at least one chunk"
    for expected_index, chunk in enumerate(chunks):
        assert chunk.chunk_index == expected_index
        assert len(chunk.content) <= size
        assert chunk.content == " ".join(text[chunk.char_start:chunk.char_end].split())
        assert 0 <= chunk.char_start < chunk.char_end <= len(text)

    for prev, nxt in zip(chunks, chunks[1:]):
        assert nxt.char_start > prev.char_start
        if nxt.char_start > prev.char_end:
            assert not text[prev.char_end:nxt.char_start].strip()

    # every non-whitespace character is covered by some chunk
    covered = set()
    for chunk in chunks:
        covered.update(range(chunk.char_start, chunk.char_end))
    for pos, ch in enumerate(text):
        if not ch.isspace():
            assert pos in covered


# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestChunkerConfiguration:

    @pytest.mark.parametrize("size, overlap", [(0, 0), (-5, 0), (100, -1), (100, 100), (100, 150)])
    def test_invalid_parameters_rejected(self, size, overlap):
        with pytest.raises(ChunkingError):
            ParagraphChunker(size=size, overlap=overlap)

    def test_defaults(self):
        chunker = ParagraphChunker()
        assert chunker.size == 2000
        assert chunker.overlap == 150


# ─────────────────────────────────────────────────────────────────────────────
# Layouts
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestParagraphChunking:

    def test_empty_and_whitespace_text_give_no_chunks(self):
        chunker = ParagraphChunker(size=100, overlap=10)
        assert chunker.chunk("") == []
        assert chunker.chunk("   \n\n\t  ") == []

    def test_short_single_paragraph_is_one_chunk(self):
        text = "A short note about the venue."
        chunks = ParagraphChunker(size=100, overlap=10).chunk(text)
        assert len(chunks) == 1
        assert chunks[0].content == text
        assert (chunks[0].char_start, chunks[0].char_end) == (0, len(text))

    def test_small_paragraphs_are_packed_together(self):
        text = "First para.\n\nSecond para.\n\nThird para."
        chunks = ParagraphChunker(size=200, overlap=20).chunk(text)
        assert len(chunks) == 1
        assert chunks[0].content == "First para. Second para. Third para."

    def test_many_paragraphs_respect_size_and_provenance(self):
        text = "\n\n".join(_paragraph(n) for n in range(30))
        size = 300
        chunks = ParagraphChunker(size=size, overlap=40).chunk(text)
        assert len(chunks) > 1
        _assert_invariants(text, chunks, size)

    def test_overlap_carries_tail_of_previous_chunk(self):
        text = "\n\n".join(_paragraph(n) for n in range(10))
        chunks = ParagraphChunker(size=250, overlap=40).chunk(text)
        assert len(chunks) > 1
        for prev, nxt in zip(chunks, chunks[1:]):
            assert nxt.char_start < prev.char_end
            assert prev.char_end - nxt.char_start <= 40

    def test_zero_overlap_leaves_only_whitespace_between_chunks(self):
        text = "\n\n".join(_paragraph(n) for n in range(10))
        chunks = ParagraphChunker(size=250, overlap=0).chunk(text)
        _assert_invariants(text, chunks, 250)
        for prev, nxt in zip(chunks, chunks[1:]):
            assert nxt.char_start >= prev.char_end

    def test_oversized_paragraph_is_windowed_with_stride(self):
        big = "x" * 1000
        text = f"Intro paragraph.\n\n{big}\n\nClosing paragraph."
        size, overlap = 300, 50
        chunks = ParagraphChunker(size=size, overlap=overlap).chunk(text)
        _assert_invariants(text, chunks, size)

        big_start = text.index(big)
        windows = [c for c in chunks if big_start <= c.char_start < big_start + len(big)]
        starts = [c.char_start for c in windows]
        assert starts[0] == big_start
        assert all(b - a == size - overlap for a, b in zip(starts, starts[1:]))
        assert windows[-1].char_end == big_start + len(big)

    def test_single_paragraph_longer_than_size_is_windowed(self):
        text = "word " * 200
        chunks = ParagraphChunker(size=120, overlap=20).chunk(text)
        assert len(chunks) > 1
        _assert_invariants(text, chunks, 120)
        assert chunks[1].char_start == 100

    def test_whitespace_runs_collapsed(self):
        text = "Line one\nline two\t\twith   tabs.\n\nSecond    para."
        chunks = ParagraphChunker(size=500, overlap=0).chunk(text)
        assert chunks[0].content == "Line one line two with tabs. Second para."

    def test_chunk_indices_dense_after_dropping_blank_windows(self):
        text = "a" * 90 + " " * 200 + "b" * 90
        chunks = ParagraphChunker(size=100, overlap=0).chunk(text)
        assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
        assert all(c.content for c in chunks)


# ─────────────────────────────────────────────────────────────────────────────
# Default size / overlap (2000 / 150)
# ─────────────────────────────────────────────────────────────────────────────

def _letters(n: int) -> str:
    return "".join(chr(ord("a") + i % 26) for i in range(n))


def _rebuild_from_new_regions(text: str, chunks) -> str:
    """Concatenate each chunk's range minus what earlier chunks already covered."""
    pieces: list[str] = []
    cursor = chunks[0].char_start
    for chunk in chunks:
        if chunk.char_start > cursor:
            pieces.append(" ")
        start = max(chunk.char_start, cursor)
        pieces.append(text[start:chunk.char_end])
        cursor = max(cursor, chunk.char_end)
    return " ".join("".join(pieces).split())


@pytest.mark.unit
@pytest.mark.ingestion
class TestDefaultChunking:

    def test_two_short_paragraphs_join_into_one_chunk(self):
        text = "A" * 500 + "\n\n" + "B" * 500
        chunks = ParagraphChunker().chunk(text)

        assert len(chunks) == 1
        assert chunks[0].content == "A" * 500 + " " + "B" * 500
        assert (chunks[0].char_start, chunks[0].char_end) == (0, len(text))

    def test_5000_char_paragraph_gives_three_overlapping_chunks(self):
        text = _letters(5000)
        chunks = ParagraphChunker().chunk(text)

        assert len(chunks) == 3
        assert [(c.char_start, c.char_end) for c in chunks] == [(0, 2000), (1850, 3850), (3700, 5000)]
        assert chunks[1].content[:150] == chunks[0].content[-150:]
        assert chunks[2].content[:150] == chunks[1].content[-150:]
        _assert_invariants(text, chunks, 2000)

    def test_new_regions_rebuild_normalized_text(self):
        paragraphs = [
            "# Venue guide",
            "Parking   is free after six.\nShuttles run\tevery twenty minutes.",
            " ".join(f"detail{i}" for i in range(600)),
            "\n".join(_paragraph(n, words=40) for n in range(5)),
            "Questions go to the front desk.",
        ]
        text = "\n\n".join(paragraphs * 3)
        chunks = ParagraphChunker().chunk(text)

        assert len(chunks) > 3
        _assert_invariants(text, chunks, 2000)
        assert _rebuild_from_new_regions(text, chunks) == " ".join(text.split())


# ─────────────────────────────────────────────────────────────────────────────
# Section & page hints
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestChunkHints:

    def test_section_from_markdown_heading(self):
        text = "# Travel Policy\n\nFlights must be booked two weeks ahead."
        chunks = ParagraphChunker(size=500, overlap=0).chunk(text)
        assert chunks[0].section == "Travel Policy"

    def test_section_follows_preceding_heading(self):
        body = "\n\n".join(_paragraph(n) for n in range(6))
        text = f"GENERAL INFORMATION\n\n{body}\n\nSECURITY PROCEDURES\n\n{body}"
        chunks = ParagraphChunker(size=250, overlap=0).chunk(text)
        assert chunks[0].section == "GENERAL INFORMATION"
        assert chunks[-1].section == "SECURITY PROCEDURES"

    def test_no_section_without_headings(self):
        chunks = ParagraphChunker(size=500, overlap=0).chunk("just some lowercase prose here.")
        assert chunks[0].section is None

    def test_page_hint_from_page_map(self):
        pages = [(1, "A" * 150), (2, "B" * 150)]
        text = "\n\n".join(t for _, t in pages)
        page_map = build_page_map(pages)
        chunks = ParagraphChunker(size=150, overlap=0).chunk(text, page_map=page_map)
        assert [c.page for c in chunks] == [1, 2]

    def test_no_page_hint_without_page_map(self):
        chunks = ParagraphChunker(size=500, overlap=0).chunk("Some text.")
        assert chunks[0].page is None

    def test_metadata_carries_range_and_hints(self):
        chunk = ParagraphChunker(size=500, overlap=0).chunk("# Agenda Overview\n\nDay one.")[0]
        assert chunk.metadata == {
            "chunk_index": 0,
            "char_start":  0,
            "char_end":    len("# Agenda Overview\n\nDay one."),
            "section":     "Agenda Overview",
            "page":        None,
        }


@pytest.mark.unit
class TestPageMap:

    def test_build_page_map_accounts_for_separator(self):
        assert build_page_map([(1, "intro text"), (2, "body text")]) == {0: 1, 12: 2}

    def test_lookup_page(self):
        page_map = {0: 1, 12: 2, 40: 3}
        assert lookup_page(0, page_map) == 1
        assert lookup_page(11, page_map) == 1
        assert lookup_page(12, page_map) == 2
        assert lookup_page(100, page_map) == 3

    def test_lookup_page_without_map(self):
        assert lookup_page(5, {}) is None
        assert lookup_page(5, None) is None
