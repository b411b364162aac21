"""
Paragraph-Aware Chunker
═══════════════════════

Why paragraphs?
───────────────
  Embedding quality depends on chunks being coherent units of text.
  Cutting every N characters splits sentences and headings from their
  bodies; keeping whole paragraphs together (up to the chunk size) keeps
  related content in one vector.

Algorithm
─────────
  1. Split the text at blank-line boundaries into paragraphs, keeping
     each paragraph's source offsets.
  2. Accumulate paragraphs into a buffer while it stays within `size`.
  3. When the next paragraph would overflow, seal the buffer. The next
     buffer starts `overlap` characters before the sealed end, pulled
     forward if needed so it still fits the paragraph within `size`.
  4. A paragraph longer than `size` seals the pending buffer and is
     sliced into fixed windows of `size` with stride `size - overlap`.
  5. Text with at most one paragraph is sliced the same way.
  6. Post-pass: collapse whitespace runs, drop empty chunks, re-index.

Every chunk is a slice text[char_start:char_end] of the input (before the
whitespace collapse), so its range is exact provenance and
len(content) <= size always holds.

Hints
─────
  section : nearest preceding heading-like line (markdown, numbered, ALL CAPS)
  page    : page number from the extractor's page map (PDF only)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from knowledge_ingest.core.errors import ChunkingError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

DEFAULT_CHUNK_SIZE    = 2000   # characters, not tokens (1 token ≈ 4 chars)
DEFAULT_CHUNK_OVERLAP = 150

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")

# Heading detection regex: lines that look like headings
#   - ALL CAPS line ≥ 3 words
#   - Markdown headings: # Heading, ## Heading
#   - Numbered sections: "1.2.3 Overview", "SECTION 4:"
_HEADING_RE = re.compile(
    r"""
    ^(
        \#{1,6}\s+.+                             # Markdown heading
      | [A-Z][A-Z\s]{4,}\b                       # ALL CAPS (5+ chars)
      | (?:\d+\.)+\d*\s+[A-Z].{3,}              # Numbered: 1.2.3 Title
      | (?:Section|Chapter|Article|Appendix)\s+\S+  # Common doc headings
    )$
    """,
    re.VERBOSE,
)

# Minimum heading line length (avoids matching short ALL-CAPS words like "NOTE:")
MIN_HEADING_LEN = 8


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class TextChunk:
    """
    One chunk ready for embedding.

    char_start / char_end : half-open range in the chunker input
    section               : nearest heading, if any
    page                  : 1-based page where the chunk starts, if known
    """
    content:     str
    chunk_index: int
    char_start:  int
    char_end:    int
    section:     str | None = None
    page:        int | None = None

    @property
    def metadata(self) -> dict[str, Any]:
        return {
            "chunk_index": self.chunk_index,
            "char_start":  self.char_start,
            "char_end":    self.char_end,
            "section":     self.section,
            "page":        self.page,
        }


# ---------------------------------------------------------------------------
# Core chunker
# ---------------------------------------------------------------------------

class ParagraphChunker:
    """
    Stateless paragraph-aware chunker.

    Usage:
        chunker = ParagraphChunker(size=2000, overlap=150)
        chunks  = chunker.chunk(text, page_map=result.page_map)
    """

    def __init__(
        self,
        size:    int = DEFAULT_CHUNK_SIZE,
        overlap: int = DEFAULT_CHUNK_OVERLAP,
    ) -> None:
        if size <= 0:
            raise ChunkingError(f"Chunk size must be positive, got {size}")
        if overlap < 0:
            raise ChunkingError(f"Chunk overlap must not be negative, got {overlap}")
        if overlap >= size:
            raise ChunkingError(
                f"Chunk overlap ({overlap}) must be smaller than chunk size ({size})"
            )
        self.size    = size
        self.overlap = overlap

    def chunk(
        self,
        text:     str,
        page_map: dict[int, int] | None = None,
    ) -> list[TextChunk]:
        """Split `text` into ordered chunks (chunk_index 0, 1, 2, …)."""
        if not text or not text.strip():
            return []

        headings = _heading_offsets(text)
        results: list[TextChunk] = []

        for start, end in self._ranges(text):
            content = " ".join(text[start:end].split())
            if not content:
                continue
            results.append(TextChunk(
                content=content,
                chunk_index=len(results),
                char_start=start,
                char_end=end,
                section=_nearest_heading(headings, start, end),
                page=lookup_page(start, page_map),
            ))

        logger.info(
            "ParagraphChunker | chars=%d chunks=%d size=%d overlap=%d",
            len(text), len(results), self.size, self.overlap,
        )
        return results

    # ------------------------------------------------------------------
    # Range computation
    # ------------------------------------------------------------------

    def _ranges(self, text: str) -> list[tuple[int, int]]:
        spans = _paragraph_spans(text)
        if len(spans) <= 1:
            return self._windows(0, len(text))

        ranges: list[tuple[int, int]] = []
        buf_start: int | None = None
        buf_end = 0

        for para_start, para_end in spans:
            if para_end - para_start > self.size:
                # Oversized paragraph: flush, then slice on its own
                if buf_start is not None:
                    ranges.append((buf_start, buf_end))
                    buf_start = None
                ranges.extend(self._windows(para_start, para_end))
                continue

            if buf_start is None:
                buf_start, buf_end = para_start, para_end
            elif para_end - buf_start <= self.size:
                buf_end = para_end
            else:
                ranges.append((buf_start, buf_end))
                buf_start = max(buf_end - self.overlap, para_end - self.size, buf_start)
                buf_end = para_end

        if buf_start is not None:
            ranges.append((buf_start, buf_end))
        return ranges

    def _windows(self, start: int, end: int) -> list[tuple[int, int]]:
        """Fixed-width windows over [start, end) with stride size - overlap."""
        windows: list[tuple[int, int]] = []
        while True:
            stop = min(end, start + self.size)
            windows.append((start, stop))
            if stop >= end:
                return windows
            start = stop - self.overlap


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _paragraph_spans(text: str) -> list[tuple[int, int]]:
    """(start, end) of every non-blank paragraph, in source order."""
    spans: list[tuple[int, int]] = []
    start = 0
    for match in _PARAGRAPH_BREAK.finditer(text):
        if text[start:match.start()].strip():
            spans.append((start, match.start()))
        start = match.end()
    if text[start:].strip():
        spans.append((start, len(text)))
    return spans


def _heading_offsets(text: str) -> list[tuple[int, str]]:
    headings: list[tuple[int, str]] = []
    offset = 0
    for line in text.splitlines(keepends=True):
        stripped = line.strip()
        if len(stripped) >= MIN_HEADING_LEN and _HEADING_RE.match(stripped):
            headings.append((offset, stripped.lstrip("#").strip()))
        offset += len(line)
    return headings


def _nearest_heading(headings: list[tuple[int, str]], start: int, end: int) -> str | None:
    """Last heading at or before `start`; else the first one inside the chunk."""
    found: str | None = None
    for offset, heading in headings:
        if offset <= start:
            found = heading
        elif found is None and offset < end:
            return heading
        else:
            break
    return found


def lookup_page(char_offset: int, page_map: dict[int, int] | None) -> int | None:
    """
    Look up the page number for a given character offset.
    page_map keys are the starting char offset of each page.
    Returns None if there is no page_map.
    """
    if not page_map:
        return None
    page: int | None = None
    for offset_start, page_num in sorted(page_map.items()):
        if char_offset >= offset_start:
            page = page_num
        else:
            break
    return page if page is not None else min(page_map.values())


def build_page_map(pages_text: list[tuple[int, str]]) -> dict[int, int]:
    """
    Build a char_offset → page_number map from a list of (page_num, text) tuples.
    The pages are assumed to be joined with a "\\n\\n" separator.

    Example:
        build_page_map([(1, "intro text"), (2, "body text")])
        → {0: 1, 12: 2}
    """
    page_map: dict[int, int] = {}
    offset = 0
    for page_num, text in pages_text:
        page_map[offset] = page_num
        offset += len(text) + 2   # +2 for the "\n\n" separator
    return page_map
