"""
Text Extraction
═══════════════

One extractor per supported format, looked up through a registry keyed
by FileType. Adding a format means registering one more TextExtractor;
nothing else in the pipeline branches on file type.

  PDF   → PyMuPDFExtractor   (native text layer, worker thread, timeout)
  DOCX  → DocxExtractor      (python-docx paragraphs + tables)
  TXT   → PlainTextExtractor (UTF-8, BOM tolerated, latin-1 fallback)
  MD    → PlainTextExtractor
  CSV   → CsvExtractor       (header + one prose line per row)

Every extractor returns an ExtractionResult and rejects whitespace-only
output with EmptyDocumentError. Parse failures are CorruptFileError;
a PDF that exceeds its parse budget is ExtractionTimeoutError, unless the
job-wide deadline was the tighter bound (IngestionTimeoutError).
"""

from __future__ import annotations

import asyncio
import csv
import io
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from knowledge_ingest.core.errors import (
    CorruptFileError,
    EmptyDocumentError,
    ExtractionTimeoutError,
    UnsupportedFormatError,
)
from knowledge_ingest.processing.chunking import build_page_map
from knowledge_ingest.schemas.documents import FileType
from knowledge_ingest.services.deadline import Deadline

logger = logging.getLogger(__name__)

T = TypeVar("T")

PDF_TIMEOUT_SECONDS = 30.0


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    """
    text       : extracted plain text (pages / paragraphs joined by blank lines)
    page_map   : char_offset → page_number (PDF only; empty otherwise)
    extractor  : name of the extractor that produced the text
    page_count : pages (PDF) or 0
    elapsed_ms : wall time spent extracting
    """
    text:       str
    extractor:  str
    page_map:   dict[int, int] = field(default_factory=dict)
    page_count: int            = 0
    elapsed_ms: float          = 0.0


def _clean(text: str) -> str:
    # NUL bytes are rejected by PostgreSQL text columns
    return text.replace("\x00", "")


def _require_text(result: ExtractionResult, label: str) -> ExtractionResult:
    if not result.text.strip():
        raise EmptyDocumentError(f"No text content could be extracted from the {label}")
    return result


# ---------------------------------------------------------------------------
# Abstract extractor
# ---------------------------------------------------------------------------

class TextExtractor(ABC):
    """
    All implementations accept raw bytes (never a file path) and hold no
    per-call state, so one registry instance serves concurrent jobs.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Extractor name for logging."""

    @abstractmethod
    async def extract(self, data: bytes, deadline: Deadline | None = None) -> ExtractionResult:
        """Return the document's plain text or raise an IngestionError."""

    async def _run_blocking(
        self,
        fn:       Callable[[bytes], T],
        data:     bytes,
        deadline: Deadline | None,
    ) -> T:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, fn, data)
        if deadline is None:
            return await future
        return await deadline.run(future, stage="extraction")


# ---------------------------------------------------------------------------
# PDF — PyMuPDF
# ---------------------------------------------------------------------------

class PyMuPDFExtractor(TextExtractor):
    """
    Reads the native PDF text layer with PyMuPDF in a worker thread.

    The parse is bounded by `timeout_seconds` and by the job deadline,
    whichever is sooner. The thread itself cannot be interrupted; on
    timeout its result is discarded.
    """

    def __init__(self, timeout_seconds: float = PDF_TIMEOUT_SECONDS) -> None:
        self._timeout = timeout_seconds

    @property
    def name(self) -> str:
        return "pymupdf"

    async def extract(self, data: bytes, deadline: Deadline | None = None) -> ExtractionResult:
        t0 = time.monotonic()
        budget = self._timeout
        if deadline is not None:
            deadline.check("extraction")
            budget = min(budget, deadline.remaining())

        loop = asyncio.get_running_loop()
        try:
            pages = await asyncio.wait_for(
                loop.run_in_executor(None, self._extract_sync, data),
                timeout=budget,
            )
        except asyncio.TimeoutError as exc:
            if deadline is not None and deadline.expired:
                deadline.check("extraction")
            logger.error("PDF parse timed out | budget=%.0fs", budget)
            raise ExtractionTimeoutError(
                f"PDF parsing timed out after {self._timeout:g} seconds"
            ) from exc

        kept = [(num, text) for num, text in pages if text.strip()]
        result = ExtractionResult(
            text="\n\n".join(text for _, text in kept),
            extractor=self.name,
            page_map=build_page_map(kept),
            page_count=len(pages),
            elapsed_ms=(time.monotonic() - t0) * 1000,
        )
        logger.info(
            "PyMuPDF | pages=%d total_chars=%d elapsed_ms=%.0f",
            result.page_count, len(result.text), result.elapsed_ms,
        )
        return _require_text(result, "PDF")

    def _extract_sync(self, data: bytes) -> list[tuple[int, str]]:
        """Blocking extraction — runs in thread executor."""
        import fitz  # PyMuPDF; imported here to avoid module-level import cost

        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except Exception as exc:
            raise CorruptFileError(f"Failed to parse PDF: {exc}") from exc

        with doc:
            if doc.needs_pass:
                raise CorruptFileError("Failed to parse PDF: document is password protected")
            if doc.page_count == 0:
                raise CorruptFileError("Failed to parse PDF: document has no pages")
            try:
                return [
                    (page_num, _clean(page.get_text("text") or "").strip())
                    for page_num, page in enumerate(doc, start=1)
                ]
            except Exception as exc:
                raise CorruptFileError(f"Failed to parse PDF: {exc}") from exc


# ---------------------------------------------------------------------------
# DOCX — python-docx
# ---------------------------------------------------------------------------

class DocxExtractor(TextExtractor):

    @property
    def name(self) -> str:
        return "python-docx"

    async def extract(self, data: bytes, deadline: Deadline | None = None) -> ExtractionResult:
        t0 = time.monotonic()
        text = await self._run_blocking(self._extract_sync, data, deadline)
        result = ExtractionResult(
            text=text,
            extractor=self.name,
            elapsed_ms=(time.monotonic() - t0) * 1000,
        )
        logger.info("DOCX | total_chars=%d elapsed_ms=%.0f", len(text), result.elapsed_ms)
        return _require_text(result, "DOCX file")

    def _extract_sync(self, data: bytes) -> str:
        from docx import Document

        try:
            doc = Document(io.BytesIO(data))
        except Exception as exc:
            raise CorruptFileError(f"Failed to parse DOCX: {exc}") from exc

        blocks = [p.text.strip() for p in doc.paragraphs if p.text.strip()]
        for table in doc.tables:
            for row in table.rows:
                cells = [c.text.strip() for c in row.cells if c.text.strip()]
                if cells:
                    blocks.append(" | ".join(cells))
        return _clean("\n\n".join(blocks))


# ---------------------------------------------------------------------------
# Plain text / markdown
# ---------------------------------------------------------------------------

def decode_text(data: bytes) -> str:
    """UTF-8 (BOM tolerated), falling back to latin-1 which never fails."""
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.warning("UTF-8 decode failed, falling back to latin-1 | bytes=%d", len(data))
        return data.decode("latin-1")


class PlainTextExtractor(TextExtractor):

    @property
    def name(self) -> str:
        return "plain-text"

    async def extract(self, data: bytes, deadline: Deadline | None = None) -> ExtractionResult:
        if deadline is not None:
            deadline.check("extraction")
        result = ExtractionResult(text=_clean(decode_text(data)), extractor=self.name)
        return _require_text(result, "text file")


# ---------------------------------------------------------------------------
# CSV
# ---------------------------------------------------------------------------

class CsvExtractor(TextExtractor):
    """
    Each data row becomes a readable line so it can be chunked and
    embedded like prose:

        Headers: name, city
        Row 1: name: Ada | city: London
    """

    @property
    def name(self) -> str:
        return "csv"

    async def extract(self, data: bytes, deadline: Deadline | None = None) -> ExtractionResult:
        if deadline is not None:
            deadline.check("extraction")

        raw = _clean(decode_text(data))
        try:
            rows = list(csv.reader(io.StringIO(raw)))
        except csv.Error as exc:
            raise CorruptFileError(f"Failed to parse CSV: {exc}") from exc

        rows = [r for r in rows if any(cell.strip() for cell in r)]
        if not rows:
            raise EmptyDocumentError("No text content could be extracted from the CSV file")

        header = [h.strip() for h in rows[0]]
        lines = [f"Headers: {', '.join(header)}"]
        for idx, row in enumerate(rows[1:], start=1):
            parts = []
            for col, value in enumerate(row):
                value = value.strip()
                if not value:
                    continue
                label = header[col] if col < len(header) and header[col] else f"column {col + 1}"
                parts.append(f"{label}: {value}")
            if parts:
                lines.append(f"Row {idx}: " + " | ".join(parts))

        result = ExtractionResult(text="\n".join(lines), extractor=self.name)
        logger.info("CSV | rows=%d total_chars=%d", len(rows) - 1, len(result.text))
        return _require_text(result, "CSV file")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ExtractorRegistry:
    """FileType → TextExtractor map."""

    def __init__(self, extractors: dict[FileType, TextExtractor] | None = None) -> None:
        self._extractors: dict[FileType, TextExtractor] = dict(extractors or {})

    def register(self, file_type: FileType, extractor: TextExtractor) -> None:
        self._extractors[file_type] = extractor

    def supports(self, file_type: FileType) -> bool:
        return file_type in self._extractors

    def get(self, file_type: FileType) -> TextExtractor:
        try:
            return self._extractors[file_type]
        except KeyError:
            raise UnsupportedFormatError(
                f"Unsupported file type: {file_type.value}"
            ) from None

    async def extract(
        self,
        file_type: FileType,
        data:      bytes,
        deadline:  Deadline | None = None,
    ) -> ExtractionResult:
        return await self.get(file_type).extract(data, deadline)


def build_default_registry(pdf_timeout_seconds: float = PDF_TIMEOUT_SECONDS) -> ExtractorRegistry:
    text = PlainTextExtractor()
    return ExtractorRegistry({
        FileType.PDF:      PyMuPDFExtractor(timeout_seconds=pdf_timeout_seconds),
        FileType.DOCX:     DocxExtractor(),
        FileType.TXT:      text,
        FileType.MARKDOWN: text,
        FileType.CSV:      CsvExtractor(),
    })
