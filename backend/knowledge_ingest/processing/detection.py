"""
Format detection.

Resolution order:
  1. file extension (most reliable for browser uploads)
  2. declared content-type
  3. magic bytes of the payload head (%PDF, ZIP container)

Returns FileType.UNKNOWN rather than raising; the orchestrator turns
UNKNOWN into UnsupportedFormatError before any extraction work starts.
"""

from __future__ import annotations

import logging
import os

from knowledge_ingest.schemas.documents import FileType

logger = logging.getLogger(__name__)

_EXTENSIONS: dict[str, FileType] = {
    ".pdf":      FileType.PDF,
    ".docx":     FileType.DOCX,
    ".txt":      FileType.TXT,
    ".text":     FileType.TXT,
    ".md":       FileType.MARKDOWN,
    ".markdown": FileType.MARKDOWN,
    ".csv":      FileType.CSV,
}

_CONTENT_TYPES: dict[str, FileType] = {
    "application/pdf": FileType.PDF,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": FileType.DOCX,
    "text/plain":      FileType.TXT,
    "text/markdown":   FileType.MARKDOWN,
    "text/x-markdown": FileType.MARKDOWN,
    "text/csv":        FileType.CSV,
    "application/csv": FileType.CSV,
}

_PDF_MAGIC = b"%PDF"
_ZIP_MAGIC = b"PK\x03\x04"   # .docx is a ZIP container


def detect_file_type(
    filename:     str | None,
    content_type: str | None = None,
    head:         bytes = b"",
) -> FileType:
    """Resolve the document format from name, declared type, then content."""
    if filename:
        ext = os.path.splitext(filename.strip().lower())[1]
        if ext in _EXTENSIONS:
            return _EXTENSIONS[ext]

    if content_type:
        # strip parameters: "text/plain; charset=utf-8"
        mime = content_type.split(";", 1)[0].strip().lower()
        if mime in _CONTENT_TYPES:
            return _CONTENT_TYPES[mime]

    if head.startswith(_PDF_MAGIC):
        return FileType.PDF
    if head.startswith(_ZIP_MAGIC):
        return FileType.DOCX

    logger.warning(
        "Format detection failed | filename=%s content_type=%s", filename, content_type
    )
    return FileType.UNKNOWN
