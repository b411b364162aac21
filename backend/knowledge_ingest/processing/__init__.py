"""
Document Processing Package
════════════════════════════

The stages the ingestion orchestrator sequences:

  Format Detection → Text Extraction → Chunking → Embedding

Modules
───────
  detection.py  Extension / content-type / magic-byte format detection
  extractor.py  FileType → TextExtractor registry (PDF, DOCX, text, CSV)
  chunking.py   Paragraph-aware chunker with overlap and size ceiling
  embeddings.py Token-budgeted batch embedding client (httpx)

Every component is stateless and dependency-injected; persistence lives
in knowledge_ingest.storage.
"""

from knowledge_ingest.processing.chunking import ParagraphChunker, TextChunk
from knowledge_ingest.processing.detection import detect_file_type
from knowledge_ingest.processing.embeddings import EmbeddingClient
from knowledge_ingest.processing.extractor import (
    ExtractionResult,
    ExtractorRegistry,
    TextExtractor,
    build_default_registry,
)

__all__ = [
    "ParagraphChunker",
    "TextChunk",
    "detect_file_type",
    "EmbeddingClient",
    "ExtractionResult",
    "ExtractorRegistry",
    "TextExtractor",
    "build_default_registry",
]
