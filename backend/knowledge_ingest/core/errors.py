"""
Ingestion error taxonomy.

Every stage raises one of these; the orchestrator catches them once,
persists `str(exc)` to the document record (status=failed) and re-raises.
`code` is a stable machine-readable identifier used by the API layer.
"""

from __future__ import annotations

from uuid import UUID


class IngestionError(Exception):
    """Base class for every failure the pipeline reports to callers."""

    code = "INGESTION_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class UnsupportedFormatError(IngestionError):
    code = "UNSUPPORTED_FORMAT"


class ExtractionError(IngestionError):
    code = "EXTRACTION_FAILED"


class CorruptFileError(ExtractionError):
    code = "CORRUPT_FILE"


class ExtractionTimeoutError(ExtractionError):
    code = "EXTRACTION_TIMEOUT"


class EmptyDocumentError(IngestionError):
    code = "EMPTY_DOCUMENT"


class OversizedInputError(IngestionError):
    code = "FILE_TOO_LARGE"

    def __init__(self, size_bytes: int, limit_bytes: int) -> None:
        super().__init__(
            f"File size {size_bytes} exceeds maximum {limit_bytes} bytes"
        )
        self.size_bytes  = size_bytes
        self.limit_bytes = limit_bytes


class ChunkingError(IngestionError):
    code = "CHUNKING_FAILED"


class TooManyChunksError(IngestionError):
    code = "TOO_MANY_CHUNKS"

    def __init__(self, chunk_count: int, limit: int) -> None:
        super().__init__(
            f"Document too large: {chunk_count} chunks created (maximum is {limit}). "
            "Please split the document into smaller files."
        )
        self.chunk_count = chunk_count
        self.limit       = limit


class EmbeddingServiceError(IngestionError):
    code = "EMBEDDING_SERVICE_ERROR"

    def __init__(
        self,
        message:     str,
        status_code: int | None = None,
        body:        str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body        = body


class DimensionMismatchError(IngestionError):
    """Vector width differs from the index dimension, or vector count != chunk count."""

    code = "DIMENSION_MISMATCH"

    def __init__(self, message: str, expected: int, actual: int) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual   = actual


class IngestionTimeoutError(IngestionError, TimeoutError):
    """Raised when the per-job watchdog deadline expires."""

    code = "INGESTION_TIMEOUT"


class DocumentNotFoundError(IngestionError):
    code = "DOCUMENT_NOT_FOUND"

    def __init__(self, document_id: UUID) -> None:
        super().__init__(f"Document '{document_id}' was not found")
        self.document_id = document_id


class InvalidStateError(IngestionError):
    code = "INVALID_STATE"
