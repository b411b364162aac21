"""
Knowledge Ingestion — Pydantic Request/Response Schemas

Covers the full lifecycle of a knowledge document:
  - Ingestion request payload (uploaded bytes or raw text + metadata)
  - Success result returned by the orchestrator / API
  - Structured progress (stage + percent), kept separate from extracted text
  - Bulk re-ingestion filter and summary
  - Structured error bodies for every documented failure

Design decisions:
  - document_id is server-generated (UUID4) unless an existing record is re-ingested.
  - status is the catalog state machine; progress is advisory only.
  - All timestamps are timezone-aware UTC.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator


# ---------------------------------------------------------------------------
# Supported formats
# ---------------------------------------------------------------------------

class FileType(str, Enum):
    """Document formats understood by the extractor registry."""
    PDF      = "pdf"
    DOCX     = "docx"       # word-processor document
    TXT      = "txt"        # plain text
    MARKDOWN = "md"
    CSV      = "csv"        # tabular text
    UNKNOWN  = "unknown"


# ---------------------------------------------------------------------------
# Catalog state machine
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    """
    Maps to knowledge_documents.status.
    Transitions: pending → ingesting → ingested | failed
                 failed / ingested → ingesting (resubmission / re-ingestion)
    """
    PENDING   = "pending"     # record created at upload time, not started
    INGESTING = "ingesting"   # orchestrator actively working
    INGESTED  = "ingested"    # all chunks + vectors persisted
    FAILED    = "failed"      # see error field


REINGESTABLE_STATUSES: frozenset[DocumentStatus] = frozenset(
    {DocumentStatus.INGESTED, DocumentStatus.FAILED}
)


class ProgressStage(str, Enum):
    EXTRACTING = "extracting"
    CHUNKING   = "chunking"
    EMBEDDING  = "embedding"
    STORING    = "storing"


class Progress(BaseModel):
    """Advisory progress marker persisted alongside the catalog record."""
    stage:   ProgressStage
    percent: int = Field(0, ge=0, le=100)


# ---------------------------------------------------------------------------
# Ingestion request — the upload payload handed to the orchestrator
# ---------------------------------------------------------------------------

class IngestRequest(BaseModel):
    """
    Exactly one of file_bytes / text_content must be supplied.
    document_id re-targets an existing catalog record (resubmission).
    """
    file_bytes:        bytes | None = None
    text_content:      str | None   = None
    title:             str          = Field(..., min_length=1, max_length=255)
    uploader_id:       str          = Field(..., min_length=1)
    organization_id:   str | None   = None
    event_id:          str | None   = None
    tags:              list[str]    = Field(default_factory=list)
    document_id:       UUID | None  = None
    storage_path:      str | None   = None
    original_filename: str | None   = None
    content_type:      str | None   = None
    file_type:         FileType | None = None
    source:            str | None   = None

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("title must not be blank")
        return value

    @field_validator("tags")
    @classmethod
    def _clean_tags(cls, value: list[str]) -> list[str]:
        return [t.strip() for t in value if t and t.strip()]

    @model_validator(mode="after")
    def _require_content(self) -> "IngestRequest":
        if self.file_bytes is None and self.text_content is None:
            raise ValueError("No file or text content provided for ingestion")
        if self.file_bytes is not None and self.text_content is not None:
            raise ValueError("Provide either file bytes or text content, not both")
        return self

    @property
    def resolved_source(self) -> str:
        if self.source:
            return self.source
        return "text-upload" if self.text_content is not None else "user-upload"


class IngestResult(BaseModel):
    """Top-level call result for a successful ingestion."""
    document_id:     UUID
    chunks_created:  int
    bytes_processed: int
    detected_type:   FileType


# ---------------------------------------------------------------------------
# Re-ingestion
# ---------------------------------------------------------------------------

class ReingestFilter(BaseModel):
    """document_id wins; otherwise organization_id / event_id narrow the set."""
    document_id:     UUID | None = None
    organization_id: str | None  = None
    event_id:        str | None  = None


class ReingestSummary(BaseModel):
    processed:  int = 0
    errors:     int = 0
    failed_ids: list[UUID] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Document status response — GET /knowledge/{id}/status
# ---------------------------------------------------------------------------

class DocumentStatusResponse(BaseModel):
    """Polled by clients to track ingestion progress."""
    document_id:   UUID
    status:        DocumentStatus
    progress:      Progress | None = None
    chunk_count:   int = Field(0, description="Chunk rows currently persisted")
    detected_type: FileType
    error:         str | None = None
    updated_at:    datetime | None = None


class IngestQueuedResponse(BaseModel):
    document_id: UUID
    status:      str = "queued"
    task_id:     str | None = None


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code:    str              = Field(..., description="Stable machine-readable code")
    message:       str              = Field(..., description="Human-readable summary")
    details:       list[ErrorDetail] = Field(default_factory=list)
    request_id:    str | None       = Field(None, description="Trace ID for log correlation")


class IngestErrors:
    """Factories for error bodies that do not originate from an IngestionError."""

    @staticmethod
    def missing_content() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_CONTENT",
            message="No file or text content was provided in the request.",
            details=[
                ErrorDetail(
                    field="file",
                    message="Provide either the 'file' multipart field or the 'text' form field.",
                    code="MISSING_CONTENT",
                )
            ],
        )

    @staticmethod
    def invalid_request(exc: ValidationError) -> ErrorResponse:
        return ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=[
                ErrorDetail(
                    field=".".join(str(loc) for loc in err["loc"]) or None,
                    message=err["msg"],
                    code="VALIDATION_ERROR",
                )
                for err in exc.errors()
            ],
        )

    @staticmethod
    def missing_storage_path(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_STORAGE_PATH",
            message=f"Document '{document_id}' has no stored upload to ingest.",
            details=[],
        )
