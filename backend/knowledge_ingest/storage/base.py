"""
Catalog & Chunk Stores — Abstract Base

The orchestrator only speaks these two protocols; the concrete backends
(SQLAlchemy in production, in-memory fakes in tests) are injected at
construction time, so no module-level store handles exist.

Contract (enforced by ALL implementations):
  - Every chunk write and delete is scoped to one document_id.
  - ChunkStore.insert_many rejects vectors whose width differs from the
    store's configured dimension (DimensionMismatchError).
  - CatalogStore.update only touches the fields it is given.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from knowledge_ingest.core.errors import DimensionMismatchError
from knowledge_ingest.schemas.documents import (
    DocumentStatus,
    FileType,
    Progress,
    ReingestFilter,
)


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class DocumentRecord:
    """Catalog view of one knowledge document."""
    id:                UUID
    title:             str
    type:              FileType
    source:            str
    uploader_id:       str
    organization_id:   str
    event_id:          str | None     = None
    tags:              list[str]      = field(default_factory=list)
    status:            DocumentStatus = DocumentStatus.PENDING
    bytes:             int            = 0
    body:              str            = ""
    error:             str | None     = None
    progress:          Progress | None = None
    storage_path:      str | None     = None
    original_filename: str | None     = None
    created_at:        datetime | None = None
    updated_at:        datetime | None = None


@dataclass
class ChunkRecord:
    """A single chunk row: content + embedding + provenance metadata."""
    document_id:     UUID
    chunk_index:     int
    content:         str
    embedding:       list[float]
    organization_id: str
    event_id:        str | None = None
    metadata:        dict[str, Any] = field(default_factory=dict)


def check_dimensions(rows: list[ChunkRecord], expected: int) -> None:
    """Raise DimensionMismatchError on the first row with the wrong vector width."""
    for row in rows:
        if len(row.embedding) != expected:
            raise DimensionMismatchError(
                f"Invalid embedding dimension for chunk {row.chunk_index}: "
                f"expected {expected}, got {len(row.embedding)}",
                expected=expected,
                actual=len(row.embedding),
            )


# ---------------------------------------------------------------------------
# Abstract interfaces
# ---------------------------------------------------------------------------

class CatalogStore(ABC):
    """Durable per-document status/metadata records."""

    @abstractmethod
    async def create(self, record: DocumentRecord) -> DocumentRecord:
        """Insert a new record; returns it with server-populated fields."""

    @abstractmethod
    async def get(self, document_id: UUID) -> DocumentRecord | None:
        """Return the record, or None if it does not exist."""

    @abstractmethod
    async def update(self, document_id: UUID, **fields: Any) -> None:
        """
        Patch the named fields. Accepts DocumentRecord attribute names;
        `progress` may be a Progress or None.
        """

    @abstractmethod
    async def set_progress(self, document_id: UUID, progress: Progress) -> None:
        """Write the advisory progress marker."""

    @abstractmethod
    async def find_reingestable(self, filter: ReingestFilter) -> list[DocumentRecord]:
        """Records in status ingested/failed matching the filter."""


class ChunkStore(ABC):
    """Durable chunk content + embedding rows, keyed by document."""

    def __init__(self, dimensions: int) -> None:
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @abstractmethod
    async def insert_many(self, rows: list[ChunkRecord]) -> int:
        """
        Insert rows (one write batch). Returns the number inserted.
        Implementations MUST call check_dimensions() first.
        """

    @abstractmethod
    async def delete_by_document(self, document_id: UUID) -> int:
        """Delete ALL chunks belonging to a document. Returns rows deleted."""

    @abstractmethod
    async def count(self, document_id: UUID) -> int:
        """Number of chunk rows currently stored for a document."""
