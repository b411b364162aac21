"""
SQLAlchemy ORM Models — Knowledge Documents & Chunks

SQLAlchemy 2.x mapped classes with full async support.

Column types are portable: JSONB / ARRAY(Float) on PostgreSQL, plain JSON
elsewhere (the test suite runs against SQLite). The catalog record owns its
chunks; chunk rows are deleted by the ingestion pipeline before re-insertion,
and by ON DELETE CASCADE if a document row is ever removed out-of-band.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


_JSON = JSON().with_variant(JSONB(), "postgresql")
_VECTOR = JSON().with_variant(ARRAY(Float), "postgresql")


# ---------------------------------------------------------------------------
# Declarative base — shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Catalog record — knowledge_documents
# ---------------------------------------------------------------------------

class KnowledgeDocument(Base):
    """
    Tracks one knowledge source from upload → extraction → chunking → embedding.

    State machine (status column):
        pending    — uploaded, ingestion not yet started
        ingesting  — orchestrator actively working (see progress)
        ingested   — every chunk + vector persisted
        failed     — unrecoverable pipeline error (see error)
    """

    __tablename__ = "knowledge_documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'ingesting', 'ingested', 'failed')",
            name="knowledge_documents_status_check",
        ),
        Index("idx_knowledge_documents_org",    "organization_id"),
        Index("idx_knowledge_documents_event",  "event_id"),
        Index("idx_knowledge_documents_status", "organization_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid.uuid4,
    )

    title:  Mapped[str] = mapped_column(Text, nullable=False)
    type:   Mapped[str] = mapped_column(String(16), nullable=False)
    source: Mapped[str] = mapped_column(Text, nullable=False, default="user-upload")

    uploader_id:     Mapped[str]           = mapped_column(Text, nullable=False)
    organization_id: Mapped[str]           = mapped_column(Text, nullable=False)
    event_id:        Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags:            Mapped[list]          = mapped_column(_JSON, nullable=False, default=list)

    # Ingestion state machine
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="pending",
        server_default="pending",
    )
    error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='failed'",
    )
    progress: Mapped[Optional[dict]] = mapped_column(
        _JSON,
        nullable=True,
        comment="{stage, percent} — advisory only",
    )

    bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    body:  Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
        comment="Extracted plain text — authoritative source for re-ingestion",
    )

    storage_path:      Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    original_filename: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<KnowledgeDocument id={self.id} org={self.organization_id} "
            f"status={self.status} title={self.title!r}>"
        )


# ---------------------------------------------------------------------------
# Chunk rows — knowledge_chunks
# ---------------------------------------------------------------------------

class KnowledgeChunk(Base):
    """
    One embedded text chunk of a KnowledgeDocument.
    (document_id, chunk_index) is unique — indices are dense 0..N-1.
    """

    __tablename__ = "knowledge_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_knowledge_chunks_position"),
        Index("idx_knowledge_chunks_document_id", "document_id"),
        Index("idx_knowledge_chunks_org",         "organization_id"),
        Index("idx_knowledge_chunks_event",       "event_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid.uuid4,
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("knowledge_documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    chunk_index: Mapped[int]  = mapped_column(Integer, nullable=False)
    content:     Mapped[str]  = mapped_column(Text, nullable=False)
    embedding:   Mapped[list] = mapped_column(_VECTOR, nullable=False)

    organization_id: Mapped[str]           = mapped_column(Text, nullable=False)
    event_id:        Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    chunk_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # column name stays 'metadata'
        _JSON,
        nullable=False,
        default=dict,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<KnowledgeChunk document={self.document_id} "
            f"index={self.chunk_index} chars={len(self.content)}>"
        )
