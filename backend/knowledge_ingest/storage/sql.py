"""
SQLAlchemy-backed Catalog and Chunk stores.

Each public method runs in its own short transaction opened from the
injected session factory, so a progress write or a chunk batch is
durable (and visible to pollers) as soon as the call returns.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from knowledge_ingest.models.documents import KnowledgeChunk, KnowledgeDocument
from knowledge_ingest.schemas.documents import (
    REINGESTABLE_STATUSES,
    DocumentStatus,
    FileType,
    Progress,
    ReingestFilter,
)
from knowledge_ingest.storage.base import (
    CatalogStore,
    ChunkRecord,
    ChunkStore,
    DocumentRecord,
    check_dimensions,
)

logger = logging.getLogger(__name__)

_ENUM_FIELDS = {"status", "type"}


def _to_record(row: KnowledgeDocument) -> DocumentRecord:
    return DocumentRecord(
        id=row.id,
        title=row.title,
        type=FileType(row.type),
        source=row.source,
        uploader_id=row.uploader_id,
        organization_id=row.organization_id,
        event_id=row.event_id,
        tags=list(row.tags or []),
        status=DocumentStatus(row.status),
        bytes=row.bytes,
        body=row.body,
        error=row.error,
        progress=Progress(**row.progress) if row.progress else None,
        storage_path=row.storage_path,
        original_filename=row.original_filename,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_columns(fields: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name, value in fields.items():
        if name in _ENUM_FIELDS and value is not None:
            value = value.value if hasattr(value, "value") else value
        elif name == "progress" and isinstance(value, Progress):
            value = value.model_dump(mode="json")
        values[name] = value
    return values


# ---------------------------------------------------------------------------
# Catalog store
# ---------------------------------------------------------------------------

class SqlCatalogStore(CatalogStore):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory

    async def create(self, record: DocumentRecord) -> DocumentRecord:
        row = KnowledgeDocument(
            id=record.id,
            title=record.title,
            type=record.type.value,
            source=record.source,
            uploader_id=record.uploader_id,
            organization_id=record.organization_id,
            event_id=record.event_id,
            tags=list(record.tags),
            status=record.status.value,
            bytes=record.bytes,
            body=record.body,
            error=record.error,
            progress=record.progress.model_dump(mode="json") if record.progress else None,
            storage_path=record.storage_path,
            original_filename=record.original_filename,
        )
        async with self._sessions() as session:
            async with session.begin():
                session.add(row)
                await session.flush()
                await session.refresh(row)
        logger.info("Catalog record created | doc=%s org=%s", row.id, row.organization_id)
        return _to_record(row)

    async def get(self, document_id: UUID) -> DocumentRecord | None:
        async with self._sessions() as session:
            row = await session.get(KnowledgeDocument, document_id)
            return _to_record(row) if row else None

    async def update(self, document_id: UUID, **fields: Any) -> None:
        if not fields:
            return
        async with self._sessions() as session:
            async with session.begin():
                await session.execute(
                    update(KnowledgeDocument)
                    .where(KnowledgeDocument.id == document_id)
                    .values(**_to_columns(fields))
                )

    async def set_progress(self, document_id: UUID, progress: Progress) -> None:
        await self.update(document_id, progress=progress)

    async def find_reingestable(self, filter: ReingestFilter) -> list[DocumentRecord]:
        stmt = select(KnowledgeDocument).where(
            KnowledgeDocument.status.in_([s.value for s in REINGESTABLE_STATUSES])
        )
        if filter.document_id:
            stmt = stmt.where(KnowledgeDocument.id == filter.document_id)
        else:
            if filter.organization_id:
                stmt = stmt.where(KnowledgeDocument.organization_id == filter.organization_id)
            if filter.event_id:
                stmt = stmt.where(KnowledgeDocument.event_id == filter.event_id)

        async with self._sessions() as session:
            result = await session.execute(stmt.order_by(KnowledgeDocument.created_at))
            return [_to_record(row) for row in result.scalars().all()]


# ---------------------------------------------------------------------------
# Chunk store
# ---------------------------------------------------------------------------

class SqlChunkStore(ChunkStore):

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dimensions:      int,
    ) -> None:
        super().__init__(dimensions)
        self._sessions = session_factory

    async def insert_many(self, rows: list[ChunkRecord]) -> int:
        if not rows:
            return 0
        check_dimensions(rows, self.dimensions)

        async with self._sessions() as session:
            async with session.begin():
                session.add_all(
                    KnowledgeChunk(
                        document_id=r.document_id,
                        chunk_index=r.chunk_index,
                        content=r.content,
                        embedding=list(r.embedding),
                        organization_id=r.organization_id,
                        event_id=r.event_id,
                        chunk_metadata=dict(r.metadata),
                    )
                    for r in rows
                )
        return len(rows)

    async def delete_by_document(self, document_id: UUID) -> int:
        async with self._sessions() as session:
            async with session.begin():
                result = await session.execute(
                    delete(KnowledgeChunk).where(KnowledgeChunk.document_id == document_id)
                )
        deleted = result.rowcount or 0
        if deleted:
            logger.info("Chunks purged | doc=%s rows=%d", document_id, deleted)
        return deleted

    async def count(self, document_id: UUID) -> int:
        async with self._sessions() as session:
            result = await session.execute(
                select(func.count())
                .select_from(KnowledgeChunk)
                .where(KnowledgeChunk.document_id == document_id)
            )
            return int(result.scalar_one())

    async def list_for_document(self, document_id: UUID) -> list[ChunkRecord]:
        """Ordered chunk rows for one document (diagnostics and tests)."""
        async with self._sessions() as session:
            result = await session.execute(
                select(KnowledgeChunk)
                .where(KnowledgeChunk.document_id == document_id)
                .order_by(KnowledgeChunk.chunk_index)
            )
            return [
                ChunkRecord(
                    document_id=row.document_id,
                    chunk_index=row.chunk_index,
                    content=row.content,
                    embedding=list(row.embedding),
                    organization_id=row.organization_id,
                    event_id=row.event_id,
                    metadata=dict(row.chunk_metadata or {}),
                )
                for row in result.scalars().all()
            ]
