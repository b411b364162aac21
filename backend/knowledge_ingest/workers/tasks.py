"""
Celery Tasks — Knowledge Ingestion

Task: ingest_document
  1. Load the catalog record
  2. Download the original upload from S3 (storage_path)
  3. Run the ingestion service (extract → chunk → embed → store)
  The service records failures on the catalog record itself; the task
  returns a status dict and never asks Celery to retry.

Task: reingest_documents
  Bulk re-ingestion of ingested/failed records matching a filter,
  rebuilt from their stored extracted text.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from knowledge_ingest.core.config import settings
from knowledge_ingest.core.errors import IngestionError
from knowledge_ingest.db.session import worker_session_factory
from knowledge_ingest.processing.embeddings import EmbeddingClient
from knowledge_ingest.schemas.documents import (
    DocumentStatus,
    FileType,
    IngestRequest,
    ReingestFilter,
)
from knowledge_ingest.services.ingestion import IngestionService
from knowledge_ingest.storage.base import CatalogStore
from knowledge_ingest.storage.s3 import UploadStorage
from knowledge_ingest.storage.sql import SqlCatalogStore, SqlChunkStore
from knowledge_ingest.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    return asyncio.run(coro)


@asynccontextmanager
async def _worker_service() -> AsyncIterator[tuple[IngestionService, CatalogStore]]:
    """Wire stores and the embedding client for one task run."""
    async with worker_session_factory() as sessions:
        catalog  = SqlCatalogStore(sessions)
        chunks   = SqlChunkStore(sessions, dimensions=settings.embedding_dimensions)
        embedder = EmbeddingClient.from_settings(settings)
        try:
            yield IngestionService(catalog, chunks, embedder, settings=settings), catalog
        finally:
            await embedder.aclose()


# ---------------------------------------------------------------------------
# Single-document ingestion
# ---------------------------------------------------------------------------

@celery_app.task(
    name="knowledge_ingest.workers.tasks.ingest_document",
    acks_late=True,
    reject_on_worker_lost=True,
)
def ingest_document(*, document_id: str) -> dict[str, Any]:
    """Ingest a stored upload identified by its catalog record."""
    async def _run() -> dict[str, Any]:
        async with _worker_service() as (service, catalog):
            return await _ingest_document_async(
                uuid.UUID(document_id), service, catalog, UploadStorage()
            )

    return run_async(_run())


async def _ingest_document_async(
    document_id: uuid.UUID,
    service:     IngestionService,
    catalog:     CatalogStore,
    storage:     UploadStorage,
) -> dict[str, Any]:
    record = await catalog.get(document_id)
    if record is None:
        logger.error("Document not found | doc=%s", document_id)
        return {"status": "not_found", "document_id": str(document_id)}

    if not record.storage_path:
        message = "No stored upload to ingest"
        await _mark_failed(catalog, document_id, message)
        return {"status": "failed", "document_id": str(document_id), "error": message}

    try:
        file_bytes = await storage.get_object(record.storage_path)
    except (FileNotFoundError, ValueError) as exc:
        logger.error("Upload download failed | doc=%s error=%s", document_id, exc)
        message = f"Upload download error: {exc}"
        await _mark_failed(catalog, document_id, message)
        return {"status": "failed", "document_id": str(document_id), "error": message}

    try:
        result = await service.ingest(IngestRequest(
            file_bytes=file_bytes,
            title=record.title,
            uploader_id=record.uploader_id,
            organization_id=record.organization_id,
            event_id=record.event_id,
            tags=record.tags,
            document_id=record.id,
            storage_path=record.storage_path,
            original_filename=record.original_filename,
            file_type=None if record.type is FileType.UNKNOWN else record.type,
            source=record.source,
        ))
    except IngestionError as exc:
        # already persisted on the record by the service
        return {
            "status":      "failed",
            "document_id": str(document_id),
            "error_code":  exc.code,
            "error":       exc.message,
        }

    return {
        "status":         DocumentStatus.INGESTED.value,
        "document_id":    str(result.document_id),
        "chunks_created": result.chunks_created,
        "detected_type":  result.detected_type.value,
    }


# ---------------------------------------------------------------------------
# Bulk re-ingestion
# ---------------------------------------------------------------------------

@celery_app.task(
    name="knowledge_ingest.workers.tasks.reingest_documents",
    acks_late=True,
)
def reingest_documents(
    *,
    document_id:     str | None = None,
    organization_id: str | None = None,
    event_id:        str | None = None,
) -> dict[str, Any]:
    """Re-ingest every ingested/failed record matching the filter."""
    filter = ReingestFilter(
        document_id=uuid.UUID(document_id) if document_id else None,
        organization_id=organization_id,
        event_id=event_id,
    )

    async def _run() -> dict[str, Any]:
        async with _worker_service() as (service, _):
            summary = await service.reingest_many(filter)
            return summary.model_dump(mode="json")

    return run_async(_run())


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _mark_failed(
    catalog:       CatalogStore,
    document_id:   uuid.UUID,
    error_message: str,
) -> None:
    """Failures that happen before the service takes over the record."""
    await catalog.update(
        document_id,
        status=DocumentStatus.FAILED,
        error=error_message,
        progress=None,
    )
    logger.error("Document marked failed | doc=%s error=%s", document_id, error_message)
