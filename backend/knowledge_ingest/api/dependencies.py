"""
Composed FastAPI Dependencies

Wires the SQL stores, the shared embedding client and the Celery task
publisher into the ingestion service. Route handlers import from here,
never from db/session or storage directly; tests override these.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from knowledge_ingest.core.config import settings
from knowledge_ingest.db.session import get_session_factory
from knowledge_ingest.processing.embeddings import EmbeddingClient
from knowledge_ingest.schemas.documents import ReingestFilter
from knowledge_ingest.services.ingestion import IngestionService
from knowledge_ingest.storage.base import CatalogStore, ChunkStore
from knowledge_ingest.storage.sql import SqlCatalogStore, SqlChunkStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# 1. Stores
# ---------------------------------------------------------------------------

def get_catalog_store() -> CatalogStore:
    return SqlCatalogStore(get_session_factory())


def get_chunk_store() -> ChunkStore:
    return SqlChunkStore(get_session_factory(), dimensions=settings.embedding_dimensions)


# ---------------------------------------------------------------------------
# 2. Embedding client — one connection pool per process, closed on shutdown
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_embedding_client() -> EmbeddingClient:
    return EmbeddingClient.from_settings(settings)


# ---------------------------------------------------------------------------
# 3. Ingestion service
# ---------------------------------------------------------------------------

def get_ingestion_service(
    catalog:  Annotated[CatalogStore, Depends(get_catalog_store)],
    chunks:   Annotated[ChunkStore, Depends(get_chunk_store)],
    embedder: Annotated[EmbeddingClient, Depends(get_embedding_client)],
) -> IngestionService:
    return IngestionService(catalog, chunks, embedder, settings=settings)


# ---------------------------------------------------------------------------
# 4. Celery task publisher
# ---------------------------------------------------------------------------

class TaskPublisher:
    """Publishes ingestion jobs to the broker; returns the Celery task id."""

    def publish_ingest(self, document_id: str) -> str:
        from knowledge_ingest.workers.tasks import ingest_document

        result = ingest_document.apply_async(kwargs={"document_id": document_id})
        logger.info("Task queued | task=ingest_document doc=%s task_id=%s", document_id, result.id)
        return result.id

    def publish_reingest(self, filter: ReingestFilter) -> str:
        from knowledge_ingest.workers.tasks import reingest_documents

        result = reingest_documents.apply_async(kwargs={
            "document_id":     str(filter.document_id) if filter.document_id else None,
            "organization_id": filter.organization_id,
            "event_id":        filter.event_id,
        })
        logger.info("Task queued | task=reingest_documents task_id=%s", result.id)
        return result.id


def get_task_publisher() -> TaskPublisher:
    return TaskPublisher()


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

Catalog   = Annotated[CatalogStore, Depends(get_catalog_store)]
Service   = Annotated[IngestionService, Depends(get_ingestion_service)]
Publisher = Annotated[TaskPublisher, Depends(get_task_publisher)]
