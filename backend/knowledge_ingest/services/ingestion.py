"""
Knowledge Ingestion Service

Orchestrates one document through the pipeline:
  1. Validate input (content present, size limit, supported format)
     before the catalog is touched
  2. Create / reset the catalog record with status=ingesting
  3. Extract text (uploaded bytes) or take the raw text as-is
  4. Chunk; reject empty output and documents over the chunk ceiling
  5. Persist the extracted text on the record
  6. Embed all chunks, reporting progress per completed batch
  7. Check the chunk ↔ vector correspondence
  8. Replace the document's chunk rows in fixed-size write batches
  9. Mark the record ingested

State machine:
  pending ──► ingesting ──► ingested
                   │
                   └──────► failed      (error message persisted)
  ingested / failed ──► ingesting       (re-ingestion / resubmission)

Watchdog:
  A Deadline (default 5 minutes) is created per job and threaded through
  extraction, every embedding call and every write batch. On expiry the
  job fails with IngestionTimeoutError and no further pipeline writes
  happen.

Failure handling:
  Every exception is caught once, here. The record is moved to failed
  with the error message, any chunk rows already written for the
  document are purged, and the original exception is re-raised.

Progress writes are advisory: a failed progress write is logged and
never fails the job.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Callable
from uuid import UUID

from knowledge_ingest.core.config import Settings, settings as default_settings
from knowledge_ingest.core.errors import (
    ChunkingError,
    DimensionMismatchError,
    DocumentNotFoundError,
    EmptyDocumentError,
    IngestionError,
    InvalidStateError,
    OversizedInputError,
    TooManyChunksError,
    UnsupportedFormatError,
)
from knowledge_ingest.processing.chunking import ParagraphChunker, TextChunk
from knowledge_ingest.processing.detection import detect_file_type
from knowledge_ingest.processing.embeddings import EmbeddingClient
from knowledge_ingest.processing.extractor import ExtractorRegistry, build_default_registry
from knowledge_ingest.schemas.documents import (
    REINGESTABLE_STATUSES,
    DocumentStatus,
    DocumentStatusResponse,
    FileType,
    IngestRequest,
    IngestResult,
    Progress,
    ProgressStage,
    ReingestFilter,
    ReingestSummary,
)
from knowledge_ingest.services.deadline import Deadline
from knowledge_ingest.storage.base import CatalogStore, ChunkRecord, ChunkStore, DocumentRecord

logger = logging.getLogger(__name__)

# Progress percentages per stage (embedding spans 50 → 90)
_PCT_EXTRACTING     = 10
_PCT_CHUNKING       = 25
_PCT_CHUNKED        = 30
_PCT_EMBEDDING      = 50
_PCT_EMBEDDING_SPAN = 40
_PCT_STORING        = 95


class IngestionService:
    """
    Stateless orchestrator; all collaborators are injected.

    Usage:
        service = IngestionService(catalog, chunks, embedder)
        result  = await service.ingest(IngestRequest(...))
    """

    def __init__(
        self,
        catalog:    CatalogStore,
        chunks:     ChunkStore,
        embedder:   EmbeddingClient,
        settings:   Settings | None = None,
        extractors: ExtractorRegistry | None = None,
        chunker:    ParagraphChunker | None = None,
        clock:      Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings   = settings or default_settings
        self._catalog    = catalog
        self._chunks     = chunks
        self._embedder   = embedder
        self._extractors = extractors or build_default_registry(
            pdf_timeout_seconds=self._settings.pdf_timeout_seconds
        )
        self._chunker = chunker or ParagraphChunker(
            size=self._settings.chunk_size,
            overlap=self._settings.chunk_overlap,
        )
        self._clock = clock

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(self, request: IngestRequest) -> IngestResult:
        file_type, size = self._validate(request)
        deadline = Deadline(self._settings.ingestion_timeout_seconds, clock=self._clock)
        t0 = time.monotonic()

        record = await self._open_record(request, file_type, size)
        logger.info(
            "Ingestion started | doc=%s org=%s type=%s bytes=%d",
            record.id, record.organization_id, file_type.value, size,
        )

        try:
            chunk_count = await self._run(record, request, file_type, deadline)
        except Exception as exc:
            await self._mark_failed(record.id, exc)
            raise

        logger.info(
            "Ingestion complete | doc=%s chunks=%d elapsed_ms=%.0f",
            record.id, chunk_count, (time.monotonic() - t0) * 1000,
        )
        return IngestResult(
            document_id=record.id,
            chunks_created=chunk_count,
            bytes_processed=record.bytes,
            detected_type=record.type,
        )

    def _validate(self, request: IngestRequest) -> tuple[FileType, int]:
        limit = self._settings.max_file_size_bytes

        if request.file_bytes is not None:
            size = len(request.file_bytes)
            if size > limit:
                raise OversizedInputError(size, limit)
            file_type = request.file_type or detect_file_type(
                request.original_filename or request.title,
                request.content_type,
                head=request.file_bytes[:8],
            )
            if file_type is FileType.UNKNOWN or not self._extractors.supports(file_type):
                raise UnsupportedFormatError(
                    f"Unsupported file type: {request.original_filename or request.content_type}"
                )
            return file_type, size

        size = len(request.text_content.encode("utf-8"))
        if size > limit:
            raise OversizedInputError(size, limit)
        file_type = request.file_type
        if file_type is None or file_type is FileType.UNKNOWN:
            file_type = FileType.TXT
        return file_type, size

    async def _open_record(
        self,
        request:   IngestRequest,
        file_type: FileType,
        size:      int,
    ) -> DocumentRecord:
        start = Progress(stage=ProgressStage.EXTRACTING, percent=0)

        if request.document_id is None:
            return await self._catalog.create(DocumentRecord(
                id=uuid.uuid4(),
                title=request.title,
                type=file_type,
                source=request.resolved_source,
                uploader_id=request.uploader_id,
                organization_id=request.organization_id or self._settings.default_organization_id,
                event_id=request.event_id,
                tags=list(request.tags),
                status=DocumentStatus.INGESTING,
                bytes=size,
                progress=start,
                storage_path=request.storage_path,
                original_filename=request.original_filename,
            ))

        existing = await self._catalog.get(request.document_id)
        if existing is None:
            raise DocumentNotFoundError(request.document_id)

        # Raw-text resubmission keeps the original upload's size and type
        if request.file_bytes is None:
            size, file_type = existing.bytes, existing.type

        await self._catalog.update(
            existing.id,
            status=DocumentStatus.INGESTING,
            error=None,
            body="",
            progress=start,
            bytes=size,
            type=file_type,
        )
        existing.status = DocumentStatus.INGESTING
        existing.bytes  = size
        existing.type   = file_type
        return existing

    async def _run(
        self,
        record:    DocumentRecord,
        request:   IngestRequest,
        file_type: FileType,
        deadline:  Deadline,
    ) -> int:
        doc_id = record.id

        # ── Extraction ────────────────────────────────────────────────
        if request.file_bytes is not None:
            await self._report(doc_id, ProgressStage.EXTRACTING, _PCT_EXTRACTING)
            extraction = await self._extractors.extract(file_type, request.file_bytes, deadline)
            text, page_map = extraction.text, extraction.page_map
        else:
            deadline.check("extraction")
            text, page_map = request.text_content.replace("\x00", ""), {}

        if not text.strip():
            raise EmptyDocumentError("No text content could be extracted from the document")

        # ── Chunking ──────────────────────────────────────────────────
        await self._report(doc_id, ProgressStage.CHUNKING, _PCT_CHUNKING)
        chunks = self._chunker.chunk(text, page_map=page_map)
        if not chunks:
            raise ChunkingError("Chunking produced no chunks")
        if len(chunks) > self._settings.max_chunks_per_document:
            raise TooManyChunksError(len(chunks), self._settings.max_chunks_per_document)
        await self._report(doc_id, ProgressStage.CHUNKING, _PCT_CHUNKED)

        deadline.check("chunking")
        await self._catalog.update(doc_id, body=text)

        # ── Embedding ─────────────────────────────────────────────────
        async def on_batch(done: int, total: int) -> None:
            percent = _PCT_EMBEDDING + (_PCT_EMBEDDING_SPAN * done) // total
            await self._report(doc_id, ProgressStage.EMBEDDING, percent)

        await self._report(doc_id, ProgressStage.EMBEDDING, _PCT_EMBEDDING)
        vectors = await self._embedder.embed(
            [c.content for c in chunks],
            deadline=deadline,
            on_batch=on_batch,
        )
        if len(vectors) != len(chunks):
            raise DimensionMismatchError(
                f"Embedding count mismatch: {len(chunks)} chunks but {len(vectors)} vectors",
                expected=len(chunks),
                actual=len(vectors),
            )

        # ── Storage ───────────────────────────────────────────────────
        await self._report(doc_id, ProgressStage.STORING, _PCT_STORING)
        await self._write_chunks(record, chunks, vectors, deadline)

        deadline.check("finalize")
        await self._catalog.update(
            doc_id,
            status=DocumentStatus.INGESTED,
            error=None,
            progress=None,
            body=text,
        )
        return len(chunks)

    async def _write_chunks(
        self,
        record:   DocumentRecord,
        chunks:   list[TextChunk],
        vectors:  list[list[float]],
        deadline: Deadline,
    ) -> None:
        deadline.check("storing")
        await self._chunks.delete_by_document(record.id)

        rows = [
            ChunkRecord(
                document_id=record.id,
                chunk_index=chunk.chunk_index,
                content=chunk.content,
                embedding=vector,
                organization_id=record.organization_id,
                event_id=record.event_id,
                metadata={
                    **chunk.metadata,
                    "document_title":  record.title,
                    "tags":            list(record.tags),
                    "organization_id": record.organization_id,
                    "event_id":        record.event_id,
                },
            )
            for chunk, vector in zip(chunks, vectors)
        ]

        batch_size = self._settings.chunk_write_batch_size
        for start in range(0, len(rows), batch_size):
            deadline.check("storing")
            await self._chunks.insert_many(rows[start : start + batch_size])
            logger.debug(
                "Chunk batch written | doc=%s rows=%d/%d",
                record.id, min(start + batch_size, len(rows)), len(rows),
            )

    async def _report(self, document_id: UUID, stage: ProgressStage, percent: int) -> None:
        try:
            await self._catalog.set_progress(document_id, Progress(stage=stage, percent=percent))
        except Exception as exc:
            logger.warning(
                "Progress update failed | doc=%s stage=%s error=%s",
                document_id, stage.value, exc,
            )

    async def _mark_failed(self, document_id: UUID, exc: Exception) -> None:
        if isinstance(exc, IngestionError):
            message = exc.message
            logger.error(
                "Ingestion failed | doc=%s code=%s error=%s", document_id, exc.code, message
            )
        else:
            message = f"Unexpected error during ingestion: {str(exc) or type(exc).__name__}"
            logger.error("Ingestion failed | doc=%s error=%s", document_id, exc, exc_info=True)

        try:
            await self._catalog.update(
                document_id,
                status=DocumentStatus.FAILED,
                error=message,
                progress=None,
            )
            await self._chunks.delete_by_document(document_id)
        except Exception as write_exc:
            logger.error(
                "Could not record failure | doc=%s error=%s",
                document_id, write_exc, exc_info=True,
            )

    # ------------------------------------------------------------------
    # Re-ingestion
    # ------------------------------------------------------------------

    async def reingest(self, document_id: UUID) -> IngestResult:
        """
        Rebuild a document's chunks from its stored extracted text.
        Only ingested or failed documents qualify.
        """
        record = await self._catalog.get(document_id)
        if record is None:
            raise DocumentNotFoundError(document_id)
        if record.status not in REINGESTABLE_STATUSES:
            raise InvalidStateError(
                f"Document '{document_id}' is {record.status.value}; "
                "only ingested or failed documents can be re-ingested"
            )

        await self._chunks.delete_by_document(document_id)
        logger.info("Re-ingestion started | doc=%s", document_id)

        return await self.ingest(IngestRequest(
            text_content=record.body,
            title=record.title,
            uploader_id=record.uploader_id,
            organization_id=record.organization_id,
            event_id=record.event_id,
            tags=record.tags,
            document_id=record.id,
            file_type=record.type,
            source=record.source,
            storage_path=record.storage_path,
            original_filename=record.original_filename,
        ))

    async def reingest_many(self, filter: ReingestFilter) -> ReingestSummary:
        """Sequential bulk re-ingestion; one document's failure does not stop the rest."""
        records = await self._catalog.find_reingestable(filter)
        summary = ReingestSummary()
        logger.info("Bulk re-ingestion | documents=%d", len(records))

        for record in records:
            try:
                await self.reingest(record.id)
                summary.processed += 1
            except Exception as exc:
                summary.errors += 1
                summary.failed_ids.append(record.id)
                logger.error("Re-ingestion failed | doc=%s error=%s", record.id, exc)

        logger.info(
            "Bulk re-ingestion done | processed=%d errors=%d",
            summary.processed, summary.errors,
        )
        return summary

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def status(self, document_id: UUID) -> DocumentStatusResponse:
        record = await self._catalog.get(document_id)
        if record is None:
            raise DocumentNotFoundError(document_id)
        return DocumentStatusResponse(
            document_id=record.id,
            status=record.status,
            progress=record.progress,
            chunk_count=await self._chunks.count(document_id),
            detected_type=record.type,
            error=record.error,
            updated_at=record.updated_at,
        )
