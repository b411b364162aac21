"""
Knowledge Ingestion API Router

  POST /api/v1/knowledge/ingest              upload bytes or text, ingest inline
  POST /api/v1/knowledge/{id}/ingest         queue ingestion of a stored upload (202)
  POST /api/v1/knowledge/{id}/reingest       rebuild chunks from stored text
  POST /api/v1/knowledge/reingest            bulk re-ingestion (inline or queued)
  GET  /api/v1/knowledge/{id}/status         poll status / progress / error

IngestionError subclasses raised by the service are converted to the
uniform ErrorResponse envelope by the application's exception handler.
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, File, Form, Request, UploadFile, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from knowledge_ingest.api.dependencies import Catalog, Publisher, Service
from knowledge_ingest.core.config import settings
from knowledge_ingest.core.errors import DocumentNotFoundError, OversizedInputError
from knowledge_ingest.schemas.documents import (
    DocumentStatusResponse,
    ErrorResponse,
    IngestErrors,
    IngestQueuedResponse,
    IngestRequest,
    IngestResult,
    ReingestFilter,
    ReingestSummary,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/knowledge",
    tags=["Knowledge Ingestion"],
)

_FORM_OVERHEAD_BYTES = 64 * 1024


def _split_tags(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [t.strip() for t in raw.split(",") if t.strip()]


def _declared_length(request: Request) -> int | None:
    """Content-Length as an int; None when absent or malformed."""
    raw = request.headers.get("content-length")
    if raw is None or not raw.strip().isdigit():
        return None
    return int(raw)


# ---------------------------------------------------------------------------
# POST /knowledge/ingest
# ---------------------------------------------------------------------------

@router.post(
    "/ingest",
    response_model=IngestResult,
    summary="Ingest an uploaded file or raw text",
    description=(
        "Accepts a PDF, DOCX, TXT, MD or CSV file (multipart 'file') or raw text "
        "('text' form field). Runs the full pipeline before responding."
    ),
    responses={
        200: {"model": IngestResult},
        400: {"model": ErrorResponse, "description": "Missing content, unsupported format, empty document or too many chunks"},
        413: {"model": ErrorResponse, "description": "File exceeds the size limit"},
        422: {"model": ErrorResponse, "description": "Text extraction failed"},
        502: {"model": ErrorResponse, "description": "Embedding service failure"},
        504: {"model": ErrorResponse, "description": "Ingestion timed out"},
    },
)
async def ingest_knowledge(
    request:         Request,
    service:         Service,
    file:            Optional[UploadFile] = File(None, description="Document file"),
    text:            Optional[str] = Form(None, description="Raw text content"),
    title:           Optional[str] = Form(None, max_length=255),
    uploader_id:     str           = Form(..., min_length=1),
    organization_id: Optional[str] = Form(None),
    event_id:        Optional[str] = Form(None),
    tags:            Optional[str] = Form(None, description="Comma-separated tags"),
    source:          Optional[str] = Form(None),
) -> IngestResult:
    # Reject oversized requests before reading the body
    declared = _declared_length(request)
    limit = settings.max_file_size_bytes
    if declared is not None and declared > limit + _FORM_OVERHEAD_BYTES:
        raise OversizedInputError(declared, limit)

    file_bytes = await file.read() if file is not None else None
    filename   = file.filename if file is not None else None

    if file_bytes is None and text is None:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=IngestErrors.missing_content().model_dump(mode="json"),
        )

    try:
        payload = IngestRequest(
            file_bytes=file_bytes,
            text_content=text if file_bytes is None else None,
            title=title or filename or "Untitled text",
            uploader_id=uploader_id,
            organization_id=organization_id,
            event_id=event_id,
            tags=_split_tags(tags),
            original_filename=filename,
            content_type=file.content_type if file is not None else None,
            source=source,
        )
    except ValidationError as exc:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=IngestErrors.invalid_request(exc).model_dump(mode="json"),
        )

    return await service.ingest(payload)


# ---------------------------------------------------------------------------
# POST /knowledge/reingest  — bulk
# ---------------------------------------------------------------------------

@router.post(
    "/reingest",
    response_model=ReingestSummary,
    summary="Re-ingest documents matching a filter",
    description=(
        "Rebuilds chunks for every ingested or failed document matching the filter. "
        "With queue=true the job runs on a worker and 202 is returned."
    ),
    responses={
        200: {"model": ReingestSummary},
        202: {"description": "Queued on the re-ingestion worker"},
    },
)
async def reingest_knowledge(
    filter:    ReingestFilter,
    service:   Service,
    publisher: Publisher,
    queue:     bool = False,
):
    if queue:
        task_id = publisher.publish_reingest(filter)
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={"status": "queued", "task_id": task_id},
        )
    return await service.reingest_many(filter)


# ---------------------------------------------------------------------------
# POST /knowledge/{document_id}/ingest  — queue a stored upload
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/ingest",
    response_model=IngestQueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue ingestion of a stored upload",
    responses={
        202: {"model": IngestQueuedResponse},
        400: {"model": ErrorResponse, "description": "Record has no stored upload"},
        404: {"model": ErrorResponse},
    },
)
async def queue_ingestion(
    document_id: UUID,
    catalog:     Catalog,
    publisher:   Publisher,
):
    record = await catalog.get(document_id)
    if record is None:
        raise DocumentNotFoundError(document_id)
    if not record.storage_path:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=IngestErrors.missing_storage_path(document_id).model_dump(mode="json"),
        )

    task_id = publisher.publish_ingest(str(document_id))
    return IngestQueuedResponse(document_id=document_id, task_id=task_id)


# ---------------------------------------------------------------------------
# POST /knowledge/{document_id}/reingest
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/reingest",
    response_model=IngestResult,
    summary="Rebuild one document's chunks from its stored text",
    responses={
        200: {"model": IngestResult},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse, "description": "Document is not ingested or failed"},
    },
)
async def reingest_document(document_id: UUID, service: Service) -> IngestResult:
    return await service.reingest(document_id)


# ---------------------------------------------------------------------------
# GET /knowledge/{document_id}/status
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/status",
    response_model=DocumentStatusResponse,
    summary="Poll ingestion status",
    responses={
        200: {"model": DocumentStatusResponse},
        404: {"model": ErrorResponse},
    },
)
async def get_document_status(document_id: UUID, service: Service) -> DocumentStatusResponse:
    return await service.status(document_id)
