"""
FastAPI Application — Entry Point

Knowledge Ingestion API

Architecture:
  - Ingestion routes live under /api/v1/knowledge
  - Uploads posted directly are ingested inline; stored uploads and bulk
    re-ingestion can be handed to Celery workers
  - Stores and the embedding client are injected per request
    (see api/dependencies.py); nothing is held in module globals
    except the process-wide embedding connection pool

Errors:
  Every IngestionError subclass maps to one HTTP status (see _ERROR_STATUS).
  All 4xx/5xx bodies use the ErrorResponse envelope and echo the request id
  assigned by the middleware.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from knowledge_ingest.api.dependencies import get_embedding_client
from knowledge_ingest.api.v1.knowledge import router as knowledge_router
from knowledge_ingest.core.config import settings
from knowledge_ingest.core.errors import (
    ChunkingError,
    DimensionMismatchError,
    DocumentNotFoundError,
    EmbeddingServiceError,
    EmptyDocumentError,
    ExtractionError,
    IngestionError,
    IngestionTimeoutError,
    InvalidStateError,
    OversizedInputError,
    TooManyChunksError,
    UnsupportedFormatError,
)
from knowledge_ingest.db.session import check_db_health, get_engine
from knowledge_ingest.schemas.documents import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

REQUEST_ID_HEADER = "X-Request-ID"


# ---------------------------------------------------------------------------
# IngestionError → HTTP status
# ---------------------------------------------------------------------------

_ERROR_STATUS: dict[type[IngestionError], int] = {
    UnsupportedFormatError: status.HTTP_400_BAD_REQUEST,
    EmptyDocumentError:     status.HTTP_400_BAD_REQUEST,
    TooManyChunksError:     status.HTTP_400_BAD_REQUEST,
    ChunkingError:          status.HTTP_400_BAD_REQUEST,
    OversizedInputError:    status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    ExtractionError:        status.HTTP_422_UNPROCESSABLE_ENTITY,
    EmbeddingServiceError:  status.HTTP_502_BAD_GATEWAY,
    DimensionMismatchError: status.HTTP_502_BAD_GATEWAY,
    IngestionTimeoutError:  status.HTTP_504_GATEWAY_TIMEOUT,
    DocumentNotFoundError:  status.HTTP_404_NOT_FOUND,
    InvalidStateError:      status.HTTP_409_CONFLICT,
}


def status_for(exc: IngestionError) -> int:
    """Most specific mapped class in the exception's MRO wins."""
    for cls in type(exc).__mro__:
        if cls in _ERROR_STATUS:
            return _ERROR_STATUS[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get(REQUEST_ID_HEADER) or ""


def _error_response(
    request:     Request,
    status_code: int,
    error_code:  str,
    message:     str,
    details:     list[ErrorDetail] | None = None,
) -> JSONResponse:
    request_id = _request_id(request) or str(uuid.uuid4())
    body = ErrorResponse(
        error_code=error_code,
        message=message,
        details=details or [],
        request_id=request_id,
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json"),
        headers={REQUEST_ID_HEADER: request_id},
    )


# ---------------------------------------------------------------------------
# Lifespan — fail fast without a database; release pools on shutdown
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Knowledge Ingestion API starting | env=%s model=%s dims=%d chunk_size=%d",
        settings.app_env,
        settings.embedding_model,
        settings.embedding_dimensions,
        settings.chunk_size,
    )

    db = await check_db_health()
    if db["status"] != "ok":
        logger.critical("Startup aborted, database unreachable | detail=%s", db.get("detail"))
        raise RuntimeError(f"DB unavailable: {db}")

    yield

    logger.info("Knowledge Ingestion API stopping")
    await get_embedding_client().aclose()
    await get_engine().dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(use_lifespan: bool = True) -> FastAPI:
    """
    Build the ASGI app. Tests pass use_lifespan=False and override the
    store / service dependencies instead of connecting to PostgreSQL.
    """
    show_docs = not settings.is_production
    app = FastAPI(
        title="Knowledge Ingestion API",
        description=(
            "Turns uploaded documents and raw text into chunked, embedded "
            "knowledge records with durable ingestion status."
        ),
        version="1.0.0",
        docs_url="/api/docs" if show_docs else None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if show_docs else None,
        lifespan=lifespan if use_lifespan else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", REQUEST_ID_HEADER],
        expose_headers=[REQUEST_ID_HEADER],
    )

    @app.middleware("http")
    async def assign_request_id(request: Request, call_next):
        request.state.request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        t0 = time.perf_counter()

        response = await call_next(request)

        response.headers[REQUEST_ID_HEADER] = request.state.request_id
        logger.info(
            "HTTP | method=%s path=%s status=%d elapsed_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - t0) * 1000,
            request.state.request_id,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers
    # ----------------------------------------------------------------

    @app.exception_handler(IngestionError)
    async def on_ingestion_error(request: Request, exc: IngestionError):
        status_code = status_for(exc)
        logger.warning(
            "Request failed | path=%s status=%d code=%s",
            request.url.path, status_code, exc.code,
        )
        return _error_response(request, status_code, exc.code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError):
        details = [
            ErrorDetail(
                field=".".join(str(part) for part in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        return _error_response(
            request,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "VALIDATION_ERROR",
            "Request validation failed.",
            details,
        )

    @app.exception_handler(Exception)
    async def on_unhandled_error(request: Request, exc: Exception):
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, _request_id(request),
        )
        return _error_response(
            request,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "INTERNAL_ERROR",
            "An unexpected error occurred.",
        )

    # ----------------------------------------------------------------
    # Routes
    # ----------------------------------------------------------------

    app.include_router(knowledge_router, prefix="/api/v1")

    @app.get("/health", tags=["Operations"], summary="Liveness probe")
    async def health() -> dict:
        return {"status": "ok", "service": "knowledge-ingest-api"}

    @app.get("/ready", tags=["Operations"], summary="Readiness probe (database)")
    async def ready() -> JSONResponse:
        db = await check_db_health()
        ok = db["status"] == "ok"
        return JSONResponse(
            status_code=status.HTTP_200_OK if ok else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "ready" if ok else "not_ready", "database": db},
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "knowledge_ingest.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
