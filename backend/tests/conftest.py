"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : test_settings, catalog, chunk_store, embedding_backend,
                    make_embedder, make_service, sql_sessions, sample_*_bytes

Environment strategy:
  - Stores are in-memory fakes implementing the CatalogStore / ChunkStore
    interfaces; the SQL implementations are exercised against in-memory
    SQLite (aiosqlite) in test_sql_store.py.
  - The embedding service is an httpx.MockTransport; no network calls.
  - Celery uses the in-memory broker and is never contacted by unit tests.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only (fast, no I/O)
  pytest -m integration           # HTTP surface + SQLite-backed stores
"""

from __future__ import annotations

import dataclasses
import io
import json
import os
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable

import httpx
import pytest

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any app imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AWS_REGION",            "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID",     "test")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
os.environ.setdefault("S3_BUCKET",             "test-bucket")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("EMBEDDING_BASE_URL",    "http://embeddings.test/v1")
os.environ.setdefault("EMBEDDING_API_KEY",     "sk-test-key")
os.environ.setdefault("APP_ENV",               "development")
os.environ.setdefault("DEBUG",                 "true")

from knowledge_ingest.core.config import Settings, get_settings  # noqa: E402
from knowledge_ingest.core.errors import DimensionMismatchError  # noqa: E402
from knowledge_ingest.processing.embeddings import EmbeddingClient  # noqa: E402
from knowledge_ingest.schemas.documents import (  # noqa: E402
    REINGESTABLE_STATUSES,
    DocumentStatus,
    FileType,
    Progress,
    ReingestFilter,
)
from knowledge_ingest.storage.base import (  # noqa: E402
    CatalogStore,
    ChunkRecord,
    ChunkStore,
    DocumentRecord,
    check_dimensions,
)

TEST_DIMENSIONS = 8


# ─────────────────────────────────────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def test_settings() -> Settings:
    """Small, fast limits; individual tests copy and override further."""
    return get_settings().model_copy(update={
        "embedding_dimensions":      TEST_DIMENSIONS,
        "chunk_size":                200,
        "chunk_overlap":             20,
        "max_chunks_per_document":   50,
        "chunk_write_batch_size":    4,
        "ingestion_timeout_seconds": 300.0,
    })


# ─────────────────────────────────────────────────────────────────────────────
# In-memory stores
# ─────────────────────────────────────────────────────────────────────────────

class InMemoryCatalogStore(CatalogStore):
    """Dict-backed catalog that records every progress and status write."""

    def __init__(self) -> None:
        self.records: dict[uuid.UUID, DocumentRecord] = {}
        self.progress_history: list[Progress] = []
        self.status_history: list[DocumentStatus] = []
        self.fail_progress_writes = False

    async def create(self, record: DocumentRecord) -> DocumentRecord:
        now = datetime.now(timezone.utc)
        stored = dataclasses.replace(record, tags=list(record.tags), created_at=now, updated_at=now)
        self.records[stored.id] = stored
        self.status_history.append(stored.status)
        return dataclasses.replace(stored)

    async def get(self, document_id: uuid.UUID) -> DocumentRecord | None:
        record = self.records.get(document_id)
        return dataclasses.replace(record, tags=list(record.tags)) if record else None

    async def update(self, document_id: uuid.UUID, **fields: Any) -> None:
        record = self.records[document_id]
        for name, value in fields.items():
            setattr(record, name, value)
        if "status" in fields:
            self.status_history.append(fields["status"])
        record.updated_at = datetime.now(timezone.utc)

    async def set_progress(self, document_id: uuid.UUID, progress: Progress) -> None:
        if self.fail_progress_writes:
            raise ConnectionError("catalog unavailable")
        self.progress_history.append(progress)
        self.records[document_id].progress = progress

    async def find_reingestable(self, filter: ReingestFilter) -> list[DocumentRecord]:
        matches = []
        for record in self.records.values():
            if record.status not in REINGESTABLE_STATUSES:
                continue
            if filter.document_id and record.id != filter.document_id:
                continue
            if not filter.document_id:
                if filter.organization_id and record.organization_id != filter.organization_id:
                    continue
                if filter.event_id and record.event_id != filter.event_id:
                    continue
            matches.append(dataclasses.replace(record))
        return matches


class InMemoryChunkStore(ChunkStore):
    """Enforces dimension checks and (document_id, chunk_index) uniqueness."""

    def __init__(self, dimensions: int = TEST_DIMENSIONS) -> None:
        super().__init__(dimensions)
        self.rows: dict[uuid.UUID, list[ChunkRecord]] = {}
        self.insert_calls = 0
        self.on_insert: Callable[[], None] | None = None

    async def insert_many(self, rows: list[ChunkRecord]) -> int:
        check_dimensions(rows, self.dimensions)
        if self.on_insert is not None:
            self.on_insert()
        self.insert_calls += 1
        for row in rows:
            existing = self.rows.setdefault(row.document_id, [])
            if any(r.chunk_index == row.chunk_index for r in existing):
                raise ValueError(f"duplicate chunk index {row.chunk_index}")
            existing.append(row)
        return len(rows)

    async def delete_by_document(self, document_id: uuid.UUID) -> int:
        return len(self.rows.pop(document_id, []))

    async def count(self, document_id: uuid.UUID) -> int:
        return len(self.rows.get(document_id, []))


@pytest.fixture
def catalog() -> InMemoryCatalogStore:
    return InMemoryCatalogStore()


@pytest.fixture
def chunk_store() -> InMemoryChunkStore:
    return InMemoryChunkStore()


@pytest.fixture
def make_record():
    """Factory: a catalog record with sensible defaults."""
    def _build(**overrides: Any) -> DocumentRecord:
        fields: dict[str, Any] = {
            "id":              uuid.uuid4(),
            "title":           "Handbook",
            "type":            FileType.TXT,
            "source":          "user-upload",
            "uploader_id":     "user-1",
            "organization_id": "org-1",
            "event_id":        "event-1",
            "tags":            ["policy"],
            "status":          DocumentStatus.INGESTED,
            "bytes":           120,
            "body":            "Opening paragraph.\n\nSecond paragraph with detail.",
        }
        fields.update(overrides)
        return DocumentRecord(**fields)
    return _build


# ─────────────────────────────────────────────────────────────────────────────
# Embedding service mock
# ─────────────────────────────────────────────────────────────────────────────

def fake_vector(text: str, dimensions: int = TEST_DIMENSIONS) -> list[float]:
    """Deterministic vector derived from the text length."""
    return [float((len(text) + i) % 13) / 13 for i in range(dimensions)]


class EmbeddingBackend:
    """
    Callable httpx.MockTransport handler emulating POST /embeddings.
    Records each request's inputs; `responses` can queue canned responses.
    """

    def __init__(self, dimensions: int = TEST_DIMENSIONS) -> None:
        self.dimensions = dimensions
        self.requests: list[list[str]] = []
        self.headers: list[httpx.Headers] = []
        self.responses: list[httpx.Response] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.requests.append(list(payload["input"]))
        self.headers.append(request.headers)
        if self.responses:
            return self.responses.pop(0)
        return httpx.Response(200, json={
            "object": "list",
            "model":  payload["model"],
            "data": [
                {"object": "embedding", "index": i, "embedding": fake_vector(t, self.dimensions)}
                for i, t in enumerate(payload["input"])
            ],
        })


@pytest.fixture
def embedding_backend() -> EmbeddingBackend:
    return EmbeddingBackend()


@pytest.fixture
async def make_embedder(embedding_backend, test_settings) -> AsyncIterator[Callable[..., EmbeddingClient]]:
    """Factory: EmbeddingClient wired to the mock backend; kwargs override settings."""
    clients: list[httpx.AsyncClient] = []

    def _build(**overrides: Any) -> EmbeddingClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(embedding_backend))
        clients.append(http)
        params: dict[str, Any] = {
            "base_url":          test_settings.embedding_base_url,
            "api_key":           test_settings.embedding_api_key,
            "model":             test_settings.embedding_model,
            "dimensions":        test_settings.embedding_dimensions,
            "batch_size":        test_settings.embedding_batch_size,
            "batch_token_limit": test_settings.embedding_batch_token_limit,
            "item_token_limit":  test_settings.embedding_item_token_limit,
            "item_char_ceiling": test_settings.embedding_item_char_ceiling,
            "retry_base_delay":  0.0,
            "http_client":       http,
        }
        params.update(overrides)
        return EmbeddingClient(**params)

    yield _build
    for http in clients:
        await http.aclose()


@pytest.fixture
def make_service(catalog, chunk_store, make_embedder, test_settings):
    """Factory: IngestionService with in-memory stores and the mock embedder."""
    def _build(settings: Settings | None = None, embedder: EmbeddingClient | None = None, **kwargs):
        from knowledge_ingest.services.ingestion import IngestionService
        return IngestionService(
            catalog,
            chunk_store,
            embedder or make_embedder(),
            settings=settings or test_settings,
            **kwargs,
        )
    return _build


# ─────────────────────────────────────────────────────────────────────────────
# SQLite-backed session factory (SQL store tests)
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
async def sql_sessions():
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
    from sqlalchemy.pool import StaticPool

    from knowledge_ingest.models.documents import Base

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


# ─────────────────────────────────────────────────────────────────────────────
# Sample file bytes
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def sample_pdf_bytes() -> bytes:
    """Two-page PDF with a real text layer."""
    import fitz

    doc = fitz.open()
    for text in ("Quarterly report introduction.", "Revenue grew in the second quarter."):
        page = doc.new_page()
        page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def blank_pdf_bytes() -> bytes:
    """Valid PDF with no text layer (e.g. a scan)."""
    import fitz

    doc = fitz.open()
    doc.new_page()
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def sample_docx_bytes() -> bytes:
    from docx import Document

    doc = Document()
    doc.add_paragraph("Onboarding guide")
    doc.add_paragraph("Badges are collected at the front desk.")
    table = doc.add_table(rows=1, cols=2)
    table.rows[0].cells[0].text = "Room"
    table.rows[0].cells[1].text = "B12"
    buffer = io.BytesIO()
    doc.save(buffer)
    return buffer.getvalue()


@pytest.fixture
def sample_csv_bytes() -> bytes:
    return b"name,city\nAda,London\nGrace,New York\n"


@pytest.fixture
def sample_txt_bytes() -> bytes:
    return (
        "VENUE INFORMATION\n\n"
        "The conference is held in the main hall.\n\n"
        "Parking is available behind the building.\n"
    ).encode("utf-8")
