"""
Embedding Client  —  Token-Budgeted Batches over HTTP
═════════════════════════════════════════════════════

Talks to an OpenAI-compatible `/embeddings` endpoint with httpx:

    POST {base_url}/embeddings
    {"model": "...", "input": ["chunk 1", "chunk 2", ...]}
    → {"data": [{"index": 0, "embedding": [...]}, ...]}

Contract: ordered texts in → same-length, same-order vectors out, or a
typed IngestionError.

Pre-flight guard:
  Token counts are estimated as ceil(chars / 4). A text whose estimate
  exceeds the service's per-item limit is truncated to a safe character
  ceiling and logged.

Batching strategy:
  Greedy packing, bounded by item count (default 10) AND aggregate token
  estimate (default 80 000). A batch that still exceeds the token limit
  is demoted to one-item-at-a-time calls.

Retry policy:
  Off by default (max_retries=0): the first failed call fails the job and
  the record is resubmitted. When enabled, 429 / 5xx / transport errors
  are retried with capped exponential back-off; everything else fails
  immediately.

Every call is bounded by the job deadline when one is supplied.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Awaitable, Callable, Sequence

import httpx

from knowledge_ingest.core.config import Settings
from knowledge_ingest.core.errors import DimensionMismatchError, EmbeddingServiceError
from knowledge_ingest.services.deadline import Deadline

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

CHARS_PER_TOKEN_EST = 4

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}

ProgressCallback = Callable[[int, int], Awaitable[None]]


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN_EST)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class EmbeddingClient:
    """
    One instance may be shared by concurrent jobs: it holds only
    configuration and a connection pool.

    Usage:
        client  = EmbeddingClient.from_settings(settings)
        vectors = await client.embed(texts, deadline=deadline, on_batch=report)
        await client.aclose()
    """

    def __init__(
        self,
        base_url:          str,
        api_key:           str,
        model:             str   = "text-embedding-3-small",
        dimensions:        int   = 1536,
        batch_size:        int   = 10,
        batch_token_limit: int   = 80_000,
        item_token_limit:  int   = 8192,
        item_char_ceiling: int   = 24_000,
        timeout_seconds:   float = 60.0,
        max_retries:       int   = 0,
        retry_base_delay:  float = 2.0,
        retry_max_delay:   float = 30.0,
        http_client:       httpx.AsyncClient | None = None,
    ) -> None:
        self._url               = base_url.rstrip("/") + "/embeddings"
        self._api_key           = api_key
        self._model             = model
        self._dimensions        = dimensions
        self._batch_size        = batch_size
        self._batch_token_limit = batch_token_limit
        self._item_token_limit  = item_token_limit
        self._item_char_ceiling = item_char_ceiling
        self._max_retries       = max_retries
        self._retry_base_delay  = retry_base_delay
        self._retry_max_delay   = retry_max_delay
        self._owns_client       = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    @classmethod
    def from_settings(
        cls,
        settings:    Settings,
        http_client: httpx.AsyncClient | None = None,
    ) -> "EmbeddingClient":
        return cls(
            base_url=settings.embedding_base_url,
            api_key=settings.embedding_api_key,
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            batch_size=settings.embedding_batch_size,
            batch_token_limit=settings.embedding_batch_token_limit,
            item_token_limit=settings.embedding_item_token_limit,
            item_char_ceiling=settings.embedding_item_char_ceiling,
            timeout_seconds=settings.embedding_request_timeout_seconds,
            max_retries=settings.embedding_max_retries,
            retry_base_delay=settings.embedding_retry_base_delay,
            retry_max_delay=settings.embedding_retry_max_delay,
            http_client=http_client,
        )

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def embed(
        self,
        texts:    Sequence[str],
        deadline: Deadline | None = None,
        on_batch: ProgressCallback | None = None,
    ) -> list[list[float]]:
        """
        Embed `texts` in order.

        on_batch(done, total) is awaited after every completed batch.
        """
        if not texts:
            return []

        t0 = time.monotonic()
        prepared = [self._guard(i, t) for i, t in enumerate(texts)]
        batches  = self.plan_batches(prepared)

        logger.info(
            "Embedding | items=%d batches=%d model=%s",
            len(prepared), len(batches), self._model,
        )

        vectors: list[list[float]] = []
        for done, batch in enumerate(batches, start=1):
            tokens = sum(estimate_tokens(t) for t in batch)
            if tokens > self._batch_token_limit:
                logger.warning(
                    "Embedding batch over token limit, sending items singly | "
                    "batch=%d tokens_est=%d limit=%d",
                    done, tokens, self._batch_token_limit,
                )
                for text in batch:
                    vectors.extend(await self._call_with_retry([text], deadline))
            else:
                vectors.extend(await self._call_with_retry(batch, deadline))

            if on_batch is not None:
                await on_batch(done, len(batches))

        if len(vectors) != len(prepared):
            raise DimensionMismatchError(
                f"Embedding count mismatch: expected {len(prepared)} vectors, "
                f"got {len(vectors)}",
                expected=len(prepared),
                actual=len(vectors),
            )

        logger.info(
            "Embedding done | vectors=%d elapsed_ms=%.0f",
            len(vectors), (time.monotonic() - t0) * 1000,
        )
        return vectors

    def plan_batches(self, texts: Sequence[str]) -> list[list[str]]:
        """Greedy packing by item count and aggregate token estimate."""
        batches: list[list[str]] = []
        current: list[str] = []
        current_tokens = 0

        for text in texts:
            tokens = estimate_tokens(text)
            if current and (
                len(current) >= self._batch_size
                or current_tokens + tokens > self._batch_token_limit
            ):
                batches.append(current)
                current, current_tokens = [], 0
            current.append(text)
            current_tokens += tokens

        if current:
            batches.append(current)
        return batches

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _guard(self, index: int, text: str) -> str:
        tokens = estimate_tokens(text)
        if tokens <= self._item_token_limit:
            return text
        logger.warning(
            "Embedding input truncated | item=%d chars=%d tokens_est=%d limit=%d ceiling=%d",
            index, len(text), tokens, self._item_token_limit, self._item_char_ceiling,
        )
        return text[: self._item_char_ceiling]

    async def _call_with_retry(
        self,
        batch:    list[str],
        deadline: Deadline | None,
    ) -> list[list[float]]:
        attempt = 0
        while True:
            try:
                if deadline is None:
                    return await self._call(batch)
                return await deadline.run(self._call(batch), stage="embedding")
            except EmbeddingServiceError as exc:
                retryable = exc.status_code is None or exc.status_code in _RETRYABLE_STATUS
                if not retryable or attempt >= self._max_retries:
                    raise
                attempt += 1
                delay = min(self._retry_base_delay * (2 ** (attempt - 1)), self._retry_max_delay)
                logger.warning(
                    "Embedding retry | attempt=%d/%d delay=%.1fs status=%s",
                    attempt, self._max_retries, delay, exc.status_code,
                )
                if deadline is None:
                    await asyncio.sleep(delay)
                else:
                    await deadline.run(asyncio.sleep(delay), stage="embedding")

    async def _call(self, batch: list[str]) -> list[list[float]]:
        try:
            response = await self._http.post(
                self._url,
                json={"model": self._model, "input": batch},
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.HTTPError as exc:
            logger.error("Embedding transport error | error=%s", exc)
            raise EmbeddingServiceError(f"Embedding request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            body = response.text
            logger.error(
                "Embedding service error | status=%d body=%s",
                response.status_code, body[:500],
            )
            raise EmbeddingServiceError(
                f"Embedding service returned {response.status_code}: {body}",
                status_code=response.status_code,
                body=body,
            )

        try:
            data = response.json()["data"]
            if not all(isinstance(item, dict) for item in data):
                raise TypeError("data items must be objects")
            data = sorted(data, key=lambda item: item.get("index", 0))
            vectors = [list(item["embedding"]) for item in data]
        except (ValueError, KeyError, TypeError) as exc:
            raise EmbeddingServiceError(
                f"Malformed embedding response: {exc}",
                status_code=response.status_code,
                body=response.text,
            ) from exc

        if len(vectors) != len(batch):
            raise DimensionMismatchError(
                f"Embedding count mismatch: sent {len(batch)} inputs, "
                f"received {len(vectors)} vectors",
                expected=len(batch),
                actual=len(vectors),
            )
        for vector in vectors:
            if len(vector) != self._dimensions:
                raise DimensionMismatchError(
                    f"Invalid embedding dimension: expected {self._dimensions}, "
                    f"got {len(vector)}",
                    expected=self._dimensions,
                    actual=len(vector),
                )
        return vectors
