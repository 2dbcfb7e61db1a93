"""
Embedding Pipeline  —  Bounded-Concurrency Batch Embeddings
═══════════════════════════════════════════════════════════

Provider contract
─────────────────
  EmbeddingProvider.embed(texts) -> list[vector], one vector per text, all
  of the configured dimension. OpenAIEmbeddingProvider is the production
  implementation (AsyncOpenAI, text-embedding-3-small, 1536 dims).

  Provider errors are normalized:
    RateLimitError / APITimeoutError / APIConnectionError / 5xx
        → TransientProviderError   (retried here, then by the job queue)
    AuthenticationError / BadRequestError / other 4xx
        → ProviderError            (not retried)

Batching
────────
  Chunks are grouped into batches of EMBEDDING_BATCH_SIZE and issued
  concurrently under a semaphore of EMBEDDING_MAX_CONCURRENCY, so the whole
  chunk set is never serialized and the provider never sees more than N
  requests at once. Each finished batch is handed to `on_batch` right away
  (the indexer persists it), so a later failure does not lose earlier work.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence

from materialflow.core.exceptions import ProviderError, TransientProviderError
from materialflow.processing.chunking import ChunkResult

logger = logging.getLogger(__name__)

MAX_RETRIES      = 2      # in-process retries per batch before giving up
RETRY_BASE_DELAY = 1.0    # seconds, doubles per retry
RETRY_MAX_DELAY  = 20.0

EmbeddedBatch = list[tuple[ChunkResult, list[float]]]


# ---------------------------------------------------------------------------
# Provider interface
# ---------------------------------------------------------------------------

class EmbeddingProvider(ABC):

    @property
    @abstractmethod
    def dimensions(self) -> int: ...

    @abstractmethod
    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed texts in order. Raises ProviderError / TransientProviderError."""

    async def embed_query(self, text: str) -> list[float]:
        vectors = await self.embed([text])
        return vectors[0]


class OpenAIEmbeddingProvider(EmbeddingProvider):

    def __init__(
        self,
        model:      str   = "text-embedding-3-small",
        dimensions: int   = 1536,
        api_key:    str   = "",
        timeout:    float = 30.0,
    ) -> None:
        from openai import AsyncOpenAI

        self._model = model
        self._dimensions = dimensions
        self._client = AsyncOpenAI(api_key=api_key or None, timeout=timeout, max_retries=0)

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        import openai

        kwargs = {}
        # dimensions is only accepted by text-embedding-3-* models
        if self._model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._dimensions

        try:
            response = await self._client.embeddings.create(
                model=self._model,
                input=list(texts),
                **kwargs,
            )
        except (openai.RateLimitError, openai.APITimeoutError, openai.APIConnectionError) as exc:
            raise TransientProviderError(str(exc), provider_name="openai") from exc
        except openai.APIStatusError as exc:
            if exc.status_code >= 500:
                raise TransientProviderError(str(exc), provider_name="openai") from exc
            raise ProviderError(str(exc), provider_name="openai") from exc

        if response.usage:
            logger.debug("OpenAI embeddings | inputs=%d tokens=%d", len(texts), response.usage.total_tokens)

        ordered = sorted(response.data, key=lambda d: d.index)
        return [item.embedding for item in ordered]


def get_embedding_provider() -> EmbeddingProvider:
    """Build the provider from application settings."""
    from materialflow.core.config import settings

    return OpenAIEmbeddingProvider(
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
        api_key=settings.openai_api_key,
        timeout=settings.embedding_timeout_seconds,
    )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

@dataclass
class EmbeddingResult:
    """
    total_chunks  : chunks handed to the pipeline
    embedded      : chunks embedded and delivered to on_batch
    failed_chunks : chunk indexes whose batch failed after retries
    errors        : the exceptions behind failed batches
    """
    total_chunks:  int
    embedded:      int
    elapsed_ms:    float
    failed_chunks: list[int] = field(default_factory=list)
    errors:        list[Exception] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed_chunks and self.embedded == self.total_chunks

    @property
    def transient_only(self) -> bool:
        return bool(self.errors) and all(isinstance(e, TransientProviderError) for e in self.errors)


class EmbeddingPipeline:

    def __init__(
        self,
        provider:        EmbeddingProvider,
        batch_size:      int = 32,
        max_concurrency: int = 4,
    ) -> None:
        self._provider = provider
        self._batch_size = max(batch_size, 1)
        self._max_concurrency = max(max_concurrency, 1)

    async def embed_chunks(
        self,
        chunks:   Sequence[ChunkResult],
        on_batch: Callable[[EmbeddedBatch], Awaitable[None]],
    ) -> EmbeddingResult:
        if not chunks:
            return EmbeddingResult(total_chunks=0, embedded=0, elapsed_ms=0.0)

        t0 = time.monotonic()
        batches = [
            list(chunks[i : i + self._batch_size])
            for i in range(0, len(chunks), self._batch_size)
        ]
        semaphore = asyncio.Semaphore(self._max_concurrency)

        logger.info(
            "EmbeddingPipeline | chunks=%d batches=%d concurrency=%d",
            len(chunks), len(batches), self._max_concurrency,
        )

        outcomes = await asyncio.gather(
            *(self._run_batch(batch, idx, semaphore, on_batch) for idx, batch in enumerate(batches)),
            return_exceptions=True,
        )

        result = EmbeddingResult(total_chunks=len(chunks), embedded=0, elapsed_ms=0.0)
        for batch, outcome in zip(batches, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                result.failed_chunks.extend(c.chunk_index for c in batch)
                result.errors.append(outcome)
            else:
                result.embedded += len(batch)

        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "EmbeddingPipeline done | embedded=%d failed=%d elapsed_ms=%.0f",
            result.embedded, len(result.failed_chunks), result.elapsed_ms,
        )
        return result

    async def _run_batch(
        self,
        batch:     list[ChunkResult],
        batch_idx: int,
        semaphore: asyncio.Semaphore,
        on_batch:  Callable[[EmbeddedBatch], Awaitable[None]],
    ) -> None:
        vectors = await self._embed_with_retry(batch, batch_idx, semaphore)
        if len(vectors) != len(batch):
            raise ProviderError(
                f"Provider returned {len(vectors)} vectors for {len(batch)} inputs",
            )
        for vector in vectors:
            if len(vector) != self._provider.dimensions:
                raise ProviderError(
                    f"Embedding has {len(vector)} dims, expected {self._provider.dimensions}",
                )
        await on_batch(list(zip(batch, vectors)))

    async def _embed_with_retry(
        self,
        batch:     list[ChunkResult],
        batch_idx: int,
        semaphore: asyncio.Semaphore,
    ) -> list[list[float]]:
        attempt = 0
        while True:
            async with semaphore:
                try:
                    return await self._provider.embed([c.text for c in batch])
                except TransientProviderError as exc:
                    if attempt >= MAX_RETRIES:
                        raise
                    error = exc

            attempt += 1
            delay = min(RETRY_BASE_DELAY * (2 ** (attempt - 1)), RETRY_MAX_DELAY)
            logger.warning(
                "Embedding retry | batch=%d attempt=%d delay=%.1fs error=%s",
                batch_idx, attempt, delay, error,
            )
            await asyncio.sleep(delay)
