"""
Chunk & Embedding Indexer

Chunks cleaned pages, embeds whatever is not yet stored for this
material_version, and persists each embedded batch as soon as it arrives.
The completion marker is not written here: the orchestrator does that via
MaterialRepository.complete() once index() returns without raising.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from materialflow.core.exceptions import IndexingError, StaleJobError, TransientProviderError
from materialflow.pipeline.repository import MaterialRepository, RunContext
from materialflow.processing.chunking import ChunkResult, RetrievalChunker
from materialflow.processing.embeddings import EmbeddedBatch, EmbeddingPipeline

logger = logging.getLogger(__name__)


@dataclass
class IndexReport:
    total_chunks:   int
    reused_chunks:  int
    embedded:       int
    elapsed_ms:     float


class ChunkIndexer:

    def __init__(
        self,
        repository: MaterialRepository,
        pipeline:   EmbeddingPipeline,
        chunker:    RetrievalChunker | None = None,
    ) -> None:
        self._repo = repository
        self._pipeline = pipeline
        self._chunker = chunker or RetrievalChunker()

    async def index(self, ctx: RunContext, pages: Sequence[str], *, paged: bool = True) -> IndexReport:
        """
        Raises TransientProviderError when every failed batch failed
        transiently (the queue retries and the next attempt only embeds the
        missing chunks) and IndexingError otherwise.
        """
        chunks = self._chunker.chunk(pages, paged=paged)
        if not chunks:
            raise IndexingError("No chunks produced from cleaned content", material_id=ctx.material_id)

        existing = await self._repo.existing_chunk_indexes(ctx)
        missing: list[ChunkResult] = [c for c in chunks if c.chunk_index not in existing]

        logger.info(
            "Indexing | material=%s version=%d chunks=%d already_stored=%d",
            ctx.material_id, ctx.material_version, len(chunks), len(chunks) - len(missing),
        )

        async def persist(batch: EmbeddedBatch) -> None:
            await self._repo.upsert_chunks(ctx, batch)

        result = await self._pipeline.embed_chunks(missing, persist)

        if not result.complete:
            for error in result.errors:
                if isinstance(error, StaleJobError):
                    raise error
            logger.error(
                "Indexing incomplete | material=%s failed_chunks=%d errors=%s",
                ctx.material_id, len(result.failed_chunks), [str(e) for e in result.errors],
            )
            if result.transient_only:
                raise TransientProviderError(
                    f"{len(result.failed_chunks)} chunks not embedded: {result.errors[0]}",
                    provider_name="embeddings",
                )
            raise IndexingError(
                f"{len(result.failed_chunks)} of {len(chunks)} chunks failed to embed: {result.errors[0]}",
                material_id=ctx.material_id,
                failed_chunks=result.failed_chunks,
            )

        return IndexReport(
            total_chunks=len(chunks),
            reused_chunks=len(chunks) - len(missing),
            embedded=result.embedded,
            elapsed_ms=result.elapsed_ms,
        )
