"""
Retrieval Engine

  retrieve(query, material_id=None, k=5, scope=None)
      1. embed the query with the same provider the indexer used
      2. cosine similarity against stored chunk embeddings (pgvector)
      3. drop matches below RETRIEVAL_MIN_SIMILARITY, then take the top k

Only chunks of fully indexed materials at their current version are
candidates; that filter lives in the repository query. Without a
material_id the caller's AccessScope (public materials + own uploads)
bounds the candidate set.

The engine never raises on provider or store failure. It logs and returns
an empty list so summarization / QA callers can fall back to raw segment
text (see context_for()).
"""

from __future__ import annotations

import logging
import time

from materialflow.core.config import settings
from materialflow.pipeline.repository import AccessScope, MaterialRepository, RetrievedChunk
from materialflow.processing.embeddings import EmbeddingProvider
from materialflow.processing.segmentation import estimate_tokens, select_context

logger = logging.getLogger(__name__)


class RetrievalEngine:

    def __init__(
        self,
        repository:     MaterialRepository,
        provider:       EmbeddingProvider,
        default_k:      int | None = None,
        min_similarity: float | None = None,
    ) -> None:
        self._repo = repository
        self._provider = provider
        self._default_k = default_k or settings.retrieval_top_k
        self._min_similarity = (
            min_similarity if min_similarity is not None else settings.retrieval_min_similarity
        )

    @property
    def min_similarity(self) -> float:
        return self._min_similarity

    async def retrieve(
        self,
        query: str,
        material_id: str | None = None,
        k: int | None = None,
        scope: AccessScope | None = None,
    ) -> list[RetrievedChunk]:
        if not query or not query.strip():
            return []
        k = k or self._default_k
        t0 = time.monotonic()

        try:
            vector = await self._provider.embed_query(query.strip())
        except Exception as exc:
            logger.warning("Retrieval degraded: query embedding failed | error=%s", exc)
            return []

        try:
            results = await self._repo.search_chunks(
                vector,
                limit=k,
                min_similarity=self._min_similarity,
                material_id=material_id,
                scope=None if material_id else (scope or AccessScope()),
            )
        except Exception as exc:
            logger.warning("Retrieval degraded: vector search failed | error=%s", exc)
            return []

        logger.info(
            "Retrieve | material=%s k=%d hits=%d elapsed_ms=%.0f",
            material_id or "*", k, len(results), (time.monotonic() - t0) * 1000,
        )
        return results

    async def context_for(
        self,
        material_id: str,
        query: str | None,
        token_budget: int,
        k: int | None = None,
    ) -> tuple[str, str]:
        """
        Prompt context for one material: retrieved chunks when retrieval has
        anything above threshold, else greedily selected raw segments.
        Returns (text, source) where source is "retrieval" or "segments".
        """
        if query:
            hits = await self.retrieve(query, material_id=material_id, k=k)
            if hits:
                pieces: list[str] = []
                used = 0
                for hit in hits:
                    cost = estimate_tokens(hit.content)
                    if used + cost > token_budget:
                        break
                    pieces.append(hit.content)
                    used += cost
                if pieces:
                    return "\n\n".join(pieces), "retrieval"

        segments = await self._repo.list_segments(material_id)
        chosen = select_context(segments, token_budget, topic=query)
        return "\n\n".join(s.text.strip() for s in chosen), "segments"
