"""
LangChain adapter over RetrievalEngine.

Lets LCEL chains (summarization, quiz generation, QA) consume material
retrieval as a BaseRetriever without knowing about pgvector or the
indexed-version guard. An empty engine result stays an empty document list.
"""

from __future__ import annotations

import logging

from langchain_core.callbacks import (
    AsyncCallbackManagerForRetrieverRun,
    CallbackManagerForRetrieverRun,
)
from langchain_core.documents import Document
from langchain_core.retrievers import BaseRetriever
from pydantic import ConfigDict

from materialflow.pipeline.repository import AccessScope
from materialflow.retrieval.engine import RetrievalEngine

logger = logging.getLogger(__name__)


class MaterialRetriever(BaseRetriever):
    """
    engine      : RetrievalEngine doing the actual embedding + search
    material_id : restrict to one material; None searches the viewer's scope
    scope       : AccessScope used when material_id is None
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    engine:      RetrievalEngine
    material_id: str | None = None
    scope:       AccessScope | None = None
    top_k:       int = 5

    def _get_relevant_documents(
        self,
        query: str,
        *,
        run_manager: CallbackManagerForRetrieverRun,
    ) -> list[Document]:
        import asyncio

        return asyncio.run(self._search(query))

    async def _aget_relevant_documents(
        self,
        query: str,
        *,
        run_manager: AsyncCallbackManagerForRetrieverRun,
    ) -> list[Document]:
        return await self._search(query)

    async def _search(self, query: str) -> list[Document]:
        hits = await self.engine.retrieve(
            query, material_id=self.material_id, k=self.top_k, scope=self.scope,
        )
        docs = [
            Document(
                page_content=hit.content,
                metadata={
                    "chunk_id":       hit.chunk_id,
                    "material_id":    hit.material_id,
                    "material_title": hit.material_title,
                    "chunk_index":    hit.chunk_index,
                    "page_number":    hit.page_number,
                    "score":          hit.similarity,
                },
            )
            for hit in hits
        ]
        logger.debug("MaterialRetriever | material=%s docs=%d", self.material_id or "*", len(docs))
        return docs
