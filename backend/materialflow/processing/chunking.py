"""
Retrieval Chunker
═════════════════

Splits cleaned page texts into retrieval-sized chunks with LangChain's
RecursiveCharacterTextSplitter (paragraph → line → sentence → word → char
fallback). Chunk boundaries are independent of segment boundaries: chunks
are tuned for embedding similarity, segments for prompt windows.

Pages are split one at a time so every chunk carries the page it came from.
Chunk indexes are contiguous across the whole material, and the same input
always yields the same chunks. That determinism is what lets the indexer
skip chunks already persisted for a version when a job is retried.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Sequence

from langchain_text_splitters import RecursiveCharacterTextSplitter

from materialflow.core.config import settings
from materialflow.processing.segmentation import estimate_tokens

logger = logging.getLogger(__name__)

SEPARATORS = ["\n\n", "\n", ". ", " ", ""]


@dataclass(frozen=True)
class ChunkResult:
    chunk_index: int
    text:        str
    page_number: int | None
    token_count: int

    def chunk_id(self, material_id: str, material_version: int) -> str:
        """sha256(material_id:version:chunk_index) truncated to 32 hex chars."""
        raw = f"{material_id}:{material_version}:{self.chunk_index}"
        return hashlib.sha256(raw.encode()).hexdigest()[:32]


class RetrievalChunker:

    def __init__(self, chunk_size: int | None = None, chunk_overlap: int | None = None) -> None:
        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=chunk_size or settings.chunk_size,
            chunk_overlap=chunk_overlap if chunk_overlap is not None else settings.chunk_overlap,
            separators=SEPARATORS,
        )

    def chunk(self, pages: Sequence[str], *, paged: bool = True, first_page: int = 1) -> list[ChunkResult]:
        chunks: list[ChunkResult] = []
        for offset, page_text in enumerate(pages):
            if not page_text.strip():
                continue
            page_number = first_page + offset if paged else None
            for piece in self._splitter.split_text(page_text):
                if not piece.strip():
                    continue
                chunks.append(ChunkResult(
                    chunk_index=len(chunks),
                    text=piece,
                    page_number=page_number,
                    token_count=estimate_tokens(piece),
                ))

        logger.info("Chunked | pages=%d chunks=%d", len(pages), len(chunks))
        return chunks
