"""
Material Processing Package
═══════════════════════════

The stages a material's file passes through inside the worker:

  Extraction (native → OCR fallback) → Cleaning → Segmentation → Chunk + Embed

Modules
───────
  ocr.py           Extraction strategies (PyMuPDF text layer, Unstructured / Textract OCR)
  extractor.py     Picks the strategy by file kind; flags low-text PDFs for OCR
  cleaning.py      Per-page normalization, running header/footer removal
  segmentation.py  Page-aware segments for generation context
  chunking.py      Overlapping retrieval chunks with page numbers
  embeddings.py    Batched, bounded-concurrency embedding with retry
  results.py       StageResult: ok / degraded outcome carrier

Design principles
─────────────────
  • Stages are pure over their inputs; persistence lives in materialflow.pipeline.
  • Heavy computation runs in the Celery worker, never in the API process.
  • Every stage emits structured log lines.
"""

from materialflow.processing.chunking import ChunkResult, RetrievalChunker
from materialflow.processing.cleaning import clean_pages
from materialflow.processing.embeddings import EmbeddingPipeline, EmbeddingResult
from materialflow.processing.extractor import ExtractionResult, TextExtractor
from materialflow.processing.segmentation import Segment, Segmenter

__all__ = [
    "ChunkResult",
    "RetrievalChunker",
    "clean_pages",
    "EmbeddingPipeline",
    "EmbeddingResult",
    "ExtractionResult",
    "TextExtractor",
    "Segment",
    "Segmenter",
]
