"""
Text Extraction Strategies for PDFs
═══════════════════════════════════

Strategy pattern shared by the native text layer reader and the OCR
backends. All strategies take raw bytes and return an
ExtractionStrategyResult with one PageText per page, so the segmenter never
needs to know which backend produced the text.

  PyMuPDFExtractor      native PDF text layer (in-process, fast)
  UnstructuredExtractor OCR via unstructured partition_pdf (hi_res)
  TextractExtractor     OCR via AWS Textract, one rendered page per call

Unlike the native reader, OCR backends are only invoked once the native
text has been judged too sparse (see is_likely_scanned). Any backend error
or timeout raises ExtractionError: the attempt is terminal.

The OCR libraries are optional extras (`pip install materialflow[ocr]`)
and are imported inside the blocking call.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

from materialflow.core.exceptions import ExtractionError

logger = logging.getLogger(__name__)

# Rendering resolution for page images sent to Textract
TEXTRACT_RENDER_DPI = 200


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class PageText:
    """
    page_number       : 1-based page index
    text              : raw extracted text (may be empty for image-only pages)
    confidence        : 0.0–1.0; -1.0 when the strategy has no notion of it
    extraction_method : "pymupdf" | "docx" | "text" | "unstructured" | "textract"
    """
    page_number:       int
    text:              str
    confidence:        float = -1.0
    extraction_method: str   = "unknown"


@dataclass
class ExtractionStrategyResult:
    pages:         list[PageText]
    strategy_name: str
    elapsed_ms:    float = 0.0
    used_ocr:      bool  = False

    @property
    def total_chars(self) -> int:
        return sum(len(p.text) for p in self.pages)

    @property
    def avg_chars_per_page(self) -> float:
        if not self.pages:
            return 0.0
        return self.total_chars / len(self.pages)

    @property
    def avg_confidence(self) -> float:
        values = [p.confidence for p in self.pages if p.confidence >= 0]
        if not values:
            return -1.0
        return round(sum(values) / len(values), 3)

    def is_likely_scanned(self, min_chars_per_page: int, min_total_chars: int) -> bool:
        """True if the text layer is too sparse to be the real content."""
        return (
            self.total_chars < min_total_chars
            or self.avg_chars_per_page < min_chars_per_page
        )


# ---------------------------------------------------------------------------
# Abstract strategy
# ---------------------------------------------------------------------------

class BaseTextExtractor(ABC):

    @property
    @abstractmethod
    def strategy_name(self) -> str:
        """Unique name for logging."""

    @abstractmethod
    async def extract(self, pdf_bytes: bytes) -> ExtractionStrategyResult:
        """Extract per-page text from raw PDF bytes."""


# ---------------------------------------------------------------------------
# Native text layer: PyMuPDF (fitz)
# ---------------------------------------------------------------------------

class PyMuPDFExtractor(BaseTextExtractor):
    """
    Reads the native PDF text layer. Image-only pages come back empty, which
    is what drives the OCR fallback. Encrypted and unreadable PDFs raise
    ExtractionError instead of returning an empty result.
    """

    @property
    def strategy_name(self) -> str:
        return "pymupdf"

    async def extract(self, pdf_bytes: bytes) -> ExtractionStrategyResult:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()

        result = await loop.run_in_executor(None, self._extract_sync, pdf_bytes)

        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "PyMuPDF | pages=%d total_chars=%d avg_chars_per_page=%.0f elapsed_ms=%.0f",
            len(result.pages), result.total_chars,
            result.avg_chars_per_page, result.elapsed_ms,
        )
        return result

    def _extract_sync(self, pdf_bytes: bytes) -> ExtractionStrategyResult:
        import fitz  # PyMuPDF

        try:
            doc = fitz.open(stream=pdf_bytes, filetype="pdf")
        except Exception as exc:
            raise ExtractionError(f"PDF could not be opened: {exc}") from exc

        with doc:
            if doc.needs_pass:
                raise ExtractionError("PDF is password-protected")
            pages = [
                PageText(
                    page_number=page_num,
                    text=(page.get_text("text") or "").strip(),
                    extraction_method=self.strategy_name,
                )
                for page_num, page in enumerate(doc, start=1)
            ]

        return ExtractionStrategyResult(pages=pages, strategy_name=self.strategy_name)


# ---------------------------------------------------------------------------
# OCR backend base: timeout + error mapping around a blocking call
# ---------------------------------------------------------------------------

class OcrBackend(BaseTextExtractor):

    def __init__(self, timeout_seconds: float = 120.0) -> None:
        self._timeout = timeout_seconds

    async def extract(self, pdf_bytes: bytes) -> ExtractionStrategyResult:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()

        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, self._extract_sync, pdf_bytes),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error("%s OCR timed out after %.0fs", self.strategy_name, self._timeout)
            raise ExtractionError(f"OCR timed out after {self._timeout:.0f}s") from exc
        except ExtractionError:
            raise
        except Exception as exc:
            logger.error("%s OCR failed: %s", self.strategy_name, exc, exc_info=True)
            raise ExtractionError(f"OCR engine failure ({self.strategy_name}): {exc}") from exc

        result.elapsed_ms = (time.monotonic() - t0) * 1000
        result.used_ocr = True
        logger.info(
            "%s | pages=%d total_chars=%d confidence=%.3f elapsed_ms=%.0f",
            self.strategy_name, len(result.pages), result.total_chars,
            result.avg_confidence, result.elapsed_ms,
        )
        return result

    @abstractmethod
    def _extract_sync(self, pdf_bytes: bytes) -> ExtractionStrategyResult:
        """Blocking OCR call; runs in the default thread executor."""


class UnstructuredExtractor(OcrBackend):
    """
    OCR through the unstructured library (local hi_res pipeline, or the
    hosted API when use_api is set). Needs poppler + tesseract in the image
    for local mode.
    """

    def __init__(self, timeout_seconds: float = 120.0, use_api: bool = False, api_key: str = "") -> None:
        super().__init__(timeout_seconds)
        self._use_api = use_api
        self._api_key = api_key

    @property
    def strategy_name(self) -> str:
        return "unstructured"

    def _extract_sync(self, pdf_bytes: bytes) -> ExtractionStrategyResult:
        import io

        if self._use_api:
            from unstructured.partition.api import partition_via_api

            elements = partition_via_api(
                file=io.BytesIO(pdf_bytes),
                metadata_filename="material.pdf",
                api_key=self._api_key,
                strategy="hi_res",
            )
        else:
            from unstructured.partition.pdf import partition_pdf

            elements = partition_pdf(
                file=io.BytesIO(pdf_bytes),
                strategy="hi_res",
                include_page_breaks=True,
                infer_table_structure=True,
            )

        pages_dict: dict[int, list[str]] = {}
        for elem in elements:
            page_num = (elem.metadata.page_number if elem.metadata else None) or 1
            pages_dict.setdefault(page_num, [])
            text = str(elem).strip()
            if text:
                pages_dict[page_num].append(text)

        pages = [
            PageText(
                page_number=pn,
                text="\n".join(texts),
                confidence=0.85,   # unstructured does not expose per-element confidence
                extraction_method=self.strategy_name,
            )
            for pn, texts in sorted(pages_dict.items())
        ]
        return ExtractionStrategyResult(pages=pages, strategy_name=self.strategy_name, used_ocr=True)


class TextractExtractor(OcrBackend):
    """
    AWS Textract DetectDocumentText. The synchronous API accepts single-page
    documents only, so each PDF page is rendered to PNG with PyMuPDF and sent
    on its own. Confidence is the mean LINE confidence per page.
    """

    def __init__(self, timeout_seconds: float = 120.0, region: str = "us-east-1") -> None:
        super().__init__(timeout_seconds)
        self._region = region

    @property
    def strategy_name(self) -> str:
        return "textract"

    def _extract_sync(self, pdf_bytes: bytes) -> ExtractionStrategyResult:
        import boto3
        import fitz

        client = boto3.client("textract", region_name=self._region)
        pages: list[PageText] = []

        with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
            for page_num, page in enumerate(doc, start=1):
                png = page.get_pixmap(dpi=TEXTRACT_RENDER_DPI).tobytes("png")
                response = client.detect_document_text(Document={"Bytes": png})

                lines: list[str] = []
                confidences: list[float] = []
                for block in response.get("Blocks", []):
                    if block.get("BlockType") != "LINE":
                        continue
                    lines.append(block.get("Text", ""))
                    confidences.append(block.get("Confidence", 0.0) / 100.0)

                pages.append(PageText(
                    page_number=page_num,
                    text="\n".join(lines),
                    confidence=round(sum(confidences) / len(confidences), 3) if confidences else 0.0,
                    extraction_method=self.strategy_name,
                ))

        return ExtractionStrategyResult(pages=pages, strategy_name=self.strategy_name, used_ocr=True)


def get_ocr_backend(name: str | None = None) -> OcrBackend:
    """Build the configured OCR backend (OCR_BACKEND)."""
    from materialflow.core.config import settings

    backend = (name or settings.ocr_backend).lower()
    if backend == "textract":
        return TextractExtractor(timeout_seconds=settings.ocr_timeout_seconds, region=settings.aws_region)
    if backend == "unstructured":
        return UnstructuredExtractor(
            timeout_seconds=settings.ocr_timeout_seconds,
            use_api=settings.unstructured_use_api,
            api_key=settings.unstructured_api_key,
        )
    raise ValueError(f"Unknown OCR backend: {backend!r}")
