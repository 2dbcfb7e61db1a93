"""
Extraction Stage
════════════════

Turns raw file bytes into per-page text.

  PDF   → PyMuPDF text layer. If the layer is too sparse the result is
          flagged requires_ocr and the orchestrator runs extract_ocr()
          under the OCR_EXTRACTING state.
  DOCX  → python-docx paragraphs and tables in body order, paged on explicit
          page breaks (or ~DOCX_CHARS_PER_PAGE characters when the file has none).
  PPTX  → python-pptx, one page per slide (shape text, tables, speaker notes).
  image → no text layer; wrapped in a one-page PDF and flagged requires_ocr.
  other → UTF-8 text (latin-1 fallback); binary content is rejected.

Every failure surfaces as ExtractionError. Corrupt, encrypted and
unsupported files fail fast; the queue does not retry them.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass

from materialflow.core.config import settings
from materialflow.core.exceptions import ExtractionError
from materialflow.processing.ocr import (
    BaseTextExtractor,
    ExtractionStrategyResult,
    PageText,
    PyMuPDFExtractor,
    get_ocr_backend,
)

logger = logging.getLogger(__name__)

PDF_MIME  = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
PPTX_MIME = "application/vnd.openxmlformats-officedocument.presentationml.presentation"
PPT_MIME  = "application/vnd.ms-powerpoint"

IMAGE_EXTENSIONS = {".png": "png", ".jpg": "jpeg", ".jpeg": "jpeg", ".tif": "tiff", ".tiff": "tiff", ".bmp": "bmp", ".gif": "gif"}

# Page estimate for DOCX files without explicit page breaks
DOCX_CHARS_PER_PAGE = 3000


@dataclass
class ExtractionResult:
    """
    pages          : per-page text, 1-based page numbers, in order
    strategy_used  : "pymupdf" | "docx" | "pptx" | "image" | "text" | "unstructured" | "textract"
    used_ocr       : True if an OCR backend produced the pages
    requires_ocr   : native PDF text judged too sparse; OCR should run
    avg_confidence : OCR confidence 0–1, -1.0 when not applicable
    paged          : False when the source has no page structure (plain text)
    ocr_input      : bytes the OCR backend should read instead of the original file
    """
    pages:          list[PageText]
    strategy_used:  str
    used_ocr:       bool  = False
    requires_ocr:   bool  = False
    avg_confidence: float = -1.0
    paged:          bool  = True
    ocr_input:      bytes | None = None

    @property
    def page_count(self) -> int:
        return len(self.pages)

    @property
    def page_texts(self) -> list[str]:
        return [p.text for p in self.pages]

    @property
    def full_text(self) -> str:
        return "\n\n".join(p.text for p in self.pages if p.text.strip())

    @property
    def total_chars(self) -> int:
        return sum(len(p.text) for p in self.pages)


def detect_kind(file_type: str, file_name: str = "", data: bytes = b"") -> str:
    """Classify a file as 'pdf', 'docx', 'doc', 'pptx', 'ppt', 'image' or 'text'."""
    mime = (file_type or "").lower()
    name = (file_name or "").lower()

    if mime == PDF_MIME or name.endswith(".pdf") or data[:5] == b"%PDF-":
        return "pdf"
    if "wordprocessingml" in mime or name.endswith(".docx"):
        return "docx"
    if mime == "application/msword" or name.endswith(".doc"):
        return "doc"
    if "presentationml" in mime or name.endswith(".pptx"):
        return "pptx"
    if mime == PPT_MIME or name.endswith(".ppt"):
        return "ppt"
    if mime.startswith("image/") or _image_format(name):
        return "image"
    return "text"


def _image_format(file_name: str) -> str | None:
    for ext, fmt in IMAGE_EXTENSIONS.items():
        if file_name.endswith(ext):
            return fmt
    return None


class TextExtractor:
    """
    Stateless extraction stage. The native PDF reader and OCR backend are
    injectable so tests and alternative deployments can swap them.
    """

    def __init__(
        self,
        pdf_extractor: BaseTextExtractor | None = None,
        ocr_backend:   BaseTextExtractor | None = None,
        min_chars_per_page: int | None = None,
        min_text_chars:     int | None = None,
    ) -> None:
        self._pdf = pdf_extractor or PyMuPDFExtractor()
        self._ocr = ocr_backend
        self._min_chars_per_page = min_chars_per_page if min_chars_per_page is not None else settings.min_chars_per_page
        self._min_text_chars = min_text_chars if min_text_chars is not None else settings.min_text_chars

    # ------------------------------------------------------------------
    # Native extraction
    # ------------------------------------------------------------------

    async def extract(self, data: bytes, file_type: str, file_name: str = "") -> ExtractionResult:
        if not data:
            raise ExtractionError("File is empty")

        kind = detect_kind(file_type, file_name, data)
        logger.info("Extraction | kind=%s type=%s size=%d", kind, file_type, len(data))

        if kind == "pdf":
            return await self._extract_pdf(data)
        if kind == "doc":
            raise ExtractionError("Legacy .doc files are not supported; upload DOCX or PDF")
        if kind == "ppt":
            raise ExtractionError("Legacy .ppt files are not supported; upload PPTX or PDF")

        loop = asyncio.get_running_loop()
        if kind == "docx":
            return await loop.run_in_executor(None, self._extract_docx, data)
        if kind == "pptx":
            return await loop.run_in_executor(None, self._extract_pptx, data)
        if kind == "image":
            image_format = _image_format((file_name or "").lower()) or (file_type or "").lower().split("/", 1)[-1]
            return await loop.run_in_executor(None, self._prepare_image, data, image_format)
        return self._extract_text(data)

    async def _extract_pdf(self, data: bytes) -> ExtractionResult:
        native = await self._pdf.extract(data)
        if not native.pages:
            raise ExtractionError("PDF has no pages")

        scanned = native.is_likely_scanned(self._min_chars_per_page, self._min_text_chars)
        if scanned:
            logger.info(
                "PDF looks scanned | pages=%d total_chars=%d avg_chars_per_page=%.0f",
                len(native.pages), native.total_chars, native.avg_chars_per_page,
            )
        return self._build(native, requires_ocr=scanned)

    def _extract_docx(self, data: bytes) -> ExtractionResult:
        import docx
        from docx.oxml.ns import qn
        from docx.table import Table
        from docx.text.paragraph import Paragraph

        try:
            document = docx.Document(io.BytesIO(data))
        except Exception as exc:
            raise ExtractionError(f"DOCX could not be opened: {exc}") from exc

        # Walk the body in document order so tables stay on the page they sit on.
        pages: list[list[str]] = [[]]
        explicit_breaks = False
        for child in document.element.body.iterchildren():
            if child.tag == qn("w:tbl"):
                for row in Table(child, document).rows:
                    cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
                    if cells:
                        pages[-1].append(" | ".join(cells))
            elif child.tag == qn("w:p"):
                para = Paragraph(child, document)
                if para.text.strip():
                    pages[-1].append(para.text.strip())
                breaks = child.findall(".//" + qn("w:br"))
                if any(br.get(qn("w:type")) == "page" for br in breaks):
                    explicit_breaks = True
                    pages.append([])

        if explicit_breaks:
            page_texts = ["\n\n".join(p) for p in pages if p]
        else:
            page_texts = _paginate("\n\n".join(pages[0]), DOCX_CHARS_PER_PAGE)

        result = ExtractionStrategyResult(
            pages=[
                PageText(page_number=i, text=text, extraction_method="docx")
                for i, text in enumerate(page_texts, start=1)
            ],
            strategy_name="docx",
        )
        return self._build(result)

    def _extract_pptx(self, data: bytes) -> ExtractionResult:
        from pptx import Presentation

        try:
            deck = Presentation(io.BytesIO(data))
        except Exception as exc:
            raise ExtractionError(f"PPTX could not be opened: {exc}") from exc

        pages: list[PageText] = []
        for number, slide in enumerate(deck.slides, start=1):
            lines = _shape_lines(slide.shapes)
            if slide.has_notes_slide:
                notes = slide.notes_slide.notes_text_frame
                if notes is not None and notes.text.strip():
                    lines.append(notes.text.strip())
            pages.append(PageText(page_number=number, text="\n".join(lines), extraction_method="pptx"))

        if not pages:
            raise ExtractionError("Presentation has no slides")
        return self._build(ExtractionStrategyResult(pages=pages, strategy_name="pptx"))

    def _prepare_image(self, data: bytes, image_format: str) -> ExtractionResult:
        """Images carry no text layer: wrap them in a one-page PDF for the OCR backend."""
        import fitz

        try:
            with fitz.open(stream=data, filetype=image_format) as image:
                pdf_bytes = image.convert_to_pdf()
        except Exception as exc:
            raise ExtractionError(f"Image could not be opened: {exc}") from exc

        logger.info("Image routed to OCR | format=%s size=%d", image_format, len(data))
        return ExtractionResult(
            pages=[],
            strategy_used="image",
            requires_ocr=True,
            ocr_input=pdf_bytes,
        )

    def _extract_text(self, data: bytes) -> ExtractionResult:
        if b"\x00" in data[:8192]:
            raise ExtractionError("Unsupported binary file")
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            text = data.decode("latin-1", errors="replace")
        text = text.lstrip("\ufeff")

        result = ExtractionStrategyResult(
            pages=[PageText(page_number=1, text=text, extraction_method="text")],
            strategy_name="text",
        )
        extraction = self._build(result)
        extraction.paged = False
        return extraction

    # ------------------------------------------------------------------
    # OCR branch
    # ------------------------------------------------------------------

    async def extract_ocr(self, data: bytes) -> ExtractionResult:
        backend = self._ocr or get_ocr_backend()
        result = await backend.extract(data)
        if not result.pages:
            raise ExtractionError("OCR produced no pages")
        return self._build(result)

    @staticmethod
    def _build(result: ExtractionStrategyResult, requires_ocr: bool = False) -> ExtractionResult:
        return ExtractionResult(
            pages=result.pages,
            strategy_used=result.strategy_name,
            used_ocr=result.used_ocr,
            requires_ocr=requires_ocr,
            avg_confidence=result.avg_confidence,
        )


def ensure_sufficient_text(result: ExtractionResult, min_chars: int | None = None) -> None:
    """Fail the material when extraction (native or OCR) found almost nothing."""
    threshold = min_chars if min_chars is not None else settings.min_content_chars
    meaningful = sum(len("".join(p.text.split())) for p in result.pages)
    if meaningful < threshold:
        raise ExtractionError(
            f"Extracted text too short ({meaningful} chars, need {threshold}); "
            "the file may be empty or unreadable"
        )


def _paginate(text: str, chars_per_page: int) -> list[str]:
    """Split on paragraph boundaries into pages of roughly chars_per_page."""
    if not text:
        return [""]
    pages: list[str] = []
    current: list[str] = []
    size = 0
    for para in text.split("\n\n"):
        if current and size + len(para) > chars_per_page:
            pages.append("\n\n".join(current))
            current, size = [], 0
        current.append(para)
        size += len(para) + 2
    if current:
        pages.append("\n\n".join(current))
    return pages


def _shape_lines(shapes) -> list[str]:
    """Text of every shape on a slide, descending into groups; tables row by row."""
    from pptx.shapes.group import GroupShape

    lines: list[str] = []
    for shape in shapes:
        if isinstance(shape, GroupShape):
            lines.extend(_shape_lines(shape.shapes))
        elif shape.has_table:
            for row in shape.table.rows:
                cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
                if cells:
                    lines.append(" | ".join(cells))
        elif shape.has_text_frame:
            text = shape.text_frame.text.strip()
            if text:
                lines.append(text)
    return lines
