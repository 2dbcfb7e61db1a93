"""
Unit Tests — extraction stage
═════════════════════════════
Tests for:
  • TextExtractor.extract      — PDF text layer, DOCX paging, PPTX slides, images, plain text
  • scanned-PDF detection      — requires_ocr flag for sparse text layers
  • TextExtractor.extract_ocr  — injected OCR backend
  • OcrBackend                 — timeout / engine errors → ExtractionError
  • ensure_sufficient_text     — minimum content gate

PDF and DOCX inputs are generated in-process (see samples.py).
"""

from __future__ import annotations

import time

import pytest

from materialflow.core.exceptions import ExtractionError
from materialflow.processing.extractor import (
    DOCX_MIME,
    PDF_MIME,
    PPTX_MIME,
    ExtractionResult,
    TextExtractor,
    detect_kind,
    ensure_sufficient_text,
)
from materialflow.processing.ocr import (
    ExtractionStrategyResult,
    OcrBackend,
    PageText,
    TextractExtractor,
    UnstructuredExtractor,
    get_ocr_backend,
)
from fakes import StaticOcrBackend
from samples import BIOLOGY_PAGES, build_docx, build_pdf, build_png, build_pptx


class SlowOcr(OcrBackend):
    strategy_name = "slow"

    def _extract_sync(self, pdf_bytes: bytes) -> ExtractionStrategyResult:
        time.sleep(0.5)
        return ExtractionStrategyResult(pages=[], strategy_name="slow")


class BrokenOcr(OcrBackend):
    strategy_name = "broken"

    def _extract_sync(self, pdf_bytes: bytes) -> ExtractionStrategyResult:
        raise RuntimeError("tesseract not installed")


class WorkingOcr(OcrBackend):
    strategy_name = "working"

    def _extract_sync(self, pdf_bytes: bytes) -> ExtractionStrategyResult:
        return ExtractionStrategyResult(
            pages=[PageText(page_number=1, text="recognized", confidence=0.8)],
            strategy_name="working",
        )


@pytest.mark.unit
class TestDetectKind:

    @pytest.mark.parametrize("file_type,name,data,expected", [
        (PDF_MIME, "", b"", "pdf"),
        ("", "notes.PDF", b"", "pdf"),
        ("application/octet-stream", "", b"%PDF-1.7 ...", "pdf"),
        (DOCX_MIME, "", b"", "docx"),
        ("", "essay.docx", b"", "docx"),
        ("application/msword", "", b"", "doc"),
        (PPTX_MIME, "", b"", "pptx"),
        ("", "week3.PPTX", b"", "pptx"),
        ("application/vnd.ms-powerpoint", "", b"", "ppt"),
        ("image/jpeg", "", b"", "image"),
        ("", "scan.tiff", b"", "image"),
        ("text/plain", "notes.txt", b"hello", "text"),
    ])
    def test_detect_kind(self, file_type, name, data, expected):
        assert detect_kind(file_type, name, data) == expected


@pytest.mark.unit
class TestPdfExtraction:

    async def test_text_layer_pages_are_returned_in_order(self):
        result = await TextExtractor().extract(build_pdf(BIOLOGY_PAGES), PDF_MIME)

        assert result.strategy_used == "pymupdf"
        assert result.page_count == 3
        assert [p.page_number for p in result.pages] == [1, 2, 3]
        assert "photosynthesis" in result.pages[0].text
        assert "mitochondria" in result.pages[1].text
        assert not result.requires_ocr
        assert not result.used_ocr
        assert result.paged

    async def test_blank_pdf_requires_ocr(self):
        result = await TextExtractor().extract(build_pdf(["", ""]), PDF_MIME)
        assert result.requires_ocr
        assert result.total_chars == 0

    async def test_sparse_text_layer_requires_ocr(self):
        result = await TextExtractor().extract(build_pdf(["Fig. 1", "", "p. 3"]), PDF_MIME)
        assert result.requires_ocr

    async def test_corrupt_pdf_raises(self):
        with pytest.raises(ExtractionError):
            await TextExtractor().extract(b"this is not really a pdf", PDF_MIME)

    async def test_empty_file_raises(self):
        with pytest.raises(ExtractionError, match="empty"):
            await TextExtractor().extract(b"", PDF_MIME)


@pytest.mark.unit
class TestOcrBranch:

    async def test_extract_ocr_uses_injected_backend(self):
        ocr = StaticOcrBackend(["Scanned page one text", "Scanned page two text"])
        result = await TextExtractor(ocr_backend=ocr).extract_ocr(build_pdf(["", ""]))

        assert ocr.calls == 1
        assert result.used_ocr
        assert result.strategy_used == "static-ocr"
        assert result.page_texts == ["Scanned page one text", "Scanned page two text"]
        assert result.avg_confidence == 0.9

    async def test_ocr_with_no_pages_raises(self):
        with pytest.raises(ExtractionError, match="no pages"):
            await TextExtractor(ocr_backend=StaticOcrBackend([])).extract_ocr(b"%PDF-")

    async def test_backend_timeout_becomes_extraction_error(self):
        with pytest.raises(ExtractionError, match="timed out"):
            await SlowOcr(timeout_seconds=0.05).extract(b"%PDF-")

    async def test_backend_failure_becomes_extraction_error(self):
        with pytest.raises(ExtractionError, match="OCR engine failure"):
            await BrokenOcr().extract(b"%PDF-")

    async def test_backend_result_is_marked_as_ocr(self):
        result = await WorkingOcr().extract(b"%PDF-")
        assert result.used_ocr
        assert result.elapsed_ms >= 0

    def test_get_ocr_backend(self):
        assert isinstance(get_ocr_backend("textract"), TextractExtractor)
        assert isinstance(get_ocr_backend("unstructured"), UnstructuredExtractor)
        with pytest.raises(ValueError):
            get_ocr_backend("abbyy")


@pytest.mark.unit
class TestDocxExtraction:

    async def test_explicit_page_breaks_define_pages(self):
        data = build_docx(
            ["Chapter one opening.", "More of chapter one.", "Chapter two begins."],
            page_break_after={1},
        )
        result = await TextExtractor().extract(data, DOCX_MIME, "notes.docx")

        assert result.strategy_used == "docx"
        assert result.page_texts == [
            "Chapter one opening.\n\nMore of chapter one.",
            "Chapter two begins.",
        ]

    async def test_without_breaks_pages_are_estimated(self):
        paragraphs = [("sentence " * 100).strip() for _ in range(10)]   # ~900 chars each
        result = await TextExtractor().extract(build_docx(paragraphs), DOCX_MIME)
        assert result.page_count == 4
        assert result.paged

    async def test_tables_stay_where_they_sit(self):
        data = build_docx(
            ["Respiration overview.", "End of page one.", "Page two opens here."],
            page_break_after={1},
            tables_after={0: [["Stage", "Organelle"], ["Krebs cycle", "Mitochondria"]]},
        )
        result = await TextExtractor().extract(data, DOCX_MIME)

        assert result.page_texts == [
            "Respiration overview.\n\nStage | Organelle\n\nKrebs cycle | Mitochondria\n\nEnd of page one.",
            "Page two opens here.",
        ]

    async def test_unreadable_docx_raises(self):
        with pytest.raises(ExtractionError, match="DOCX"):
            await TextExtractor().extract(b"PK\x03\x04 broken zip", DOCX_MIME)

    async def test_legacy_doc_is_rejected(self):
        with pytest.raises(ExtractionError, match=".doc"):
            await TextExtractor().extract(b"\xd0\xcf\x11\xe0", "application/msword")


@pytest.mark.unit
class TestPptxExtraction:

    async def test_one_page_per_slide(self):
        data = build_pptx(
            [
                ("Cell Energy", "Photosynthesis happens in chloroplasts"),
                ("Powerhouse", "Mitochondria make ATP"),
            ],
            notes={1: "Mention the inner membrane"},
            table_on={0: [["Input", "Output"], ["Light", "Sugar"]]},
        )
        result = await TextExtractor().extract(data, PPTX_MIME, "week3.pptx")

        assert result.strategy_used == "pptx"
        assert result.paged
        assert [p.page_number for p in result.pages] == [1, 2]
        assert result.page_texts[0] == (
            "Cell Energy\nPhotosynthesis happens in chloroplasts\nInput | Output\nLight | Sugar"
        )
        assert result.page_texts[1] == "Powerhouse\nMitochondria make ATP\nMention the inner membrane"
        assert not result.requires_ocr

    async def test_unreadable_pptx_raises(self):
        with pytest.raises(ExtractionError, match="PPTX"):
            await TextExtractor().extract(b"PK\x03\x04 broken zip", PPTX_MIME)

    async def test_legacy_ppt_is_rejected(self):
        with pytest.raises(ExtractionError, match=".ppt"):
            await TextExtractor().extract(b"\xd0\xcf\x11\xe0", "application/vnd.ms-powerpoint")


@pytest.mark.unit
class TestImageExtraction:

    async def test_image_is_routed_to_ocr_as_pdf(self):
        result = await TextExtractor().extract(build_png(), "image/png", "board.png")

        assert result.requires_ocr
        assert result.strategy_used == "image"
        assert result.pages == []
        assert result.ocr_input.startswith(b"%PDF")

    async def test_ocr_reads_the_wrapped_image(self):
        ocr = StaticOcrBackend(["Whiteboard: ATP synthase diagram"])
        extractor = TextExtractor(ocr_backend=ocr)
        prepared = await extractor.extract(build_png(), "image/png", "board.png")

        result = await extractor.extract_ocr(prepared.ocr_input)

        assert ocr.inputs == [prepared.ocr_input]
        assert result.used_ocr
        assert result.page_texts == ["Whiteboard: ATP synthase diagram"]

    async def test_undecodable_image_raises(self):
        with pytest.raises(ExtractionError, match="Image"):
            await TextExtractor().extract(b"\x89PNG\r\n\x1a\n\x00\x00", "image/png", "board.png")


@pytest.mark.unit
class TestTextExtraction:

    async def test_plain_text_is_unpaged(self):
        result = await TextExtractor().extract("\ufeffLecture notes on cells".encode(), "text/plain")
        assert result.page_texts == ["Lecture notes on cells"]
        assert not result.paged
        assert result.strategy_used == "text"

    async def test_latin1_fallback(self):
        result = await TextExtractor().extract(b"caf\xe9 notes", "text/plain")
        assert result.page_texts == ["caf\u00e9 notes"]

    async def test_binary_content_is_rejected(self):
        with pytest.raises(ExtractionError, match="binary"):
            await TextExtractor().extract(b"\x7fELF\x02\x01\x00\x00", "application/octet-stream")


@pytest.mark.unit
class TestEnsureSufficientText:

    def _result(self, *texts: str) -> ExtractionResult:
        return ExtractionResult(
            pages=[PageText(page_number=i, text=t) for i, t in enumerate(texts, start=1)],
            strategy_used="text",
        )

    def test_whitespace_does_not_count(self):
        with pytest.raises(ExtractionError, match="too short"):
            ensure_sufficient_text(self._result("a " * 40), min_chars=50)

    def test_enough_text_passes(self):
        ensure_sufficient_text(self._result("x" * 30, "y" * 30), min_chars=50)

    def test_default_threshold_from_settings(self):
        with pytest.raises(ExtractionError):
            ensure_sufficient_text(self._result("tiny"))
