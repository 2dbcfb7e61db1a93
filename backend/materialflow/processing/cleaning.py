"""
Cleaning Stage
══════════════

Pure text normalization over per-page text. No I/O.

Per page:
  - CRLF/CR → LF, tabs and runs of spaces collapsed
  - control and zero-width characters removed
  - smart quotes, dashes, ellipsis and common ligatures normalized
  - line-wrapped hyphenated words rejoined ("extrac-\\ntion" → "extraction")
  - standalone page-number and watermark lines dropped
  - 3+ blank lines collapsed to one blank line

Across pages:
  - a first or last line repeated on REPEAT_MIN_PAGES+ pages is treated as a
    running header/footer and removed. Lines compare exactly, except that
    page-number furniture ("page 12", "12 of 40", "- 12 -") has its digits
    masked, so "Chapter 3 · page 12" and "Chapter 3 · page 13" match while
    "Chapter 1" and "Chapter 2" do not. A page is never emptied this way.

OCR output gets an extra pass that drops symbol-noise lines.

A page whose cleaning raises keeps its raw text and the whole result is
tagged DEGRADED. Cleaning never fails the pipeline.
"""

from __future__ import annotations

import logging
import re
from collections import Counter

from materialflow.processing.results import StageResult

logger = logging.getLogger(__name__)

REPEAT_MIN_PAGES = 3

_CONTROL_CHARS = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\x7f\u200b-\u200d\u2060\ufeff]")
_SPACES        = re.compile("[ \u00a0]{2,}")
_TRAILING_WS   = re.compile(r"[ \t]+\n")
_BLANK_RUNS    = re.compile(r"\n{3,}")
_HYPHEN_WRAP   = re.compile(r"(\w)-\n([a-z])")
_DIGITS        = re.compile(r"\d+")
_PAGE_FURNITURE = re.compile(r"\bpage\s+\d+(?:\s+of\s+\d+)?|\b\d+\s*(?:of|/)\s*\d+\b|-\s*\d+\s*-")

_PAGE_NUMBER_LINE = re.compile(
    r"^\s*(?:page\s+\d+(?:\s+of\s+\d+)?|\d+\s+of\s+\d+|\d{1,4}|-\s*\d+\s*-)\s*$",
    re.IGNORECASE | re.MULTILINE,
)
_WATERMARK_LINE = re.compile(
    r"^\s*(?:confidential|draft|sample|preview|watermark)\s*$|^.*all rights reserved.*$",
    re.IGNORECASE | re.MULTILINE,
)

_UNICODE_MAP = str.maketrans({
    "\u2018": "'", "\u2019": "'",
    "\u201c": '"', "\u201d": '"',
    "\u2013": "-", "\u2014": "-",
    "\u2026": "...",
    "\ufb01": "fi", "\ufb02": "fl", "\ufb00": "ff",
    "\u00a0": " ",
    "\t": " ",
})


def clean_page(text: str, *, ocr: bool = False) -> str:
    """Normalize a single page of extracted text."""
    if not text:
        return ""

    cleaned = text.replace("\r\n", "\n").replace("\r", "\n")
    cleaned = cleaned.translate(_UNICODE_MAP)
    cleaned = _CONTROL_CHARS.sub("", cleaned)
    cleaned = _SPACES.sub(" ", cleaned)
    cleaned = _TRAILING_WS.sub("\n", cleaned)
    cleaned = _HYPHEN_WRAP.sub(r"\1\2", cleaned)
    cleaned = _PAGE_NUMBER_LINE.sub("", cleaned)
    cleaned = _WATERMARK_LINE.sub("", cleaned)

    if ocr:
        cleaned = "\n".join(line for line in cleaned.split("\n") if not _is_ocr_noise(line))

    cleaned = _BLANK_RUNS.sub("\n\n", cleaned)
    return cleaned.strip()


def _is_ocr_noise(line: str) -> bool:
    stripped = line.strip()
    if len(stripped) <= 3:
        return False
    alnum = sum(ch.isalnum() for ch in stripped)
    return alnum / len(stripped) < 0.3


def _signature(line: str) -> str:
    """Comparison key: the exact line, with digits masked only inside page-number furniture."""
    key = line.strip().lower()
    return _PAGE_FURNITURE.sub(lambda m: _DIGITS.sub("#", m.group()), key)


def _edge_lines(page: str) -> tuple[str | None, str | None]:
    lines = [ln for ln in page.split("\n") if ln.strip()]
    if not lines:
        return None, None
    return lines[0], lines[-1]


def remove_running_lines(pages: list[str], min_pages: int = REPEAT_MIN_PAGES) -> list[str]:
    """
    Drop first/last lines that repeat across many pages (headers/footers).
    A page is never emptied: if every non-empty line matches, it is kept whole.
    """
    if len(pages) < min_pages:
        return pages

    first_counts: Counter[str] = Counter()
    last_counts: Counter[str] = Counter()
    for page in pages:
        first, last = _edge_lines(page)
        if first is not None:
            first_counts[_signature(first)] += 1
        if last is not None:
            last_counts[_signature(last)] += 1

    headers = {sig for sig, n in first_counts.items() if n >= min_pages and len(sig) > 3}
    footers = {sig for sig, n in last_counts.items() if n >= min_pages and len(sig) > 3}
    if not headers and not footers:
        return pages

    result: list[str] = []
    for page in pages:
        lines = page.split("\n")
        non_empty = [i for i, ln in enumerate(lines) if ln.strip()]
        drop: set[int] = set()
        if non_empty and _signature(lines[non_empty[0]]) in headers:
            drop.add(non_empty[0])
        if non_empty and _signature(lines[non_empty[-1]]) in footers:
            drop.add(non_empty[-1])
        if len(drop) >= len(non_empty):
            result.append(page)
            continue
        result.append("\n".join(ln for i, ln in enumerate(lines) if i not in drop).strip())
    return result


def clean_pages(pages: list[str], *, ocr: bool = False) -> StageResult[list[str]]:
    """
    Clean every page. Returns DEGRADED (never raises) when any page had to
    fall back to its raw text.
    """
    warnings: list[str] = []
    cleaned: list[str] = []

    for number, page in enumerate(pages, start=1):
        try:
            cleaned.append(clean_page(page, ocr=ocr))
        except Exception as exc:
            logger.warning("Cleaning fell back to raw text | page=%d error=%s", number, exc)
            warnings.append(f"page {number}: {exc}")
            cleaned.append(page)

    try:
        cleaned = remove_running_lines(cleaned)
    except Exception as exc:
        logger.warning("Header/footer removal skipped | error=%s", exc)
        warnings.append(f"running lines: {exc}")

    if warnings:
        return StageResult.degrade(cleaned, *warnings)
    return StageResult.ok(cleaned)
