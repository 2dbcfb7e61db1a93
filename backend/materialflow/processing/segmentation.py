"""
Segmentation Stage
══════════════════

Splits cleaned page texts into page-bounded segments sized for
summarization / quiz context windows.

The cleaned content is the page texts joined with a blank line. Every
segment is an exact [char_start, char_end) slice of that content and the
slices tile it end to end, so joining the segment texts reproduces the
content byte for byte. The page separator belongs to the page before it.

Within a page, paragraphs are accumulated greedily up to the target token
count; a segment never crosses a page boundary. Paragraphs larger than the
max are cut into windows at the nearest whitespace. OCR output uses smaller
targets because recognition noise inflates token counts.

When the source has no page structure (plain text) or the paged pass
fails, the content is cut into fixed-size windows instead and the result is
tagged DEGRADED.

Token counts everywhere use estimate_tokens(): ceil(chars / 4).
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Iterable, Protocol, Sequence

from materialflow.core.config import settings
from materialflow.processing.results import StageResult

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
PAGE_SEPARATOR = "\n\n"

_PARAGRAPH_BREAK = re.compile(r"\n{2,}")
_NUMBERED_HEADING = re.compile(r"^(?:\d+(?:\.\d+)*\.?|chapter|section|unit|lesson|part)\b", re.IGNORECASE)
_WORD = re.compile(r"[a-z0-9]{3,}")


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


@dataclass
class Segment:
    segment_index: int
    text:          str
    char_start:    int
    char_end:      int
    token_count:   int
    page_start:    int | None = None
    page_end:      int | None = None
    source:        str = "native"
    heading:       str | None = None


@dataclass
class SegmentedText:
    content:  str
    segments: list[Segment]

    @property
    def total_tokens(self) -> int:
        return sum(s.token_count for s in self.segments)


def join_pages(pages: Sequence[tuple[int, str]]) -> tuple[str, list[tuple[int, int, int]]]:
    """
    Concatenate non-empty pages. Returns the content and the
    (page_number, start, end) span each page owns within it.
    """
    kept = [(num, text) for num, text in pages if text.strip()]
    parts: list[str] = []
    spans: list[tuple[int, int, int]] = []
    pos = 0
    for i, (num, text) in enumerate(kept):
        piece = text + (PAGE_SEPARATOR if i < len(kept) - 1 else "")
        spans.append((num, pos, pos + len(piece)))
        parts.append(piece)
        pos += len(piece)
    return "".join(parts), spans


def detect_heading(text: str) -> str | None:
    lines = [ln.strip() for ln in text.strip().split("\n") if ln.strip()]
    if len(lines) < 2:
        return None
    first = lines[0]
    if len(first) > 80 or first[-1] in ".!?,;:" or not any(ch.isalpha() for ch in first):
        return None
    if first.isupper() or first.istitle() or _NUMBERED_HEADING.match(first):
        return first
    return None


class Segmenter:

    def __init__(
        self,
        target_tokens: int | None = None,
        max_tokens:    int | None = None,
        ocr_target_tokens: int | None = None,
        ocr_max_tokens:    int | None = None,
    ) -> None:
        self._native = (
            target_tokens or settings.segment_target_tokens,
            max_tokens or settings.segment_max_tokens,
        )
        self._ocr = (
            ocr_target_tokens or settings.ocr_segment_target_tokens,
            ocr_max_tokens or settings.ocr_segment_max_tokens,
        )

    def segment(
        self,
        pages: Sequence[str],
        *,
        paged: bool = True,
        ocr: bool = False,
        first_page: int = 1,
    ) -> StageResult[SegmentedText]:
        target, maximum = self._ocr if ocr else self._native
        source = "ocr" if ocr else "native"
        numbered = [(first_page + i, text) for i, text in enumerate(pages)]
        content, spans = join_pages(numbered)

        if not content:
            return StageResult.ok(SegmentedText(content="", segments=[]))

        if paged:
            try:
                bounds = []
                for page_number, start, end in spans:
                    for s, e in self._split_span(content, start, end, target, maximum):
                        bounds.append((s, e, page_number))
                return StageResult.ok(self._materialize(content, bounds, source))
            except Exception as exc:
                logger.warning("Paged segmentation failed, using fixed windows | error=%s", exc)
                reason = f"paged segmentation failed: {exc}"
        else:
            reason = "no page boundaries; fixed-size windows used"

        bounds = [(s, e, None) for s, e in _windows(content, 0, len(content), maximum * CHARS_PER_TOKEN)]
        return StageResult.degrade(self._materialize(content, bounds, source), reason)

    # ------------------------------------------------------------------

    def _split_span(
        self, content: str, start: int, end: int, target: int, maximum: int,
    ) -> list[tuple[int, int]]:
        units = _paragraph_units(content, start, end)
        out: list[tuple[int, int]] = []
        cur_start: int | None = None
        cur_end = start

        def flush() -> None:
            nonlocal cur_start
            if cur_start is not None:
                out.append((cur_start, cur_end))
                cur_start = None

        for us, ue in units:
            unit_tokens = estimate_tokens(content[us:ue])
            if unit_tokens > maximum:
                flush()
                out.extend(_windows(content, us, ue, maximum * CHARS_PER_TOKEN))
                cur_end = ue
                continue

            if cur_start is not None and estimate_tokens(content[cur_start:ue]) > maximum:
                flush()
            if cur_start is None:
                cur_start = us
            cur_end = ue

            if estimate_tokens(content[cur_start:cur_end]) >= target:
                flush()
        flush()

        # fold a short tail into the previous segment of the same page
        if len(out) >= 2:
            ps, pe = out[-2]
            ts, te = out[-1]
            if estimate_tokens(content[ts:te]) < target // 2 and estimate_tokens(content[ps:te]) <= maximum:
                out[-2:] = [(ps, te)]
        return out

    @staticmethod
    def _materialize(
        content: str, bounds: Iterable[tuple[int, int, int | None]], source: str,
    ) -> SegmentedText:
        segments = []
        for index, (s, e, page) in enumerate(bounds):
            text = content[s:e]
            segments.append(Segment(
                segment_index=index,
                text=text,
                char_start=s,
                char_end=e,
                token_count=estimate_tokens(text),
                page_start=page,
                page_end=page,
                source=source,
                heading=detect_heading(text),
            ))
        return SegmentedText(content=content, segments=segments)


def _paragraph_units(content: str, start: int, end: int) -> list[tuple[int, int]]:
    """Split [start, end) after each blank-line run; units tile the span."""
    units: list[tuple[int, int]] = []
    pos = start
    for match in _PARAGRAPH_BREAK.finditer(content, start, end):
        if match.end() > pos:
            units.append((pos, match.end()))
            pos = match.end()
    if pos < end:
        units.append((pos, end))
    return units


def _windows(content: str, start: int, end: int, size: int) -> list[tuple[int, int]]:
    """Fixed-size windows over [start, end), cut at whitespace where possible."""
    out: list[tuple[int, int]] = []
    pos = start
    size = max(size, 1)
    while pos < end:
        stop = min(pos + size, end)
        if stop < end:
            cut = content.rfind(" ", pos + size // 2, stop)
            nl = content.rfind("\n", pos + size // 2, stop)
            cut = max(cut, nl)
            if cut > pos:
                stop = cut + 1
        out.append((pos, stop))
        pos = stop
    return out


# ---------------------------------------------------------------------------
# Context selection for prompts
# ---------------------------------------------------------------------------

class SegmentLike(Protocol):
    segment_index: int
    text:          str
    token_count:   int
    page_start:    int | None
    page_end:      int | None


def select_context(
    segments: Sequence[SegmentLike],
    token_budget: int,
    page_range: tuple[int, int] | None = None,
    topic: str | None = None,
) -> list[SegmentLike]:
    """
    Greedy selection for a bounded prompt window. Segments are taken in index
    order (or by topic keyword hits when a topic is given) and selection
    stops before the budget would be exceeded. Output is in index order.
    """
    candidates = list(segments)

    if page_range is not None:
        lo, hi = page_range
        candidates = [
            s for s in candidates
            if s.page_start is not None
            and s.page_start <= hi
            and (s.page_end if s.page_end is not None else s.page_start) >= lo
        ]

    ordered = sorted(candidates, key=lambda s: s.segment_index)
    if topic:
        words = set(_WORD.findall(topic.lower()))
        scored = [(sum(s.text.lower().count(w) for w in words), s) for s in ordered]
        if any(score for score, _ in scored):
            ordered = [s for score, s in sorted(scored, key=lambda p: (-p[0], p[1].segment_index)) if score]

    selected: list[SegmentLike] = []
    used = 0
    for seg in ordered:
        if used + seg.token_count > token_budget:
            break
        selected.append(seg)
        used += seg.token_count

    return sorted(selected, key=lambda s: s.segment_index)
