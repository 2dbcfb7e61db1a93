"""
Pipeline Orchestrator
═════════════════════

Drives one material through the stage sequence for one job:

  claim ─► EXTRACTING ─► fetch + native extract
                 │  requires_ocr
                 ├───────────────► OCR_EXTRACTING ─► OCR backend
                 ▼                      │
              CLEANING ◄────────────────┘   (page_count / OCR flags persisted)
                 ▼
             SEGMENTING                     (content persisted with the transition)
                 │  replace segments, then chunk + embed + upsert
                 ▼
             COMPLETED                      (written with indexed_version)

Error policy:
  StaleJobError           → the material moved on; abort quietly, write nothing
  TransientProviderError  → state untouched; re-raised for the queue's backoff
  anything else           → FAILED + error_message; re-raised so the job fails

Jobs that find the material COMPLETED, owned by another job, or at a newer
material_version are skipped and acknowledged.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any

from materialflow.core.exceptions import (
    SegmentationError,
    StageError,
    StaleJobError,
    TransientProviderError,
)
from materialflow.pipeline.indexer import ChunkIndexer
from materialflow.pipeline.repository import MaterialRepository, MaterialSnapshot, RunContext
from materialflow.pipeline.state import ACTIVE_STATES, ProcessingStatus
from materialflow.processing.cleaning import clean_pages
from materialflow.processing.extractor import TextExtractor, ensure_sufficient_text
from materialflow.processing.segmentation import Segmenter
from materialflow.queue.envelope import JobEnvelope
from materialflow.storage.files import FileFetcher

logger = logging.getLogger(__name__)


@dataclass
class RunOutcome:
    material_id: str
    job_id:      str
    status:      str                 # "completed" | "skipped"
    reason:      str | None = None
    material_version: int | None = None
    page_count:  int = 0
    segments:    int = 0
    chunks:      int = 0
    used_ocr:    bool = False
    warnings:    list[str] = field(default_factory=list)
    elapsed_ms:  float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class PipelineOrchestrator:

    def __init__(
        self,
        repository: MaterialRepository,
        indexer:    ChunkIndexer,
        fetcher:    FileFetcher | None = None,
        extractor:  TextExtractor | None = None,
        segmenter:  Segmenter | None = None,
    ) -> None:
        self._repo = repository
        self._indexer = indexer
        self._fetcher = fetcher or FileFetcher()
        self._extractor = extractor or TextExtractor()
        self._segmenter = segmenter or Segmenter()

    async def run(self, envelope: JobEnvelope, job_id: str) -> RunOutcome:
        t0 = time.monotonic()
        material = await self._repo.get(envelope.material_id)
        if material is None:
            logger.warning("Material not found, skipping | material=%s job=%s", envelope.material_id, job_id)
            return RunOutcome(envelope.material_id, job_id, "skipped", reason="material not found")

        version = envelope.material_version or material.material_version
        ctx = RunContext(material_id=material.id, job_id=job_id, material_version=version)

        skip_reason = await self._acquire(ctx, material)
        if skip_reason:
            logger.info(
                "Job skipped | material=%s job=%s reason=%s", material.id, job_id, skip_reason,
            )
            return RunOutcome(material.id, job_id, "skipped", reason=skip_reason, material_version=version)

        logger.info("Pipeline start | material=%s job=%s version=%d", material.id, job_id, version)
        outcome = RunOutcome(material.id, job_id, "completed", material_version=version)
        stage = ProcessingStatus.EXTRACTING

        try:
            # --- Extraction -------------------------------------------------
            data = await self._fetcher.fetch(envelope.file_url)
            extraction = await self._extractor.extract(data, material.file_type, material.file_name)

            if extraction.requires_ocr:
                await self._repo.advance(ctx, stage, ProcessingStatus.OCR_EXTRACTING)
                stage = ProcessingStatus.OCR_EXTRACTING
                extraction = await self._extractor.extract_ocr(extraction.ocr_input or data)

            ensure_sufficient_text(extraction)
            outcome.page_count = extraction.page_count
            outcome.used_ocr = extraction.used_ocr

            await self._repo.advance(
                ctx, stage, ProcessingStatus.CLEANING,
                page_count=extraction.page_count,
                is_ocr_processed=extraction.used_ocr,
                ocr_confidence=extraction.avg_confidence if extraction.used_ocr else None,
            )
            stage = ProcessingStatus.CLEANING

            # --- Cleaning + segmentation -----------------------------------
            cleaned = clean_pages(extraction.page_texts, ocr=extraction.used_ocr)
            outcome.warnings.extend(cleaned.warnings)

            try:
                segmented = self._segmenter.segment(
                    cleaned.value, paged=extraction.paged, ocr=extraction.used_ocr,
                )
            except Exception as exc:
                raise SegmentationError(f"Segmentation failed: {exc}", material_id=material.id) from exc
            outcome.warnings.extend(segmented.warnings)

            if not segmented.value.segments:
                raise SegmentationError("Cleaned content is empty", material_id=material.id)

            await self._repo.advance(
                ctx, stage, ProcessingStatus.SEGMENTING, content=segmented.value.content,
            )
            stage = ProcessingStatus.SEGMENTING

            await self._repo.replace_segments(ctx, segmented.value.segments)
            outcome.segments = len(segmented.value.segments)

            # --- Indexing ----------------------------------------------------
            report = await self._indexer.index(ctx, cleaned.value, paged=extraction.paged)
            outcome.chunks = report.total_chunks

            await self._repo.complete(ctx, expected_chunks=report.total_chunks)

        except StaleJobError as exc:
            logger.warning(
                "Run superseded, aborting | material=%s job=%s stage=%s detail=%s",
                material.id, job_id, stage.value, exc,
            )
            outcome.status = "skipped"
            outcome.reason = "superseded"
            outcome.elapsed_ms = (time.monotonic() - t0) * 1000
            return outcome

        except TransientProviderError as exc:
            logger.warning(
                "Transient failure, leaving state for retry | material=%s job=%s stage=%s error=%s",
                material.id, job_id, stage.value, exc,
            )
            raise

        except Exception as exc:
            failed_stage = exc.stage if isinstance(exc, StageError) and exc.stage else stage.value
            logger.error(
                "Stage failed | material=%s job=%s stage=%s error=%s",
                material.id, job_id, failed_stage, exc,
                exc_info=not isinstance(exc, StageError),
            )
            detail = exc.message if isinstance(exc, StageError) else str(exc)
            await self._mark_failed(ctx, f"{failed_stage}: {detail}")
            raise

        outcome.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Pipeline completed | material=%s job=%s pages=%d segments=%d chunks=%d ocr=%s elapsed_ms=%.0f",
            material.id, job_id, outcome.page_count, outcome.segments, outcome.chunks,
            outcome.used_ocr, outcome.elapsed_ms,
        )
        return outcome

    # ------------------------------------------------------------------

    async def _acquire(self, ctx: RunContext, material: MaterialSnapshot) -> str | None:
        """Claim the material for ctx.job_id. Returns a skip reason, or None when claimed."""
        if ctx.material_version != material.material_version:
            return f"version {ctx.material_version} superseded by {material.material_version}"

        status = material.processing_status
        if status is ProcessingStatus.COMPLETED:
            return "already completed"

        if status is ProcessingStatus.PENDING:
            if material.processing_job_id not in (None, ctx.job_id):
                return f"owned by job {material.processing_job_id}"
            if await self._repo.claim(ctx):
                return None
            return "claim lost"

        if material.processing_job_id != ctx.job_id:
            return f"{status.value} under job {material.processing_job_id}"

        # Retry or redelivery of the owning job: restart from the top.
        if status in ACTIVE_STATES or status is ProcessingStatus.FAILED:
            logger.info(
                "Restarting owned run | material=%s job=%s from=%s",
                ctx.material_id, ctx.job_id, status.value,
            )
            if await self._repo.release_for_restart(ctx) and await self._repo.claim(ctx):
                return None
            return "restart lost"

        return f"unexpected state {status.value}"

    async def _mark_failed(self, ctx: RunContext, message: str) -> None:
        try:
            landed = await self._repo.fail(ctx, message)
        except Exception:
            logger.exception("Could not record failure | material=%s job=%s", ctx.material_id, ctx.job_id)
            return
        if not landed:
            logger.warning(
                "Failure not recorded, run no longer owns material | material=%s job=%s",
                ctx.material_id, ctx.job_id,
            )
