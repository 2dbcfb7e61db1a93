"""
Operator Controls

Administrative actions behind /api/v1/admin. Everything here goes through
the repository (state resets) and the JobQueue (enqueue / inspection);
nothing re-implements orchestrator or monitor logic.

Bulk operations collect per-item results and never stop at the first
failure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from materialflow.core.exceptions import MaterialNotFoundError
from materialflow.pipeline.repository import MaterialRepository
from materialflow.pipeline.staleness import (
    RequeueItem,
    RequeueReport,
    StalenessMonitor,
    StuckCounts,
    envelope_for,
)
from materialflow.pipeline.state import ProcessingStatus, TERMINAL_STATES
from materialflow.queue.base import JobQueue, JobRecord, JobState, QueueCounts

logger = logging.getLogger(__name__)

SEGMENT_PREVIEW_CHARS = 200


@dataclass
class ForceReprocessResult:
    material_id:     str
    previous_status: str
    job_id:          str
    material_version: int


class OperatorControls:

    def __init__(
        self,
        repository: MaterialRepository,
        queue:      JobQueue,
        monitor:    StalenessMonitor | None = None,
    ) -> None:
        self._repo = repository
        self._queue = queue
        self._monitor = monitor or StalenessMonitor(repository, queue)

    # ------------------------------------------------------------------
    # Material requeues
    # ------------------------------------------------------------------

    async def requeue_pending(self) -> RequeueReport:
        return await self._requeue_by_status([ProcessingStatus.PENDING])

    async def requeue_failed(self) -> RequeueReport:
        return await self._requeue_by_status([ProcessingStatus.FAILED])

    async def requeue_stale(self, minutes: int | None = None) -> RequeueReport:
        return await self._monitor.recover(minutes)

    async def stuck_counts(self, minutes: int | None = None) -> StuckCounts:
        return await self._monitor.counts(minutes)

    async def force_reprocess(self, material_id: str) -> ForceReprocessResult:
        """
        Reset to PENDING from any state and enqueue. Calling it again while
        the first job is still waiting returns that same job.
        """
        material = await self._repo.get(material_id)
        if material is None:
            raise MaterialNotFoundError(material_id)

        reset = await self._repo.reset_to_pending(material_id)
        if reset is None:
            raise MaterialNotFoundError(material_id)

        job = await self._queue.enqueue(envelope_for(reset))
        logger.info(
            "Force reprocess | material=%s was=%s job=%s version=%d",
            material_id, material.processing_status.value, job.id, reset.material_version,
        )
        return ForceReprocessResult(
            material_id=material_id,
            previous_status=material.processing_status.value,
            job_id=job.id,
            material_version=reset.material_version,
        )

    async def _requeue_by_status(self, statuses: Iterable[ProcessingStatus]) -> RequeueReport:
        statuses = list(statuses)
        materials = await self._repo.list_materials(statuses)
        report = RequeueReport()

        for material in materials:
            item = RequeueItem(
                material_id=material.id,
                title=material.title,
                previous_status=material.processing_status.value,
            )
            try:
                reset = await self._repo.reset_to_pending(material.id, only_if=statuses)
                if reset is None:
                    continue
                job = await self._queue.enqueue(envelope_for(reset))
                item.job_id = job.id
                report.requeued.append(item)
            except Exception as exc:
                item.error = str(exc)
                report.failed.append(item)
                logger.error("Requeue failed | material=%s error=%s", material.id, exc)

        logger.info(
            "Requeue done | statuses=%s requeued=%d failed=%d",
            [s.value for s in statuses], len(report.requeued), len(report.failed),
        )
        return report

    # ------------------------------------------------------------------
    # Queue inspection / hygiene
    # ------------------------------------------------------------------

    async def queue_counts(self) -> QueueCounts:
        return await self._queue.counts()

    async def failed_jobs(self, limit: int = 100) -> list[JobRecord]:
        return await self._queue.failed_jobs(limit)

    async def job_detail(self, job_id: str) -> JobRecord:
        return await self._queue.get_job(job_id)

    async def retry_failed_jobs(self) -> list[JobRecord]:
        return await self._queue.retry_failed()

    async def clear_failed_jobs(self) -> int:
        return await self._queue.clean(JobState.FAILED)

    async def clear_completed_jobs(self) -> int:
        return await self._queue.clean(JobState.COMPLETED)

    # ------------------------------------------------------------------
    # Material inspection
    # ------------------------------------------------------------------

    async def segments_view(self, material_id: str) -> dict[str, Any]:
        material = await self._repo.get(material_id)
        if material is None:
            raise MaterialNotFoundError(material_id)

        segments = await self._repo.list_segments(material_id)
        return {
            "materialId": material_id,
            "processingStatus": material.processing_status.value,
            "materialVersion": material.material_version,
            "segmentCount": len(segments),
            "totalTokens": sum(s.token_count for s in segments),
            "segments": [
                {
                    "segmentIndex": s.segment_index,
                    "pageStart": s.page_start,
                    "pageEnd": s.page_end,
                    "tokenCount": s.token_count,
                    "source": s.source,
                    "heading": s.heading,
                    "preview": s.text[:SEGMENT_PREVIEW_CHARS],
                }
                for s in segments
            ],
        }

    async def clear_cache(self, material_id: str) -> None:
        if not await self._repo.clear_cache(material_id):
            raise MaterialNotFoundError(material_id)
        logger.info("Derived artifacts cleared | material=%s", material_id)

    async def processing_status(self, material_id: str) -> dict[str, Any]:
        material = await self._repo.get(material_id)
        if material is None:
            raise MaterialNotFoundError(material_id)
        status = material.processing_status
        return {
            "materialId": material.id,
            "status": material.status,
            "processingStatus": status.value,
            "isReady": status is ProcessingStatus.COMPLETED and material.is_indexed,
            "canRetry": status in TERMINAL_STATES,
            "errorMessage": material.error_message if status is ProcessingStatus.FAILED else None,
            "materialVersion": material.material_version,
            "pageCount": material.page_count,
            "isOcrProcessed": material.is_ocr_processed,
            "updatedAt": material.updated_at.isoformat(),
        }
