"""
Staleness Monitor & Recovery

A worker that dies mid-stage never reports failure, so the queue cannot
tell "slow" from "dead". The material row can: a material sitting in an
active state whose updated_at is older than the threshold is presumed
orphaned, reset to PENDING (ownership cleared, stage outputs dropped) and
given a fresh job.

The reset is conditional on the row still being active and still older than
the cutoff, so a material that moved on between scan and reset is left
alone.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from materialflow.core.config import settings
from materialflow.pipeline.repository import MaterialRepository, MaterialSnapshot
from materialflow.pipeline.state import ACTIVE_STATES, ProcessingStatus
from materialflow.queue.base import JobQueue
from materialflow.queue.envelope import JobEnvelope

logger = logging.getLogger(__name__)


@dataclass
class StuckCounts:
    pending:           int
    active_processing: int
    stale:             int

    @property
    def total(self) -> int:
        return self.pending + self.stale

    def to_dict(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "activeProcessing": self.active_processing,
            "stale": self.stale,
            "total": self.total,
        }


@dataclass
class RequeueItem:
    material_id: str
    title:       str | None = None
    previous_status: str | None = None
    job_id:      str | None = None
    error:       str | None = None


@dataclass
class RequeueReport:
    """Per-item result of a bulk requeue; one failure never aborts the batch."""
    requeued: list[RequeueItem] = field(default_factory=list)
    failed:   list[RequeueItem] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.requeued) + len(self.failed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "requeued": len(self.requeued),
            "failed": len(self.failed),
            "materials": [asdict(i) for i in self.requeued],
            "errors": [asdict(i) for i in self.failed],
        }


def envelope_for(material: MaterialSnapshot) -> JobEnvelope:
    return JobEnvelope(
        material_id=material.id,
        file_url=material.file_url,
        material_version=material.material_version,
    )


class StalenessMonitor:

    def __init__(
        self,
        repository: MaterialRepository,
        queue:      JobQueue,
        clock:      Callable[[], datetime] | None = None,
        default_minutes: int | None = None,
    ) -> None:
        self._repo = repository
        self._queue = queue
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._default_minutes = default_minutes or settings.stale_after_minutes

    def cutoff(self, minutes: int | None = None) -> datetime:
        return self._clock() - timedelta(minutes=minutes or self._default_minutes)

    async def find_stale(self, minutes: int | None = None, limit: int | None = None) -> list[MaterialSnapshot]:
        """Active materials whose updated_at is strictly older than the cutoff."""
        return await self._repo.list_materials(ACTIVE_STATES, updated_before=self.cutoff(minutes), limit=limit)

    async def recover(self, minutes: int | None = None, limit: int | None = None) -> RequeueReport:
        minutes = minutes or self._default_minutes
        cutoff = self.cutoff(minutes)
        stale = await self._repo.list_materials(ACTIVE_STATES, updated_before=cutoff, limit=limit)
        report = RequeueReport()

        for material in stale:
            item = RequeueItem(
                material_id=material.id,
                title=material.title,
                previous_status=material.processing_status.value,
            )
            try:
                reset = await self._repo.reset_to_pending(
                    material.id, only_if=ACTIVE_STATES, updated_before=cutoff,
                )
                if reset is None:
                    logger.info("Stale material moved on before reset | material=%s", material.id)
                    continue
                job = await self._queue.enqueue(envelope_for(reset))
                item.job_id = job.id
                report.requeued.append(item)
                logger.warning(
                    "Stale material requeued | material=%s was=%s updated_at=%s job=%s",
                    material.id, item.previous_status, material.updated_at.isoformat(), job.id,
                )
            except Exception as exc:
                item.error = str(exc)
                report.failed.append(item)
                logger.error("Stale recovery failed | material=%s error=%s", material.id, exc)

        logger.info(
            "Stale scan done | threshold_min=%d found=%d requeued=%d failed=%d",
            minutes, len(stale), len(report.requeued), len(report.failed),
        )
        return report

    async def counts(self, minutes: int | None = None) -> StuckCounts:
        cutoff = self.cutoff(minutes)
        pending = await self._repo.count_materials([ProcessingStatus.PENDING])
        active = await self._repo.count_materials(ACTIVE_STATES)
        stale = await self._repo.count_materials(ACTIVE_STATES, updated_before=cutoff)
        return StuckCounts(pending=pending, active_processing=active, stale=stale)
