"""
Celery-backed JobQueue

Celery moves messages; the processing_jobs ledger records what operators
need and the broker cannot answer cheaply: per-state counts, attempts, the
failure reason and stack, and the per-attempt history.

The ledger row id is also the Celery task id, so `task.retry()` and broker
redeliveries (acks_late) land on the same row.

enqueue() takes a transaction-scoped advisory lock per material before
checking for an existing waiting/delayed job, so two concurrent
force-reprocess calls still produce a single job.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from kombu.exceptions import OperationalError
from sqlalchemy import delete, func, select, update

from materialflow.core.config import settings
from materialflow.core.exceptions import JobNotFoundError, MalformedJobError, QueueUnavailableError
from materialflow.queue.base import JobQueue, JobRecord, JobState, QueueCounts, attempt_entry
from materialflow.queue.celery_app import PROCESS_TASK
from materialflow.queue.envelope import JOB_NAME, QUEUE_NAME, JobEnvelope

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _record(row: Any) -> JobRecord:
    return JobRecord(
        id=row.id,
        material_id=row.material_id,
        payload=row.payload or {},
        state=JobState(row.state),
        name=row.name,
        queue=row.queue,
        attempts_made=row.attempts_made,
        max_attempts=row.max_attempts,
        progress=row.progress,
        failed_reason=row.failed_reason,
        stacktrace=row.stacktrace,
        attempt_history=list(row.attempt_history or []),
        result=row.result,
        enqueued_at=row.enqueued_at,
        started_at=row.started_at,
        finished_at=row.finished_at,
    )


class CeleryJobQueue(JobQueue):

    def __init__(self, celery_app=None, session_factory: Callable | None = None) -> None:
        if celery_app is None:
            from materialflow.queue.celery_app import celery_app as default_app
            celery_app = default_app
        if session_factory is None:
            from materialflow.db.session import session_scope
            session_factory = session_scope
        self._celery = celery_app
        self._session = session_factory

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(self, envelope: JobEnvelope) -> JobRecord:
        from materialflow.models.materials import ProcessingJob

        async with self._session() as db:
            await db.execute(select(func.pg_advisory_xact_lock(func.hashtext(envelope.material_id))))
            pending = (await db.execute(
                select(ProcessingJob)
                .where(
                    ProcessingJob.material_id == envelope.material_id,
                    ProcessingJob.state.in_([JobState.WAITING.value, JobState.DELAYED.value]),
                )
                .order_by(ProcessingJob.enqueued_at)
            )).scalars().all()
            # a job for an older version would be skipped by the worker; only same-version jobs count
            existing = next(
                (j for j in pending if (j.payload or {}).get("materialVersion") == envelope.material_version),
                None,
            )
            if existing is not None:
                logger.info(
                    "Enqueue deduplicated | material=%s job=%s state=%s",
                    envelope.material_id, existing.id, existing.state,
                )
                return _record(existing)

            row = ProcessingJob(
                id=str(uuid.uuid4()),
                queue=QUEUE_NAME,
                name=JOB_NAME,
                material_id=envelope.material_id,
                payload=envelope.to_payload(),
                state=JobState.WAITING.value,
                attempts_made=0,
                max_attempts=settings.job_max_attempts,
                attempt_history=[],
                enqueued_at=_now(),
            )
            db.add(row)
            await db.flush()
            record = _record(row)

        # Dispatch after the ledger row is committed so the worker always finds it.
        await self._dispatch(record)
        logger.info("Job enqueued | job=%s material=%s", record.id, record.material_id)
        return record

    async def _dispatch(self, record: JobRecord, countdown: float | None = None) -> None:
        # send_task blocks on the broker connection
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None,
                lambda: self._celery.send_task(
                    PROCESS_TASK,
                    kwargs={"payload": record.payload},
                    task_id=record.id,
                    queue=QUEUE_NAME,
                    countdown=countdown,
                ),
            )
        except OperationalError as exc:
            logger.error("Broker unavailable | job=%s error=%s", record.id, exc)
            await self._finish(record.id, JobState.FAILED, failed_reason=f"broker unavailable: {exc}")
            raise QueueUnavailableError(f"Job broker unreachable: {exc}") from exc

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def dequeue(self, job_id: str, payload: Any) -> JobEnvelope:
        from materialflow.models.materials import ProcessingJob

        async with self._session() as db:
            row = await db.get(ProcessingJob, job_id, with_for_update=True)
            if row is None:
                # dispatched without a ledger row (e.g. sent by hand); adopt it
                row = ProcessingJob(
                    id=job_id,
                    queue=QUEUE_NAME,
                    name=JOB_NAME,
                    material_id=payload.get("materialId") if isinstance(payload, dict) else None,
                    payload=payload if isinstance(payload, dict) else {"raw": repr(payload)},
                    state=JobState.WAITING.value,
                    max_attempts=settings.job_max_attempts,
                    attempt_history=[],
                    enqueued_at=_now(),
                )
                db.add(row)

            row.attempts_made = (row.attempts_made or 0) + 1
            row.started_at = _now()

            try:
                envelope = JobEnvelope.parse(payload)
            except MalformedJobError as exc:
                row.state = JobState.FAILED.value
                row.failed_reason = f"{exc.message}: {exc.detail}" if exc.detail else exc.message
                row.finished_at = _now()
                row.attempt_history = [
                    *(row.attempt_history or []),
                    attempt_entry(row.attempts_made, row.failed_reason, row.finished_at),
                ]
                logger.error("Malformed job rejected | job=%s reason=%s", job_id, row.failed_reason)
                malformed = exc
            else:
                row.state = JobState.ACTIVE.value
                row.progress = "running"
                malformed = None

        if malformed is not None:
            raise malformed
        return envelope

    async def ack(self, job_id: str, result: dict[str, Any] | None = None) -> None:
        await self._finish(job_id, JobState.COMPLETED, result=result)

    async def fail(self, job_id, error, *, stacktrace=None, retry_in=None) -> None:
        from materialflow.models.materials import ProcessingJob

        reason = error if isinstance(error, str) else f"{type(error).__name__}: {error}"
        async with self._session() as db:
            row = await db.get(ProcessingJob, job_id, with_for_update=True)
            if row is None:
                logger.warning("Fail for unknown job | job=%s", job_id)
                return
            row.attempt_history = [
                *(row.attempt_history or []),
                attempt_entry(row.attempts_made, error, _now()),
            ]
            row.failed_reason = reason
            row.stacktrace = stacktrace
            if retry_in is not None:
                row.state = JobState.DELAYED.value
                row.progress = f"retry in {retry_in:.0f}s"
            else:
                row.state = JobState.FAILED.value
                row.finished_at = _now()

    async def _finish(self, job_id: str, state: JobState, **values: Any) -> None:
        from materialflow.models.materials import ProcessingJob

        async with self._session() as db:
            await db.execute(
                update(ProcessingJob)
                .where(ProcessingJob.id == job_id)
                .values(state=state.value, finished_at=_now(), progress=None, **values)
            )

    # ------------------------------------------------------------------
    # Inspection / hygiene
    # ------------------------------------------------------------------

    async def counts(self) -> QueueCounts:
        from materialflow.models.materials import ProcessingJob

        async with self._session() as db:
            rows = (await db.execute(
                select(ProcessingJob.state, func.count())
                .where(ProcessingJob.queue == QUEUE_NAME)
                .group_by(ProcessingJob.state)
            )).all()
        counts = QueueCounts()
        for state, n in rows:
            setattr(counts, state, int(n))
        return counts

    async def get_job(self, job_id: str) -> JobRecord:
        from materialflow.models.materials import ProcessingJob

        async with self._session() as db:
            row = await db.get(ProcessingJob, job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            return _record(row)

    async def failed_jobs(self, limit: int = 100) -> list[JobRecord]:
        from materialflow.models.materials import ProcessingJob

        async with self._session() as db:
            rows = (await db.execute(
                select(ProcessingJob)
                .where(ProcessingJob.queue == QUEUE_NAME, ProcessingJob.state == JobState.FAILED.value)
                .order_by(ProcessingJob.finished_at.desc())
                .limit(limit)
            )).scalars().all()
            return [_record(r) for r in rows]

    async def retry_failed(self) -> list[JobRecord]:
        from materialflow.models.materials import ProcessingJob

        async with self._session() as db:
            rows = (await db.execute(
                select(ProcessingJob)
                .where(ProcessingJob.queue == QUEUE_NAME, ProcessingJob.state == JobState.FAILED.value)
                .with_for_update(skip_locked=True)
            )).scalars().all()
            for row in rows:
                row.state = JobState.WAITING.value
                row.attempts_made = 0
                row.finished_at = None
                row.progress = None
            records = [_record(r) for r in rows]

        retried: list[JobRecord] = []
        for record in records:
            try:
                await self._dispatch(record)
            except QueueUnavailableError:
                continue
            retried.append(record)
        logger.info("Failed jobs retried | count=%d of=%d", len(retried), len(records))
        return retried

    async def clean(self, state: JobState) -> int:
        from materialflow.models.materials import ProcessingJob

        state = JobState(state)
        if state not in (JobState.COMPLETED, JobState.FAILED):
            raise ValueError(f"Only completed or failed jobs can be cleaned, not {state.value}")
        async with self._session() as db:
            result = await db.execute(
                delete(ProcessingJob).where(
                    ProcessingJob.queue == QUEUE_NAME, ProcessingJob.state == state.value,
                )
            )
            removed = result.rowcount or 0
        logger.info("Queue cleaned | state=%s removed=%d", state.value, removed)
        return removed
