"""
Celery Tasks

process_material
  dequeue (validate envelope, mark active) → PipelineOrchestrator.run → ack.
  TransientProviderError: ledger → delayed, task.retry with exponential
  backoff (JOB_BACKOFF_SECONDS × 2^(attempt-1)) until JOB_MAX_ATTEMPTS, then
  failed. The material is left in its last active state; the staleness
  monitor picks it up later.
  Anything else: ledger → failed with reason + stack, task re-raises.
  Malformed payload: ledger → failed, message rejected without requeue.

recover_stale_materials
  Beat-scheduled staleness scan (every STALE_SCAN_INTERVAL_SECONDS).

health_check
  Round-trips the broker; used by deployment probes.
"""

from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Any

from celery import Task
from celery.exceptions import Reject

from materialflow.core.config import settings
from materialflow.core.exceptions import MalformedJobError, TransientProviderError
from materialflow.queue.celery_app import HEALTH_TASK, PROCESS_TASK, STALE_SCAN_TASK, celery_app

logger = logging.getLogger(__name__)


def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(asyncio.run, coro)
                return future.result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


def backoff_seconds(attempt: int) -> float:
    """Delay before retrying after the given (1-based) failed attempt."""
    return settings.job_backoff_seconds * (2 ** (max(attempt, 1) - 1))


# ---------------------------------------------------------------------------
# process-material
# ---------------------------------------------------------------------------

@celery_app.task(
    name=PROCESS_TASK,
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
    max_retries=None,
)
def process_material(self: Task, payload: Any = None) -> dict[str, Any]:
    return run_async(_process_material_async(self, payload))


async def _process_material_async(task: Task, payload: Any) -> dict[str, Any]:
    from materialflow.db.session import dispose_engine
    from materialflow.pipeline.factory import build_job_queue, build_orchestrator, build_repository

    job_id = task.request.id
    queue = build_job_queue()
    try:
        try:
            envelope = await queue.dequeue(job_id, payload)
        except MalformedJobError as exc:
            raise Reject(str(exc), requeue=False) from exc

        orchestrator = build_orchestrator(build_repository())
        try:
            outcome = await orchestrator.run(envelope, job_id)
        except TransientProviderError as exc:
            attempt = task.request.retries + 1
            if attempt < settings.job_max_attempts:
                delay = backoff_seconds(attempt)
                await queue.fail(job_id, exc, retry_in=delay)
                logger.warning(
                    "Transient failure, retrying | job=%s material=%s attempt=%d delay=%.0fs",
                    job_id, envelope.material_id, attempt, delay,
                )
                raise task.retry(exc=exc, countdown=delay, max_retries=settings.job_max_attempts - 1)
            await queue.fail(job_id, exc, stacktrace=traceback.format_exc())
            raise
        except Exception as exc:
            await queue.fail(job_id, exc, stacktrace=traceback.format_exc())
            raise

        result = outcome.to_dict()
        await queue.ack(job_id, result)
        return result
    finally:
        # each task runs on a fresh event loop; pooled asyncpg connections cannot outlive it
        await dispose_engine()


# ---------------------------------------------------------------------------
# Staleness scan
# ---------------------------------------------------------------------------

@celery_app.task(name=STALE_SCAN_TASK, acks_late=True)
def recover_stale_materials(minutes: int | None = None) -> dict[str, Any]:
    return run_async(_recover_stale_async(minutes))


async def _recover_stale_async(minutes: int | None) -> dict[str, Any]:
    from materialflow.db.session import dispose_engine
    from materialflow.pipeline.factory import build_job_queue, build_repository
    from materialflow.pipeline.staleness import StalenessMonitor

    try:
        monitor = StalenessMonitor(build_repository(), build_job_queue())
        report = await monitor.recover(minutes)
        return report.to_dict()
    finally:
        await dispose_engine()


@celery_app.task(name=HEALTH_TASK)
def health_check() -> dict[str, str]:
    return {"status": "ok", "queue": "materials"}
