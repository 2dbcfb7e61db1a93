"""
Admin API Router — /api/v1/admin

Operator surface over the pipeline (role: admin).

  Materials
    POST /reprocess-stuck                      requeue every PENDING material
    POST /reprocess-stale   {staleMinutes?}    reset + requeue stale active materials
    POST /reprocess-failed                     reset + requeue every FAILED material
    POST /materials/{id}/force-reprocess       reset + requeue one material (404 if absent)
    GET  /stuck-materials/count                {pending, activeProcessing, stale, total}
    GET  /materials/{id}/segments              segment debug view
    POST /materials/{id}/clear-cache           drop summary/quiz/flashcards/keyPoints

  Queue
    GET  /queue-status                         per-state counts; never raises
    GET  /queue/failed-jobs
    GET  /queue/job/{job_id}
    POST /queue/retry-failed
    POST /queue/clear-failed
    POST /queue/clear-completed

Unknown materials and jobs surface as 404 through the app's exception
handlers (MaterialNotFoundError / JobNotFoundError).
"""

from __future__ import annotations

import logging
from dataclasses import asdict

from fastapi import APIRouter, Body, Query, status

from materialflow.api.deps import AdminUser, Operator
from materialflow.pipeline.staleness import RequeueReport
from materialflow.queue.base import JobRecord
from materialflow.queue.envelope import QUEUE_NAME
from materialflow.schemas.admin import (
    CleanQueueResponse,
    ClearCacheResponse,
    FailedJobsResponse,
    ForceReprocessResponse,
    JobOut,
    QueueCountsOut,
    QueueStatusResponse,
    ReprocessStaleRequest,
    RequeueItemOut,
    RequeueResponse,
    RetryFailedResponse,
    SegmentsResponse,
    StuckCountsResponse,
)
from materialflow.schemas.common import ErrorResponse

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    responses={
        401: {"model": ErrorResponse, "description": "Missing or invalid JWT"},
        403: {"model": ErrorResponse, "description": "Admin role required"},
    },
)


def _requeue_response(report: RequeueReport, what: str) -> RequeueResponse:
    return RequeueResponse(
        message=f"Requeued {len(report.requeued)} {what} material(s); {len(report.failed)} failed",
        total=report.total,
        requeued=len(report.requeued),
        failed=len(report.failed),
        materials=[RequeueItemOut(**asdict(i)) for i in report.requeued],
        errors=[RequeueItemOut(**asdict(i)) for i in report.failed],
    )


def _job_out(job: JobRecord) -> JobOut:
    data = job.to_dict()
    return JobOut.model_validate(data)


# ---------------------------------------------------------------------------
# Material requeues
# ---------------------------------------------------------------------------

@router.post("/reprocess-stuck", response_model=RequeueResponse)
async def reprocess_stuck(user: AdminUser, operator: Operator) -> RequeueResponse:
    report = await operator.requeue_pending()
    logger.info("Admin requeue pending | admin=%s requeued=%d", user.sub, len(report.requeued))
    return _requeue_response(report, "pending")


@router.post("/reprocess-stale", response_model=RequeueResponse)
async def reprocess_stale(
    user: AdminUser,
    operator: Operator,
    body: ReprocessStaleRequest | None = Body(None),
) -> RequeueResponse:
    minutes = body.stale_minutes if body else None
    report = await operator.requeue_stale(minutes)
    logger.info(
        "Admin requeue stale | admin=%s minutes=%s requeued=%d",
        user.sub, minutes or "default", len(report.requeued),
    )
    return _requeue_response(report, "stale")


@router.post("/reprocess-failed", response_model=RequeueResponse)
async def reprocess_failed(user: AdminUser, operator: Operator) -> RequeueResponse:
    report = await operator.requeue_failed()
    logger.info("Admin requeue failed | admin=%s requeued=%d", user.sub, len(report.requeued))
    return _requeue_response(report, "failed")


@router.post(
    "/materials/{material_id}/force-reprocess",
    response_model=ForceReprocessResponse,
    responses={404: {"model": ErrorResponse}},
)
async def force_reprocess(material_id: str, user: AdminUser, operator: Operator) -> ForceReprocessResponse:
    result = await operator.force_reprocess(material_id)
    logger.info("Admin force reprocess | admin=%s material=%s job=%s", user.sub, material_id, result.job_id)
    return ForceReprocessResponse(
        message="Material reset to pending and queued for processing",
        material_id=result.material_id,
        previous_status=result.previous_status,
        job_id=result.job_id,
        material_version=result.material_version,
    )


@router.get("/stuck-materials/count", response_model=StuckCountsResponse)
async def stuck_materials_count(
    user: AdminUser,
    operator: Operator,
    stale_minutes: int | None = Query(None, alias="staleMinutes", ge=1),
) -> StuckCountsResponse:
    counts = await operator.stuck_counts(stale_minutes)
    return StuckCountsResponse(
        pending=counts.pending,
        active_processing=counts.active_processing,
        stale=counts.stale,
        total=counts.total,
    )


@router.get(
    "/materials/{material_id}/segments",
    response_model=SegmentsResponse,
    responses={404: {"model": ErrorResponse}},
)
async def material_segments(material_id: str, user: AdminUser, operator: Operator) -> SegmentsResponse:
    return SegmentsResponse.model_validate(await operator.segments_view(material_id))


@router.post(
    "/materials/{material_id}/clear-cache",
    response_model=ClearCacheResponse,
    responses={404: {"model": ErrorResponse}},
)
async def clear_cache(material_id: str, user: AdminUser, operator: Operator) -> ClearCacheResponse:
    await operator.clear_cache(material_id)
    return ClearCacheResponse(
        material_id=material_id,
        message="Cached summary, quiz, flashcards and key points cleared",
    )


# ---------------------------------------------------------------------------
# Queue inspection / hygiene
# ---------------------------------------------------------------------------

@router.get("/queue-status", response_model=QueueStatusResponse)
async def queue_status(user: AdminUser, operator: Operator) -> QueueStatusResponse:
    try:
        counts = await operator.queue_counts()
    except Exception as exc:
        logger.error("Queue status unavailable | error=%s", exc)
        return QueueStatusResponse(success=False, queue=QUEUE_NAME, error=f"Queue backend unavailable: {exc}")
    return QueueStatusResponse(
        success=True,
        queue=QUEUE_NAME,
        counts=QueueCountsOut.model_validate(counts.to_dict()),
    )


@router.get("/queue/failed-jobs", response_model=FailedJobsResponse)
async def failed_jobs(
    user: AdminUser,
    operator: Operator,
    limit: int = Query(100, ge=1, le=1000),
) -> FailedJobsResponse:
    jobs = await operator.failed_jobs(limit)
    return FailedJobsResponse(count=len(jobs), jobs=[_job_out(j) for j in jobs])


@router.get(
    "/queue/job/{job_id}",
    response_model=JobOut,
    responses={404: {"model": ErrorResponse}},
)
async def job_detail(job_id: str, user: AdminUser, operator: Operator) -> JobOut:
    return _job_out(await operator.job_detail(job_id))


@router.post("/queue/retry-failed", response_model=RetryFailedResponse)
async def retry_failed(user: AdminUser, operator: Operator) -> RetryFailedResponse:
    retried = await operator.retry_failed_jobs()
    logger.info("Admin retry failed jobs | admin=%s retried=%d", user.sub, len(retried))
    return RetryFailedResponse(retried=len(retried), job_ids=[j.id for j in retried])


@router.post("/queue/clear-failed", response_model=CleanQueueResponse, status_code=status.HTTP_200_OK)
async def clear_failed(user: AdminUser, operator: Operator) -> CleanQueueResponse:
    return CleanQueueResponse(state="failed", removed=await operator.clear_failed_jobs())


@router.post("/queue/clear-completed", response_model=CleanQueueResponse, status_code=status.HTTP_200_OK)
async def clear_completed(user: AdminUser, operator: Operator) -> CleanQueueResponse:
    return CleanQueueResponse(state="completed", removed=await operator.clear_completed_jobs())
