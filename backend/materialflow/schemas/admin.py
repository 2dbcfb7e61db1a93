"""
Admin API — Request/Response Schemas

Payloads for /api/v1/admin. Keys are camelCase on the wire
(`activeProcessing`, `staleMinutes`, ...). Bulk responses always carry
per-item results so one bad material never hides the rest.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field

from materialflow.schemas.common import CamelModel


class RequeueItemOut(CamelModel):
    material_id:     str
    title:           str | None = None
    previous_status: str | None = None
    job_id:          str | None = None
    error:           str | None = None


class RequeueResponse(CamelModel):
    success:   bool = True
    message:   str
    total:     int
    requeued:  int
    failed:    int
    materials: list[RequeueItemOut] = Field(default_factory=list)
    errors:    list[RequeueItemOut] = Field(default_factory=list)


class ReprocessStaleRequest(CamelModel):
    stale_minutes: int | None = Field(
        None, ge=1, le=7 * 24 * 60,
        description="Minutes without progress before an active material counts as stale (default 30)",
    )


class ForceReprocessResponse(CamelModel):
    success:          bool = True
    message:          str
    material_id:      str
    previous_status:  str
    job_id:           str
    material_version: int


class StuckCountsResponse(CamelModel):
    pending:           int
    active_processing: int
    stale:             int
    total:             int


class QueueCountsOut(CamelModel):
    waiting:   int = 0
    active:    int = 0
    completed: int = 0
    failed:    int = 0
    delayed:   int = 0


class QueueStatusResponse(CamelModel):
    """success=False with `error` when the queue backend is unreachable."""
    success: bool
    queue:   str
    counts:  QueueCountsOut | None = None
    error:   str | None = None


class JobOut(CamelModel):
    id:              str
    name:            str
    material_id:     str | None = None
    state:           str
    attempts_made:   int
    max_attempts:    int
    progress:        str | None = None
    failed_reason:   str | None = None
    stacktrace:      str | None = None
    attempt_history: list[dict[str, Any]] = Field(default_factory=list)
    payload:         dict[str, Any] = Field(default_factory=dict)
    result:          dict[str, Any] | None = None
    enqueued_at:     datetime | None = None
    started_at:      datetime | None = None
    finished_at:     datetime | None = None


class FailedJobsResponse(CamelModel):
    success: bool = True
    count:   int
    jobs:    list[JobOut]


class RetryFailedResponse(CamelModel):
    success: bool = True
    retried: int
    job_ids: list[str]


class CleanQueueResponse(CamelModel):
    success: bool = True
    state:   str
    removed: int


class SegmentPreview(CamelModel):
    segment_index: int
    page_start:    int | None = None
    page_end:      int | None = None
    token_count:   int
    source:        str
    heading:       str | None = None
    preview:       str


class SegmentsResponse(CamelModel):
    material_id:       str
    processing_status: str
    material_version:  int
    segment_count:     int
    total_tokens:      int
    segments:          list[SegmentPreview]


class ClearCacheResponse(CamelModel):
    success:     bool = True
    material_id: str
    message:     str
