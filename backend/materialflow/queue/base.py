"""
Job Queue interface.

The orchestrator's task wrapper, the staleness monitor and operator controls
all talk to the queue through this ABC; the concrete queue is injected.

Job lifecycle (mirrors what operators see in /admin/queue-status):

    enqueue ─► waiting ─► active ─┬─► completed
                 ▲                ├─► delayed ─► active ...   (transient retry)
                 │                └─► failed
                 └──── retry_failed ───┘
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from materialflow.queue.envelope import JOB_NAME, QUEUE_NAME, JobEnvelope


class JobState(str, Enum):
    WAITING   = "waiting"
    ACTIVE    = "active"
    COMPLETED = "completed"
    FAILED    = "failed"
    DELAYED   = "delayed"


@dataclass
class JobRecord:
    id:              str
    material_id:     str | None
    payload:         dict[str, Any]
    state:           JobState
    name:            str = JOB_NAME
    queue:           str = QUEUE_NAME
    attempts_made:   int = 0
    max_attempts:    int = 3
    progress:        str | None = None
    failed_reason:   str | None = None
    stacktrace:      str | None = None
    attempt_history: list[dict[str, Any]] = field(default_factory=list)
    result:          dict[str, Any] | None = None
    enqueued_at:     datetime | None = None
    started_at:      datetime | None = None
    finished_at:     datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


@dataclass
class QueueCounts:
    waiting:   int = 0
    active:    int = 0
    completed: int = 0
    failed:    int = 0
    delayed:   int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class JobQueue(ABC):
    name: str = QUEUE_NAME

    @abstractmethod
    async def enqueue(self, envelope: JobEnvelope) -> JobRecord:
        """
        Add a process-material job. If the material already has a waiting or
        delayed job for the same material_version, that job is returned and
        nothing new is enqueued.
        Raises QueueUnavailableError when the broker cannot be reached.
        """

    @abstractmethod
    async def dequeue(self, job_id: str, payload: Any) -> JobEnvelope:
        """
        Mark a delivered job active (one more attempt) and return its
        validated envelope. A malformed payload fails the job permanently
        and raises MalformedJobError.
        """

    @abstractmethod
    async def ack(self, job_id: str, result: dict[str, Any] | None = None) -> None: ...

    @abstractmethod
    async def fail(
        self,
        job_id: str,
        error: BaseException | str,
        *,
        stacktrace: str | None = None,
        retry_in: float | None = None,
    ) -> None:
        """Record a failed attempt. With retry_in the job goes to delayed, else failed."""

    @abstractmethod
    async def counts(self) -> QueueCounts: ...

    @abstractmethod
    async def get_job(self, job_id: str) -> JobRecord:
        """Raises JobNotFoundError."""

    @abstractmethod
    async def failed_jobs(self, limit: int = 100) -> list[JobRecord]: ...

    @abstractmethod
    async def retry_failed(self) -> list[JobRecord]:
        """Move every failed job back to waiting, keeping its attempt history."""

    @abstractmethod
    async def clean(self, state: JobState) -> int:
        """Drop finished jobs (completed or failed) from the queue. Returns how many."""


def attempt_entry(attempt: int, error: BaseException | str, at: datetime) -> dict[str, Any]:
    message = error if isinstance(error, str) else f"{type(error).__name__}: {error}"
    return {"attempt": attempt, "error": message, "at": at.isoformat()}
