"""
Exception hierarchy for the ingestion pipeline.

    MaterialFlowError
    ├── StageError              (stage-scoped; carries stage + material id)
    │   ├── ExtractionError     (corrupt / unsupported file, OCR failure)
    │   ├── SegmentationError
    │   └── IndexingError       (some chunks could not be embedded)
    ├── ProviderError           (embedding / OCR / storage provider)
    │   └── TransientProviderError   (timeouts, rate limits: retried by the queue)
    ├── FileFetchError          (raw file missing or unreadable)
    ├── InvalidTransitionError  (illegal processing_status edge)
    ├── StaleJobError           (write rejected: version or ownership moved on)
    ├── MalformedJobError       (queue payload failed validation)
    ├── QueueUnavailableError
    ├── MaterialNotFoundError
    └── JobNotFoundError

Only TransientProviderError is retried by the job queue. Everything else
fails the current attempt.
"""

from __future__ import annotations


class MaterialFlowError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str = "An unexpected error occurred", detail: str | None = None) -> None:
        self.message = message
        self.detail = detail
        super().__init__(message)


class StageError(MaterialFlowError):
    """Raised by a pipeline stage. `stage` is the processing status it ran under."""

    def __init__(self, message: str, stage: str = "", material_id: str | None = None) -> None:
        self.stage = stage
        self.material_id = material_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


class ExtractionError(StageError):
    def __init__(self, message: str, material_id: str | None = None) -> None:
        super().__init__(message, stage="extracting", material_id=material_id)


class SegmentationError(StageError):
    def __init__(self, message: str, material_id: str | None = None) -> None:
        super().__init__(message, stage="segmenting", material_id=material_id)


class IndexingError(StageError):
    def __init__(
        self,
        message: str,
        material_id: str | None = None,
        failed_chunks: list[int] | None = None,
    ) -> None:
        self.failed_chunks = failed_chunks or []
        super().__init__(message, stage="segmenting", material_id=material_id)


class ProviderError(MaterialFlowError):
    """An external provider rejected the request."""

    def __init__(self, message: str, provider_name: str | None = None) -> None:
        self.provider_name = provider_name
        super().__init__(message)

    def __str__(self) -> str:
        if self.provider_name:
            return f"[{self.provider_name}] {self.message}"
        return self.message


class TransientProviderError(ProviderError):
    """Network blip, timeout or rate limit. Safe to retry with backoff."""


class FileFetchError(MaterialFlowError):
    pass


class InvalidTransitionError(MaterialFlowError):
    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Illegal processing transition {current} -> {target}")


class StaleJobError(MaterialFlowError):
    """The material moved on (new version, reset, or another owner); the write was discarded."""


class MalformedJobError(MaterialFlowError):
    pass


class QueueUnavailableError(MaterialFlowError):
    pass


class MaterialNotFoundError(MaterialFlowError):
    def __init__(self, material_id: str) -> None:
        self.material_id = material_id
        super().__init__(f"Material '{material_id}' not found")


class JobNotFoundError(MaterialFlowError):
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' not found")
