"""
Job envelope — the only shape a `process-material` message may take.

    {"schemaVersion": 1, "type": "process-material",
     "materialId": "...", "fileUrl": "...", "materialVersion": 3}

materialVersion is optional; when present the orchestrator skips the job if
the material has since moved to another version. Payloads are validated at
dequeue time and anything malformed is rejected before any stage runs.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from materialflow.core.exceptions import MalformedJobError

QUEUE_NAME = "materials"
JOB_NAME = "process-material"
SCHEMA_VERSION = 1


class JobEnvelope(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    schema_version:   Literal[1] = Field(SCHEMA_VERSION, alias="schemaVersion")
    type:             Literal["process-material"] = JOB_NAME
    material_id:      str = Field(..., alias="materialId", min_length=1)
    file_url:         str = Field(..., alias="fileUrl", min_length=1)
    material_version: int | None = Field(None, alias="materialVersion", ge=1)

    @field_validator("material_id", "file_url")
    @classmethod
    def strip_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @classmethod
    def parse(cls, payload: Any) -> "JobEnvelope":
        if not isinstance(payload, dict):
            raise MalformedJobError(f"Job payload must be an object, got {type(payload).__name__}")
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            raise MalformedJobError("Malformed job payload", detail=str(exc)) from exc

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
