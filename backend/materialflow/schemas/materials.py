"""
Materials + Retrieval API — Request/Response Schemas

End users only ever see `status` / `isReady`; failure detail stays on the
admin surface.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import Field, field_validator

from materialflow.schemas.common import CamelModel


def _check_file_url(v: str) -> str:
    if not v.lower().startswith(("http://", "https://", "s3://")):
        raise ValueError("file_url must be an http(s):// or s3:// URL")
    return v


class RegisterMaterialRequest(CamelModel):
    title:     str = Field(..., min_length=1, max_length=255)
    file_url:  str = Field(..., min_length=1, description="http(s):// or s3:// location of the uploaded file")
    file_name: str = Field("", max_length=255)
    file_type: str | None = Field(None, description="Declared MIME type; inferred from the name when omitted")
    is_public: bool = False

    @field_validator("file_url")
    @classmethod
    def check_scheme(cls, v: str) -> str:
        return _check_file_url(v)


class ReplaceFileRequest(CamelModel):
    file_url:  str = Field(..., min_length=1)
    file_name: str = Field("", max_length=255)
    file_type: str | None = None

    @field_validator("file_url")
    @classmethod
    def check_scheme(cls, v: str) -> str:
        return _check_file_url(v)


class MaterialAcceptedResponse(CamelModel):
    """HTTP 202 — processing continues asynchronously."""
    material_id:       str
    material_version:  int
    status:            str
    processing_status: str
    job_id:            str | None = None
    queued:            bool


class ProcessingStatusResponse(CamelModel):
    material_id:       str
    status:            str
    processing_status: str
    is_ready:          bool
    can_retry:         bool
    material_version:  int
    page_count:        int | None = None
    is_ocr_processed:  bool = False
    updated_at:        datetime
    error_message:     str | None = None


class SearchRequest(CamelModel):
    query:       str = Field(..., min_length=1, max_length=2000)
    material_id: str | None = None
    k:           int | None = Field(None, ge=1, le=50)


class SearchHit(CamelModel):
    chunk_id:       str
    material_id:    str
    material_title: str
    chunk_index:    int
    page_number:    int | None = None
    content:        str
    similarity:     float


class SearchResponse(CamelModel):
    query:   str
    count:   int
    results: list[SearchHit]
