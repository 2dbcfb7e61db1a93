"""
Materials API Router
POST /api/v1/materials                              register an uploaded file (202)
PUT  /api/v1/materials/{material_id}/file           re-upload: new version, reprocess (202)
GET  /api/v1/materials/{material_id}/processing-status

The file itself is already in object storage when these are called; the
request carries its URL. Processing is asynchronous: a 202 means the
material exists and (unless `queued` is false) a job is on the queue.

Visibility: a material is readable by its uploader, by admins, and by
anyone when it is public. Anything else is reported as 404 so ids of
private materials do not leak.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from materialflow.api.deps import CurrentUser, Ingestion, MemberUser, Operator, Repository
from materialflow.auth.rbac import has_role
from materialflow.auth.token import TokenPayload
from materialflow.core.exceptions import MaterialNotFoundError
from materialflow.pipeline.repository import MaterialSnapshot
from materialflow.schemas.common import ErrorResponse
from materialflow.schemas.materials import (
    MaterialAcceptedResponse,
    ProcessingStatusResponse,
    RegisterMaterialRequest,
    ReplaceFileRequest,
)
from materialflow.services.ingestion import IngestionResult, UnsupportedFileTypeError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/materials",
    tags=["Materials"],
    responses={
        401: {"model": ErrorResponse, "description": "Missing or invalid JWT"},
        403: {"model": ErrorResponse, "description": "Insufficient role"},
    },
)


def can_view(material: MaterialSnapshot, user: TokenPayload) -> bool:
    return material.is_public or material.uploader_id == user.sub or has_role(user.role, "admin")


def _unsupported(exc: UnsupportedFileTypeError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorResponse(
            error_code="UNSUPPORTED_FILE_TYPE",
            message=str(exc),
        ).model_dump(mode="json"),
    )


def _accepted(result: IngestionResult) -> JSONResponse:
    material = result.material
    body = MaterialAcceptedResponse(
        material_id=material.id,
        material_version=material.material_version,
        status=material.status,
        processing_status=material.processing_status.value,
        job_id=result.job_id,
        queued=result.queued,
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=body.model_dump(mode="json", by_alias=True),
        headers={"Location": f"/api/v1/materials/{material.id}/processing-status"},
    )


# ---------------------------------------------------------------------------
# POST /materials
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=MaterialAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Register an uploaded study material",
    responses={
        400: {"model": ErrorResponse, "description": "Unsupported file type"},
        422: {"model": ErrorResponse, "description": "Invalid request body"},
    },
)
async def register_material(
    body:    RegisterMaterialRequest,
    user:    MemberUser,
    service: Ingestion,
) -> JSONResponse:
    try:
        result = await service.register_material(
            title=body.title,
            file_url=body.file_url,
            uploader_id=user.sub,
            file_name=body.file_name,
            file_type=body.file_type,
            is_public=body.is_public,
        )
    except UnsupportedFileTypeError as exc:
        return _unsupported(exc)
    return _accepted(result)


# ---------------------------------------------------------------------------
# PUT /materials/{material_id}/file
# ---------------------------------------------------------------------------

@router.put(
    "/{material_id}/file",
    response_model=MaterialAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Replace the material's file and reprocess it as a new version",
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
)
async def replace_file(
    material_id: str,
    body:        ReplaceFileRequest,
    user:        MemberUser,
    service:     Ingestion,
    repository:  Repository,
) -> JSONResponse:
    material = await repository.get(material_id)
    if material is None or not (material.uploader_id == user.sub or has_role(user.role, "admin")):
        raise MaterialNotFoundError(material_id)
    try:
        result = await service.replace_file(
            material_id,
            file_url=body.file_url,
            file_name=body.file_name,
            file_type=body.file_type,
        )
    except UnsupportedFileTypeError as exc:
        return _unsupported(exc)
    logger.info(
        "Material file replaced | material=%s version=%d by=%s",
        material_id, result.material.material_version, user.sub,
    )
    return _accepted(result)


# ---------------------------------------------------------------------------
# GET /materials/{material_id}/processing-status
# ---------------------------------------------------------------------------

@router.get(
    "/{material_id}/processing-status",
    response_model=ProcessingStatusResponse,
    summary="Poll asynchronous processing status",
    responses={404: {"model": ErrorResponse}},
)
async def processing_status(
    material_id: str,
    user:        CurrentUser,
    operator:    Operator,
    repository:  Repository,
) -> ProcessingStatusResponse:
    material = await repository.get(material_id)
    if material is None or not can_view(material, user):
        raise MaterialNotFoundError(material_id)

    data = await operator.processing_status(material_id)
    if not has_role(user.role, "admin"):
        data["errorMessage"] = None
    return ProcessingStatusResponse.model_validate(data)
