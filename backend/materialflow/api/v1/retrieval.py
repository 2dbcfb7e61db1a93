"""
Retrieval API Router
POST /api/v1/retrieval/search

Semantic search over indexed chunks. With `materialId` the search is
confined to that one material (which the caller must be able to see);
without it the candidate set is every public material plus the caller's
own uploads.

Degrades instead of failing: a provider or store outage yields an empty
result list with HTTP 200, the same as "nothing relevant found".
"""

from __future__ import annotations

import logging

from fastapi import APIRouter

from materialflow.api.deps import CurrentUser, Repository, Retrieval
from materialflow.api.v1.materials import can_view
from materialflow.core.exceptions import MaterialNotFoundError
from materialflow.pipeline.repository import AccessScope
from materialflow.schemas.common import ErrorResponse
from materialflow.schemas.materials import SearchHit, SearchRequest, SearchResponse

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/retrieval",
    tags=["Retrieval"],
    responses={401: {"model": ErrorResponse, "description": "Missing or invalid JWT"}},
)


@router.post(
    "/search",
    response_model=SearchResponse,
    summary="Top-k chunks by cosine similarity",
    responses={404: {"model": ErrorResponse, "description": "Material not found or not visible"}},
)
async def search(
    body:       SearchRequest,
    user:       CurrentUser,
    engine:     Retrieval,
    repository: Repository,
) -> SearchResponse:
    if body.material_id:
        material = await repository.get(body.material_id)
        if material is None or not can_view(material, user):
            raise MaterialNotFoundError(body.material_id)

    hits = await engine.retrieve(
        body.query,
        material_id=body.material_id,
        k=body.k,
        scope=AccessScope(viewer_id=user.sub),
    )
    return SearchResponse(
        query=body.query,
        count=len(hits),
        results=[
            SearchHit(
                chunk_id=h.chunk_id,
                material_id=h.material_id,
                material_title=h.material_title,
                chunk_index=h.chunk_index,
                page_number=h.page_number,
                content=h.content,
                similarity=round(h.similarity, 4),
            )
            for h in hits
        ],
    )
