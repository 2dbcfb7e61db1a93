"""
Composed FastAPI dependencies.

Routes never build repositories, queues or engines themselves; they ask for
them here. The providers are process-wide and created on first use, and
tests swap them with `app.dependency_overrides[get_repository] = ...`.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from materialflow.auth.rbac import require_admin, require_member
from materialflow.auth.token import TokenPayload, get_current_user
from materialflow.pipeline import factory
from materialflow.pipeline.operator import OperatorControls
from materialflow.pipeline.repository import MaterialRepository
from materialflow.processing.embeddings import EmbeddingProvider, get_embedding_provider
from materialflow.queue.base import JobQueue
from materialflow.retrieval.engine import RetrievalEngine
from materialflow.services.ingestion import MaterialIngestionService


@lru_cache(maxsize=1)
def _repository() -> MaterialRepository:
    return factory.build_repository()


@lru_cache(maxsize=1)
def _job_queue() -> JobQueue:
    return factory.build_job_queue()


@lru_cache(maxsize=1)
def _embedding_provider() -> EmbeddingProvider:
    return get_embedding_provider()


def get_repository() -> MaterialRepository:
    return _repository()


def get_job_queue() -> JobQueue:
    return _job_queue()


def get_provider() -> EmbeddingProvider:
    return _embedding_provider()


def get_operator(
    repository: Annotated[MaterialRepository, Depends(get_repository)],
    queue:      Annotated[JobQueue, Depends(get_job_queue)],
) -> OperatorControls:
    return factory.build_operator(repository, queue)


def get_ingestion_service(
    repository: Annotated[MaterialRepository, Depends(get_repository)],
    queue:      Annotated[JobQueue, Depends(get_job_queue)],
) -> MaterialIngestionService:
    return MaterialIngestionService(repository, queue)


def get_retrieval_engine(
    repository: Annotated[MaterialRepository, Depends(get_repository)],
    provider:   Annotated[EmbeddingProvider, Depends(get_provider)],
) -> RetrievalEngine:
    return factory.build_retrieval_engine(repository, provider)


CurrentUser = Annotated[TokenPayload, Depends(get_current_user)]
AdminUser   = Annotated[TokenPayload, Depends(require_admin)]
MemberUser  = Annotated[TokenPayload, Depends(require_member)]
Operator    = Annotated[OperatorControls, Depends(get_operator)]
Ingestion   = Annotated[MaterialIngestionService, Depends(get_ingestion_service)]
Retrieval   = Annotated[RetrievalEngine, Depends(get_retrieval_engine)]
Repository  = Annotated[MaterialRepository, Depends(get_repository)]
