"""
Production wiring.

One place that knows which concrete classes back each port. The API
(api/deps.py) and the Celery tasks both build their collaborators here;
tests bypass it and inject in-memory fakes instead.
"""

from __future__ import annotations

from materialflow.core.config import settings
from materialflow.pipeline.indexer import ChunkIndexer
from materialflow.pipeline.operator import OperatorControls
from materialflow.pipeline.orchestrator import PipelineOrchestrator
from materialflow.pipeline.repository import MaterialRepository, SqlMaterialRepository
from materialflow.pipeline.staleness import StalenessMonitor
from materialflow.processing.embeddings import (
    EmbeddingPipeline,
    EmbeddingProvider,
    get_embedding_provider,
)
from materialflow.queue.base import JobQueue
from materialflow.retrieval.engine import RetrievalEngine


def build_repository() -> MaterialRepository:
    return SqlMaterialRepository()


def build_job_queue() -> JobQueue:
    from materialflow.queue.celery_queue import CeleryJobQueue

    return CeleryJobQueue()


def build_orchestrator(
    repository: MaterialRepository,
    provider: EmbeddingProvider | None = None,
) -> PipelineOrchestrator:
    pipeline = EmbeddingPipeline(
        provider or get_embedding_provider(),
        batch_size=settings.embedding_batch_size,
        max_concurrency=settings.embedding_max_concurrency,
    )
    return PipelineOrchestrator(repository, ChunkIndexer(repository, pipeline))


def build_operator(repository: MaterialRepository, queue: JobQueue) -> OperatorControls:
    return OperatorControls(repository, queue, StalenessMonitor(repository, queue))


def build_retrieval_engine(
    repository: MaterialRepository,
    provider: EmbeddingProvider | None = None,
) -> RetrievalEngine:
    return RetrievalEngine(repository, provider or get_embedding_provider())
