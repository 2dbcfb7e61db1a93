"""
SQLAlchemy ORM Models — Materials, Segments, Chunks & the Job Ledger

2.x typed declarative mappings for full async support.

Ownership:
  materials          — processing_status is written only by the orchestrator,
                       the staleness monitor and operator controls.
  material_segments  — written only by the segmentation path (replace-all).
  material_chunks    — written only by the chunk indexer (upsert per batch).
  processing_jobs    — queue-visible job state, written only by the job queue.

Segments and chunks cascade-delete with their material.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from materialflow.core.config import settings


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Material: the uploaded document and its processing state
# ---------------------------------------------------------------------------

class Material(Base):
    """
    One uploaded study material.

    material_version  — bumped on content-affecting re-upload. Every stage
                        write is conditioned on it.
    processing_job_id — the job that currently owns the pipeline run.
    indexed_version   — completion marker; equals material_version only once
                        the full chunk set for that version is persisted.

    Derived artifacts (summary, quiz, flashcards, key_points) each carry their
    own generation version and are trusted only when it equals
    material_version.
    """

    __tablename__ = "materials"
    __table_args__ = (
        CheckConstraint(
            "processing_status IN ('pending', 'extracting', 'ocr_extracting', "
            "'cleaning', 'segmenting', 'completed', 'failed')",
            name="materials_processing_status_check",
        ),
        CheckConstraint("status IN ('pending', 'ready')", name="materials_status_check"),
        CheckConstraint("material_version >= 1", name="materials_version_positive"),
        Index("idx_materials_processing_status", "processing_status", "updated_at"),
        Index("idx_materials_uploader", "uploader_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    title:       Mapped[str] = mapped_column(Text, nullable=False)
    file_url:    Mapped[str] = mapped_column(Text, nullable=False)
    file_name:   Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    file_type:   Mapped[str] = mapped_column(Text, nullable=False, comment="Declared MIME type")
    uploader_id: Mapped[str] = mapped_column(Text, nullable=False)
    is_public:   Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="pending", server_default="pending",
    )
    processing_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="pending", server_default="pending",
    )
    processing_job_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True, comment="Operator-visible failure reason",
    )

    # Stage outputs
    content:          Mapped[Optional[str]]   = mapped_column(Text, nullable=True)
    page_count:       Mapped[Optional[int]]   = mapped_column(Integer, nullable=True)
    is_ocr_processed: Mapped[bool]            = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    ocr_confidence:   Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    material_version: Mapped[int]           = mapped_column(Integer, nullable=False, default=1, server_default="1")
    indexed_version:  Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Derived artifacts + generation markers
    summary:            Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    summary_version:    Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    quiz:               Mapped[Optional[Any]] = mapped_column(JSONB, nullable=True)
    quiz_version:       Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    flashcards:         Mapped[Optional[Any]] = mapped_column(JSONB, nullable=True)
    flashcards_version: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    key_points:         Mapped[Optional[Any]] = mapped_column(JSONB, nullable=True)
    key_points_version: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now(),
    )

    segments: Mapped[list["MaterialSegment"]] = relationship(
        back_populates="material", cascade="all, delete-orphan", passive_deletes=True,
    )
    chunks: Mapped[list["MaterialChunk"]] = relationship(
        back_populates="material", cascade="all, delete-orphan", passive_deletes=True,
    )

    def __repr__(self) -> str:
        return (
            f"<Material id={self.id} processing={self.processing_status} "
            f"version={self.material_version} title={self.title!r}>"
        )


# ---------------------------------------------------------------------------
# MaterialSegment: page-bounded slice of cleaned content
# ---------------------------------------------------------------------------

class MaterialSegment(Base):
    __tablename__ = "material_segments"
    __table_args__ = (
        UniqueConstraint("material_id", "segment_index", name="uq_segments_position"),
        CheckConstraint("source IN ('native', 'ocr')", name="segments_source_check"),
        Index("idx_segments_material_id", "material_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, server_default=func.gen_random_uuid(),
    )
    material_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("materials.id", ondelete="CASCADE"), nullable=False,
    )
    material_version: Mapped[int]           = mapped_column(Integer, nullable=False)
    segment_index:    Mapped[int]           = mapped_column(Integer, nullable=False)
    page_start:       Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    page_end:         Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    char_start:       Mapped[int]           = mapped_column(Integer, nullable=False)
    char_end:         Mapped[int]           = mapped_column(Integer, nullable=False)
    token_count:      Mapped[int]           = mapped_column(Integer, nullable=False)
    source:           Mapped[str]           = mapped_column(String(16), nullable=False, default="native")
    heading:          Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    text:             Mapped[str]           = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )

    material: Mapped[Material] = relationship(back_populates="segments")


# ---------------------------------------------------------------------------
# MaterialChunk: retrieval-sized text + embedding
# ---------------------------------------------------------------------------

class MaterialChunk(Base):
    __tablename__ = "material_chunks"
    __table_args__ = (
        UniqueConstraint(
            "material_id", "material_version", "chunk_index", name="uq_chunks_version_position",
        ),
        Index("idx_chunks_material_id", "material_id", "material_version"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, server_default=func.gen_random_uuid(),
    )
    material_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("materials.id", ondelete="CASCADE"), nullable=False,
    )
    material_version: Mapped[int]           = mapped_column(Integer, nullable=False)
    chunk_index:      Mapped[int]           = mapped_column(Integer, nullable=False)
    content:          Mapped[str]           = mapped_column(Text, nullable=False)
    token_count:      Mapped[int]           = mapped_column(Integer, nullable=False, default=0)
    page_number:      Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    embedding:        Mapped[list[float]]   = mapped_column(Vector(settings.embedding_dimensions), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )

    material: Mapped[Material] = relationship(back_populates="chunks")


# ---------------------------------------------------------------------------
# ProcessingJob: ledger of queue-visible job state
# ---------------------------------------------------------------------------

class ProcessingJob(Base):
    """
    Mirrors what the broker cannot report on its own: attempts, failure
    reason + stack, and per-attempt history. `id` doubles as the Celery
    task id so broker redeliveries and retries map onto the same row.
    """

    __tablename__ = "processing_jobs"
    __table_args__ = (
        CheckConstraint(
            "state IN ('waiting', 'active', 'completed', 'failed', 'delayed')",
            name="processing_jobs_state_check",
        ),
        Index("idx_jobs_state", "queue", "state"),
        Index("idx_jobs_material", "material_id", "state"),
    )

    id:             Mapped[str]           = mapped_column(Text, primary_key=True)
    queue:          Mapped[str]           = mapped_column(Text, nullable=False, default="materials")
    name:           Mapped[str]           = mapped_column(Text, nullable=False, default="process-material")
    material_id:    Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payload:        Mapped[dict]          = mapped_column(JSONB, nullable=False, default=dict)
    state:          Mapped[str]           = mapped_column(String(16), nullable=False, default="waiting")
    attempts_made:  Mapped[int]           = mapped_column(Integer, nullable=False, default=0)
    max_attempts:   Mapped[int]           = mapped_column(Integer, nullable=False, default=3)
    progress:       Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failed_reason:  Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stacktrace:     Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempt_history: Mapped[list]         = mapped_column(JSONB, nullable=False, default=list)
    result:         Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)

    enqueued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
    started_at:  Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
