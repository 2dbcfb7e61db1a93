"""
Material Repository — the pipeline's only door to persisted state
═════════════════════════════════════════════════════════════════

MaterialRepository is the port the orchestrator, staleness monitor,
operator controls and retrieval engine depend on. SqlMaterialRepository is
the PostgreSQL + pgvector adapter.

Every write issued on behalf of a running job carries a RunContext
(material_id, job_id, material_version) and is a compare-and-set on the
materials row: it only lands while the material is still at that version,
still owned by that job, and still in the expected state. A write that
matches nothing raises StaleJobError and the job aborts without touching
anything else. That single rule is what keeps a stale in-flight job from
resurrecting old content after a reprocess or re-upload.

Administrative resets (operator / staleness monitor) clear ownership
(processing_job_id = NULL) in the same statement that moves the material
back to PENDING, so any job still running for the old run loses its right
to write.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Sequence

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert

from materialflow.core.exceptions import IndexingError, StaleJobError
from materialflow.pipeline.state import (
    ACTIVE_STATES,
    ProcessingStatus,
    assert_transition,
    business_status,
)
from materialflow.processing.chunking import ChunkResult
from materialflow.processing.segmentation import Segment

logger = logging.getLogger(__name__)

ARTIFACTS: tuple[str, ...] = ("summary", "quiz", "flashcards", "key_points")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RunContext:
    """Identity of one pipeline run: which job, for which material version."""
    material_id:      str
    job_id:           str
    material_version: int


@dataclass
class NewMaterial:
    title:       str
    file_url:    str
    file_type:   str
    uploader_id: str
    file_name:   str  = ""
    is_public:   bool = False


@dataclass
class MaterialSnapshot:
    id:                str
    title:             str
    file_url:          str
    file_name:         str
    file_type:         str
    uploader_id:       str
    is_public:         bool
    status:            str
    processing_status: ProcessingStatus
    material_version:  int
    created_at:        datetime
    updated_at:        datetime
    processing_job_id: str | None   = None
    error_message:     str | None   = None
    content:           str | None   = None
    page_count:        int | None   = None
    is_ocr_processed:  bool         = False
    ocr_confidence:    float | None = None
    indexed_version:   int | None   = None
    artifacts:         dict[str, Any] = field(default_factory=dict)
    artifact_versions: dict[str, int | None] = field(default_factory=dict)

    @property
    def is_indexed(self) -> bool:
        return self.indexed_version is not None and self.indexed_version == self.material_version

    def cached_artifact(self, name: str) -> Any | None:
        """
        A derived artifact is trusted only when its generation version equals
        the current material_version. A present value with an older version
        is a cache miss, exactly like a missing one.
        """
        if name not in ARTIFACTS:
            raise KeyError(name)
        if self.artifact_versions.get(name) != self.material_version:
            return None
        return self.artifacts.get(name)


@dataclass(frozen=True)
class AccessScope:
    """
    Which materials a viewer may search when no material is named. Supplied
    by the access-control layer; the repository only applies it.
    """
    viewer_id:      str | None = None
    include_public: bool = True


@dataclass
class RetrievedChunk:
    chunk_id:       str
    material_id:    str
    material_title: str
    chunk_index:    int
    content:        str
    page_number:    int | None
    similarity:     float


# ---------------------------------------------------------------------------
# Port
# ---------------------------------------------------------------------------

class MaterialRepository(ABC):

    # -- reads ---------------------------------------------------------
    @abstractmethod
    async def get(self, material_id: str) -> MaterialSnapshot | None: ...

    @abstractmethod
    async def list_materials(
        self,
        statuses: Iterable[ProcessingStatus],
        updated_before: datetime | None = None,
        limit: int | None = None,
    ) -> list[MaterialSnapshot]: ...

    @abstractmethod
    async def count_materials(
        self,
        statuses: Iterable[ProcessingStatus],
        updated_before: datetime | None = None,
    ) -> int: ...

    @abstractmethod
    async def list_segments(self, material_id: str) -> list[Segment]: ...

    @abstractmethod
    async def existing_chunk_indexes(self, ctx: RunContext) -> set[int]: ...

    @abstractmethod
    async def search_chunks(
        self,
        vector: Sequence[float],
        *,
        limit: int,
        min_similarity: float,
        material_id: str | None = None,
        scope: AccessScope | None = None,
    ) -> list[RetrievedChunk]: ...

    # -- upload path -----------------------------------------------------
    @abstractmethod
    async def create(self, new: NewMaterial) -> MaterialSnapshot: ...

    @abstractmethod
    async def replace_file(
        self, material_id: str, *, file_url: str, file_type: str, file_name: str = "",
    ) -> MaterialSnapshot | None:
        """Content-affecting re-upload: bump material_version and reset to PENDING."""

    # -- job-scoped writes (compare-and-set on RunContext) ---------------
    @abstractmethod
    async def claim(self, ctx: RunContext) -> bool:
        """PENDING → EXTRACTING, recording ctx.job_id as owner."""

    @abstractmethod
    async def release_for_restart(self, ctx: RunContext) -> bool:
        """Owner-only: active/FAILED → PENDING so the owner can claim again."""

    @abstractmethod
    async def advance(
        self,
        ctx: RunContext,
        from_status: ProcessingStatus,
        to_status: ProcessingStatus,
        **fields: Any,
    ) -> None: ...

    @abstractmethod
    async def replace_segments(self, ctx: RunContext, segments: Sequence[Segment]) -> None: ...

    @abstractmethod
    async def upsert_chunks(
        self, ctx: RunContext, embedded: Sequence[tuple[ChunkResult, list[float]]],
    ) -> None: ...

    @abstractmethod
    async def complete(self, ctx: RunContext, expected_chunks: int) -> None:
        """
        SEGMENTING → COMPLETED and set the completion marker, iff the chunk set
        is whole. A partial set raises IndexingError so the job fails visibly.
        """

    @abstractmethod
    async def fail(self, ctx: RunContext, error_message: str) -> bool: ...

    # -- administrative -------------------------------------------------
    @abstractmethod
    async def reset_to_pending(
        self,
        material_id: str,
        *,
        only_if: Iterable[ProcessingStatus] | None = None,
        updated_before: datetime | None = None,
    ) -> MaterialSnapshot | None:
        """
        Reset to PENDING, drop ownership and clear this version's stage
        outputs. With `only_if` / `updated_before` the reset is conditional
        and returns None when the material no longer matches.
        """

    @abstractmethod
    async def clear_cache(self, material_id: str) -> bool: ...


# ---------------------------------------------------------------------------
# PostgreSQL adapter
# ---------------------------------------------------------------------------

def _as_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        return None


def _snapshot(row: Any) -> MaterialSnapshot:
    return MaterialSnapshot(
        id=str(row.id),
        title=row.title,
        file_url=row.file_url,
        file_name=row.file_name,
        file_type=row.file_type,
        uploader_id=row.uploader_id,
        is_public=row.is_public,
        status=row.status,
        processing_status=ProcessingStatus(row.processing_status),
        material_version=row.material_version,
        created_at=row.created_at,
        updated_at=row.updated_at,
        processing_job_id=row.processing_job_id,
        error_message=row.error_message,
        content=row.content,
        page_count=row.page_count,
        is_ocr_processed=row.is_ocr_processed,
        ocr_confidence=row.ocr_confidence,
        indexed_version=row.indexed_version,
        artifacts={name: getattr(row, name) for name in ARTIFACTS},
        artifact_versions={name: getattr(row, f"{name}_version") for name in ARTIFACTS},
    )


_OUTPUT_RESET: dict[str, Any] = {
    "content": None,
    "page_count": None,
    "is_ocr_processed": False,
    "ocr_confidence": None,
    "indexed_version": None,
}

_ADVANCE_FIELDS = frozenset({"content", "page_count", "is_ocr_processed", "ocr_confidence"})


class SqlMaterialRepository(MaterialRepository):
    """
    Each call runs in its own transaction from `session_factory`
    (db.session.session_scope by default).
    """

    def __init__(self, session_factory: Callable | None = None) -> None:
        if session_factory is None:
            from materialflow.db.session import session_scope
            session_factory = session_scope
        self._session = session_factory

    # -- helpers -------------------------------------------------------

    @staticmethod
    def _owned(ctx: RunContext):
        from materialflow.models.materials import Material

        return and_(
            Material.id == uuid.UUID(ctx.material_id),
            Material.material_version == ctx.material_version,
            Material.processing_job_id == ctx.job_id,
        )

    async def _lock_owned(self, db, ctx: RunContext, status: ProcessingStatus):
        from materialflow.models.materials import Material

        row = (await db.execute(
            select(Material.id)
            .where(self._owned(ctx), Material.processing_status == status.value)
            .with_for_update()
        )).first()
        if row is None:
            raise StaleJobError(
                f"Material {ctx.material_id} no longer owned by job {ctx.job_id} "
                f"at version {ctx.material_version} in {status.value}"
            )

    # -- reads ---------------------------------------------------------

    async def get(self, material_id: str) -> MaterialSnapshot | None:
        from materialflow.models.materials import Material

        mid = _as_uuid(material_id)
        if mid is None:
            return None
        async with self._session() as db:
            row = (await db.execute(select(Material).where(Material.id == mid))).scalars().first()
            return _snapshot(row) if row else None

    async def list_materials(self, statuses, updated_before=None, limit=None):
        from materialflow.models.materials import Material

        stmt = (
            select(Material)
            .where(Material.processing_status.in_([ProcessingStatus(s).value for s in statuses]))
            .order_by(Material.updated_at)
        )
        if updated_before is not None:
            stmt = stmt.where(Material.updated_at < updated_before)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [_snapshot(r) for r in rows]

    async def count_materials(self, statuses, updated_before=None) -> int:
        from materialflow.models.materials import Material

        stmt = select(func.count()).select_from(Material).where(
            Material.processing_status.in_([ProcessingStatus(s).value for s in statuses])
        )
        if updated_before is not None:
            stmt = stmt.where(Material.updated_at < updated_before)
        async with self._session() as db:
            return int((await db.execute(stmt)).scalar_one())

    async def list_segments(self, material_id: str) -> list[Segment]:
        from materialflow.models.materials import MaterialSegment

        mid = _as_uuid(material_id)
        if mid is None:
            return []
        async with self._session() as db:
            rows = (await db.execute(
                select(MaterialSegment)
                .where(MaterialSegment.material_id == mid)
                .order_by(MaterialSegment.segment_index)
            )).scalars().all()
        return [
            Segment(
                segment_index=r.segment_index,
                text=r.text,
                char_start=r.char_start,
                char_end=r.char_end,
                token_count=r.token_count,
                page_start=r.page_start,
                page_end=r.page_end,
                source=r.source,
                heading=r.heading,
            )
            for r in rows
        ]

    async def existing_chunk_indexes(self, ctx: RunContext) -> set[int]:
        from materialflow.models.materials import MaterialChunk

        async with self._session() as db:
            rows = (await db.execute(
                select(MaterialChunk.chunk_index).where(
                    MaterialChunk.material_id == uuid.UUID(ctx.material_id),
                    MaterialChunk.material_version == ctx.material_version,
                )
            )).scalars().all()
        return set(rows)

    async def search_chunks(self, vector, *, limit, min_similarity, material_id=None, scope=None):
        from materialflow.models.materials import Material, MaterialChunk

        distance = MaterialChunk.embedding.cosine_distance(list(vector))
        similarity = (1 - distance).label("similarity")

        stmt = (
            select(MaterialChunk, Material.title, similarity)
            .join(Material, Material.id == MaterialChunk.material_id)
            .where(
                Material.processing_status == ProcessingStatus.COMPLETED.value,
                Material.indexed_version == Material.material_version,
                MaterialChunk.material_version == Material.material_version,
                (1 - distance) >= min_similarity,
            )
            .order_by(distance)
            .limit(limit)
        )
        if material_id is not None:
            mid = _as_uuid(material_id)
            if mid is None:
                return []
            stmt = stmt.where(MaterialChunk.material_id == mid)
        elif scope is not None:
            allowed = []
            if scope.include_public:
                allowed.append(Material.is_public.is_(True))
            if scope.viewer_id:
                allowed.append(Material.uploader_id == scope.viewer_id)
            if not allowed:
                return []
            stmt = stmt.where(or_(*allowed))

        async with self._session() as db:
            rows = (await db.execute(stmt)).all()

        return [
            RetrievedChunk(
                chunk_id=str(chunk.id),
                material_id=str(chunk.material_id),
                material_title=title,
                chunk_index=chunk.chunk_index,
                content=chunk.content,
                page_number=chunk.page_number,
                similarity=float(sim),
            )
            for chunk, title, sim in rows
        ]

    # -- upload path -----------------------------------------------------

    async def create(self, new: NewMaterial) -> MaterialSnapshot:
        from materialflow.models.materials import Material

        async with self._session() as db:
            row = Material(
                id=uuid.uuid4(),
                title=new.title,
                file_url=new.file_url,
                file_name=new.file_name,
                file_type=new.file_type,
                uploader_id=new.uploader_id,
                is_public=new.is_public,
                status="pending",
                processing_status=ProcessingStatus.PENDING.value,
                material_version=1,
            )
            db.add(row)
            await db.flush()
            await db.refresh(row)
            return _snapshot(row)

    async def replace_file(self, material_id, *, file_url, file_type, file_name=""):
        from materialflow.models.materials import Material, MaterialChunk, MaterialSegment

        mid = _as_uuid(material_id)
        if mid is None:
            return None
        async with self._session() as db:
            result = await db.execute(
                update(Material)
                .where(Material.id == mid)
                .values(
                    file_url=file_url,
                    file_type=file_type,
                    file_name=file_name,
                    material_version=Material.material_version + 1,
                    processing_status=ProcessingStatus.PENDING.value,
                    status="pending",
                    processing_job_id=None,
                    error_message=None,
                    **_OUTPUT_RESET,
                )
                .returning(Material)
            )
            row = result.scalars().first()
            if row is None:
                return None
            await db.execute(delete(MaterialSegment).where(MaterialSegment.material_id == mid))
            await db.execute(delete(MaterialChunk).where(MaterialChunk.material_id == mid))
            logger.info("File replaced | material=%s version=%d", material_id, row.material_version)
            return _snapshot(row)

    # -- job-scoped writes ---------------------------------------------

    async def claim(self, ctx: RunContext) -> bool:
        from materialflow.models.materials import Material

        async with self._session() as db:
            result = await db.execute(
                update(Material)
                .where(
                    Material.id == uuid.UUID(ctx.material_id),
                    Material.material_version == ctx.material_version,
                    Material.processing_status == ProcessingStatus.PENDING.value,
                    or_(Material.processing_job_id.is_(None), Material.processing_job_id == ctx.job_id),
                )
                .values(
                    processing_status=ProcessingStatus.EXTRACTING.value,
                    processing_job_id=ctx.job_id,
                    error_message=None,
                )
            )
            return result.rowcount == 1

    async def release_for_restart(self, ctx: RunContext) -> bool:
        from materialflow.models.materials import Material

        restartable = [s.value for s in ACTIVE_STATES] + [ProcessingStatus.FAILED.value]
        async with self._session() as db:
            result = await db.execute(
                update(Material)
                .where(self._owned(ctx), Material.processing_status.in_(restartable))
                .values(processing_status=ProcessingStatus.PENDING.value, status="pending")
            )
            return result.rowcount == 1

    async def advance(self, ctx, from_status, to_status, **fields) -> None:
        from materialflow.models.materials import Material

        assert_transition(from_status, to_status)
        unknown = set(fields) - _ADVANCE_FIELDS
        if unknown:
            raise ValueError(f"advance() cannot write {sorted(unknown)}")

        async with self._session() as db:
            result = await db.execute(
                update(Material)
                .where(self._owned(ctx), Material.processing_status == ProcessingStatus(from_status).value)
                .values(processing_status=ProcessingStatus(to_status).value, **fields)
            )
            if result.rowcount != 1:
                raise StaleJobError(
                    f"Transition {from_status.value}->{to_status.value} rejected for "
                    f"material {ctx.material_id} (job {ctx.job_id}, version {ctx.material_version})"
                )

    async def replace_segments(self, ctx: RunContext, segments: Sequence[Segment]) -> None:
        from materialflow.models.materials import MaterialSegment

        mid = uuid.UUID(ctx.material_id)
        async with self._session() as db:
            await self._lock_owned(db, ctx, ProcessingStatus.SEGMENTING)
            await db.execute(delete(MaterialSegment).where(MaterialSegment.material_id == mid))
            db.add_all([
                MaterialSegment(
                    material_id=mid,
                    material_version=ctx.material_version,
                    segment_index=s.segment_index,
                    page_start=s.page_start,
                    page_end=s.page_end,
                    char_start=s.char_start,
                    char_end=s.char_end,
                    token_count=s.token_count,
                    source=s.source,
                    heading=s.heading,
                    text=s.text,
                )
                for s in segments
            ])

    async def upsert_chunks(self, ctx, embedded) -> None:
        from materialflow.models.materials import MaterialChunk

        if not embedded:
            return
        mid = uuid.UUID(ctx.material_id)
        rows = [
            {
                "id": uuid.UUID(hex=chunk.chunk_id(ctx.material_id, ctx.material_version)),
                "material_id": mid,
                "material_version": ctx.material_version,
                "chunk_index": chunk.chunk_index,
                "content": chunk.text,
                "token_count": chunk.token_count,
                "page_number": chunk.page_number,
                "embedding": list(vector),
            }
            for chunk, vector in embedded
        ]
        stmt = pg_insert(MaterialChunk).values(rows)
        stmt = stmt.on_conflict_do_update(
            constraint="uq_chunks_version_position",
            set_={
                "content": stmt.excluded.content,
                "token_count": stmt.excluded.token_count,
                "page_number": stmt.excluded.page_number,
                "embedding": stmt.excluded.embedding,
            },
        )
        async with self._session() as db:
            await self._lock_owned(db, ctx, ProcessingStatus.SEGMENTING)
            await db.execute(stmt)

    async def complete(self, ctx: RunContext, expected_chunks: int) -> None:
        from materialflow.models.materials import Material, MaterialChunk

        async with self._session() as db:
            await self._lock_owned(db, ctx, ProcessingStatus.SEGMENTING)
            stored = (await db.execute(
                select(func.count()).select_from(MaterialChunk).where(
                    MaterialChunk.material_id == uuid.UUID(ctx.material_id),
                    MaterialChunk.material_version == ctx.material_version,
                    MaterialChunk.chunk_index < expected_chunks,
                )
            )).scalar_one()
            if stored != expected_chunks:
                raise IndexingError(
                    f"Chunk set incomplete: {stored}/{expected_chunks} stored",
                    material_id=ctx.material_id,
                )
            # leftovers from a longer chunking of the same version
            await db.execute(
                delete(MaterialChunk).where(
                    MaterialChunk.material_id == uuid.UUID(ctx.material_id),
                    MaterialChunk.chunk_index >= expected_chunks,
                )
            )
            await db.execute(
                update(Material)
                .where(self._owned(ctx))
                .values(
                    processing_status=ProcessingStatus.COMPLETED.value,
                    status=business_status(ProcessingStatus.COMPLETED).value,
                    indexed_version=ctx.material_version,
                    error_message=None,
                )
            )

    async def fail(self, ctx: RunContext, error_message: str) -> bool:
        from materialflow.models.materials import Material

        failable = [ProcessingStatus.PENDING.value] + [s.value for s in ACTIVE_STATES]
        async with self._session() as db:
            result = await db.execute(
                update(Material)
                .where(self._owned(ctx), Material.processing_status.in_(failable))
                .values(processing_status=ProcessingStatus.FAILED.value, error_message=error_message[:2000])
            )
            return result.rowcount == 1

    # -- administrative ------------------------------------------------

    async def reset_to_pending(self, material_id, *, only_if=None, updated_before=None):
        from materialflow.models.materials import Material, MaterialChunk, MaterialSegment

        mid = _as_uuid(material_id)
        if mid is None:
            return None

        conditions = [Material.id == mid]
        if only_if is not None:
            conditions.append(Material.processing_status.in_([ProcessingStatus(s).value for s in only_if]))
        if updated_before is not None:
            conditions.append(Material.updated_at < updated_before)

        async with self._session() as db:
            result = await db.execute(
                update(Material)
                .where(*conditions)
                .values(
                    processing_status=ProcessingStatus.PENDING.value,
                    status="pending",
                    processing_job_id=None,
                    error_message=None,
                    updated_at=func.now(),
                    **_OUTPUT_RESET,
                )
                .returning(Material)
            )
            row = result.scalars().first()
            if row is None:
                return None
            await db.execute(delete(MaterialSegment).where(MaterialSegment.material_id == mid))
            await db.execute(delete(MaterialChunk).where(MaterialChunk.material_id == mid))
            return _snapshot(row)

    async def clear_cache(self, material_id: str) -> bool:
        from materialflow.models.materials import Material

        mid = _as_uuid(material_id)
        if mid is None:
            return False
        values: dict[str, Any] = {}
        for name in ARTIFACTS:
            values[name] = None
            values[f"{name}_version"] = None
        async with self._session() as db:
            result = await db.execute(update(Material).where(Material.id == mid).values(**values))
            return result.rowcount == 1
