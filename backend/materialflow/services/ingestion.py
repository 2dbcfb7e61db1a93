"""
Material Ingestion Service

Upload entry path. The upload itself (browser → object storage) happens
elsewhere; this service receives the resulting file URL and:

  register_material
    1. Validate the declared type / extension
    2. Insert the material (PENDING, material_version = 1)
    3. Enqueue a process-material job

  replace_file (content-affecting re-upload)
    1. Swap the file reference and bump material_version
       (content, segments, chunks and the completion marker are cleared;
       cached summary/quiz/... become untrusted through their version markers)
    2. Enqueue a job for the new version

If the broker is down the material is still created and stays PENDING;
`POST /admin/reprocess-stuck` (requeue_pending) picks it up later.
"""

from __future__ import annotations

import logging
import mimetypes
import re
from dataclasses import dataclass

from materialflow.core.exceptions import MaterialNotFoundError, QueueUnavailableError
from materialflow.pipeline.repository import MaterialRepository, MaterialSnapshot, NewMaterial
from materialflow.pipeline.staleness import envelope_for
from materialflow.queue.base import JobQueue

logger = logging.getLogger(__name__)

_EXTENSION_TYPES = {
    ".pdf":  "application/pdf",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ".txt":  "text/plain",
    ".md":   "text/markdown",
    # images go straight to OCR
    ".png":  "image/png",
    ".jpg":  "image/jpeg",
    ".jpeg": "image/jpeg",
    ".tif":  "image/tiff",
    ".tiff": "image/tiff",
    ".bmp":  "image/bmp",
    ".gif":  "image/gif",
}

ALLOWED_CONTENT_TYPES: frozenset[str] = frozenset(_EXTENSION_TYPES.values())

ALLOWED_EXTENSIONS: frozenset[str] = frozenset(_EXTENSION_TYPES)


class UnsupportedFileTypeError(ValueError):
    pass


@dataclass
class IngestionResult:
    material: MaterialSnapshot
    job_id:   str | None
    queued:   bool


def _get_extension(filename: str) -> str:
    """Return lowercased file extension including the dot."""
    parts = filename.rsplit(".", 1)
    return f".{parts[-1].lower()}" if len(parts) == 2 else ""


def _sanitize_filename(filename: str) -> str:
    """Basename only, OS-safe characters, capped length."""
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe = re.sub(r"[^a-zA-Z0-9._\-]", "_", basename)
    return safe[:200]


def resolve_file_type(file_name: str, declared: str | None = None) -> str:
    """
    Declared MIME type wins when it is one we process; otherwise fall back
    to the extension. Raises UnsupportedFileTypeError for anything else.
    """
    if declared:
        declared = declared.split(";", 1)[0].strip().lower()
        if declared in ALLOWED_CONTENT_TYPES:
            return declared

    ext = _get_extension(file_name)
    if ext in _EXTENSION_TYPES:
        return _EXTENSION_TYPES[ext]

    guessed, _ = mimetypes.guess_type(file_name)
    if guessed in ALLOWED_CONTENT_TYPES:
        return guessed
    raise UnsupportedFileTypeError(
        f"Unsupported file type '{declared or ext or 'unknown'}'. "
        f"Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
    )


class MaterialIngestionService:

    def __init__(self, repository: MaterialRepository, queue: JobQueue) -> None:
        self._repo = repository
        self._queue = queue

    async def register_material(
        self,
        *,
        title:       str,
        file_url:    str,
        uploader_id: str,
        file_name:   str = "",
        file_type:   str | None = None,
        is_public:   bool = False,
    ) -> IngestionResult:
        file_name = _sanitize_filename(file_name or file_url.split("?", 1)[0])
        mime = resolve_file_type(file_name, file_type)

        material = await self._repo.create(NewMaterial(
            title=title.strip(),
            file_url=file_url,
            file_name=file_name,
            file_type=mime,
            uploader_id=uploader_id,
            is_public=is_public,
        ))
        logger.info(
            "Material registered | material=%s uploader=%s type=%s",
            material.id, uploader_id, mime,
        )
        return await self._enqueue(material)

    async def replace_file(
        self,
        material_id: str,
        *,
        file_url:  str,
        file_name: str = "",
        file_type: str | None = None,
    ) -> IngestionResult:
        file_name = _sanitize_filename(file_name or file_url.split("?", 1)[0])
        mime = resolve_file_type(file_name, file_type)

        material = await self._repo.replace_file(
            material_id, file_url=file_url, file_type=mime, file_name=file_name,
        )
        if material is None:
            raise MaterialNotFoundError(material_id)
        return await self._enqueue(material)

    async def _enqueue(self, material: MaterialSnapshot) -> IngestionResult:
        try:
            job = await self._queue.enqueue(envelope_for(material))
        except QueueUnavailableError as exc:
            logger.error(
                "Enqueue failed, material left PENDING | material=%s error=%s", material.id, exc,
            )
            return IngestionResult(material=material, job_id=None, queued=False)
        return IngestionResult(material=material, job_id=job.id, queued=True)
