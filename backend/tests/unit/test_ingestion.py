"""
Unit Tests — MaterialIngestionService
═════════════════════════════════════
Tests for the upload entry path.

All tests:
  • Use the in-memory repository and queue from conftest.py
  • Never touch PostgreSQL or a broker

Coverage targets:
  ✅ Valid PDF / DOCX            → material PENDING at version 1, job enqueued
  ✅ Declared MIME vs extension   → declared wins when supported
  ✅ Unsupported type             → UnsupportedFileTypeError, nothing created
  ✅ Filename sanitization        → path traversal stripped
  ✅ Broker down                  → material created, queued=False
  ✅ Re-upload                    → version bumped, outputs cleared, new job
  ✅ Re-upload of unknown id      → MaterialNotFoundError
"""

from __future__ import annotations

import pytest

from materialflow.core.exceptions import MaterialNotFoundError
from materialflow.pipeline.staleness import envelope_for
from materialflow.pipeline.state import ProcessingStatus
from materialflow.services.ingestion import (
    MaterialIngestionService,
    UnsupportedFileTypeError,
    _sanitize_filename,
    resolve_file_type,
)

PDF = "application/pdf"
DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
PPTX = "application/vnd.openxmlformats-officedocument.presentationml.presentation"


@pytest.fixture
def service(repo, job_queue) -> MaterialIngestionService:
    return MaterialIngestionService(repo, job_queue)


@pytest.mark.unit
class TestResolveFileType:

    @pytest.mark.parametrize("name,declared,expected", [
        ("notes.pdf", PDF, PDF),
        ("notes.pdf", None, PDF),
        ("essay.DOCX", "application/octet-stream", DOCX),
        ("readme.md", None, "text/markdown"),
        ("anything", "text/plain; charset=utf-8", "text/plain"),
        ("scan.pdf", "", PDF),
        ("lecture.pptx", None, PPTX),
        ("whiteboard.png", "image/png", "image/png"),
        ("handout.JPG", None, "image/jpeg"),
    ])
    def test_supported(self, name, declared, expected):
        assert resolve_file_type(name, declared) == expected

    @pytest.mark.parametrize("name,declared", [
        ("legacy.doc", "application/msword"),
        ("legacy.ppt", "application/vnd.ms-powerpoint"),
        ("bundle.zip", "application/zip"),
        ("noextension", None),
    ])
    def test_unsupported(self, name, declared):
        with pytest.raises(UnsupportedFileTypeError, match="Unsupported file type"):
            resolve_file_type(name, declared)


@pytest.mark.unit
class TestSanitizeFilename:

    @pytest.mark.parametrize("raw,expected", [
        ("../../etc/passwd.pdf", "passwd.pdf"),
        ("C:\\Users\\me\\notes final.pdf", "notes_final.pdf"),
        ("chapter (1).docx", "chapter__1_.docx"),
    ])
    def test_sanitize(self, raw, expected):
        assert _sanitize_filename(raw) == expected

    def test_length_is_capped(self):
        assert len(_sanitize_filename("a" * 500 + ".pdf")) == 200


@pytest.mark.unit
class TestRegisterMaterial:

    async def test_creates_pending_material_and_enqueues_job(self, service, repo, job_queue):
        result = await service.register_material(
            title="  Cell Biology  ",
            file_url="https://files.example.edu/uploads/cells.pdf?sig=abc",
            uploader_id="user-1",
        )

        assert result.queued
        material = await repo.get(result.material.id)
        assert material.title == "Cell Biology"
        assert material.file_name == "cells.pdf"
        assert material.file_type == PDF
        assert material.processing_status is ProcessingStatus.PENDING
        assert material.status == "pending"
        assert material.material_version == 1
        assert material.uploader_id == "user-1"

        job = await job_queue.get_job(result.job_id)
        assert job.payload == {
            "schemaVersion": 1,
            "type": "process-material",
            "materialId": material.id,
            "fileUrl": "https://files.example.edu/uploads/cells.pdf?sig=abc",
            "materialVersion": 1,
        }

    async def test_explicit_name_and_type_are_used(self, service):
        result = await service.register_material(
            title="Essay",
            file_url="https://files.example.edu/blob/123",
            file_name="essay.docx",
            file_type=DOCX,
            uploader_id="user-1",
            is_public=True,
        )
        assert result.material.file_type == DOCX
        assert result.material.is_public

    async def test_unsupported_type_creates_nothing(self, service, repo, job_queue):
        with pytest.raises(UnsupportedFileTypeError):
            await service.register_material(
                title="Bundle", file_url="https://files.example.edu/bundle.zip", uploader_id="user-1",
            )
        assert repo.materials == {}
        assert job_queue.jobs == {}

    async def test_broker_down_leaves_material_pending(self, service, repo, job_queue):
        job_queue.unavailable = True

        result = await service.register_material(
            title="Notes", file_url="https://files.example.edu/notes.pdf", uploader_id="user-1",
        )

        assert not result.queued
        assert result.job_id is None
        material = await repo.get(result.material.id)
        assert material.processing_status is ProcessingStatus.PENDING


@pytest.mark.unit
class TestReplaceFile:

    async def test_reupload_bumps_version_and_enqueues_for_it(self, service, repo, job_queue):
        material = repo.seed(
            processing_status=ProcessingStatus.COMPLETED,
            indexed_version=1,
            content="old content",
            page_count=3,
        )
        old_job = await job_queue.enqueue(envelope_for(material))

        result = await service.replace_file(
            material.id, file_url="https://files.example.edu/notes-v2.pdf",
        )

        updated = await repo.get(material.id)
        assert updated.material_version == 2
        assert updated.processing_status is ProcessingStatus.PENDING
        assert updated.content is None
        assert updated.indexed_version is None
        assert updated.file_name == "notes-v2.pdf"
        assert not updated.is_indexed

        assert result.queued
        assert result.job_id != old_job.id
        new_job = await job_queue.get_job(result.job_id)
        assert new_job.payload["materialVersion"] == 2
        assert new_job.payload["fileUrl"] == "https://files.example.edu/notes-v2.pdf"

    async def test_unknown_material(self, service):
        with pytest.raises(MaterialNotFoundError):
            await service.replace_file("missing-id", file_url="https://files.example.edu/x.pdf")

    async def test_unsupported_replacement_leaves_material_untouched(self, service, repo):
        material = repo.seed()
        with pytest.raises(UnsupportedFileTypeError):
            await service.replace_file(material.id, file_url="https://files.example.edu/x.exe")
        assert (await repo.get(material.id)).material_version == 1
