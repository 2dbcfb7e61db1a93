"""
Pipeline Tests — OperatorControls
═════════════════════════════════
Coverage targets:
  ✅ force_reprocess        → reset from any state, idempotent while waiting
  ✅ requeue_pending/failed → per-item results, broker failure isolated
  ✅ queue inspection       → counts, failed jobs, retry, clean
  ✅ segments_view / processing_status / clear_cache
  ✅ derived artifact cache → trusted only at the current material_version
"""

from __future__ import annotations

import pytest

from materialflow.core.exceptions import JobNotFoundError, MalformedJobError, MaterialNotFoundError
from materialflow.pipeline.operator import OperatorControls
from materialflow.pipeline.staleness import envelope_for
from materialflow.pipeline.state import ProcessingStatus as S
from materialflow.processing.segmentation import Segment
from materialflow.queue.base import JobState


@pytest.fixture
def operator(repo, job_queue) -> OperatorControls:
    return OperatorControls(repo, job_queue)


@pytest.mark.pipeline
class TestForceReprocess:

    async def test_completed_material_is_reset_and_enqueued(self, operator, repo, job_queue):
        material = repo.seed(processing_status=S.COMPLETED, indexed_version=1, content="old")

        result = await operator.force_reprocess(material.id)

        assert result.previous_status == "completed"
        assert result.material_version == 1
        stored = await repo.get(material.id)
        assert stored.processing_status is S.PENDING
        assert stored.indexed_version is None
        assert stored.content is None
        job = await job_queue.get_job(result.job_id)
        assert job.state is JobState.WAITING
        assert job.payload["materialVersion"] == 1

    async def test_repeated_calls_return_the_waiting_job(self, operator, repo, job_queue):
        material = repo.seed(processing_status=S.FAILED, error_message="extracting: boom")

        first = await operator.force_reprocess(material.id)
        second = await operator.force_reprocess(material.id)

        assert first.job_id == second.job_id
        assert len(job_queue.waiting_for(material.id)) == 1
        assert (await repo.get(material.id)).error_message is None

    async def test_active_material_loses_its_owner(self, operator, repo):
        material = repo.seed(processing_status=S.CLEANING, processing_job_id="job-running")
        await operator.force_reprocess(material.id)
        assert (await repo.get(material.id)).processing_job_id is None

    async def test_unknown_material(self, operator):
        with pytest.raises(MaterialNotFoundError):
            await operator.force_reprocess("missing")


@pytest.mark.pipeline
class TestBulkRequeue:

    async def test_requeue_pending_enqueues_each_once(self, operator, repo, job_queue):
        queued = repo.seed()
        existing = await job_queue.enqueue(envelope_for(queued))
        orphan = repo.seed()
        repo.seed(processing_status=S.COMPLETED, indexed_version=1)

        report = await operator.requeue_pending()

        assert report.total == 2
        assert {i.material_id for i in report.requeued} == {queued.id, orphan.id}
        by_id = {i.material_id: i.job_id for i in report.requeued}
        assert by_id[queued.id] == existing.id
        assert len(job_queue.jobs) == 2

    async def test_requeue_failed_clears_errors(self, operator, repo, job_queue):
        failed = repo.seed(processing_status=S.FAILED, error_message="cleaning: bad page")

        report = await operator.requeue_failed()

        assert [i.material_id for i in report.requeued] == [failed.id]
        assert report.requeued[0].previous_status == "failed"
        stored = await repo.get(failed.id)
        assert stored.processing_status is S.PENDING
        assert stored.error_message is None
        assert job_queue.waiting_for(failed.id)

    async def test_broker_failure_is_reported_not_raised(self, operator, repo, job_queue):
        repo.seed()
        repo.seed()
        job_queue.unavailable = True

        report = await operator.requeue_pending()

        assert report.requeued == []
        assert len(report.failed) == 2
        assert report.to_dict()["failed"] == 2

    async def test_requeue_stale_uses_monitor(self, repo, job_queue):
        from datetime import datetime, timedelta, timezone

        from materialflow.pipeline.staleness import StalenessMonitor

        now = datetime(2024, 9, 2, 10, 0, tzinfo=timezone.utc)
        monitor = StalenessMonitor(repo, job_queue, clock=lambda: now, default_minutes=30)
        operator = OperatorControls(repo, job_queue, monitor=monitor)
        stuck = repo.seed(processing_status=S.EXTRACTING, updated_at=now - timedelta(hours=2))

        report = await operator.requeue_stale()
        counts = await operator.stuck_counts()

        assert [i.material_id for i in report.requeued] == [stuck.id]
        assert counts.pending == 1
        assert counts.stale == 0


@pytest.mark.pipeline
class TestQueueInspection:

    async def _failed_job(self, repo, job_queue):
        material = repo.seed()
        job = await job_queue.enqueue(envelope_for(material))
        await job_queue.dequeue(job.id, job.payload)
        await job_queue.fail(job.id, "extracting: corrupt pdf")
        return job

    async def test_counts_and_failed_jobs(self, operator, repo, job_queue):
        failed = await self._failed_job(repo, job_queue)
        await job_queue.enqueue(envelope_for(repo.seed()))

        counts = await operator.queue_counts()
        assert (counts.waiting, counts.failed) == (1, 1)

        [listed] = await operator.failed_jobs()
        assert listed.id == failed.id
        assert listed.failed_reason == "extracting: corrupt pdf"
        assert listed.attempt_history[0]["attempt"] == 1

    async def test_retry_failed_keeps_history(self, operator, repo, job_queue):
        failed = await self._failed_job(repo, job_queue)

        [retried] = await operator.retry_failed_jobs()

        assert retried.id == failed.id
        assert retried.state is JobState.WAITING
        assert retried.attempts_made == 0
        assert len(retried.attempt_history) == 1

    async def test_clear_failed_and_completed(self, operator, repo, job_queue):
        await self._failed_job(repo, job_queue)
        done = await job_queue.enqueue(envelope_for(repo.seed()))
        await job_queue.dequeue(done.id, done.payload)
        await job_queue.ack(done.id, {"status": "completed"})

        assert await operator.clear_failed_jobs() == 1
        assert await operator.clear_completed_jobs() == 1
        assert job_queue.jobs == {}

    async def test_job_detail(self, operator, repo, job_queue):
        failed = await self._failed_job(repo, job_queue)
        assert (await operator.job_detail(failed.id)).state is JobState.FAILED
        with pytest.raises(JobNotFoundError):
            await operator.job_detail("nope")

    async def test_malformed_payload_is_failed_on_dequeue(self, job_queue):
        with pytest.raises(MalformedJobError):
            await job_queue.dequeue("job-x", {"materialId": "m-1"})
        job = await job_queue.get_job("job-x")
        assert job.state is JobState.FAILED
        assert "Malformed" in job.failed_reason


@pytest.mark.pipeline
class TestMaterialInspection:

    async def test_segments_view(self, operator, repo):
        material = repo.seed(processing_status=S.COMPLETED, indexed_version=1)
        repo.segments[material.id] = [
            Segment(segment_index=0, text="A" * 300, char_start=0, char_end=300, token_count=75,
                    page_start=1, page_end=1, heading="INTRO"),
            Segment(segment_index=1, text="B" * 40, char_start=300, char_end=340, token_count=10,
                    page_start=2, page_end=2),
        ]

        view = await operator.segments_view(material.id)

        assert view["segmentCount"] == 2
        assert view["totalTokens"] == 85
        assert view["processingStatus"] == "completed"
        assert len(view["segments"][0]["preview"]) == 200
        assert view["segments"][0]["heading"] == "INTRO"
        assert view["segments"][1]["pageStart"] == 2

    async def test_processing_status_for_failed_material(self, operator, repo):
        material = repo.seed(processing_status=S.FAILED, error_message="extracting: corrupt")

        status = await operator.processing_status(material.id)

        assert status["status"] == "pending"
        assert status["processingStatus"] == "failed"
        assert status["canRetry"] is True
        assert status["isReady"] is False
        assert status["errorMessage"] == "extracting: corrupt"

    async def test_processing_status_for_ready_material(self, operator, repo):
        material = repo.seed(processing_status=S.COMPLETED, indexed_version=1, page_count=3)

        status = await operator.processing_status(material.id)

        assert status["status"] == "ready"
        assert status["isReady"] is True
        assert status["errorMessage"] is None
        assert status["pageCount"] == 3

    async def test_clear_cache(self, operator, repo):
        material = repo.seed(processing_status=S.COMPLETED, indexed_version=1)
        repo.materials[material.id].artifacts["summary"] = "Cells make energy."
        repo.materials[material.id].artifact_versions["summary"] = 1

        await operator.clear_cache(material.id)

        stored = await repo.get(material.id)
        assert stored.cached_artifact("summary") is None

    async def test_clear_cache_unknown_material(self, operator):
        with pytest.raises(MaterialNotFoundError):
            await operator.clear_cache("missing")


@pytest.mark.pipeline
class TestArtifactCache:

    async def test_artifact_is_trusted_only_at_current_version(self, repo, job_queue):
        from materialflow.services.ingestion import MaterialIngestionService

        material = repo.seed(processing_status=S.COMPLETED, indexed_version=1)
        repo.materials[material.id].artifacts["quiz"] = {"questions": 5}
        repo.materials[material.id].artifact_versions["quiz"] = 1
        assert (await repo.get(material.id)).cached_artifact("quiz") == {"questions": 5}

        await MaterialIngestionService(repo, job_queue).replace_file(
            material.id, file_url="https://files.example.edu/v2.pdf",
        )

        stored = await repo.get(material.id)
        assert stored.artifacts["quiz"] == {"questions": 5}
        assert stored.cached_artifact("quiz") is None

    def test_unknown_artifact_name(self, repo):
        material = repo.seed()
        with pytest.raises(KeyError):
            repo.materials[material.id].cached_artifact("mind_map")
