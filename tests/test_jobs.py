from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from studyroom.core.errors import InvalidTransitionError
from studyroom.models.base import utcnow
from studyroom.models.conversion_job import ConversionStage, ConversionStatus
from studyroom.services.jobs import JobManager


@pytest.fixture
async def document(create_document):
    return await create_document(upload=False)


async def _open(database, document_id):
    async with database.session() as session:
        return await JobManager(session).open_job(document_id)


async def test_open_job_creates_queued_job_holding_the_document(database, document):
    job = await _open(database, document.id)

    assert job.status is ConversionStatus.QUEUED
    assert job.stage is ConversionStage.QUEUED
    assert job.active_key == document.id
    assert job.retry_count == 0


async def test_second_active_job_is_rejected_by_the_database(database, document):
    await _open(database, document.id)

    with pytest.raises(IntegrityError):
        await _open(database, document.id)

    async with database.session() as session:
        active = await JobManager(session).get_active_job(document.id)
    assert active is not None


async def test_lifecycle_and_atomic_progress(database, document):
    job = await _open(database, document.id)

    async with database.session() as session:
        jobs = JobManager(session)
        await jobs.start(job.id)
        await jobs.set_stage(job.id, ConversionStage.RENDERING, total_pages=4)
        await jobs.increment_progress(job.id)
        job = await jobs.increment_progress(job.id)

    assert job.status is ConversionStatus.PROCESSING
    assert job.started_at is not None
    assert job.processed_pages == 2
    assert job.progress == 50

    async with database.session() as session:
        job = await JobManager(session).complete(job.id)

    assert job.status is ConversionStatus.COMPLETED
    assert job.progress == 100
    assert job.processed_pages == 4
    assert job.active_key is None
    assert job.completed_at is not None


async def test_illegal_transitions_raise(database, document):
    job = await _open(database, document.id)

    async with database.session() as session:
        with pytest.raises(InvalidTransitionError):
            await JobManager(session).complete(job.id)


async def test_failed_job_is_final_and_a_new_request_gets_a_new_job(database, document):
    job = await _open(database, document.id)
    async with database.session() as session:
        jobs = JobManager(session)
        await jobs.start(job.id)
        failed = await jobs.fail(job.id, "storage unavailable")

    assert failed.status is ConversionStatus.FAILED
    assert failed.error_message == "storage unavailable"
    assert failed.active_key is None
    with pytest.raises(InvalidTransitionError):
        failed.transition(ConversionStatus.QUEUED)

    fresh = await _open(database, document.id)
    assert fresh.id != job.id
    assert fresh.status is ConversionStatus.QUEUED
    assert fresh.retry_count == 0


async def test_requeued_job_keeps_the_document_claimed(database, document):
    job = await _open(database, document.id)
    async with database.session() as session:
        jobs = JobManager(session)
        await jobs.start(job.id)
        requeued = await jobs.requeue(job.id, "render crashed")

    assert requeued.status is ConversionStatus.QUEUED
    assert requeued.active_key == document.id
    assert requeued.retry_count == 1
    assert requeued.error_message == "render crashed"

    with pytest.raises(IntegrityError):
        await _open(database, document.id)

    async with database.session() as session:
        restarted = await JobManager(session).start(job.id)
    assert restarted.status is ConversionStatus.PROCESSING
    assert restarted.retry_count == 1


async def test_metrics(database, create_document):
    done_doc = await create_document(upload=False)
    failed_doc = await create_document(upload=False)
    queued_doc = await create_document(upload=False)

    for doc, outcome in ((done_doc, "complete"), (failed_doc, "fail")):
        job = await _open(database, doc.id)
        async with database.session() as session:
            jobs = JobManager(session)
            await jobs.start(job.id)
            if outcome == "complete":
                await jobs.complete(job.id)
            else:
                await jobs.fail(job.id, "boom")
    await _open(database, queued_doc.id)

    async with database.session() as session:
        metrics = await JobManager(session).get_metrics()

    assert metrics["queue_depth"] == 1
    assert metrics["active_jobs"] == 0
    assert metrics["recent_jobs"] == 3
    assert metrics["success_rate"] == pytest.approx(33.33)
    assert metrics["failure_rate"] == pytest.approx(33.33)


async def test_fail_stale_and_cleanup(database, document):
    job = await _open(database, document.id)
    async with database.session() as session:
        jobs = JobManager(session)
        started = await jobs.start(job.id)
        started.started_at = utcnow() - timedelta(hours=1)

    async with database.session() as session:
        stale = await JobManager(session).fail_stale_jobs(max_age_seconds=600)

    assert [j.id for j in stale] == [job.id]

    async with database.session() as session:
        jobs = JobManager(session)
        job = await jobs.get_job(job.id)
        assert job.status is ConversionStatus.FAILED
        assert "Timed out" in job.error_message
        job.completed_at = utcnow() - timedelta(days=10)

    async with database.session() as session:
        assert await JobManager(session).cleanup_old_jobs(older_than_days=7) == 1
