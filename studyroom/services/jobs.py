"""
Conversion job persistence — create/claim, progress, terminal states, metrics.

Session-scoped like the rest of the services. Claiming a document relies on
the UNIQUE active_key column: a second active job for the same document
fails at flush with IntegrityError, which the caller treats as "someone
else is converting it".
"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import NotFoundError
from ..models.base import as_utc, utcnow
from ..models.conversion_job import ConversionJob, ConversionStage, ConversionStatus

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (ConversionStatus.QUEUED, ConversionStatus.PROCESSING)


class JobManager:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ── Lookups ──────────────────────────────────────────────────────

    async def get_job(self, job_id: str) -> ConversionJob:
        result = await self.db.execute(
            select(ConversionJob)
            .where(ConversionJob.id == job_id)
            .execution_options(populate_existing=True)
        )
        job = result.scalar_one_or_none()
        if job is None:
            raise NotFoundError(f"Conversion job {job_id} not found")
        return job

    async def get_active_job(self, document_id: str) -> Optional[ConversionJob]:
        """The queued/processing job for a document, if any."""
        result = await self.db.execute(
            select(ConversionJob)
            .where(
                ConversionJob.document_id == document_id,
                ConversionJob.status.in_(ACTIVE_STATUSES),
            )
            .order_by(ConversionJob.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_latest_job(self, document_id: str) -> Optional[ConversionJob]:
        result = await self.db.execute(
            select(ConversionJob)
            .where(ConversionJob.document_id == document_id)
            .order_by(ConversionJob.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # ── Lifecycle ────────────────────────────────────────────────────

    async def open_job(self, document_id: str) -> ConversionJob:
        """
        Claim a document for conversion with a fresh queued job.

        Failed jobs stay failed: a new request starts a new job with its own
        retry budget. Raises IntegrityError on flush if another active job
        exists for the document.
        """
        job = ConversionJob(
            document_id=document_id,
            status=ConversionStatus.QUEUED,
            stage=ConversionStage.QUEUED,
            progress=0,
            total_pages=0,
            processed_pages=0,
            retry_count=0,
            active_key=document_id,
        )
        self.db.add(job)
        await self.db.flush()
        logger.info("Claimed document %s with job %s", document_id, job.id)
        return job

    async def requeue(self, job_id: str, error_message: str) -> ConversionJob:
        """
        An attempt failed and another one follows: back to queued, counting
        the retry. The job keeps its active_key, so nobody else can claim
        the document in between.
        """
        job = await self.get_job(job_id)
        if ConversionStatus(job.status) is ConversionStatus.PROCESSING:
            job.transition(ConversionStatus.QUEUED)
        job.retry_count += 1
        job.error_message = error_message[:2000]
        await self.db.flush()
        logger.warning("Job %s attempt failed, retry %d queued: %s", job_id, job.retry_count, error_message)
        return job

    async def start(self, job_id: str) -> ConversionJob:
        job = await self.get_job(job_id)
        job.transition(ConversionStatus.PROCESSING)
        job.stage = ConversionStage.DOWNLOADING
        job.progress = 0
        job.processed_pages = 0
        await self.db.flush()
        return job

    async def set_stage(
        self, job_id: str, stage: ConversionStage, total_pages: Optional[int] = None
    ) -> ConversionJob:
        job = await self.get_job(job_id)
        job.stage = stage
        if total_pages is not None:
            job.total_pages = total_pages
        await self.db.flush()
        return job

    async def increment_progress(self, job_id: str) -> ConversionJob:
        """One page done. Single UPDATE so parallel pages never lose a count."""
        await self.db.execute(
            update(ConversionJob)
            .where(ConversionJob.id == job_id, ConversionJob.total_pages > 0)
            .values(
                processed_pages=ConversionJob.processed_pages + 1,
                progress=((ConversionJob.processed_pages + 1) * 100) // ConversionJob.total_pages,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return await self.get_job(job_id)

    async def complete(self, job_id: str) -> ConversionJob:
        job = await self.get_job(job_id)
        job.transition(ConversionStatus.COMPLETED)
        job.error_message = None
        await self.db.flush()
        logger.info("Job %s completed (%d pages)", job_id, job.total_pages)
        return job

    async def fail(self, job_id: str, error_message: str) -> ConversionJob:
        job = await self.get_job(job_id)
        if ConversionStatus(job.status).is_active:
            job.transition(ConversionStatus.FAILED)
        job.error_message = error_message[:2000]
        await self.db.flush()
        logger.error("Job %s failed: %s", job_id, error_message)
        return job

    # ── Reporting ────────────────────────────────────────────────────

    async def get_progress(self, document_id: str) -> Optional[dict]:
        job = await self.get_active_job(document_id) or await self.get_latest_job(document_id)
        if job is None:
            return None
        return {
            "job_id": job.id,
            "document_id": job.document_id,
            "status": ConversionStatus(job.status).value,
            "stage": ConversionStage(job.stage).value,
            "progress": job.progress,
            "message": job.message,
            "total_pages": job.total_pages,
            "processed_pages": job.processed_pages,
            "retry_count": job.retry_count,
            "error_message": job.error_message,
            "started_at": job.started_at,
            "completed_at": job.completed_at,
        }

    async def get_metrics(self) -> dict:
        """Queue depth, active jobs and 24h success/failure rates."""
        counts = await self.db.execute(
            select(ConversionJob.status, func.count())
            .where(ConversionJob.status.in_(ACTIVE_STATUSES))
            .group_by(ConversionJob.status)
        )
        by_status = {ConversionStatus(status): n for status, n in counts.all()}

        since = utcnow() - timedelta(hours=24)
        result = await self.db.execute(
            select(ConversionJob).where(ConversionJob.created_at >= since)
        )
        recent = result.scalars().all()

        completed = [
            j for j in recent
            if j.status is ConversionStatus.COMPLETED and j.started_at and j.completed_at
        ]
        failed = [j for j in recent if j.status is ConversionStatus.FAILED]
        durations = [
            (as_utc(j.completed_at) - as_utc(j.started_at)).total_seconds() * 1000
            for j in completed
        ]
        total = len(recent)

        return {
            "queue_depth": by_status.get(ConversionStatus.QUEUED, 0),
            "active_jobs": by_status.get(ConversionStatus.PROCESSING, 0),
            "recent_jobs": total,
            "success_rate": round(len(completed) / total * 100, 2) if total else 100.0,
            "failure_rate": round(len(failed) / total * 100, 2) if total else 0.0,
            "average_processing_time_ms": round(sum(durations) / len(durations)) if durations else 0,
        }

    # ── Maintenance ──────────────────────────────────────────────────

    async def cleanup_old_jobs(self, older_than_days: int = 7) -> int:
        cutoff = utcnow() - timedelta(days=older_than_days)
        result = await self.db.execute(
            delete(ConversionJob).where(
                ConversionJob.status.in_((ConversionStatus.COMPLETED, ConversionStatus.FAILED)),
                ConversionJob.completed_at < cutoff,
            )
        )
        logger.info("Deleted %d old conversion job(s)", result.rowcount)
        return result.rowcount

    async def fail_stale_jobs(self, max_age_seconds: float) -> list[ConversionJob]:
        """Fail jobs stuck in processing for longer than max_age_seconds."""
        cutoff = utcnow() - timedelta(seconds=max_age_seconds)
        result = await self.db.execute(
            select(ConversionJob).where(
                ConversionJob.status == ConversionStatus.PROCESSING,
                ConversionJob.started_at < cutoff,
            )
        )
        stale = list(result.scalars().all())
        for job in stale:
            job.transition(ConversionStatus.FAILED)
            job.error_message = f"Timed out: still processing after {int(max_age_seconds)}s"
        await self.db.flush()
        if stale:
            logger.warning("Failed %d stale conversion job(s)", len(stale))
        return stale
