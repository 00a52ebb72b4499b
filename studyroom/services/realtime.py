"""
Realtime notifications. Thin wrapper around core.redis.
Typed event helpers for conversion progress.
"""

from ..core.redis import RealtimePublisher
from ..models.conversion_job import ConversionJob


def _job_payload(job: ConversionJob) -> dict:
    return {
        "document_id": job.document_id,
        "job_id": job.id,
        "status": job.status,
        "stage": job.stage,
        "progress": job.progress,
        "total_pages": job.total_pages,
        "processed_pages": job.processed_pages,
        "retry_count": job.retry_count,
    }


async def _notify(publisher: RealtimePublisher, user_id: str, document_id: str, event_type: str, data: dict):
    await publisher.publish(f"document:{document_id}", event_type, data)
    if user_id:
        await publisher.publish(f"user:{user_id}", event_type, data)


# ── Conversion events ────────────────────────────────────────────────

async def conversion_progress(publisher: RealtimePublisher, user_id: str, job: ConversionJob):
    await _notify(publisher, user_id, job.document_id, "conversion.progress", _job_payload(job))


async def conversion_completed(publisher: RealtimePublisher, user_id: str, job: ConversionJob):
    await _notify(publisher, user_id, job.document_id, "conversion.completed", _job_payload(job))


async def conversion_failed(publisher: RealtimePublisher, user_id: str, job: ConversionJob):
    data = _job_payload(job)
    data["error"] = job.error_message
    await _notify(publisher, user_id, job.document_id, "conversion.failed", data)
