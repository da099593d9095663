"""Durable upload job queue helpers (Redis/RQ)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from redis import Redis
from rq import Queue, Retry
from rq.job import Job
from sqlalchemy import select

from config import settings
from database import async_session_maker
from models.upload_session import UploadSession


UPLOAD_JOB_FUNCTION = "services.upload_jobs.process_upload_job"
IN_PROGRESS_STATUSES = ("uploading", "processing")
TERMINAL_STATUSES = ("completed", "failed")
ACTIVE_JOB_STATUSES = ("queued", "started", "deferred", "scheduled")


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_upload_queue() -> Queue:
    """Return the configured upload queue."""
    return Queue(
        name=settings.UPLOAD_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=settings.UPLOAD_JOB_TIMEOUT_SECONDS,
    )


def upload_job_id(session_id: str) -> str:
    return f"upload:{session_id}"


def retry_intervals() -> List[int]:
    """Exponential backoff: base, 2x base, 4x base, ..."""
    base = max(int(settings.UPLOAD_RETRY_BASE_SECONDS), 1)
    return [base * (2 ** attempt) for attempt in range(max(int(settings.UPLOAD_JOB_MAX_RETRIES), 0))]


def enqueue_upload_job(session_id: str) -> Job:
    """Enqueue an upload job keyed by its session id.

    Re-enqueueing a session whose job is still waiting or running returns the
    existing job instead of creating a second one.
    """
    queue = get_upload_queue()
    job_id = upload_job_id(session_id)
    existing = queue.fetch_job(job_id)
    if existing is not None and existing.get_status(refresh=True) in ACTIVE_JOB_STATUSES:
        return existing

    max_retries = max(int(settings.UPLOAD_JOB_MAX_RETRIES), 0)
    return queue.enqueue(
        UPLOAD_JOB_FUNCTION,
        session_id,
        job_id=job_id,
        retry=Retry(max=max_retries, interval=retry_intervals()) if max_retries else None,
        job_timeout=settings.UPLOAD_JOB_TIMEOUT_SECONDS,
        result_ttl=86400,
        failure_ttl=86400,
    )


def get_queue_stats() -> Dict[str, Any]:
    """Waiting / active / completed / failed counts for the upload queue."""
    queue = get_upload_queue()
    return {
        "queue": queue.name,
        "waiting": queue.count,
        "active": queue.started_job_registry.count,
        "scheduled": queue.scheduled_job_registry.count,
        "completed": queue.finished_job_registry.count,
        "failed": queue.failed_job_registry.count,
    }


async def recover_stalled_uploads(max_age_minutes: int = 120) -> int:
    """Mark stale in-progress upload sessions as failed after restarts/worker interruptions."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(max_age_minutes, 1))
    async with async_session_maker() as db:
        result = await db.execute(
            select(UploadSession).where(
                UploadSession.status.in_(IN_PROGRESS_STATUSES),
                UploadSession.updated_at < cutoff,
            )
        )
        sessions = result.scalars().all()
        for session in sessions:
            session.status = "failed"
            session.error_code = "stalled"
            session.error_message = "Upload processing was interrupted. Please upload the file again."
            session.completed_at = datetime.now(timezone.utc)
        if sessions:
            await db.commit()
        return len(sessions)
