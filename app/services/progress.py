"""Import progress published on Redis pub/sub for SSE streaming."""
import json
import logging
from typing import Optional

import redis

from app.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


def progress_channel(job_id: str) -> str:
    return f"import:{job_id}"


def publish_progress(
    job_id: str,
    status: str,
    processed: int,
    total: int,
    imported: int = 0,
    errors: int = 0,
    skipped: int = 0,
    correlation_id: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """
    Publish one progress message for a job.

    Args:
        job_id: Import job ID
        status: Current job status (pending, running, completed, failed)
        processed: progress_current
        total: progress_total
        imported: Products imported so far
        errors: Rows that failed so far
        skipped: Rows skipped so far
        correlation_id: Chain correlation id, for support lookups
        error: Error message (for failed status)
    """
    try:
        redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        message = {
            "job_id": job_id,
            "status": status,
            "processed": processed,
            "total": total,
            "imported": imported,
            "errors": errors,
            "skipped": skipped,
            "correlation_id": correlation_id,
        }
        if error:
            message["error"] = error
        redis_client.publish(progress_channel(job_id), json.dumps(message))
    except Exception as e:
        # Progress is best effort; the job row stays the source of truth
        logger.warning(f"⚠️ Failed to publish progress for job {job_id}: {e}")


def publish_job(job) -> None:
    """Publish the current counters of an ImportJob row."""
    publish_progress(
        job.id,
        job.status,
        job.progress_current,
        job.progress_total,
        imported=job.products_imported,
        errors=job.products_errors,
        skipped=job.products_skipped,
        correlation_id=job.correlation_id,
        error=job.error_message,
    )
