"""Import job lifecycle: creation, progress counters and terminal states."""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from app.models.import_job import ImportJob
from app.models.inbox_message import InboxMessage
from app.services import progress
from app.services.errors import JobNotFound
from app.services.state_machine import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_RUNNING,
    is_terminal_job_status,
    transition_job,
)
from app.services.webhook_service import emit_event
from app.utils import utcnow

logger = logging.getLogger(__name__)


def get_job(db: Session, job_id: str) -> ImportJob:
    job = db.query(ImportJob).filter(ImportJob.id == job_id).first()
    if not job:
        raise JobNotFound(f"Job {job_id} not found")
    return job


def create_job(
    db: Session,
    user_id: str,
    supplier_id: str,
    metadata: dict,
    job_id: Optional[str] = None,
) -> ImportJob:
    """Create a pending job (or reuse a pre-created pending one)."""
    if job_id:
        job = db.query(ImportJob).filter(ImportJob.id == job_id).first()
        if job:
            job.update_metadata(**metadata)
            db.commit()
            return job

    job = ImportJob(user_id=user_id, supplier_id=supplier_id, status=JOB_PENDING, job_metadata=metadata)
    if job_id:
        job.id = job_id
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info(f"🆔 Created import job {job.id} for supplier {supplier_id}")
    return job


def mark_running(db: Session, job: ImportJob) -> None:
    if job.status == JOB_PENDING:
        transition_job(job, JOB_RUNNING)
        db.commit()
        emit_event("import.started", {"job_id": job.id, "supplier_id": job.supplier_id}, db)


def record_chunk_progress(
    db: Session,
    job: ImportJob,
    processed: int,
    imported: int,
    matched: int,
    errors: int,
    skipped: int,
    cursor: dict,
) -> None:
    """
    Add one chunk's tallies to the job counters.

    Read-modify-write on the current row: safe only because a job never has
    more than one chunk in flight.
    """
    db.refresh(job)
    new_current = job.progress_current + processed
    if job.progress_total:
        new_current = min(new_current, job.progress_total)
    job.progress_current = max(job.progress_current, new_current)
    job.products_imported += imported
    job.products_matched += matched
    job.products_errors += errors
    job.products_skipped += skipped
    job.update_metadata(cursor=cursor, retry_count=0, last_chunk_completed_at=utcnow().isoformat())
    db.commit()
    progress.publish_job(job)


def complete_job(db: Session, job: ImportJob) -> None:
    transition_job(job, JOB_COMPLETED)
    db.commit()
    logger.info(
        f"🏁 Import job {job.id} completed: imported={job.products_imported}, "
        f"matched={job.products_matched}, errors={job.products_errors}, skipped={job.products_skipped}"
    )
    propagate_to_inbox(db, job)
    progress.publish_job(job)
    emit_event(
        "import.completed",
        {
            "job_id": job.id,
            "supplier_id": job.supplier_id,
            "total": job.progress_total,
            "imported": job.products_imported,
            "matched": job.products_matched,
            "errors": job.products_errors,
            "skipped": job.products_skipped,
        },
        db,
    )


def fail_job(db: Session, job: ImportJob, message: str) -> bool:
    """Mark a job failed once; returns False when it was already terminal."""
    if is_terminal_job_status(job.status):
        logger.warning(f"⚠️ Job {job.id} already {job.status}, not marking failed")
        return False

    correlation_id = job.correlation_id
    if correlation_id and correlation_id not in message:
        message = f"{message} (correlation id: {correlation_id})"
    transition_job(job, JOB_FAILED)
    job.error_message = message
    db.commit()
    logger.error(f"💥 Import job {job.id} failed: {message}")

    propagate_to_inbox(db, job)
    progress.publish_job(job)
    emit_event("import.failed", {"job_id": job.id, "error": message}, db)
    return True


def request_cancel(db: Session, job: ImportJob) -> ImportJob:
    """Flag a job for cancellation; the next chunk stops the chain."""
    if not is_terminal_job_status(job.status):
        job.cancel_requested = True
        db.commit()
        logger.info(f"🛑 Cancellation requested for job {job.id}")
    return job


def propagate_to_inbox(db: Session, job: ImportJob) -> None:
    """Mirror the job's terminal state on inbox records that started it."""
    messages = db.query(InboxMessage).filter(InboxMessage.import_job_id == job.id).all()
    for message in messages:
        message.status = job.status
        message.error_message = job.error_message
        message.processed_at = utcnow()
    if messages:
        db.commit()
        logger.info(f"📬 Updated {len(messages)} inbox record(s) for job {job.id}")
