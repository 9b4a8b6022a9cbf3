"""Celery tasks for chunked supplier imports."""
import logging
from typing import Any, Dict

from app.config import get_settings
from app.database import SessionLocal
from app.models.import_job import ImportJob
from app.services.chunk_processor import ChunkProcessor, ChunkRequest
from app.services.import_jobs import fail_job
from app.services.import_service import start_import
from app.services.source_fetchers import RemoteSource, fetch_to_storage, source_path
from app.services.storage import get_storage
from app.tasks.celery_app import celery_app

settings = get_settings()
logger = logging.getLogger(__name__)


def dispatch_chunk(request: ChunkRequest) -> None:
    """Queue one chunk; retries wait longer the more attempts they carry."""
    countdown = settings.chunk_retry_delay_seconds * request.retry_count
    process_import_chunk.apply_async(args=[request.to_dict()], countdown=countdown or None)


@celery_app.task(bind=True)
def process_import_chunk(self, payload: Dict[str, Any]) -> dict:
    """
    Process one chunk of a checkpoint, then chain the next one.

    Failures inside the chunk are turned into a re-dispatch of the same
    chunk (up to `chunk_max_retries`) or a failed job; only an unknown job
    id propagates.

    Args:
        self: Celery task instance
        payload: ChunkRequest as a dict

    Returns:
        ChunkResult as a dict
    """
    request = ChunkRequest.from_dict(payload)
    logger.info(
        f"[corr={request.correlation_id}] 🚀 Chunk task: job_id={request.job_id}, "
        f"checkpoint={request.checkpoint_path}, offset={request.offset}, retry={request.retry_count}"
    )

    db = SessionLocal()
    try:
        processor = ChunkProcessor(
            db,
            get_storage(),
            dispatch_chunk,
            max_retries=settings.chunk_max_retries,
            download_attempts=settings.checkpoint_download_attempts,
            download_backoff_seconds=settings.checkpoint_download_backoff_seconds,
        )
        result = processor.process(request)
        logger.info(f"[corr={request.correlation_id}] 🎉 Chunk task finished: {result.to_dict()}")
        return result.to_dict()
    finally:
        db.close()


@celery_app.task(bind=True)
def fetch_remote_import(self, job_id: str, user_id: str, source: Dict[str, Any], options: Dict[str, Any]) -> dict:
    """
    Download a supplier file from FTP/HTTP into storage and start its import.

    Args:
        self: Celery task instance
        job_id: Pending import job created by the API
        user_id: Owner of the job
        source: RemoteSource fields
        options: supplier_id, column_mapping, delimiter, skip_rows, has_header_row

    Returns:
        {"job_id": ..., "products_queued": ...}
    """
    logger.info(f"📡 Remote import task for job {job_id} ({source.get('kind')})")
    db = SessionLocal()
    try:
        storage = get_storage()
        remote = RemoteSource(**source)
        path = source_path(user_id, job_id, remote.filename)
        fetch_to_storage(remote, storage, path)

        return start_import(
            db,
            storage,
            user_id=user_id,
            supplier_id=options["supplier_id"],
            file_path=path,
            column_mapping=options["column_mapping"],
            delimiter=options.get("delimiter"),
            skip_rows=options.get("skip_rows", 0),
            has_header_row=options.get("has_header_row", True),
            dispatch=dispatch_chunk,
            job_id=job_id,
        )
    except Exception as e:
        logger.error(f"💥 Remote import failed for job {job_id}: {e}", exc_info=True)
        db.rollback()
        job = db.query(ImportJob).filter(ImportJob.id == job_id).first()
        if job:
            fail_job(db, job, f"Failed to fetch supplier file: {e}")
        raise
    finally:
        db.close()
