"""Start an import: stream the stored supplier file into checkpoints and kick off the chunk chain."""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.config import get_settings
from app.models.inbox_message import InboxMessage
from app.services import progress
from app.services.checkpoints import CheckpointWriter
from app.services.chunk_processor import ChunkRequest, Dispatcher
from app.services.csv_stream import ParseOptions, SupplierFileParser
from app.services.import_jobs import complete_job, create_job, fail_job, mark_running
from app.utils import new_id

settings = get_settings()
logger = logging.getLogger(__name__)

NDJSON_SUFFIXES = (".ndjson", ".jsonl")


def detect_file_format(file_path: str) -> str:
    return "ndjson" if file_path.lower().endswith(NDJSON_SUFFIXES) else "csv"


def start_import(
    db: Session,
    storage,
    *,
    user_id: str,
    supplier_id: str,
    file_path: str,
    column_mapping: Dict[str, Any],
    dispatch: Dispatcher,
    delimiter: Optional[str] = None,
    skip_rows: int = 0,
    has_header_row: Optional[bool] = True,
    file_format: Optional[str] = None,
    correlation_id: Optional[str] = None,
    job_id: Optional[str] = None,
    inbox_message_id: Optional[int] = None,
    chunk_limit: Optional[int] = None,
    batch_size: Optional[int] = None,
) -> dict:
    """
    Parse a stored supplier file into checkpoints and dispatch the first chunk.

    The file is streamed from blob storage, so memory stays bounded by one
    batch plus one partial line. A checkpoint write failure fails the job
    and re-raises.

    Returns:
        {"job_id": ..., "products_queued": <accepted records>}
    """
    correlation_id = correlation_id or new_id()
    file_format = file_format or detect_file_format(file_path)
    limit = chunk_limit or settings.chunk_limit

    job = create_job(
        db,
        user_id,
        supplier_id,
        {
            "source_file": file_path,
            "column_mapping": column_mapping,
            "delimiter": delimiter,
            "skip_rows": skip_rows,
            "has_header_row": has_header_row,
            "file_format": file_format,
            "correlation_id": correlation_id,
            "chunk_limit": limit,
        },
        job_id=job_id,
    )
    tag = f"[corr={correlation_id}]"

    if inbox_message_id is not None:
        message = db.query(InboxMessage).filter(InboxMessage.id == inbox_message_id).first()
        if message:
            message.import_job_id = job.id
            message.status = "processing"
            db.commit()

    parser = SupplierFileParser(
        ParseOptions(
            column_mapping=column_mapping,
            delimiter=delimiter,
            skip_rows=skip_rows,
            has_header_row=has_header_row,
            file_format=file_format,
            default_currency=settings.default_currency,
        )
    )
    writer = CheckpointWriter(storage, user_id, job.id, batch_size or settings.import_batch_size)

    try:
        logger.info(f"{tag} 📖 Streaming {file_path} for job {job.id}")
        mark_running(db, job)
        for record in parser.iter_records(storage.iter_chunks(file_path)):
            writer.add(record)
        checkpoints = writer.close()
    except Exception as e:
        db.rollback()
        db.refresh(job)
        fail_job(db, job, f"Failed to stage import file: {e}")
        raise

    stats = parser.stats
    job.progress_total = stats.accepted
    job.products_skipped = stats.skipped
    job.update_metadata(
        checkpoints=checkpoints,
        detected_delimiter=stats.delimiter,
        headers=stats.headers,
        cursor={"checkpoint_index": 0, "offset": 0},
    )
    db.commit()
    logger.info(
        f"{tag} 🧾 Staged {stats.accepted} records in {len(checkpoints)} checkpoint(s), skipped {stats.skipped}"
    )
    progress.publish_job(job)

    if not checkpoints:
        complete_job(db, job)
    else:
        dispatch(
            ChunkRequest(
                job_id=job.id,
                checkpoint_path=checkpoints[0],
                offset=0,
                limit=limit,
                correlation_id=correlation_id,
            )
        )

    return {"job_id": job.id, "products_queued": stats.accepted}
