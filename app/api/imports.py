"""Supplier import API endpoints."""
import asyncio
import json
import logging
from typing import Optional

import redis
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.api.dependencies import get_chunk_dispatcher, get_remote_fetcher
from app.auth import get_current_user_id
from app.config import get_settings
from app.database import get_db
from app.models.import_job import ImportJob
from app.schemas.imports import (
    ChunkRequestSchema,
    ChunkResponse,
    ColumnMapping,
    ImportJobResponse,
    ImportStartResponse,
    RemoteImportRequest,
    RemoteImportResponse,
    parse_column_mapping,
)
from app.services.chunk_processor import ChunkProcessor, ChunkRequest
from app.services.errors import JobNotFound, StorageError
from app.services.import_jobs import create_job, get_job, request_cancel
from app.services.import_service import start_import
from app.services.progress import progress_channel
from app.services.source_fetchers import source_path
from app.services.state_machine import is_terminal_job_status
from app.services.storage import get_storage
from app.utils import new_id

router = APIRouter(prefix="/api/imports", tags=["imports"])

settings = get_settings()
logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = (".csv", ".txt", ".tsv", ".ndjson", ".jsonl")


def _user_job(db: Session, job_id: str, user_id: str) -> ImportJob:
    try:
        job = get_job(db, job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.user_id != user_id:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("", response_model=ImportStartResponse, status_code=202)
def upload_import(
    file: UploadFile = File(...),
    supplier_id: str = Form(...),
    column_mapping: str = Form(...),
    delimiter: Optional[str] = Form(None),
    skip_rows: int = Form(0),
    has_header_row: Optional[bool] = Form(True),
    inbox_message_id: Optional[int] = Form(None),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    storage=Depends(get_storage),
    dispatch=Depends(get_chunk_dispatcher),
):
    """
    Upload a supplier file and start its import.

    The file is stored, streamed into checkpoints of 1000 records and the
    first chunk is dispatched; the remaining work continues in background.
    """
    logger.info(f"📁 Starting supplier upload: filename={file.filename}, supplier={supplier_id}")

    if not file.filename or not file.filename.lower().endswith(ALLOWED_EXTENSIONS):
        logger.warning(f"❌ Invalid file type: {file.filename}")
        raise HTTPException(status_code=400, detail="Only CSV or NDJSON files are allowed")
    if skip_rows < 0:
        raise HTTPException(status_code=400, detail="skip_rows must be >= 0")

    try:
        mapping = ColumnMapping(mapping=parse_column_mapping(column_mapping)).mapping
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    job_id = new_id()
    path = source_path(user_id, job_id, file.filename)
    file.file.seek(0)
    try:
        storage.upload(path, file.file, file.content_type or "text/csv")
        logger.info(f"💾 Stored upload at {path}")
        result = start_import(
            db,
            storage,
            user_id=user_id,
            supplier_id=supplier_id,
            file_path=path,
            column_mapping=mapping,
            delimiter=delimiter or None,
            skip_rows=skip_rows,
            has_header_row=has_header_row,
            dispatch=dispatch,
            job_id=job_id,
            inbox_message_id=inbox_message_id,
        )
    except StorageError as e:
        logger.error(f"💥 Upload failed for job {job_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Upload failed: {e}")

    logger.info(f"🎉 Import {result['job_id']} started with {result['products_queued']} products")
    return ImportStartResponse(**result)


@router.post("/remote", response_model=RemoteImportResponse, status_code=202)
def remote_import(
    request: RemoteImportRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    fetch=Depends(get_remote_fetcher),
):
    """Queue an FTP/HTTP fetch; the import starts once the file is stored."""
    if request.kind == "ftp" and not (request.host and request.remote_path):
        raise HTTPException(status_code=400, detail="FTP sources need host and remote_path")
    if request.kind == "http" and not request.url:
        raise HTTPException(status_code=400, detail="HTTP sources need url")

    job = create_job(
        db,
        user_id,
        request.supplier_id,
        {"source_kind": request.kind, "column_mapping": request.column_mapping},
    )
    source = request.model_dump(
        include={"kind", "url", "host", "port", "username", "password", "remote_path", "use_tls"}
    )
    options = request.model_dump(
        include={"supplier_id", "column_mapping", "delimiter", "skip_rows", "has_header_row"}
    )
    fetch(job.id, user_id, source, options)
    logger.info(f"🚀 Remote fetch queued for job {job.id}")
    return RemoteImportResponse(job_id=job.id, status=job.status)


@router.get("/{job_id}", response_model=ImportJobResponse)
def get_import_status(
    job_id: str, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    """
    Get import job status and progress.

    Polling fallback when Server-Sent Events are not available.
    """
    return _user_job(db, job_id, user_id)


@router.get("/{job_id}/stream")
async def stream_progress(
    job_id: str, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    """
    Server-Sent Events endpoint relaying chunk progress from Redis pub/sub.

    The stream closes once a terminal status is published.
    """
    job = _user_job(db, job_id, user_id)
    initial = {
        "job_id": job.id,
        "status": job.status,
        "processed": job.progress_current,
        "total": job.progress_total,
    }

    async def event_generator():
        yield f"data: {json.dumps(initial)}\n\n"
        if is_terminal_job_status(initial["status"]):
            return

        redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        pubsub = redis_client.pubsub()
        pubsub.subscribe(progress_channel(job_id))

        try:
            while True:
                message = pubsub.get_message(timeout=1.0)

                if message and message["type"] == "message":
                    data = json.loads(message["data"])
                    yield f"data: {json.dumps(data)}\n\n"

                    if is_terminal_job_status(data.get("status")):
                        break

                await asyncio.sleep(0.1)

        except Exception as e:
            logger.warning(f"SSE stream error for job {job_id}: {str(e)}")
            yield f"data: {json.dumps({'status': 'error', 'error': 'Stream error'})}\n\n"

        finally:
            pubsub.unsubscribe(progress_channel(job_id))
            redis_client.close()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


@router.post("/{job_id}/cancel", response_model=ImportJobResponse)
def cancel_import(
    job_id: str, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    """Ask the chain to stop; the next chunk fails the job instead of chaining."""
    job = _user_job(db, job_id, user_id)
    if is_terminal_job_status(job.status):
        raise HTTPException(status_code=409, detail=f"Job already {job.status}")
    return request_cancel(db, job)


@router.post("/{job_id}/chunks", response_model=ChunkResponse)
def process_chunk(
    job_id: str,
    chunk: ChunkRequestSchema,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    storage=Depends(get_storage),
    dispatch=Depends(get_chunk_dispatcher),
):
    """Run one chunk synchronously (the chain's re-entry point)."""
    job = _user_job(db, job_id, user_id)
    processor = ChunkProcessor(
        db,
        storage,
        dispatch,
        max_retries=settings.chunk_max_retries,
        download_attempts=settings.checkpoint_download_attempts,
        download_backoff_seconds=settings.checkpoint_download_backoff_seconds,
    )
    request = ChunkRequest(
        job_id=job.id,
        checkpoint_path=chunk.checkpoint_path,
        offset=chunk.offset,
        limit=chunk.limit,
        correlation_id=chunk.correlation_id or job.correlation_id,
        retry_count=chunk.retry_count,
    )
    return ChunkResponse(**processor.process(request).to_dict())
