"""Chunk processor: one bounded slice of one checkpoint per invocation.

A chain of chunks walks every checkpoint of a job in order. Each
invocation upserts its slice, adds its tallies to the job and then either
dispatches the next slice or completes the job, so at most one chunk of a
job is ever in flight.
"""
import json
import logging
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session
from sqlalchemy.sql import func

from app.models.import_job import ImportJob
from app.models.product_analysis import ProductAnalysis
from app.models.supplier_product import SupplierProduct
from app.services.checkpoints import download_checkpoint_lines
from app.services.field_extractor import derive_reference
from app.services.import_jobs import complete_job, fail_job, get_job, mark_running, record_chunk_progress
from app.services.state_machine import is_terminal_job_status
from app.services.storage import BlobStorage
from app.utils import utcnow

MAX_CHUNK_RETRIES = 3

logger = logging.getLogger(__name__)


@dataclass
class ChunkRequest:
    """Arguments of one chunk invocation; travels as the Celery message body."""

    job_id: str
    checkpoint_path: str
    offset: int = 0
    limit: int = 1000
    correlation_id: Optional[str] = None
    retry_count: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ChunkRequest":
        return cls(
            job_id=data["job_id"],
            checkpoint_path=data["checkpoint_path"],
            offset=int(data.get("offset", 0)),
            limit=int(data.get("limit", 1000)),
            correlation_id=data.get("correlation_id"),
            retry_count=int(data.get("retry_count", 0)),
        )

    def retry(self) -> "ChunkRequest":
        """Same slice, one more attempt."""
        return ChunkRequest(
            self.job_id, self.checkpoint_path, self.offset, self.limit, self.correlation_id, self.retry_count + 1
        )


@dataclass
class ChunkResult:
    status: str  # chained, completed, retry_scheduled, failed, cancelled, ignored
    processed: int = 0
    success_count: int = 0
    matched_count: int = 0
    error_count: int = 0
    skipped_count: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


Dispatcher = Callable[[ChunkRequest], None]


def _insert_for(db: Session):
    if db.get_bind().dialect.name == "sqlite":
        return sqlite.insert
    return postgresql.insert


def upsert_supplier_products(db: Session, user_id: str, supplier_id: str, records: List[dict]) -> int:
    """
    INSERT ... ON CONFLICT (user_id, supplier_id, supplier_reference) DO UPDATE.

    Duplicate references inside the batch collapse to the last occurrence,
    since one statement cannot touch the same conflict key twice.

    Returns:
        Number of distinct rows written
    """
    if not records:
        return 0

    now = utcnow()
    unique: Dict[str, dict] = {}
    for record in records:
        unique[record["supplier_reference"]] = {
            "user_id": user_id,
            "supplier_id": supplier_id,
            "supplier_reference": record["supplier_reference"],
            "name": record.get("product_name") or record["supplier_reference"],
            "ean": record.get("ean"),
            "description": record.get("description"),
            "brand": record.get("brand"),
            "category": record.get("category"),
            "purchase_price": record.get("purchase_price"),
            "stock_quantity": record.get("stock_quantity"),
            "currency": record.get("currency") or "EUR",
            "supplier_url": record.get("supplier_url"),
            "enrichment_status": "pending",
            "enrichment_progress": 0,
            "last_sync_at": now,
        }

    duplicates = len(records) - len(unique)
    if duplicates:
        logger.warning(f"⚠️ Removed {duplicates} duplicate references within batch")

    rows = list(unique.values())
    insert = _insert_for(db)
    stmt = insert(SupplierProduct).values(rows)
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "supplier_id", "supplier_reference"],
        set_={
            "name": stmt.excluded.name,
            "ean": stmt.excluded.ean,
            "description": stmt.excluded.description,
            "brand": stmt.excluded.brand,
            "category": stmt.excluded.category,
            "purchase_price": stmt.excluded.purchase_price,
            "stock_quantity": stmt.excluded.stock_quantity,
            "currency": stmt.excluded.currency,
            "supplier_url": stmt.excluded.supplier_url,
            "last_sync_at": stmt.excluded.last_sync_at,
            "updated_at": func.now(),
        },
    )
    db.execute(stmt)
    db.commit()
    return len(rows)


def sync_product_analyses(db: Session, user_id: str, records: List[dict]) -> Tuple[int, int, int]:
    """
    Match EAN-bearing records against the user's analyses.

    Existing analyses only get their purchase price rewritten when it
    changed; missing ones are inserted in one batch, seeded with basic info.
    Read-then-write: two jobs of the same user sharing an EAN can race.

    Returns:
        (matched, price_updates, inserted)
    """
    by_ean: Dict[str, dict] = {}
    for record in records:
        if record.get("ean"):
            by_ean[record["ean"]] = record
    if not by_ean:
        return 0, 0, 0

    existing = {
        analysis.ean: analysis
        for analysis in db.query(ProductAnalysis).filter(
            ProductAnalysis.user_id == user_id, ProductAnalysis.ean.in_(list(by_ean))
        )
    }

    matched = updated = 0
    inserts = []
    for ean, record in by_ean.items():
        analysis = existing.get(ean)
        price = record.get("purchase_price")
        if analysis is not None:
            matched += 1
            if price is not None and analysis.purchase_price != price:
                analysis.purchase_price = price
                db.commit()
                updated += 1
            continue
        inserts.append(
            ProductAnalysis(
                user_id=user_id,
                ean=ean,
                product_name=record.get("product_name"),
                purchase_price=price,
                analysis_result={
                    "basic_info": {
                        "name": record.get("product_name"),
                        "brand": record.get("brand"),
                        "category": record.get("category"),
                    }
                },
                enrichment_status={},
                image_urls=[],
            )
        )

    if inserts:
        db.add_all(inserts)
        db.commit()
    return matched, updated, len(inserts)


class ChunkProcessor:
    """
    Process one ChunkRequest against the database and blob storage.

    `dispatch` schedules the next (or retried) request asynchronously; in
    production it is a Celery `apply_async`, in tests a list append.
    """

    def __init__(
        self,
        db: Session,
        storage: BlobStorage,
        dispatch: Dispatcher,
        max_retries: int = MAX_CHUNK_RETRIES,
        download_attempts: int = 3,
        download_backoff_seconds: float = 1.0,
    ):
        self.db = db
        self.storage = storage
        self.dispatch = dispatch
        self.max_retries = max_retries
        self.download_attempts = download_attempts
        self.download_backoff_seconds = download_backoff_seconds

    def process(self, request: ChunkRequest) -> ChunkResult:
        """
        Run one chunk, converting any failure into a retry or a failed job.

        Raises:
            JobNotFound: unknown job id (nothing to retry against)
        """
        job = get_job(self.db, request.job_id)
        tag = f"[corr={request.correlation_id or job.correlation_id}]"

        if is_terminal_job_status(job.status):
            logger.info(f"{tag} ⏭️ Job {job.id} already {job.status}, ignoring chunk {request.checkpoint_path}@{request.offset}")
            return ChunkResult(status="ignored")

        try:
            return self._process(job, request, tag)
        except Exception as e:
            self.db.rollback()
            return self._handle_failure(job, request, e, tag)

    def _process(self, job: ImportJob, request: ChunkRequest, tag: str) -> ChunkResult:
        checkpoints = job.checkpoints
        if request.checkpoint_path not in checkpoints:
            raise ValueError(f"Checkpoint {request.checkpoint_path} does not belong to job {job.id}")
        index = checkpoints.index(request.checkpoint_path)

        cursor = (job.job_metadata or {}).get("cursor") or {}
        if (index, request.offset) < (cursor.get("checkpoint_index", 0), cursor.get("offset", 0)):
            resumed = (
                request.retry_count > 0
                and cursor.get("processed_path") == request.checkpoint_path
                and cursor.get("processed_offset") == request.offset
            )
            if not resumed:
                logger.info(f"{tag} ⏭️ Chunk {request.checkpoint_path}@{request.offset} already processed, ignoring")
                return ChunkResult(status="ignored")
            # Slice was counted before the failure; only the continuation is left
            logger.info(f"{tag} 🔁 Chunk {request.checkpoint_path}@{request.offset} already counted, resuming chain")
            return self._continue(job, request, cursor["checkpoint_index"], cursor["offset"], ChunkResult(status="chained"), tag)

        mark_running(self.db, job)
        logger.info(
            f"{tag} 📦 Processing chunk {request.checkpoint_path} offset={request.offset} "
            f"limit={request.limit} (attempt {request.retry_count + 1})"
        )

        lines = download_checkpoint_lines(
            self.storage, request.checkpoint_path, self.download_attempts, self.download_backoff_seconds
        )
        chunk = lines[request.offset:request.offset + request.limit]

        records, errors, skipped = self._parse_lines(chunk)
        imported = upsert_supplier_products(self.db, job.user_id, job.supplier_id, records)
        matched, price_updates, inserted = sync_product_analyses(self.db, job.user_id, records)
        logger.info(
            f"{tag} ✅ Chunk upserted {imported} products; analyses matched={matched}, "
            f"price_updates={price_updates}, inserted={inserted}"
        )

        if request.offset + request.limit < len(lines):
            next_index, next_offset = index, request.offset + request.limit
        else:
            next_index, next_offset = index + 1, 0

        result = ChunkResult(
            status="chained",
            processed=len(chunk),
            success_count=len(records),
            matched_count=matched,
            error_count=errors,
            skipped_count=skipped,
        )
        record_chunk_progress(
            self.db,
            job,
            processed=result.processed,
            imported=result.success_count,
            matched=matched,
            errors=errors,
            skipped=skipped,
            cursor={
                "checkpoint_index": next_index,
                "offset": next_offset,
                "processed_path": request.checkpoint_path,
                "processed_offset": request.offset,
            },
        )
        logger.info(f"{tag} 📊 Progress {job.progress_current}/{job.progress_total}")
        return self._continue(job, request, next_index, next_offset, result, tag)

    @staticmethod
    def _parse_lines(lines: List[str]) -> Tuple[List[dict], int, int]:
        records = []
        errors = skipped = 0
        for line in lines:
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                errors += 1
                continue
            if not isinstance(record, dict):
                errors += 1
                continue
            if not record.get("supplier_reference") and not record.get("product_name"):
                skipped += 1
                continue
            record["supplier_reference"] = derive_reference(
                record.get("supplier_reference"), record.get("ean"), record.get("product_name")
            )
            records.append(record)
        return records, errors, skipped

    def _continue(
        self, job: ImportJob, request: ChunkRequest, next_index: int, next_offset: int, result: ChunkResult, tag: str
    ) -> ChunkResult:
        self.db.refresh(job)
        if job.cancel_requested:
            fail_job(self.db, job, "Cancelled by user")
            result.status = "cancelled"
            return result

        checkpoints = job.checkpoints
        if next_index < len(checkpoints):
            following = ChunkRequest(
                job_id=job.id,
                checkpoint_path=checkpoints[next_index],
                offset=next_offset,
                limit=request.limit,
                correlation_id=request.correlation_id,
                retry_count=0,
            )
            self.dispatch(following)
            logger.info(f"{tag} ⛓️ Chained next chunk {following.checkpoint_path}@{following.offset}")
            return result

        complete_job(self.db, job)
        result.status = "completed"
        return result

    def _handle_failure(self, job: ImportJob, request: ChunkRequest, error: Exception, tag: str) -> ChunkResult:
        logger.error(
            f"{tag} 💥 Chunk {request.checkpoint_path}@{request.offset} failed "
            f"(attempt {request.retry_count + 1}/{self.max_retries + 1}): {error}",
            exc_info=True,
        )
        self.db.refresh(job)
        if is_terminal_job_status(job.status):
            return ChunkResult(status="failed")

        if request.retry_count < self.max_retries:
            job.update_metadata(retry_count=request.retry_count + 1, last_error=str(error))
            self.db.commit()
            try:
                self.dispatch(request.retry())
            except Exception as dispatch_error:
                fail_job(self.db, job, f"Could not schedule retry: {dispatch_error}")
                return ChunkResult(status="failed")
            logger.warning(f"{tag} 🔁 Retry {request.retry_count + 1}/{self.max_retries} scheduled")
            return ChunkResult(status="retry_scheduled")

        fail_job(self.db, job, f"Chunk failed after {self.max_retries} retries: {error}")
        return ChunkResult(status="failed")
