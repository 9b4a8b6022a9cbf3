"""Enrichment queue scheduler.

One pass: recover tasks whose worker vanished, claim up to `max_items`
pending tasks by (priority desc, created_at asc) and process them in
batches of `parallelism`; batch i+1 starts only after batch i settled.

All tasks of a pass share one Session on one event loop, so every write is
committed before the next await.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import get_settings
from app.models.enrichment_task import EnrichmentTask
from app.models.import_job import ImportJob
from app.models.product_analysis import ProductAnalysis, ProductLink
from app.models.supplier_product import SupplierProduct
from app.services.enrichment_orchestrator import (
    AnalysisStatusRecorder,
    EnrichmentOrchestrator,
    StageContext,
    StageDescriptor,
)
from app.services.enrichment_stages import analyze_product
from app.services.notifications import create_alert
from app.services.state_machine import (
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_PENDING,
    TASK_PROCESSING,
    transition_task,
)
from app.services.webhook_service import trigger_webhooks
from app.utils import utcnow

settings = get_settings()
logger = logging.getLogger(__name__)

EAN_PRIORITY = 10
DEFAULT_PRIORITY = 5


def enqueue_products(
    db: Session,
    user_id: str,
    supplier_product_ids: Optional[List[int]] = None,
    import_job_id: Optional[str] = None,
    enrichment_types: Optional[List[str]] = None,
    priority: Optional[int] = None,
    max_retries: Optional[int] = None,
) -> List[EnrichmentTask]:
    """
    Create pending tasks for products, or for every product of an import's supplier.

    Products that already have a pending or processing task are left alone.
    EAN-bearing products get a higher priority unless one is given.
    """
    query = db.query(SupplierProduct).filter(SupplierProduct.user_id == user_id)
    if supplier_product_ids:
        query = query.filter(SupplierProduct.id.in_(supplier_product_ids))
    elif import_job_id:
        job = db.query(ImportJob).filter(ImportJob.id == import_job_id, ImportJob.user_id == user_id).first()
        if job is None:
            return []
        query = query.filter(SupplierProduct.supplier_id == job.supplier_id)
    else:
        return []

    products = query.order_by(SupplierProduct.id).all()
    busy = {
        row.supplier_product_id
        for row in db.query(EnrichmentTask.supplier_product_id).filter(
            EnrichmentTask.supplier_product_id.in_([product.id for product in products]),
            EnrichmentTask.status.in_([TASK_PENDING, TASK_PROCESSING]),
        )
    }

    tasks = []
    for product in products:
        if product.id in busy:
            continue
        tasks.append(
            EnrichmentTask(
                user_id=user_id,
                supplier_product_id=product.id,
                import_job_id=import_job_id,
                enrichment_type=list(enrichment_types or settings.enrichment_default_types),
                priority=priority if priority is not None else (EAN_PRIORITY if product.ean else DEFAULT_PRIORITY),
                status=TASK_PENDING,
                max_retries=settings.enrichment_default_max_retries if max_retries is None else max_retries,
            )
        )
    db.add_all(tasks)
    db.commit()
    logger.info(f"📥 Queued {len(tasks)} enrichment task(s) for user {user_id} ({len(busy)} already queued)")
    return tasks


def queue_stats(db: Session, now: Optional[datetime] = None, user_id: Optional[str] = None) -> Dict[str, int]:
    """Counts per status plus processing tasks already past their timeout, optionally for one user."""
    now = now or utcnow()
    counts_query = db.query(EnrichmentTask.status, func.count(EnrichmentTask.id))
    stuck_query = db.query(EnrichmentTask).filter(
        EnrichmentTask.status == TASK_PROCESSING, EnrichmentTask.timeout_at < now
    )
    if user_id is not None:
        counts_query = counts_query.filter(EnrichmentTask.user_id == user_id)
        stuck_query = stuck_query.filter(EnrichmentTask.user_id == user_id)
    counts = dict(counts_query.group_by(EnrichmentTask.status).all())
    stats = {status: counts.get(status, 0) for status in (TASK_PENDING, TASK_PROCESSING, TASK_COMPLETED, TASK_FAILED)}
    stats["timed_out"] = stuck_query.count()
    return stats


class EnrichmentQueue:
    def __init__(
        self,
        db: Session,
        ai,
        stages: Iterable[StageDescriptor],
        timeout_minutes: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.ai = ai
        self.stages = list(stages)
        self.timeout_minutes = timeout_minutes or settings.enrichment_task_timeout_minutes
        self.clock = clock

    async def process(
        self, max_items: Optional[int] = None, parallelism: Optional[int] = None, user_id: Optional[str] = None
    ) -> dict:
        """
        Run one scheduling pass, over every user or only `user_id`.

        Returns:
            {"processed": claimed tasks, "success": ..., "errors": ..., "recovered": timed-out tasks handled}
        """
        max_items = max_items or settings.enrichment_queue_max_items
        parallelism = max(1, parallelism or settings.enrichment_queue_parallelism)

        recovered = await self.recover_timed_out(user_id)
        pending = self.db.query(EnrichmentTask).filter(EnrichmentTask.status == TASK_PENDING)
        if user_id is not None:
            pending = pending.filter(EnrichmentTask.user_id == user_id)
        tasks = (
            pending
            .order_by(EnrichmentTask.priority.desc(), EnrichmentTask.created_at.asc(), EnrichmentTask.id.asc())
            .limit(max_items)
            .all()
        )
        logger.info(f"🗂️ Found {len(tasks)} pending enrichment task(s)")

        success = errors = 0
        for start in range(0, len(tasks), parallelism):
            batch = tasks[start:start + parallelism]
            logger.info(f"⚙️ Processing batch {start // parallelism + 1} ({len(batch)} tasks)")
            outcomes = await asyncio.gather(*(self._process_task(task) for task in batch), return_exceptions=True)
            for task, outcome in zip(batch, outcomes):
                if outcome is True:
                    success += 1
                elif outcome is False:
                    errors += 1
                elif isinstance(outcome, Exception):
                    errors += 1
                    logger.error(f"💥 Task {task.id} escaped its failure handling: {outcome}")

        logger.info(f"🏁 Queue pass done: {success} succeeded, {errors} failed, {recovered} recovered")
        return {"processed": success + errors, "success": success, "errors": errors, "recovered": recovered}

    async def recover_timed_out(self, user_id: Optional[str] = None) -> int:
        """Treat processing tasks past `timeout_at` as failed attempts."""
        query = self.db.query(EnrichmentTask).filter(
            EnrichmentTask.status == TASK_PROCESSING, EnrichmentTask.timeout_at < self.clock()
        )
        if user_id is not None:
            query = query.filter(EnrichmentTask.user_id == user_id)
        stuck = query.all()
        for task in stuck:
            logger.warning(f"⏰ Task {task.id} exceeded its timeout, recovering")
            await self._fail(task, f"Task timeout after {self.timeout_minutes} minutes (worker lost)")
        return len(stuck)

    def claim(self, task: EnrichmentTask) -> bool:
        """Conditional pending -> processing move; False when another worker won."""
        now = self.clock()
        claimed = (
            self.db.query(EnrichmentTask)
            .filter(EnrichmentTask.id == task.id, EnrichmentTask.status == TASK_PENDING)
            .update(
                {
                    EnrichmentTask.status: TASK_PROCESSING,
                    EnrichmentTask.started_at: now,
                    EnrichmentTask.timeout_at: now + timedelta(minutes=self.timeout_minutes),
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        self.db.refresh(task)
        return claimed == 1

    async def _process_task(self, task: EnrichmentTask) -> Optional[bool]:
        if not self.claim(task):
            logger.info(f"⏭️ Task {task.id} claimed elsewhere, skipping")
            return None

        try:
            await asyncio.wait_for(self._execute(task), timeout=self.timeout_minutes * 60)
            return True
        except asyncio.TimeoutError:
            self.db.rollback()
            await self._fail(task, f"Task timeout after {self.timeout_minutes} minutes")
            return False
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Enrichment task {task.id} failed: {e}")
            await self._fail(task, str(e) or e.__class__.__name__)
            return False

    async def _execute(self, task: EnrichmentTask) -> None:
        product = self.db.get(SupplierProduct, task.supplier_product_id)
        if product is None:
            raise LookupError(f"Supplier product {task.supplier_product_id} not found")

        product_input = product.to_input()
        product.enrichment_status = "processing"
        self.db.commit()
        logger.info(f"🧠 Analyzing '{product_input['product_name']}' for task {task.id}")

        analysis_data = await analyze_product(self.ai, product_input)
        analysis = self._store_analysis(task, product, analysis_data)

        orchestrator = EnrichmentOrchestrator(self.stages, AnalysisStatusRecorder(self.db, analysis))
        context = StageContext(user_id=task.user_id, product=product_input, analysis=analysis, db=self.db)
        result = await orchestrator.run(context, task.enrichment_type or [], concurrent=True)

        transition_task(task, TASK_COMPLETED)
        task.completed_at = self.clock()
        product.enrichment_status = "completed"
        product.enrichment_progress = 100
        self.db.commit()
        logger.info(f"✅ Task {task.id} completed (failed stages: {result.failed})")

        create_alert(
            self.db,
            task.user_id,
            "enrichment_complete",
            "Enrichment completed",
            f'Product "{product_input["product_name"]}" was enriched',
            {"supplier_product_id": product.id, "analysis_id": analysis.id, "failed_stages": result.failed},
        )
        await trigger_webhooks(
            "enrichment.completed",
            {
                "event": "enrichment.completed",
                "data": {"task_id": task.id, "analysis_id": analysis.id, "stages": result.to_dict()},
            },
            self.db,
        )

    def _store_analysis(self, task: EnrichmentTask, product: SupplierProduct, analysis_data: dict) -> ProductAnalysis:
        """Reuse the user's analysis for this EAN or create one, then link it to the product."""
        analysis = None
        if product.ean:
            analysis = (
                self.db.query(ProductAnalysis)
                .filter(ProductAnalysis.user_id == task.user_id, ProductAnalysis.ean == product.ean)
                .first()
            )
        if analysis is None:
            analysis = ProductAnalysis(
                user_id=task.user_id,
                ean=product.ean,
                analysis_result={},
                enrichment_status={},
                image_urls=[],
            )
            self.db.add(analysis)

        result = dict(analysis.analysis_result or {})
        result.update(analysis_data)
        analysis.analysis_result = result
        analysis.product_name = product.name
        analysis.purchase_price = product.purchase_price
        analysis.supplier_product_id = product.id
        self.db.commit()

        linked = (
            self.db.query(ProductLink)
            .filter(ProductLink.supplier_product_id == product.id, ProductLink.analysis_id == analysis.id)
            .first()
        )
        if linked is None:
            self.db.add(
                ProductLink(
                    supplier_product_id=product.id,
                    analysis_id=analysis.id,
                    link_type="enrichment",
                    confidence_score=1.0,
                    created_by=task.user_id,
                )
            )
        task.analysis_id = analysis.id
        self.db.commit()
        return analysis

    async def _fail(self, task: EnrichmentTask, message: str) -> None:
        """Back to pending while retries remain, otherwise failed for good."""
        self.db.refresh(task)
        if task.status != TASK_PROCESSING:
            return

        if task.retry_count < task.max_retries:
            transition_task(task, TASK_PENDING)
            task.retry_count += 1
            task.last_error = message
            task.started_at = None
            task.timeout_at = None
            self.db.commit()
            logger.warning(f"🔁 Task {task.id} will retry ({task.retry_count}/{task.max_retries}): {message}")
            return

        transition_task(task, TASK_FAILED)
        task.error_message = message
        task.last_error = message
        task.completed_at = self.clock()
        product = self.db.get(SupplierProduct, task.supplier_product_id)
        if product is not None:
            product.enrichment_status = "failed"
        self.db.commit()
        logger.error(f"💥 Task {task.id} failed permanently after {task.retry_count} retries: {message}")

        create_alert(
            self.db,
            task.user_id,
            "enrichment_failed",
            "Enrichment failed",
            message,
            {"supplier_product_id": task.supplier_product_id, "task_id": task.id},
            priority="high",
        )
        await trigger_webhooks(
            "enrichment.failed",
            {"event": "enrichment.failed", "data": {"task_id": task.id, "error": message}},
            self.db,
        )
