"""Enrichment queue and stage orchestration endpoints."""
import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.api.dependencies import get_stage_runners
from app.auth import get_current_user_id
from app.database import get_db
from app.models.product_analysis import ProductAnalysis
from app.models.supplier_product import SupplierProduct
from app.schemas.enrichment import (
    EnqueueRequest,
    EnqueueResponse,
    ProcessQueueRequest,
    ProcessQueueResponse,
    QueueStatsResponse,
    RunStagesRequest,
    RunStagesResponse,
)
from app.services.enrichment_orchestrator import AnalysisStatusRecorder, EnrichmentOrchestrator, StageContext
from app.services.enrichment_queue import EnrichmentQueue, enqueue_products, queue_stats

router = APIRouter(prefix="/api/enrichment", tags=["enrichment"])

logger = logging.getLogger(__name__)


@router.post("/queue", response_model=EnqueueResponse, status_code=201)
def enqueue(
    request: EnqueueRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Queue products for enrichment by id or by import job."""
    tasks = enqueue_products(
        db,
        user_id,
        supplier_product_ids=request.supplier_product_ids,
        import_job_id=request.import_job_id,
        enrichment_types=request.enrichment_types,
        priority=request.priority,
        max_retries=request.max_retries,
    )
    return EnqueueResponse(queued=len(tasks), task_ids=[task.id for task in tasks])


@router.post("/queue/process", response_model=ProcessQueueResponse)
def process_queue(
    request: ProcessQueueRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    runners=Depends(get_stage_runners),
):
    """Run one scheduling pass over the caller's own tasks instead of waiting for the beat."""
    logger.info(f"⏩ Manual queue pass requested by {user_id}")
    queue = EnrichmentQueue(db, runners.ai, runners.descriptors())
    result = asyncio.run(queue.process(request.max_items, request.parallelism, user_id=user_id))
    return ProcessQueueResponse(**result)


@router.get("/queue/stats", response_model=QueueStatsResponse)
def get_queue_stats(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return QueueStatsResponse(**queue_stats(db, user_id=user_id))


@router.post("/products/{analysis_id}/run", response_model=RunStagesResponse)
async def run_stages(
    analysis_id: int,
    request: RunStagesRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    runners=Depends(get_stage_runners),
):
    """
    Run the selected enrichment stages on one analysis.

    Each stage's status is persisted as it settles; one failing stage never
    stops the others.
    """
    analysis = (
        db.query(ProductAnalysis)
        .filter(ProductAnalysis.id == analysis_id, ProductAnalysis.user_id == user_id)
        .first()
    )
    if not analysis:
        raise HTTPException(status_code=404, detail="Analysis not found")

    product = None
    if analysis.supplier_product_id:
        supplier_product = db.query(SupplierProduct).filter(SupplierProduct.id == analysis.supplier_product_id).first()
        if supplier_product:
            product = supplier_product.to_input()
    if product is None:
        product = {
            "product_name": analysis.product_name,
            "ean": analysis.ean,
            "purchase_price": analysis.purchase_price,
        }

    orchestrator = EnrichmentOrchestrator(runners.descriptors(), listener=AnalysisStatusRecorder(db, analysis))
    outcome = await orchestrator.run(
        StageContext(user_id=user_id, product=product, analysis=analysis, db=db),
        request.stages,
        concurrent=request.concurrent,
    )
    db.commit()

    return RunStagesResponse(
        analysis_id=analysis.id,
        stages={name: result.to_dict() for name, result in outcome.stages.items()},
        succeeded=outcome.succeeded,
        failed=outcome.failed,
        skipped=outcome.skipped,
        progress=outcome.progress,
    )
