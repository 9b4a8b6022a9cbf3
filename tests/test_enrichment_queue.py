"""Tests for the enrichment queue scheduler."""
import asyncio
from datetime import timedelta

from conftest import USER_ID

from app.models.enrichment_task import EnrichmentTask
from app.models.import_job import ImportJob
from app.models.product_analysis import ProductAnalysis, ProductLink
from app.models.supplier_product import SupplierProduct
from app.models.user_alert import UserAlert
from app.services.enrichment_orchestrator import StageDescriptor, StageResult
from app.services.enrichment_queue import (
    DEFAULT_PRIORITY,
    EAN_PRIORITY,
    EnrichmentQueue,
    enqueue_products,
    queue_stats,
)
from app.utils import utcnow


def add_product(db, reference, ean=None, supplier_id="sup-1"):
    product = SupplierProduct(
        user_id=USER_ID,
        supplier_id=supplier_id,
        supplier_reference=reference,
        name=f"Produit {reference}",
        ean=ean,
        purchase_price=10.0,
    )
    db.add(product)
    db.commit()
    return product


async def categories_ok(context):
    return StageResult("completed", detail={"category": "Maison"})


STAGES = [StageDescriptor("categories", categories_ok)]


def test_enqueue_prioritizes_ean_and_skips_busy_products(db):
    with_ean = add_product(db, "A", ean="3000000000001")
    without_ean = add_product(db, "B")

    tasks = enqueue_products(db, USER_ID, [with_ean.id, without_ean.id])
    again = enqueue_products(db, USER_ID, [with_ean.id, without_ean.id])

    priorities = {task.supplier_product_id: task.priority for task in tasks}
    assert priorities == {with_ean.id: EAN_PRIORITY, without_ean.id: DEFAULT_PRIORITY}
    assert tasks[0].enrichment_type == ["categories", "images", "advanced"]
    assert again == []


def test_enqueue_by_import_job(db):
    add_product(db, "A")
    add_product(db, "B")
    add_product(db, "C", supplier_id="sup-2")
    job = ImportJob(user_id=USER_ID, supplier_id="sup-1", status="completed", job_metadata={})
    db.add(job)
    db.commit()

    tasks = enqueue_products(db, USER_ID, import_job_id=job.id, enrichment_types=["video"], priority=1)

    assert len(tasks) == 2
    assert all(task.import_job_id == job.id and task.priority == 1 for task in tasks)
    assert enqueue_products(db, USER_ID, import_job_id="unknown") == []


def test_successful_task_creates_linked_analysis(db, fake_ai):
    product = add_product(db, "A", ean="3000000000001")
    enqueue_products(db, USER_ID, [product.id], enrichment_types=["categories"])

    result = asyncio.run(EnrichmentQueue(db, fake_ai, STAGES).process(max_items=10, parallelism=2))

    assert result == {"processed": 1, "success": 1, "errors": 0, "recovered": 0}
    task = db.query(EnrichmentTask).one()
    analysis = db.query(ProductAnalysis).one()
    assert task.status == "completed"
    assert task.analysis_id == analysis.id
    assert analysis.ean == "3000000000001"
    assert analysis.analysis_result["basic_info"] == {"name": "Lampe"}
    assert analysis.enrichment_status["categories"]["status"] == "completed"
    assert analysis.enrichment_progress == 100
    assert db.query(ProductLink).filter(ProductLink.supplier_product_id == product.id).count() == 1
    assert product.enrichment_status == "completed"
    assert db.query(UserAlert).filter(UserAlert.alert_type == "enrichment_complete").count() == 1


def test_failing_task_is_retried_then_failed(db, fake_ai):
    product = add_product(db, "A")
    enqueue_products(db, USER_ID, [product.id], max_retries=2)
    fake_ai.fail_on.add("Analyze this supplier product")
    queue = EnrichmentQueue(db, fake_ai, STAGES)

    passes = [asyncio.run(queue.process()) for _ in range(4)]

    task = db.query(EnrichmentTask).one()
    assert [p["errors"] for p in passes] == [1, 1, 1, 0]
    assert task.status == "failed"
    assert task.retry_count == 2
    assert "No JSON" in task.error_message
    assert product.enrichment_status == "failed"
    assert db.query(UserAlert).filter(UserAlert.alert_type == "enrichment_failed").count() == 1


def test_stuck_task_is_recovered_and_reprocessed(db, fake_ai):
    product = add_product(db, "A")
    now = utcnow()
    db.add(
        EnrichmentTask(
            user_id=USER_ID,
            supplier_product_id=product.id,
            enrichment_type=["categories"],
            status="processing",
            started_at=now - timedelta(minutes=30),
            timeout_at=now - timedelta(minutes=20),
            max_retries=1,
        )
    )
    db.commit()
    assert queue_stats(db)["timed_out"] == 1

    result = asyncio.run(EnrichmentQueue(db, fake_ai, STAGES).process())

    task = db.query(EnrichmentTask).one()
    assert result["recovered"] == 1
    assert result["success"] == 1
    assert task.status == "completed"
    assert task.retry_count == 1
    assert "timeout" in task.last_error


def test_stuck_task_without_retries_fails(db, fake_ai):
    product = add_product(db, "A")
    now = utcnow()
    db.add(
        EnrichmentTask(
            user_id=USER_ID,
            supplier_product_id=product.id,
            enrichment_type=["categories"],
            status="processing",
            timeout_at=now - timedelta(minutes=1),
            max_retries=0,
        )
    )
    db.commit()

    result = asyncio.run(EnrichmentQueue(db, fake_ai, STAGES).process())

    assert result == {"processed": 0, "success": 0, "errors": 0, "recovered": 1}
    assert db.query(EnrichmentTask).one().status == "failed"


def test_batches_bound_concurrency(db, fake_ai):
    active = {"now": 0, "max": 0}

    async def slow_stage(context):
        active["now"] += 1
        active["max"] = max(active["max"], active["now"])
        await asyncio.sleep(0.01)
        active["now"] -= 1
        return StageResult("completed")

    ids = [add_product(db, f"P{i}").id for i in range(5)]
    enqueue_products(db, USER_ID, ids, enrichment_types=["categories"])

    result = asyncio.run(
        EnrichmentQueue(db, fake_ai, [StageDescriptor("categories", slow_stage)]).process(parallelism=2)
    )

    assert result["success"] == 5
    assert 1 <= active["max"] <= 2


def test_higher_priority_runs_first(db, fake_ai):
    order = []

    async def record_stage(context):
        order.append(context.product["supplier_reference"])
        return StageResult("completed")

    plain = add_product(db, "PLAIN")
    with_ean = add_product(db, "EAN", ean="3000000000009")
    enqueue_products(db, USER_ID, [plain.id, with_ean.id], enrichment_types=["categories"])

    asyncio.run(EnrichmentQueue(db, fake_ai, [StageDescriptor("categories", record_stage)]).process(parallelism=1))

    assert order == ["EAN", "PLAIN"]


def test_claim_is_exclusive(db, fake_ai):
    product = add_product(db, "A")
    task = enqueue_products(db, USER_ID, [product.id])[0]

    first = EnrichmentQueue(db, fake_ai, STAGES)
    second = EnrichmentQueue(db, fake_ai, STAGES)

    assert first.claim(task) is True
    assert second.claim(task) is False
    assert task.status == "processing"
    assert task.timeout_at > task.started_at


def test_queue_stats(db):
    product = add_product(db, "A")
    other = add_product(db, "B")
    enqueue_products(db, USER_ID, [product.id, other.id])
    db.query(EnrichmentTask).filter(EnrichmentTask.supplier_product_id == other.id).update({"status": "failed"})
    db.commit()

    assert queue_stats(db) == {"pending": 1, "processing": 0, "completed": 0, "failed": 1, "timed_out": 0}
