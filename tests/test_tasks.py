"""Tests for the Celery task bodies, run eagerly without a broker."""
import pytest
from conftest import SUPPLIER_MAPPING, USER_ID

from app.models.enrichment_task import EnrichmentTask
from app.models.import_job import ImportJob
from app.models.supplier_product import SupplierProduct
from app.services.enrichment_queue import enqueue_products
from app.services.enrichment_stages import StageRunners
from app.services.import_jobs import create_job
from app.tasks import enrichment_tasks, import_tasks

CSV = b"reference;designation;ean;prix\nREF-1;Lampe;3000000000001;12,50\nREF-2;Casque;;8,00\n"

OPTIONS = {"supplier_id": "sup-1", "column_mapping": SUPPLIER_MAPPING, "delimiter": None, "skip_rows": 0, "has_header_row": True}


@pytest.fixture
def worker(monkeypatch, storage, dispatched):
    """Point the task module at the test storage and capture dispatches."""
    monkeypatch.setattr(import_tasks, "get_storage", lambda: storage)
    monkeypatch.setattr(import_tasks, "dispatch_chunk", dispatched.append)
    return import_tasks


def test_remote_import_then_chunk_tasks(db, storage, dispatched, worker, monkeypatch):
    def fake_fetch(source, target_storage, path):
        target_storage.upload(path, CSV)
        return len(CSV)

    monkeypatch.setattr(worker, "fetch_to_storage", fake_fetch)
    job = create_job(db, USER_ID, "sup-1", {"source_kind": "http"})
    source = {"kind": "http", "url": "https://s.example.com/catalog.csv"}

    result = worker.fetch_remote_import(job.id, USER_ID, source, OPTIONS)

    assert result == {"job_id": job.id, "products_queued": 2}
    assert storage.list(f"{USER_ID}/sources/") == [f"{USER_ID}/sources/{job.id}_catalog.csv"]

    chunk = worker.process_import_chunk(dispatched.pop(0).to_dict())

    assert chunk["status"] == "completed"
    db.expire_all()
    assert db.get(ImportJob, job.id).status == "completed"


def test_remote_import_failure_fails_job(db, worker, monkeypatch):
    def broken_fetch(source, target_storage, path):
        raise ConnectionError("connection refused")

    monkeypatch.setattr(worker, "fetch_to_storage", broken_fetch)
    job = create_job(db, USER_ID, "sup-1", {"source_kind": "ftp"})
    source = {"kind": "ftp", "host": "ftp.example.com", "remote_path": "/out/catalog.csv"}

    with pytest.raises(ConnectionError):
        worker.fetch_remote_import(job.id, USER_ID, source, OPTIONS)

    db.expire_all()
    failed = db.get(ImportJob, job.id)
    assert failed.status == "failed"
    assert "connection refused" in failed.error_message


def test_dispatch_chunk_delays_retries(monkeypatch):
    calls = []
    monkeypatch.setattr(
        import_tasks.process_import_chunk, "apply_async", lambda args, countdown=None: calls.append((args, countdown))
    )

    import_tasks.dispatch_chunk(import_tasks.ChunkRequest(job_id="j", checkpoint_path="p"))
    import_tasks.dispatch_chunk(import_tasks.ChunkRequest(job_id="j", checkpoint_path="p", retry_count=2))

    assert calls[0][1] is None
    assert calls[1][1] == 2 * import_tasks.settings.chunk_retry_delay_seconds
    assert calls[1][0][0]["retry_count"] == 2


def test_enrichment_queue_task(db, fake_ai, monkeypatch):
    monkeypatch.setattr(enrichment_tasks, "default_runners", lambda: StageRunners(fake_ai))
    product = SupplierProduct(user_id=USER_ID, supplier_id="sup-1", supplier_reference="A", name="Lampe", ean="300")
    db.add(product)
    db.commit()
    enqueue_products(db, USER_ID, supplier_product_ids=[product.id], enrichment_types=["categories"])

    result = enrichment_tasks.process_enrichment_queue(max_items=5, parallelism=1)

    assert result["processed"] == 1
    assert result["success"] == 1
    db.expire_all()
    assert db.query(EnrichmentTask).one().status == "completed"
