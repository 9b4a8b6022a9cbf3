"""Tests for staging imports and the self-chaining chunk processor."""
import pytest
from conftest import SUPPLIER_MAPPING, USER_ID

from app.models.import_job import ImportJob
from app.models.inbox_message import InboxMessage
from app.models.product_analysis import ProductAnalysis
from app.models.supplier_product import SupplierProduct
from app.services.chunk_processor import (
    ChunkProcessor,
    ChunkRequest,
    sync_product_analyses,
    upsert_supplier_products,
)
from app.services.errors import JobNotFound, StorageError
from app.services.import_jobs import request_cancel
from app.services.import_service import detect_file_format, start_import
from app.services.storage import LocalBlobStorage

SOURCE = f"{USER_ID}/sources/supplier.csv"


def upload_rows(storage, rows, path=SOURCE):
    lines = ["reference;designation;ean;prix"]
    lines += [f"REF-{i};Produit {i};{3000000000000 + i};{i},50" for i in range(rows)]
    storage.upload(path, ("\n".join(lines) + "\n").encode("utf-8"))


def stage(db, storage, dispatched, rows=100, batch_size=40, chunk_limit=40, **kwargs):
    upload_rows(storage, rows)
    return start_import(
        db,
        storage,
        user_id=USER_ID,
        supplier_id="sup-1",
        file_path=SOURCE,
        column_mapping=SUPPLIER_MAPPING,
        dispatch=dispatched.append,
        batch_size=batch_size,
        chunk_limit=chunk_limit,
        **kwargs,
    )


def run_chain(processor, dispatched, on_step=None):
    results = []
    while dispatched:
        results.append(processor.process(dispatched.pop(0)))
        if on_step:
            on_step()
    return results


class CheckpointOutage(LocalBlobStorage):
    """Source files stream fine, checkpoint downloads always fail."""

    def download(self, path):
        if "_batch" in path:
            raise StorageError("storage unavailable")
        return super().download(path)


def test_detect_file_format():
    assert detect_file_format("a/b/catalog.NDJSON") == "ndjson"
    assert detect_file_format("a/b/catalog.jsonl") == "ndjson"
    assert detect_file_format("a/b/catalog.csv") == "csv"


def test_start_import_stages_checkpoints(db, storage, dispatched):
    result = stage(db, storage, dispatched)

    job = db.get(ImportJob, result["job_id"])
    assert result["products_queued"] == 100
    assert job.status == "running"
    assert job.progress_total == 100
    assert len(job.checkpoints) == 3
    assert len(dispatched) == 1
    assert dispatched[0].checkpoint_path == job.checkpoints[0]
    assert dispatched[0].offset == 0
    assert dispatched[0].correlation_id == job.correlation_id


def test_chain_imports_every_record(db, storage, dispatched, published):
    result = stage(db, storage, dispatched)
    processor = ChunkProcessor(db, storage, dispatched.append)

    results = run_chain(processor, dispatched)

    job = db.get(ImportJob, result["job_id"])
    assert [r.status for r in results] == ["chained", "chained", "completed"]
    assert job.status == "completed"
    assert job.progress_current == job.progress_total == 100
    assert job.products_imported == 100
    assert db.query(SupplierProduct).count() == 100
    assert db.query(ProductAnalysis).count() == 100
    assert published[-1]["status"] == "completed"


def test_progress_is_monotonic_with_sub_checkpoint_chunks(db, storage, dispatched):
    result = stage(db, storage, dispatched, chunk_limit=25)
    processor = ChunkProcessor(db, storage, dispatched.append)
    job = db.get(ImportJob, result["job_id"])
    seen = []

    results = run_chain(processor, dispatched, on_step=lambda: seen.append(job.progress_current))

    assert len(results) == 5
    assert seen == sorted(seen)
    assert seen[-1] == 100


def test_reimport_matches_existing_analyses(db, storage, dispatched):
    stage(db, storage, dispatched)
    processor = ChunkProcessor(db, storage, dispatched.append)
    run_chain(processor, dispatched)

    second = stage(db, storage, dispatched)
    run_chain(processor, dispatched)

    job = db.get(ImportJob, second["job_id"])
    assert job.status == "completed"
    assert job.products_matched == 100
    assert db.query(SupplierProduct).count() == 100
    assert db.query(ProductAnalysis).count() == 100


def test_empty_file_completes_without_chunks(db, storage, dispatched):
    upload_rows(storage, 0)
    result = start_import(
        db,
        storage,
        user_id=USER_ID,
        supplier_id="sup-1",
        file_path=SOURCE,
        column_mapping=SUPPLIER_MAPPING,
        dispatch=dispatched.append,
    )

    assert result["products_queued"] == 0
    assert dispatched == []
    assert db.get(ImportJob, result["job_id"]).status == "completed"


def test_staging_failure_fails_job(db, storage, dispatched):
    with pytest.raises(StorageError):
        start_import(
            db,
            storage,
            user_id=USER_ID,
            supplier_id="sup-1",
            file_path=f"{USER_ID}/sources/missing.csv",
            column_mapping=SUPPLIER_MAPPING,
            dispatch=dispatched.append,
            job_id="job-missing",
        )

    job = db.get(ImportJob, "job-missing")
    assert job.status == "failed"
    assert "Failed to stage import file" in job.error_message
    assert dispatched == []


def test_retries_are_bounded(db, tmp_path, dispatched):
    storage = CheckpointOutage(tmp_path / "blobs")
    result = stage(db, storage, dispatched)
    processor = ChunkProcessor(db, storage, dispatched.append, max_retries=3, download_attempts=1)

    results = run_chain(processor, dispatched)

    job = db.get(ImportJob, result["job_id"])
    assert [r.status for r in results] == ["retry_scheduled"] * 3 + ["failed"]
    assert job.status == "failed"
    assert f"(correlation id: {job.correlation_id})" in job.error_message
    assert job.progress_current == 0


def test_cancel_stops_the_chain(db, storage, dispatched):
    result = stage(db, storage, dispatched)
    job = db.get(ImportJob, result["job_id"])
    request_cancel(db, job)
    processor = ChunkProcessor(db, storage, dispatched.append)

    results = run_chain(processor, dispatched)

    assert [r.status for r in results] == ["cancelled"]
    assert job.status == "failed"
    assert job.error_message.startswith("Cancelled by user")
    assert job.progress_current == 40


def test_duplicate_delivery_is_ignored(db, storage, dispatched):
    result = stage(db, storage, dispatched)
    processor = ChunkProcessor(db, storage, dispatched.append)
    first = dispatched.pop(0)
    processor.process(first)

    duplicate = processor.process(ChunkRequest.from_dict(first.to_dict()))

    job = db.get(ImportJob, result["job_id"])
    assert duplicate.status == "ignored"
    assert job.products_imported == 40
    assert len(dispatched) == 1


def test_retry_after_counted_slice_only_resumes(db, storage, dispatched):
    result = stage(db, storage, dispatched)
    calls = []

    def flaky_dispatch(request):
        calls.append(request)
        if len(calls) == 1:
            raise RuntimeError("broker unavailable")
        dispatched.append(request)

    processor = ChunkProcessor(db, storage, flaky_dispatch)
    first = processor.process(dispatched.pop(0))
    assert first.status == "retry_scheduled"
    assert dispatched[0].retry_count == 1

    resumed = processor.process(dispatched.pop(0))
    assert resumed.status == "chained"
    assert resumed.processed == 0

    run_chain(processor, dispatched)
    job = db.get(ImportJob, result["job_id"])
    assert job.status == "completed"
    assert job.products_imported == 100
    assert job.progress_current == 100


def test_chunk_for_finished_job_is_ignored(db, storage, dispatched):
    stage(db, storage, dispatched)
    processor = ChunkProcessor(db, storage, dispatched.append)
    first = ChunkRequest.from_dict(dispatched[0].to_dict())
    run_chain(processor, dispatched)

    assert processor.process(first).status == "ignored"


def test_foreign_checkpoint_fails_without_retries(db, storage, dispatched):
    result = stage(db, storage, dispatched)
    processor = ChunkProcessor(db, storage, dispatched.append, max_retries=0)

    outcome = processor.process(ChunkRequest(job_id=result["job_id"], checkpoint_path="other/job_batch0.ndjson"))

    assert outcome.status == "failed"
    assert db.get(ImportJob, result["job_id"]).status == "failed"


def test_unknown_job_raises(db, storage, dispatched):
    processor = ChunkProcessor(db, storage, dispatched.append)
    with pytest.raises(JobNotFound):
        processor.process(ChunkRequest(job_id="nope", checkpoint_path="x"))


def test_inbox_message_follows_job(db, storage, dispatched):
    message = InboxMessage(user_id=USER_ID, attachment_name="supplier.csv")
    db.add(message)
    db.commit()

    stage(db, storage, dispatched, inbox_message_id=message.id)
    assert message.status == "processing"

    run_chain(ChunkProcessor(db, storage, dispatched.append), dispatched)
    db.refresh(message)
    assert message.status == "completed"
    assert message.processed_at is not None


def test_parse_lines_tallies():
    records, errors, skipped = ChunkProcessor._parse_lines(
        ['{"supplier_reference": "A"}', "not json", '{"ean": "123"}', "[1]", '{"product_name": "Lampe"}']
    )

    assert [r["supplier_reference"] for r in records] == ["A", "AUTO_LAMPE"]
    assert errors == 2
    assert skipped == 1


def test_upsert_collapses_batch_duplicates(db):
    written = upsert_supplier_products(
        db,
        USER_ID,
        "sup-1",
        [
            {"supplier_reference": "A", "product_name": "Old"},
            {"supplier_reference": "A", "product_name": "New"},
            {"supplier_reference": "B", "product_name": "Other"},
        ],
    )
    assert written == 2

    upsert_supplier_products(db, USER_ID, "sup-1", [{"supplier_reference": "B", "product_name": "Renamed"}])

    names = {p.supplier_reference: p.name for p in db.query(SupplierProduct)}
    assert names == {"A": "New", "B": "Renamed"}


def test_sync_updates_changed_prices_only(db):
    sync_product_analyses(db, USER_ID, [{"ean": "111", "product_name": "A", "purchase_price": 10.0}])

    matched, updated, inserted = sync_product_analyses(
        db,
        USER_ID,
        [
            {"ean": "111", "purchase_price": 12.0},
            {"ean": "222", "product_name": "B", "purchase_price": 5.0},
            {"supplier_reference": "no-ean"},
        ],
    )

    assert (matched, updated, inserted) == (1, 1, 1)
    analysis = db.query(ProductAnalysis).filter(ProductAnalysis.ean == "111").one()
    assert analysis.purchase_price == 12.0


def test_default_sizes_chain_once_per_checkpoint(db, storage, dispatched):
    result = stage(db, storage, dispatched, rows=2500, batch_size=None, chunk_limit=None)
    processor = ChunkProcessor(db, storage, dispatched.append)

    job = db.get(ImportJob, result["job_id"])
    sizes = [len(storage.download(path).decode("utf-8").splitlines()) for path in job.checkpoints]
    assert sizes == [1000, 1000, 500]

    results = run_chain(processor, dispatched)

    db.expire_all()
    job = db.get(ImportJob, result["job_id"])
    assert [r.status for r in results] == ["chained", "chained", "completed"]
    assert job.progress_current == job.progress_total == 2500
    assert job.status == "completed"


def test_same_supplier_id_is_isolated_per_user(db):
    refs = ["A", "B", "C"]
    upsert_supplier_products(db, "alice", "sup-1", [{"supplier_reference": r, "product_name": f"Alice {r}"} for r in refs])
    written = upsert_supplier_products(
        db, "bob", "sup-1", [{"supplier_reference": r, "product_name": f"Bob {r}"} for r in refs]
    )

    assert written == 3
    alice = db.query(SupplierProduct).filter(SupplierProduct.user_id == "alice").order_by(SupplierProduct.supplier_reference)
    bob = db.query(SupplierProduct).filter(SupplierProduct.user_id == "bob")
    assert [p.name for p in alice] == ["Alice A", "Alice B", "Alice C"]
    assert bob.count() == 3


def test_overflowing_stock_does_not_fail_staging(db, storage, dispatched):
    storage.upload(SOURCE, b"reference;designation;stock\nREF-1;Lampe;1e999\nREF-2;Casque;4\n")

    result = start_import(
        db,
        storage,
        user_id=USER_ID,
        supplier_id="sup-1",
        file_path=SOURCE,
        column_mapping={"supplier_reference": "reference", "product_name": "designation", "stock_quantity": "stock"},
        dispatch=dispatched.append,
    )
    ChunkProcessor(db, storage, dispatched.append).process(dispatched.pop(0))

    db.expire_all()
    assert db.get(ImportJob, result["job_id"]).status == "completed"
    stock = {p.supplier_reference: p.stock_quantity for p in db.query(SupplierProduct)}
    assert stock == {"REF-1": None, "REF-2": 4}
