"""Checkpoint batches: immutable NDJSON blobs of normalized records."""
import json
import logging
import re
from typing import List, Optional

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_incrementing

from app.services.errors import CheckpointDownloadError, StorageError
from app.services.field_extractor import SupplierRecord
from app.services.storage import BlobStorage

BATCH_SIZE = 1000

_SEQUENCE = re.compile(r"_batch(\d+)\.ndjson$")

logger = logging.getLogger(__name__)


def checkpoint_path(user_id: str, job_id: str, sequence: int) -> str:
    return f"{user_id}/{job_id}_batch{sequence}.ndjson"


def checkpoint_sequence(path: str) -> int:
    match = _SEQUENCE.search(path)
    if not match:
        raise ValueError(f"Not a checkpoint path: {path}")
    return int(match.group(1))


def list_checkpoints(storage: BlobStorage, user_id: str, job_id: str) -> List[str]:
    """Rebuild a job's checkpoint list from storage, in batch order."""
    names = [name for name in storage.list(f"{user_id}/{job_id}_batch") if _SEQUENCE.search(name)]
    return sorted(names, key=checkpoint_sequence)


class CheckpointWriter:
    """
    Accumulate records and persist every `batch_size` of them as one blob.

    A storage failure propagates and aborts the import; already written
    checkpoints are left alone.
    """

    def __init__(self, storage: BlobStorage, user_id: str, job_id: str, batch_size: int = BATCH_SIZE):
        self.storage = storage
        self.user_id = user_id
        self.job_id = job_id
        self.batch_size = batch_size
        self.checkpoints: List[str] = []
        self.record_count = 0
        self._batch: List[SupplierRecord] = []

    def add(self, record: SupplierRecord) -> Optional[str]:
        """Buffer a record; returns the checkpoint path when a batch was flushed."""
        self._batch.append(record)
        self.record_count += 1
        if len(self._batch) >= self.batch_size:
            return self.flush()
        return None

    def flush(self) -> Optional[str]:
        if not self._batch:
            return None

        path = checkpoint_path(self.user_id, self.job_id, len(self.checkpoints))
        body = "\n".join(json.dumps(record.to_dict(), ensure_ascii=False) for record in self._batch)
        self.storage.upload(path, (body + "\n").encode("utf-8"), "application/x-ndjson")
        logger.info(f"💾 Wrote checkpoint {path} ({len(self._batch)} records)")

        self.checkpoints.append(path)
        self._batch = []
        return path

    def close(self) -> List[str]:
        """Flush the final (possibly short) batch and return every checkpoint path."""
        self.flush()
        return list(self.checkpoints)


def download_checkpoint_lines(
    storage: BlobStorage, path: str, attempts: int = 3, backoff_seconds: float = 1.0
) -> List[str]:
    """
    Download a checkpoint and split it into non-empty lines.

    Transient storage failures are retried with linear backoff
    (backoff, 2*backoff, ...) before CheckpointDownloadError is raised.
    """
    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_incrementing(start=backoff_seconds, increment=backoff_seconds),
        retry=retry_if_exception_type(StorageError),
        reraise=True,
    )
    try:
        for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(f"🔁 Retrying checkpoint download {path} (attempt {attempt.retry_state.attempt_number}/{attempts})")
                data = storage.download(path)
    except StorageError as e:
        raise CheckpointDownloadError(f"Could not download checkpoint {path} after {attempts} attempts: {e}") from e

    return [line for line in data.decode("utf-8", errors="replace").split("\n") if line.strip()]
