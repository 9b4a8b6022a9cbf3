"""Legal status transitions for import jobs and enrichment tasks.

Both entities are mutated by independent invocations that only share the
database, so every status write goes through these helpers. An illegal move
(for example completing a job that already failed) raises InvalidTransition
instead of silently resurrecting the row.
"""
from app.models.enrichment_task import EnrichmentTask
from app.models.import_job import ImportJob
from app.services.errors import InvalidTransition
from app.utils import utcnow

JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

JOB_TRANSITIONS = {
    JOB_PENDING: {JOB_RUNNING, JOB_COMPLETED, JOB_FAILED},
    JOB_RUNNING: {JOB_COMPLETED, JOB_FAILED},
    JOB_COMPLETED: set(),
    JOB_FAILED: set(),
}

TASK_PENDING = "pending"
TASK_PROCESSING = "processing"
TASK_COMPLETED = "completed"
TASK_FAILED = "failed"

TASK_TRANSITIONS = {
    TASK_PENDING: {TASK_PROCESSING},
    TASK_PROCESSING: {TASK_COMPLETED, TASK_PENDING, TASK_FAILED},
    TASK_COMPLETED: set(),
    TASK_FAILED: set(),
}


def is_terminal_job_status(status: str) -> bool:
    return not JOB_TRANSITIONS.get(status)


def transition_job(job: ImportJob, target: str) -> None:
    """Move a job to `target`, stamping started/completed timestamps."""
    current = job.status or JOB_PENDING
    if target not in JOB_TRANSITIONS.get(current, set()):
        raise InvalidTransition("ImportJob", current, target)

    job.status = target
    now = utcnow()
    if target == JOB_RUNNING and job.started_at is None:
        job.started_at = now
    if target in (JOB_COMPLETED, JOB_FAILED):
        job.completed_at = now


def transition_task(task: EnrichmentTask, target: str) -> None:
    """Move a task to `target`. Timestamps are owned by the queue scheduler."""
    current = task.status or TASK_PENDING
    if target not in TASK_TRANSITIONS.get(current, set()):
        raise InvalidTransition("EnrichmentTask", current, target)
    task.status = target
