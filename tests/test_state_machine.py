"""Tests for job and task status transitions."""
import pytest

from app.models.enrichment_task import EnrichmentTask
from app.models.import_job import ImportJob
from app.services.errors import InvalidTransition
from app.services.state_machine import is_terminal_job_status, transition_job, transition_task


def test_job_lifecycle_stamps_timestamps():
    job = ImportJob(status="pending")

    transition_job(job, "running")
    assert job.status == "running"
    assert job.started_at is not None

    transition_job(job, "completed")
    assert job.completed_at is not None
    assert is_terminal_job_status(job.status)


def test_terminal_job_cannot_move():
    job = ImportJob(status="failed")
    with pytest.raises(InvalidTransition):
        transition_job(job, "completed")
    with pytest.raises(InvalidTransition):
        transition_job(job, "running")


def test_running_job_cannot_go_back_to_pending():
    job = ImportJob(status="running")
    with pytest.raises(InvalidTransition):
        transition_job(job, "pending")


def test_terminal_statuses():
    assert not is_terminal_job_status("pending")
    assert not is_terminal_job_status("running")
    assert is_terminal_job_status("completed")
    assert is_terminal_job_status("failed")


def test_task_retry_cycle():
    task = EnrichmentTask(status="pending")
    transition_task(task, "processing")
    transition_task(task, "pending")
    transition_task(task, "processing")
    transition_task(task, "failed")
    assert task.status == "failed"


def test_task_must_be_claimed_before_completing():
    task = EnrichmentTask(status="pending")
    with pytest.raises(InvalidTransition):
        transition_task(task, "completed")

    task = EnrichmentTask(status="completed")
    with pytest.raises(InvalidTransition):
        transition_task(task, "processing")
