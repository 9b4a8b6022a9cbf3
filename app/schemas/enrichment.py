"""Enrichment queue and orchestrator schemas."""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class EnqueueRequest(BaseModel):
    """Queue products by id, or every product of an import job."""

    supplier_product_ids: Optional[List[int]] = None
    import_job_id: Optional[str] = None
    enrichment_types: Optional[List[str]] = None
    priority: Optional[int] = None
    max_retries: Optional[int] = Field(None, ge=0)

    @model_validator(mode="after")
    def needs_target(self):
        if not self.supplier_product_ids and not self.import_job_id:
            raise ValueError("supplier_product_ids or import_job_id is required")
        return self


class EnqueueResponse(BaseModel):
    queued: int
    task_ids: List[int]


class ProcessQueueRequest(BaseModel):
    max_items: int = Field(50, ge=1, le=500)
    parallelism: int = Field(5, ge=1, le=50)


class ProcessQueueResponse(BaseModel):
    processed: int
    success: int
    errors: int
    recovered: int = 0


class QueueStatsResponse(BaseModel):
    pending: int
    processing: int
    completed: int
    failed: int
    timed_out: int


class RunStagesRequest(BaseModel):
    stages: List[str] = Field(default_factory=lambda: ["categories", "images", "advanced"])
    concurrent: bool = False


class RunStagesResponse(BaseModel):
    analysis_id: int
    stages: Dict[str, Dict[str, Any]]
    succeeded: List[str]
    failed: List[str]
    skipped: List[str]
    progress: int
