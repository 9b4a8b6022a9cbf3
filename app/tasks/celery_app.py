"""Celery application configuration."""
from celery import Celery

from app.config import get_settings

settings = get_settings()

celery_app = Celery(
    "supplier_pipeline",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.tasks.import_tasks", "app.tasks.enrichment_tasks"],
)

celery_app.conf.update(
    task_track_started=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "process-enrichment-queue": {
            "task": "app.tasks.enrichment_tasks.process_enrichment_queue",
            "schedule": 60.0,
            "kwargs": {
                "max_items": settings.enrichment_queue_max_items,
                "parallelism": settings.enrichment_queue_parallelism,
            },
        },
    },
)
