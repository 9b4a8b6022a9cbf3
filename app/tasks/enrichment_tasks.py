"""Celery task driving the enrichment queue."""
import asyncio
import logging
from typing import Optional

from app.database import SessionLocal
from app.services.enrichment_queue import EnrichmentQueue
from app.services.enrichment_stages import default_runners
from app.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True)
def process_enrichment_queue(self, max_items: Optional[int] = None, parallelism: Optional[int] = None) -> dict:
    """One scheduling pass; beat runs it every minute."""
    db = SessionLocal()
    try:
        runners = default_runners()
        queue = EnrichmentQueue(db, runners.ai, runners.descriptors())
        result = asyncio.run(queue.process(max_items, parallelism))
        logger.info(f"🎉 Enrichment queue pass: {result}")
        return result
    finally:
        db.close()
