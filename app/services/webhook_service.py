"""Webhook service for pipeline event notifications."""
import asyncio
import logging
from typing import Any, Dict

import httpx
from sqlalchemy.orm import Session

from app.models.webhook import Webhook

logger = logging.getLogger(__name__)

# Supported webhook event types
WEBHOOK_EVENTS = [
    "import.started",
    "import.completed",
    "import.failed",
    "enrichment.completed",
    "enrichment.failed",
    "price.drop",
]


def _enabled_webhooks(event_type: str, db: Session) -> list:
    return (
        db.query(Webhook)
        .filter(Webhook.event_type == event_type, Webhook.enabled.is_(True))
        .all()
    )


async def trigger_webhooks(
    event_type: str, payload: Dict[str, Any], db: Session
) -> None:
    """
    Send webhook to all enabled webhooks for this event type.
    Non-blocking, fire-and-forget.

    Args:
        event_type: Type of event (e.g., "import.completed")
        payload: Event data to send
        db: Database session
    """
    webhooks = _enabled_webhooks(event_type, db)
    if not webhooks:
        return

    urls = [webhook.url for webhook in webhooks]
    async with httpx.AsyncClient(timeout=5.0) as client:
        tasks = [_send_webhook(client, url, payload) for url in urls]
        await asyncio.gather(*tasks, return_exceptions=True)


def emit_event(event_type: str, data: Dict[str, Any], db: Session) -> None:
    """Synchronous entry point for worker code that has no running event loop."""
    if not _enabled_webhooks(event_type, db):
        return
    asyncio.run(trigger_webhooks(event_type, {"event": event_type, "data": data}, db))


async def _send_webhook(
    client: httpx.AsyncClient, url: str, payload: Dict[str, Any]
) -> None:
    try:
        await client.post(url, json=payload)
    except Exception as e:
        logger.warning(f"⚠️ Failed to send webhook to {url}: {e}")
