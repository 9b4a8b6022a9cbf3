"""Webhook API endpoints."""
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.auth import get_current_user_id
from app.database import get_db
from app.models.webhook import Webhook
from app.schemas.webhook import WebhookCreate, WebhookResponse

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _user_webhook(db: Session, webhook_id: int, user_id: str) -> Webhook:
    webhook = db.query(Webhook).filter(Webhook.id == webhook_id, Webhook.user_id == user_id).first()
    if not webhook:
        raise HTTPException(status_code=404, detail="Webhook not found")
    return webhook


@router.get("", response_model=List[WebhookResponse])
def list_webhooks(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """
    List the caller's webhooks.

    Returns all configured webhooks with their settings.
    """
    return (
        db.query(Webhook)
        .filter(Webhook.user_id == user_id)
        .order_by(Webhook.created_at.desc(), Webhook.id.desc())
        .all()
    )


@router.post("", response_model=WebhookResponse, status_code=201)
def create_webhook(
    webhook: WebhookCreate, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)
):
    """
    Create a new webhook.

    Subscribes a URL to one pipeline event (import.*, enrichment.*, price.drop).
    """
    db_webhook = Webhook(
        user_id=user_id, url=webhook.url, event_type=webhook.event_type, enabled=webhook.enabled
    )
    db.add(db_webhook)
    db.commit()
    db.refresh(db_webhook)

    return db_webhook


@router.get("/{webhook_id}", response_model=WebhookResponse)
def get_webhook(webhook_id: int, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    return _user_webhook(db, webhook_id, user_id)


@router.delete("/{webhook_id}", status_code=204)
def delete_webhook(webhook_id: int, user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """
    Delete a webhook.

    Args:
        webhook_id: ID of the webhook to delete
    """
    webhook = _user_webhook(db, webhook_id, user_id)
    db.delete(webhook)
    db.commit()

    return None
