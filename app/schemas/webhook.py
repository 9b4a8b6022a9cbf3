"""Webhook request and response schemas."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from app.services.webhook_service import WEBHOOK_EVENTS


class WebhookBase(BaseModel):
    """Base webhook schema."""

    url: str = Field(..., min_length=1, max_length=2048)
    event_type: str = Field(..., min_length=1, max_length=100)
    enabled: bool = True


class WebhookCreate(WebhookBase):
    """Schema for creating a webhook."""

    @field_validator("event_type")
    @classmethod
    def known_event(cls, value: str) -> str:
        if value not in WEBHOOK_EVENTS:
            raise ValueError(f"event_type must be one of {', '.join(WEBHOOK_EVENTS)}")
        return value


class WebhookResponse(WebhookBase):
    """Schema for webhook responses."""

    id: int
    created_at: datetime

    class Config:
        from_attributes = True
