"""Webhook request and response schemas."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from leadmarket.services.webhook_service import WEBHOOK_EVENTS


def _check_event_type(value: Optional[str]) -> Optional[str]:
    if value is not None and value not in WEBHOOK_EVENTS:
        raise ValueError(f"event_type must be one of: {', '.join(WEBHOOK_EVENTS)}")
    return value


class WebhookCreate(BaseModel):
    """Register an endpoint for one event type."""

    url: str = Field(..., min_length=1, max_length=2048, pattern=r"^https?://")
    event_type: str
    enabled: bool = True

    @field_validator("event_type")
    @classmethod
    def check_event_type(cls, value: Optional[str]) -> Optional[str]:
        return _check_event_type(value)


class WebhookUpdate(BaseModel):
    """Partial update of a webhook."""

    url: Optional[str] = Field(None, min_length=1, max_length=2048, pattern=r"^https?://")
    event_type: Optional[str] = None
    enabled: Optional[bool] = None

    @field_validator("event_type")
    @classmethod
    def check_event_type(cls, value: Optional[str]) -> Optional[str]:
        return _check_event_type(value)


class WebhookResponse(BaseModel):
    id: int
    owner_id: str
    url: str
    event_type: str
    enabled: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class WebhookTestResponse(BaseModel):
    """Response from a test delivery."""

    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    response_time: Optional[float] = None
