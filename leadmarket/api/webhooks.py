"""Webhook CRUD API endpoints."""
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from leadmarket.api.deps import get_webhook_owner
from leadmarket.database import get_db
from leadmarket.models.webhook import Webhook
from leadmarket.schemas.webhook import (
    WebhookCreate,
    WebhookResponse,
    WebhookTestResponse,
    WebhookUpdate,
)
from leadmarket.services.webhook_service import send_test_event

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _get_owned(db: Session, webhook_id: int, owner_id: str) -> Webhook:
    webhook = (
        db.query(Webhook)
        .filter(Webhook.id == webhook_id, Webhook.owner_id == owner_id)
        .first()
    )
    if not webhook:
        raise HTTPException(status_code=404, detail="Webhook not found")
    return webhook


@router.get("", response_model=List[WebhookResponse])
def list_webhooks(owner_id: str = Depends(get_webhook_owner), db: Session = Depends(get_db)):
    """The caller's registered webhooks, newest first."""
    return (
        db.query(Webhook)
        .filter(Webhook.owner_id == owner_id)
        .order_by(Webhook.created_at.desc(), Webhook.id.desc())
        .all()
    )


@router.post("", response_model=WebhookResponse, status_code=201)
def create_webhook(
    webhook: WebhookCreate,
    owner_id: str = Depends(get_webhook_owner),
    db: Session = Depends(get_db),
):
    db_webhook = Webhook(
        owner_id=owner_id,
        url=webhook.url,
        event_type=webhook.event_type,
        enabled=webhook.enabled,
    )
    db.add(db_webhook)
    db.commit()
    db.refresh(db_webhook)
    return db_webhook


@router.get("/{webhook_id}", response_model=WebhookResponse)
def get_webhook(
    webhook_id: int, owner_id: str = Depends(get_webhook_owner), db: Session = Depends(get_db)
):
    return _get_owned(db, webhook_id, owner_id)


@router.put("/{webhook_id}", response_model=WebhookResponse)
def update_webhook(
    webhook_id: int,
    webhook_update: WebhookUpdate,
    owner_id: str = Depends(get_webhook_owner),
    db: Session = Depends(get_db),
):
    """Update a webhook; only provided fields change."""
    db_webhook = _get_owned(db, webhook_id, owner_id)
    for field, value in webhook_update.model_dump(exclude_none=True).items():
        setattr(db_webhook, field, value)
    db.commit()
    db.refresh(db_webhook)
    return db_webhook


@router.delete("/{webhook_id}", status_code=204)
def delete_webhook(
    webhook_id: int, owner_id: str = Depends(get_webhook_owner), db: Session = Depends(get_db)
):
    db.delete(_get_owned(db, webhook_id, owner_id))
    db.commit()
    return None


@router.post("/{webhook_id}/test", response_model=WebhookTestResponse)
async def test_webhook_endpoint(
    webhook_id: int, owner_id: str = Depends(get_webhook_owner), db: Session = Depends(get_db)
):
    """Send a sample event to the webhook URL and report how it answered."""
    webhook = _get_owned(db, webhook_id, owner_id)
    result = await send_test_event(webhook.url, webhook.event_type)
    return WebhookTestResponse(**result)
