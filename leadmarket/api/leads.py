"""Lead purchase API endpoints."""
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session

from leadmarket.api.deps import get_current_workspace, get_gateway, http_error
from leadmarket.database import get_db
from leadmarket.errors import ConflictError, LeadMarketError
from leadmarket.models.lead import CanonicalLead
from leadmarket.schemas.lead import (
    ConfirmPurchaseRequest,
    ConfirmPurchaseResponse,
    CreditPurchaseRequest,
    PurchaseIntentResponse,
)
from leadmarket.services.payments import PaymentGateway, from_minor_units
from leadmarket.services.purchase import PurchaseCoordinator, PurchaseOutcome
from leadmarket.services.rate_limiter import RateLimiter, get_purchase_rate_limiter
from leadmarket.services.webhook_service import deliver_event, subscribed_urls

router = APIRouter(prefix="/leads", tags=["purchases"])

logger = logging.getLogger(__name__)


def enforce_purchase_rate_limit(
    workspace_id: str = Depends(get_current_workspace),
    limiter: RateLimiter = Depends(get_purchase_rate_limiter),
) -> str:
    """Count one purchase attempt for the workspace; 429 once over the limit."""
    if not limiter.hit(workspace_id):
        logger.warning(f"Purchase rate limit hit by workspace {workspace_id}")
        raise HTTPException(
            status_code=429,
            detail="Too many purchase attempts, try again shortly",
            headers={"Retry-After": str(limiter.window_seconds)},
        )
    return workspace_id


def _schedule_sale_webhooks(
    background_tasks: BackgroundTasks,
    db: Session,
    lead_id: str,
    workspace_id: str,
    outcome: PurchaseOutcome,
) -> None:
    """Queue ``lead.purchased`` for the buyer and the partner; replays send nothing."""
    if outcome.already_recorded:
        return
    partner_id = db.query(CanonicalLead.partner_id).filter(CanonicalLead.id == lead_id).scalar()
    urls = subscribed_urls(db, [workspace_id, partner_id], "lead.purchased")
    if urls:
        data = {
            "lead_id": lead_id,
            "purchase_id": outcome.purchase_id,
            "buyer_workspace_id": workspace_id,
        }
        background_tasks.add_task(deliver_event, urls, "lead.purchased", data)


def _response(outcome: PurchaseOutcome) -> ConfirmPurchaseResponse:
    return ConfirmPurchaseResponse(
        success=outcome.success,
        purchaseId=outcome.purchase_id,
        alreadyRecorded=True if outcome.already_recorded else None,
    )


@router.post("/{lead_id}/purchase", response_model=PurchaseIntentResponse)
def create_purchase_intent(
    lead_id: str,
    workspace_id: str = Depends(enforce_purchase_rate_limit),
    gateway: PaymentGateway = Depends(get_gateway),
    db: Session = Depends(get_db),
):
    """
    Create a payment intent for one lead.

    The lead is not reserved; ownership only changes on confirmation.
    """
    try:
        intent = PurchaseCoordinator(db, gateway).create_intent(lead_id, workspace_id)
    except LeadMarketError as e:
        raise http_error(e)
    return PurchaseIntentResponse(
        lead_id=lead_id,
        payment_intent_id=intent.id,
        client_secret=intent.client_secret,
        amount=from_minor_units(intent.amount),
        currency=intent.currency,
    )


@router.post("/{lead_id}/confirm-purchase", response_model=ConfirmPurchaseResponse)
def confirm_purchase(
    lead_id: str,
    body: ConfirmPurchaseRequest,
    background_tasks: BackgroundTasks,
    workspace_id: str = Depends(enforce_purchase_rate_limit),
    gateway: PaymentGateway = Depends(get_gateway),
    db: Session = Depends(get_db),
):
    """
    Confirm a paid intent and claim the lead.

    Safe to call more than once with the same intent: replays answer
    ``alreadyRecorded: true``. Losing the lead to another buyer is a 409.
    """
    try:
        outcome = PurchaseCoordinator(db, gateway).confirm(
            lead_id, workspace_id, body.payment_intent_id
        )
    except ConflictError as e:
        raise http_error(e, conflict_status=409)
    except LeadMarketError as e:
        raise http_error(e)

    _schedule_sale_webhooks(background_tasks, db, lead_id, workspace_id, outcome)
    return _response(outcome)


@router.post("/{lead_id}/purchase-with-credits", response_model=ConfirmPurchaseResponse)
def purchase_with_credits(
    lead_id: str,
    background_tasks: BackgroundTasks,
    body: Optional[CreditPurchaseRequest] = None,
    workspace_id: str = Depends(enforce_purchase_rate_limit),
    gateway: PaymentGateway = Depends(get_gateway),
    db: Session = Depends(get_db),
):
    """Buy a lead from the workspace's credit balance."""
    idempotency_key = body.idempotency_key if body else None
    try:
        outcome = PurchaseCoordinator(db, gateway).purchase_with_credits(
            lead_id, workspace_id, idempotency_key
        )
    except LeadMarketError as e:
        raise http_error(e)

    _schedule_sale_webhooks(background_tasks, db, lead_id, workspace_id, outcome)
    return _response(outcome)
