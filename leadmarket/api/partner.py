"""Partner ledger, payout and operator payout endpoints."""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from leadmarket.api.deps import get_current_partner, get_gateway, http_error, require_admin
from leadmarket.database import get_db
from leadmarket.errors import LeadMarketError
from leadmarket.models.partner import Partner, PayoutRequest
from leadmarket.schemas.partner import (
    LedgerResponse,
    PayoutRejectRequest,
    PayoutRequestCreate,
    PayoutResponse,
)
from leadmarket.services.credit_ledger import apply_pending_grants
from leadmarket.services.partner_ledger import (
    complete_payout,
    ledger_summary,
    reject_payout,
    request_payout,
)
from leadmarket.services.payments import PaymentGateway
from leadmarket.services.purchase import reconcile_unsettled

router = APIRouter(prefix="/partner", tags=["partner"])
admin_router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])

logger = logging.getLogger(__name__)


@router.get("/ledger", response_model=LedgerResponse)
def get_ledger(partner: Partner = Depends(get_current_partner)):
    """Balance, tier and commission rate for the calling partner."""
    return ledger_summary(partner)


@router.post("/payouts/request", response_model=PayoutResponse, status_code=201)
def create_payout_request(
    body: PayoutRequestCreate,
    partner: Partner = Depends(get_current_partner),
    db: Session = Depends(get_db),
):
    """
    Request a payout of available earnings.

    Refusals come back as 400 with a machine ``reason`` code.
    """
    try:
        return request_payout(db, partner.id, body.amount)
    except LeadMarketError as e:
        raise http_error(e)


@router.get("/payouts", response_model=list[PayoutResponse])
def list_payouts(
    partner: Partner = Depends(get_current_partner),
    db: Session = Depends(get_db),
):
    return (
        db.query(PayoutRequest)
        .filter(PayoutRequest.partner_id == partner.id)
        .order_by(PayoutRequest.created_at.desc())
        .all()
    )


@admin_router.post("/payouts/{payout_id}/reject", response_model=PayoutResponse)
def admin_reject_payout(
    payout_id: str, body: PayoutRejectRequest, db: Session = Depends(get_db)
):
    """Reject an open payout; the held amount returns to the partner's balance."""
    try:
        return reject_payout(db, payout_id, body.reason)
    except LeadMarketError as e:
        raise http_error(e)


@admin_router.post("/payouts/{payout_id}/complete", response_model=PayoutResponse)
def admin_complete_payout(
    payout_id: str,
    gateway: PaymentGateway = Depends(get_gateway),
    db: Session = Depends(get_db),
):
    try:
        return complete_payout(db, payout_id, gateway)
    except LeadMarketError as e:
        raise http_error(e)


@admin_router.post("/reconcile")
def run_reconciliation(db: Session = Depends(get_db)):
    """Run the settlement and credit-grant reconciliation pass now."""
    settled = reconcile_unsettled(db)
    grants = apply_pending_grants(db)
    logger.info(f"Manual reconciliation: {settled} purchases, {grants} grants")
    return {"settled_purchases": settled, "applied_grants": grants}
