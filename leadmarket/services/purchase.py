"""
Purchase coordinator.

intent_created -> payment_confirmed -> lead_claimed -> commission_settled

The claim is one conditional UPDATE (available -> sold); whichever buyer's
statement lands first wins and every other attempt sees zero rows. The
payment intent id (or a credits idempotency key) is unique on the purchase
row, so replays return the recorded result. Commission settlement runs in
its own transaction keyed by purchase id; a reconciliation pass re-runs it
for any claimed purchase left unsettled.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from leadmarket.config import get_settings
from leadmarket.errors import (
    ConflictError,
    LedgerInvariantViolation,
    NotFoundError,
    PaymentVerificationError,
)
from leadmarket.models.lead import CanonicalLead
from leadmarket.models.partner import Partner, PartnerEarning
from leadmarket.models.purchase import MarketplacePurchase, PurchaseItem
from leadmarket.services.credit_ledger import debit_credits
from leadmarket.services.partner_ledger import calculate_commission, credit_commission
from leadmarket.services.payments import PaymentGateway, PaymentIntent, to_minor_units
from leadmarket.utils import utcnow

LEAD_UNAVAILABLE = "Lead is no longer available"

logger = logging.getLogger(__name__)


@dataclass
class PurchaseOutcome:
    purchase_id: str
    success: bool
    already_recorded: bool = False


def _replay(purchase: MarketplacePurchase) -> PurchaseOutcome:
    """Return what the first confirmation of this purchase returned."""
    if purchase.status == "completed":
        logger.info(f"Replay of completed purchase {purchase.id}")
        return PurchaseOutcome(purchase.id, True, already_recorded=True)
    if purchase.status == "failed":
        raise ConflictError(purchase.error_message or LEAD_UNAVAILABLE)
    raise ConflictError("Purchase confirmation already in progress")


def claim_lead(db: Session, lead_id: str, buyer_workspace_id: str) -> bool:
    """Atomic available -> sold transition; does not commit."""
    result = db.execute(
        update(CanonicalLead)
        .where(CanonicalLead.id == lead_id, CanonicalLead.status == "available")
        .values(status="sold", workspace_id=buyer_workspace_id, sold_at=utcnow())
    )
    return result.rowcount == 1


def settle_purchase(db: Session, purchase_id: str) -> bool:
    """
    Credit partner commission and record the platform fee for a purchase.

    Keyed by purchase id: the settled stamp and every ledger increment
    commit together, so calling this again is a no-op.

    Returns:
        True if this call settled the purchase
    """
    now = utcnow()
    stamped = db.execute(
        update(MarketplacePurchase)
        .where(
            MarketplacePurchase.id == purchase_id,
            MarketplacePurchase.status == "completed",
            MarketplacePurchase.commission_settled_at.is_(None),
        )
        .values(commission_settled_at=now)
    )
    if stamped.rowcount != 1:
        db.rollback()
        return False

    platform_fee = Decimal("0")
    items = db.query(PurchaseItem).filter(PurchaseItem.purchase_id == purchase_id).all()
    for item in items:
        price = Decimal(item.price_at_purchase)
        partner = db.get(Partner, item.partner_id) if item.partner_id else None
        if partner is None:
            platform_fee += price
            continue

        rate, amount = calculate_commission(
            price, partner.lifetime_leads_uploaded, item.lead.created_at, now
        )
        item.commission_rate = rate
        item.commission_amount = amount
        credit_commission(db, partner.id, amount)
        db.add(PartnerEarning(partner_id=partner.id, purchase_item_id=item.id, amount=amount, rate=rate))
        platform_fee += price - amount

    db.execute(
        update(MarketplacePurchase)
        .where(MarketplacePurchase.id == purchase_id)
        .values(platform_fee=platform_fee)
    )
    db.commit()
    logger.info(f"Settled purchase {purchase_id}: platform_fee={platform_fee}")
    return True


def reconcile_unsettled(db: Session) -> int:
    """Settle every completed purchase whose settlement never committed."""
    purchase_ids = [
        pid
        for (pid,) in db.query(MarketplacePurchase.id)
        .filter(
            MarketplacePurchase.status == "completed",
            MarketplacePurchase.commission_settled_at.is_(None),
        )
        .all()
    ]
    settled = 0
    for purchase_id in purchase_ids:
        try:
            if settle_purchase(db, purchase_id):
                settled += 1
        except SQLAlchemyError:
            db.rollback()
            logger.error(f"Reconciliation failed for purchase {purchase_id}", exc_info=True)
    if purchase_ids:
        logger.info(f"Reconciled {settled}/{len(purchase_ids)} unsettled purchases")
    return settled


class PurchaseCoordinator:
    """Drives one buyer's purchase of one lead."""

    def __init__(self, db: Session, gateway: PaymentGateway):
        self.db = db
        self.gateway = gateway

    def _get_lead(self, lead_id: str) -> CanonicalLead:
        lead = self.db.get(CanonicalLead, lead_id)
        if lead is None:
            raise NotFoundError("Lead not found")
        return lead

    def create_intent(self, lead_id: str, buyer_workspace_id: str) -> PaymentIntent:
        """
        Create a payment intent scoped to one lead and one buyer.

        No ownership changes here; a sold lead is refused up front.
        """
        lead = self._get_lead(lead_id)
        if lead.status != "available":
            raise ConflictError(LEAD_UNAVAILABLE)

        price = Decimal(lead.price)
        metadata = {
            "lead_id": lead.id,
            "buyer_workspace_id": buyer_workspace_id,
            "partner_id": lead.partner_id or "",
            "price": str(price),
        }
        return self.gateway.create_payment_intent(
            amount=price,
            currency=get_settings().platform_currency,
            metadata=metadata,
            idempotency_key=f"lead-purchase-{lead.id}-{buyer_workspace_id}-{price}",
        )

    def _verify_intent(self, intent: PaymentIntent, lead_id: str, buyer_workspace_id: str) -> Decimal:
        if not intent.succeeded:
            raise PaymentVerificationError(f"Payment has not succeeded (status: {intent.status})")
        if intent.metadata.get("lead_id") != lead_id:
            raise PaymentVerificationError("Payment intent was created for a different lead")
        if intent.metadata.get("buyer_workspace_id") != buyer_workspace_id:
            raise PaymentVerificationError("Payment intent was created for a different workspace")
        try:
            price = Decimal(intent.metadata.get("price", ""))
        except InvalidOperation:
            raise PaymentVerificationError("Payment intent carries no price")
        if intent.amount < to_minor_units(price):
            raise PaymentVerificationError("Payment amount does not cover the lead price")
        return price

    def confirm(
        self, lead_id: str, buyer_workspace_id: str, payment_intent_id: str
    ) -> PurchaseOutcome:
        """
        Confirm a paid intent: verify, claim the lead, record and settle.

        Raises:
            PaymentProviderTimeout: provider did not answer; nothing changed, retry
            PaymentVerificationError: intent not succeeded or metadata mismatch
            ConflictError: lead already sold to someone else
        """
        # Provider first: a timeout here leaves no local state behind
        intent = self.gateway.retrieve_payment_intent(payment_intent_id)
        price = self._verify_intent(intent, lead_id, buyer_workspace_id)

        existing = (
            self.db.query(MarketplacePurchase)
            .filter(MarketplacePurchase.stripe_payment_intent_id == payment_intent_id)
            .first()
        )
        if existing is not None:
            return _replay(existing)

        lead = self._get_lead(lead_id)
        partner_id = lead.partner_id

        purchase = MarketplacePurchase(
            buyer_workspace_id=buyer_workspace_id,
            status="pending",
            payment_method="stripe",
            stripe_payment_intent_id=payment_intent_id,
            total_price=price,
        )
        self.db.add(purchase)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            existing = (
                self.db.query(MarketplacePurchase)
                .filter(MarketplacePurchase.stripe_payment_intent_id == payment_intent_id)
                .one()
            )
            return _replay(existing)

        if not claim_lead(self.db, lead_id, buyer_workspace_id):
            purchase.status = "failed"
            purchase.error_message = LEAD_UNAVAILABLE
            self.db.commit()
            logger.warning(
                f"Lead {lead_id} already sold; payment {payment_intent_id} "
                f"from workspace {buyer_workspace_id} needs a refund"
            )
            raise ConflictError(LEAD_UNAVAILABLE)

        return self._record_sale(purchase, lead_id, partner_id, price)

    def purchase_with_credits(
        self, lead_id: str, buyer_workspace_id: str, idempotency_key: Optional[str] = None
    ) -> PurchaseOutcome:
        """
        Buy a lead with workspace credits.

        Claim and debit share a transaction: if the balance is short, the
        claim rolls back with it and the lead stays listed.
        """
        if idempotency_key:
            existing = (
                self.db.query(MarketplacePurchase)
                .filter(MarketplacePurchase.idempotency_key == idempotency_key)
                .first()
            )
            if existing is not None:
                if existing.buyer_workspace_id != buyer_workspace_id:
                    raise NotFoundError("Purchase not found")
                return _replay(existing)

        lead = self._get_lead(lead_id)
        partner_id = lead.partner_id
        price = Decimal(lead.price)

        purchase = MarketplacePurchase(
            buyer_workspace_id=buyer_workspace_id,
            status="pending",
            payment_method="credits",
            idempotency_key=idempotency_key,
            total_price=price,
        )
        self.db.add(purchase)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            existing = (
                self.db.query(MarketplacePurchase)
                .filter(MarketplacePurchase.idempotency_key == idempotency_key)
                .one()
            )
            return _replay(existing)

        if not claim_lead(self.db, lead_id, buyer_workspace_id):
            self.db.rollback()
            raise ConflictError(LEAD_UNAVAILABLE)

        if not debit_credits(self.db, buyer_workspace_id, price):
            self.db.rollback()
            raise LedgerInvariantViolation(
                "INSUFFICIENT_CREDITS", f"This lead costs {price} credits"
            )

        return self._record_sale(purchase, lead_id, partner_id, price)

    def _record_sale(
        self,
        purchase: MarketplacePurchase,
        lead_id: str,
        partner_id: Optional[str],
        price: Decimal,
    ) -> PurchaseOutcome:
        self.db.add(
            PurchaseItem(
                purchase_id=purchase.id,
                lead_id=lead_id,
                partner_id=partner_id,
                price_at_purchase=price,
            )
        )
        purchase.status = "completed"
        purchase.completed_at = utcnow()
        self.db.commit()
        purchase_id = purchase.id
        logger.info(f"Lead {lead_id} sold to workspace {purchase.buyer_workspace_id} ({purchase_id})")

        try:
            settle_purchase(self.db, purchase_id)
        except SQLAlchemyError:
            self.db.rollback()
            logger.error(
                f"Settlement failed for purchase {purchase_id}; left for reconciliation",
                exc_info=True,
            )
        return PurchaseOutcome(purchase_id, True)
