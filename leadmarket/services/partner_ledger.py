"""Partner ledger: tiers, commission, and payout requests."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leadmarket.errors import (
    LedgerInvariantViolation,
    NotFoundError,
    PaymentProviderError,
    PaymentProviderTimeout,
)
from leadmarket.models.partner import OPEN_PAYOUT_STATUSES, Partner, PayoutRequest
from leadmarket.services.payments import PaymentGateway
from leadmarket.utils import utcnow

FRESH_SALE_BONUS = Decimal("0.10")
FRESH_SALE_DAYS = 7
MAX_COMMISSION_RATE = Decimal("0.50")
MONEY_PLACES = Decimal("0.0001")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Tier:
    """A contiguous lifetime-lead band; ``max_leads`` of None is open-ended."""

    name: str
    min_leads: int
    max_leads: Optional[int]
    rate: Decimal


TIERS = (
    Tier("bronze", 0, 999, Decimal("0.30")),
    Tier("silver", 1000, 4999, Decimal("0.35")),
    Tier("gold", 5000, None, Decimal("0.40")),
)


def tier_for(lifetime_leads: int) -> Tier:
    """
    The tier a partner with ``lifetime_leads`` uploads belongs to.

    A partner sitting exactly on a tier's lower bound is in that tier.
    """
    if lifetime_leads < 0:
        raise ValueError("lifetime_leads cannot be negative")
    for tier in reversed(TIERS):
        if lifetime_leads >= tier.min_leads:
            return tier
    raise ValueError(f"No tier covers {lifetime_leads}")


def calculate_commission(
    price: Decimal,
    lifetime_leads: int,
    lead_created_at: Optional[datetime],
    sold_at: datetime,
) -> tuple[Decimal, Decimal]:
    """
    Commission for one lead sale.

    Returns:
        Tuple of (rate, amount); amount is rounded to 4 places
    """
    rate = tier_for(lifetime_leads).rate
    if lead_created_at is not None and sold_at - lead_created_at <= timedelta(days=FRESH_SALE_DAYS):
        rate += FRESH_SALE_BONUS
    rate = min(rate, MAX_COMMISSION_RATE)
    amount = (Decimal(price) * rate).quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)
    return rate, amount


def credit_commission(db: Session, partner_id: str, amount: Decimal) -> None:
    """Atomically add earned commission to a partner's balance; does not commit."""
    db.execute(
        update(Partner)
        .where(Partner.id == partner_id)
        .values(
            available_balance=Partner.available_balance + amount,
            total_earnings=Partner.total_earnings + amount,
        )
    )


def get_partner(db: Session, partner_id: str) -> Partner:
    partner = db.get(Partner, partner_id)
    if partner is None or not partner.is_active:
        raise NotFoundError("Partner not found")
    return partner


def ledger_summary(partner: Partner) -> dict:
    tier = tier_for(partner.lifetime_leads_uploaded)
    return {
        "partner_id": partner.id,
        "available_balance": partner.available_balance,
        "total_earnings": partner.total_earnings,
        "total_paid_out": partner.total_paid_out,
        "lifetime_leads_uploaded": partner.lifetime_leads_uploaded,
        "tier": tier.name,
        "commission_rate": tier.rate,
        "payout_threshold": partner.payout_threshold,
    }


def request_payout(db: Session, partner_id: str, amount: Decimal) -> PayoutRequest:
    """
    Open a payout request, holding ``amount`` from the available balance.

    A second request while one is open is rejected, not queued; the partial
    unique index on open requests backs this up under concurrency.

    Raises:
        LedgerInvariantViolation: with a specific ``reason`` code
    """
    partner = get_partner(db, partner_id)

    if not partner.stripe_account_id or not partner.stripe_onboarding_complete:
        raise LedgerInvariantViolation(
            "PAYOUT_ACCOUNT_NOT_READY",
            "Connect and finish onboarding a payout account before requesting a payout",
        )
    if amount <= 0:
        raise LedgerInvariantViolation("INVALID_AMOUNT", "Payout amount must be positive")
    if amount < partner.payout_threshold:
        raise LedgerInvariantViolation(
            "BELOW_PAYOUT_THRESHOLD",
            f"Minimum payout is {partner.payout_threshold}",
        )

    open_request = (
        db.query(PayoutRequest)
        .filter(
            PayoutRequest.partner_id == partner_id,
            PayoutRequest.status.in_(OPEN_PAYOUT_STATUSES),
        )
        .first()
    )
    if open_request is not None:
        raise LedgerInvariantViolation(
            "PAYOUT_ALREADY_PENDING", "A payout request is already in progress"
        )

    held = db.execute(
        update(Partner)
        .where(Partner.id == partner_id, Partner.available_balance >= amount)
        .values(available_balance=Partner.available_balance - amount)
    )
    if held.rowcount != 1:
        db.rollback()
        raise LedgerInvariantViolation(
            "INSUFFICIENT_BALANCE", "Payout amount exceeds available balance"
        )

    payout = PayoutRequest(partner_id=partner_id, amount=amount, status="pending")
    db.add(payout)
    try:
        db.commit()
    except IntegrityError:
        # Lost a race with a concurrent request; the hold rolls back with it
        db.rollback()
        raise LedgerInvariantViolation(
            "PAYOUT_ALREADY_PENDING", "A payout request is already in progress"
        )
    db.refresh(payout)
    logger.info(f"Payout {payout.id} requested by partner {partner_id}: {amount}")
    return payout


def reject_payout(db: Session, payout_id: str, reason: str) -> PayoutRequest:
    """
    Reject a pending payout and restore the held amount exactly once.

    A payout that is ``processing`` has a transfer in flight and can only
    be completed; a failed transfer puts it back to ``pending`` first.
    """
    payout = db.get(PayoutRequest, payout_id)
    if payout is None:
        raise NotFoundError("Payout request not found")

    closed = db.execute(
        update(PayoutRequest)
        .where(PayoutRequest.id == payout_id, PayoutRequest.status == "pending")
        .values(status="rejected", rejection_reason=reason, completed_at=utcnow())
    )
    if closed.rowcount != 1:
        db.rollback()
        db.refresh(payout)
        raise LedgerInvariantViolation("PAYOUT_NOT_OPEN", f"Payout is already {payout.status}")

    db.execute(
        update(Partner)
        .where(Partner.id == payout.partner_id)
        .values(available_balance=Partner.available_balance + payout.amount)
    )
    db.commit()
    db.refresh(payout)
    logger.info(f"Payout {payout_id} rejected ({reason}); {payout.amount} restored")
    return payout


def complete_payout(db: Session, payout_id: str, gateway: PaymentGateway) -> PayoutRequest:
    """
    Transfer an open payout to the partner's connected account.

    The transfer is keyed by the payout id, so a retry after a timeout or
    crash cannot pay twice. A timed-out transfer leaves the payout
    ``processing`` (retry only); a refused one returns it to ``pending``.
    """
    payout = db.get(PayoutRequest, payout_id)
    if payout is None:
        raise NotFoundError("Payout request not found")

    claimed = db.execute(
        update(PayoutRequest)
        .where(PayoutRequest.id == payout_id, PayoutRequest.status.in_(OPEN_PAYOUT_STATUSES))
        .values(status="processing")
    )
    db.commit()
    if claimed.rowcount != 1:
        db.refresh(payout)
        raise LedgerInvariantViolation("PAYOUT_NOT_OPEN", f"Payout is already {payout.status}")

    partner = db.get(Partner, payout.partner_id)
    try:
        transfer_id = gateway.create_transfer(
            amount=Decimal(payout.amount),
            destination=partner.stripe_account_id,
            idempotency_key=f"payout-{payout_id}",
            metadata={"partner_id": partner.id, "payout_request_id": payout_id},
        )
    except PaymentProviderTimeout:
        logger.warning(f"Transfer for payout {payout_id} timed out; left processing for retry")
        raise
    except PaymentProviderError:
        db.execute(
            update(PayoutRequest)
            .where(PayoutRequest.id == payout_id, PayoutRequest.status == "processing")
            .values(status="pending")
        )
        db.commit()
        logger.warning(f"Transfer for payout {payout_id} refused; payout back to pending")
        raise

    finished = db.execute(
        update(PayoutRequest)
        .where(PayoutRequest.id == payout_id, PayoutRequest.status == "processing")
        .values(status="completed", stripe_transfer_id=transfer_id, completed_at=utcnow())
    )
    if finished.rowcount != 1:
        db.rollback()
        db.refresh(payout)
        logger.error(
            f"Payout {payout_id} became {payout.status} during transfer {transfer_id}"
        )
        raise LedgerInvariantViolation("PAYOUT_NOT_OPEN", f"Payout is already {payout.status}")

    db.execute(
        update(Partner)
        .where(Partner.id == partner.id)
        .values(total_paid_out=Partner.total_paid_out + payout.amount)
    )
    db.commit()
    db.refresh(payout)
    logger.info(f"Payout {payout_id} completed with transfer {transfer_id}")
    return payout
