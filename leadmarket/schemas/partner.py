"""Partner ledger and payout schemas."""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class PayoutRequestCreate(BaseModel):
    """Partner's request to withdraw earnings."""

    amount: Decimal = Field(..., gt=0, decimal_places=4)


class PayoutRejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class PayoutResponse(BaseModel):
    """A payout request as stored."""

    id: str
    partner_id: str
    amount: Decimal
    status: str
    rejection_reason: Optional[str] = None
    stripe_transfer_id: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class LedgerResponse(BaseModel):
    """Partner balance, tier and commission rate."""

    partner_id: str
    available_balance: Decimal
    total_earnings: Decimal
    total_paid_out: Decimal
    lifetime_leads_uploaded: int
    tier: str
    commission_rate: Decimal
    payout_threshold: Decimal
