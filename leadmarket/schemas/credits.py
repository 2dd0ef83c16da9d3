"""Credit ledger schemas."""
from decimal import Decimal

from pydantic import BaseModel


class GrantFreeCreditsResponse(BaseModel):
    """Outcome of the idempotent free-credit grant."""

    alreadyGranted: bool
    credits: Decimal


class CreditBalanceResponse(BaseModel):
    workspace_id: str
    balance: Decimal
