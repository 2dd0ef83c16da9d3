"""Workspace credit endpoints."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from leadmarket.api.deps import get_current_workspace
from leadmarket.database import get_db
from leadmarket.schemas.credits import CreditBalanceResponse, GrantFreeCreditsResponse
from leadmarket.services.credit_ledger import get_balance, grant_free_credits

router = APIRouter(prefix="/credits", tags=["credits"])


@router.post("/grant-free", response_model=GrantFreeCreditsResponse)
def grant_free(
    workspace_id: str = Depends(get_current_workspace),
    db: Session = Depends(get_db),
):
    """
    Grant the free-trial credits.

    Idempotent per workspace: later calls answer ``alreadyGranted: true``
    and change nothing.
    """
    result = grant_free_credits(db, workspace_id)
    return GrantFreeCreditsResponse(alreadyGranted=result.already_granted, credits=result.credits)


@router.get("", response_model=CreditBalanceResponse)
def get_credits(
    workspace_id: str = Depends(get_current_workspace),
    db: Session = Depends(get_db),
):
    return CreditBalanceResponse(workspace_id=workspace_id, balance=get_balance(db, workspace_id))
