"""Marketplace browsing, purchase history and CSV export endpoints."""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session

from leadmarket.api.deps import get_current_workspace, http_error
from leadmarket.database import get_db
from leadmarket.errors import LeadMarketError
from leadmarket.schemas.lead import LeadListResponse, PurchaseSummary
from leadmarket.services.marketplace import (
    export_purchase_csv,
    list_available_leads,
    list_purchases,
)

router = APIRouter(prefix="/marketplace", tags=["marketplace"])


@router.get("/leads", response_model=LeadListResponse)
def browse_leads(
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=200, description="Items per page"),
    industry: Optional[str] = Query(None, description="Filter by industry"),
    state: Optional[str] = Query(None, min_length=2, max_length=2, description="Filter by state"),
    min_intent_score: Optional[int] = Query(None, ge=0, le=100),
    db: Session = Depends(get_db),
):
    """
    Leads currently for sale.

    Contact details stay masked until the lead is purchased.
    """
    return list_available_leads(db, page, page_size, industry, state, min_intent_score)


@router.get("/purchases", response_model=list[PurchaseSummary])
def purchase_history(
    workspace_id: str = Depends(get_current_workspace),
    db: Session = Depends(get_db),
):
    return list_purchases(db, workspace_id)


@router.post("/download/{purchase_id}")
def download_purchase(
    purchase_id: str,
    workspace_id: str = Depends(get_current_workspace),
    db: Session = Depends(get_db),
):
    """CSV export of a completed purchase; 404 for anyone but the buyer."""
    try:
        content = export_purchase_csv(db, purchase_id, workspace_id)
    except LeadMarketError as e:
        raise http_error(e)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="leads-{purchase_id}.csv"'},
    )
