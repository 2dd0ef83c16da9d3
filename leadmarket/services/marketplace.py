"""Marketplace read side: listings, purchase history and CSV export."""
import csv
import logging
import math
from io import StringIO
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from leadmarket.errors import NotFoundError
from leadmarket.models.lead import CanonicalLead
from leadmarket.models.purchase import DownloadAudit, MarketplacePurchase, PurchaseItem

EXPORT_COLUMNS = [
    "Company Name",
    "Domain",
    "Industry",
    "Company Size",
    "City",
    "State",
    "Country",
    "Contact Name",
    "Email",
    "Phone",
    "Job Title",
    "LinkedIn",
    "Intent Score",
    "Freshness Score",
    "Verification Status",
    "Price Paid",
    "Purchase ID",
    "Purchased At",
]

logger = logging.getLogger(__name__)


def mask_email(email: Optional[str]) -> Optional[str]:
    """``jane@acme.io`` -> ``j***@acme.io``"""
    if not email or "@" not in email:
        return None
    local, domain = email.split("@", 1)
    return f"{local[:1]}***@{domain}"


def list_available_leads(
    db: Session,
    page: int = 1,
    page_size: int = 50,
    industry: Optional[str] = None,
    state: Optional[str] = None,
    min_intent_score: Optional[int] = None,
) -> dict:
    """Paginated listing of leads still for sale."""
    query = db.query(CanonicalLead).filter(CanonicalLead.status == "available")

    if industry:
        query = query.filter(func.lower(CanonicalLead.industry) == industry.lower())
    if state:
        query = query.filter(CanonicalLead.state == state.upper())
    if min_intent_score is not None:
        query = query.filter(CanonicalLead.intent_score >= min_intent_score)

    total = query.count()
    offset = (page - 1) * page_size
    leads = (
        query.order_by(CanonicalLead.created_at.desc(), CanonicalLead.id)
        .offset(offset)
        .limit(page_size)
        .all()
    )
    pages = math.ceil(total / page_size) if total > 0 else 1

    items = [
        {
            "id": lead.id,
            "company_name": lead.company_name,
            "company_domain": lead.company_domain,
            "industry": lead.industry,
            "company_size": lead.company_size,
            "job_title": lead.job_title,
            "seniority_level": lead.seniority_level,
            "city": lead.city,
            "state": lead.state,
            "email_masked": mask_email(lead.email),
            "has_phone": bool(lead.phone),
            "intent_score": lead.intent_score,
            "freshness_score": lead.freshness_score,
            "verification_status": lead.verification_status,
            "price": lead.price,
            "created_at": lead.created_at,
        }
        for lead in leads
    ]
    return {"items": items, "total": total, "page": page, "page_size": page_size, "pages": pages}


def list_purchases(db: Session, workspace_id: str) -> list[dict]:
    rows = (
        db.query(MarketplacePurchase, func.count(PurchaseItem.id))
        .outerjoin(PurchaseItem, PurchaseItem.purchase_id == MarketplacePurchase.id)
        .filter(MarketplacePurchase.buyer_workspace_id == workspace_id)
        .group_by(MarketplacePurchase.id)
        .order_by(MarketplacePurchase.created_at.desc())
        .all()
    )
    return [
        {
            "id": purchase.id,
            "status": purchase.status,
            "payment_method": purchase.payment_method,
            "total_price": purchase.total_price,
            "lead_count": count,
            "created_at": purchase.created_at,
            "completed_at": purchase.completed_at,
        }
        for purchase, count in rows
    ]


def export_rows(db: Session, purchase: MarketplacePurchase) -> list[list]:
    """One denormalized row per purchased lead."""
    rows = []
    for item in purchase.items:
        lead: CanonicalLead = item.lead
        contact = " ".join(p for p in (lead.first_name, lead.last_name) if p)
        rows.append(
            [
                lead.company_name or "",
                lead.company_domain or "",
                lead.industry or "",
                lead.company_size or "",
                lead.city or "",
                lead.state or "",
                lead.country or "",
                contact,
                lead.email or "",
                lead.phone or "",
                lead.job_title or "",
                lead.linkedin_url or "",
                lead.intent_score,
                lead.freshness_score,
                lead.verification_status,
                item.price_at_purchase,
                purchase.id,
                purchase.completed_at.isoformat() if purchase.completed_at else "",
            ]
        )
    return rows


def export_purchase_csv(db: Session, purchase_id: str, workspace_id: str) -> str:
    """
    CSV of a completed purchase for its buyer; audits every download.

    Raises:
        NotFoundError: unknown purchase, another buyer's purchase, or not completed
    """
    purchase = (
        db.query(MarketplacePurchase)
        .filter(
            MarketplacePurchase.id == purchase_id,
            MarketplacePurchase.buyer_workspace_id == workspace_id,
            MarketplacePurchase.status == "completed",
        )
        .first()
    )
    if purchase is None:
        raise NotFoundError("Purchase not found")

    rows = export_rows(db, purchase)
    buffer = StringIO()
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_COLUMNS)
    writer.writerows(rows)

    db.add(DownloadAudit(purchase_id=purchase.id, workspace_id=workspace_id, lead_count=len(rows)))
    db.commit()
    logger.info(f"Workspace {workspace_id} downloaded purchase {purchase_id} ({len(rows)} leads)")
    return buffer.getvalue()
