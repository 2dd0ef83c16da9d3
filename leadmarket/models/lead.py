"""Canonical lead model: the deduplicated lead pool."""
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.sql import func

from leadmarket.database import Base


class CanonicalLead(Base):
    """A deduplicated lead; one row per dedup fingerprint, ever."""

    __tablename__ = "leads"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    dedup_fingerprint = Column(String(64), nullable=False, unique=True)
    partner_id = Column(String(36), ForeignKey("partners.id"), nullable=True, index=True)
    upload_batch_id = Column(String(36), ForeignKey("upload_batches.id"), nullable=True)

    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    job_title = Column(String(200), nullable=True)
    seniority_level = Column(String(20), nullable=True)
    linkedin_url = Column(String(500), nullable=True)
    company_name = Column(String(200), nullable=True)
    company_domain = Column(String(200), nullable=True)
    industry = Column(String(100), nullable=True)
    company_size = Column(String(50), nullable=True)
    city = Column(String(100), nullable=True)
    state = Column(String(2), nullable=True)
    country = Column(String(2), nullable=False, default="US")

    intent_score = Column(Integer, default=0, nullable=False)
    freshness_score = Column(Integer, default=100, nullable=False)
    verification_status = Column(String(20), default="pending", nullable=False)
    price = Column(Numeric(12, 4), nullable=False)

    # available -> sold; the claim is a single conditional UPDATE
    status = Column(String(20), nullable=False, default="available")
    workspace_id = Column(String(36), nullable=True, index=True)
    sold_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_leads_status_industry", "status", "industry"),
    )

    def __repr__(self):
        return f"<CanonicalLead(id='{self.id}', status='{self.status}', price={self.price})>"
