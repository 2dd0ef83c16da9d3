"""Partner ledger, payout request and earning models."""
import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.sql import func

from leadmarket.config import get_settings
from leadmarket.database import Base

OPEN_PAYOUT_STATUSES = ("pending", "processing")


class Partner(Base):
    """A lead supplier and its commission ledger."""

    __tablename__ = "partners"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    available_balance = Column(Numeric(12, 4), default=0, nullable=False)
    total_earnings = Column(Numeric(12, 4), default=0, nullable=False)
    total_paid_out = Column(Numeric(12, 4), default=0, nullable=False)
    lifetime_leads_uploaded = Column(Integer, default=0, nullable=False)
    payout_threshold = Column(
        Numeric(12, 4),
        default=lambda: get_settings().default_payout_threshold,
        nullable=False,
    )

    stripe_account_id = Column(String(255), nullable=True)
    stripe_onboarding_complete = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )


class PayoutRequest(Base):
    """A partner's request to withdraw part of its available balance."""

    __tablename__ = "payout_requests"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    partner_id = Column(String(36), ForeignKey("partners.id"), nullable=False)
    amount = Column(Numeric(12, 4), nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # pending, processing, completed, rejected
    rejection_reason = Column(Text, nullable=True)
    stripe_transfer_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        # At most one open request per partner, enforced by the database
        Index(
            "uq_payout_requests_open_per_partner",
            "partner_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'processing')"),
            sqlite_where=text("status IN ('pending', 'processing')"),
        ),
    )


class PartnerEarning(Base):
    """Audit row for one settled commission; unique per purchase item."""

    __tablename__ = "partner_earnings"

    id = Column(Integer, primary_key=True, index=True)
    partner_id = Column(String(36), ForeignKey("partners.id"), nullable=False, index=True)
    purchase_item_id = Column(
        Integer, ForeignKey("marketplace_purchase_items.id"), nullable=False, unique=True
    )
    amount = Column(Numeric(12, 4), nullable=False)
    rate = Column(Numeric(5, 4), nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
