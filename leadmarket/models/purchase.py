"""Marketplace purchase, purchase item and download audit models."""
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from leadmarket.database import Base


class MarketplacePurchase(Base):
    """A buyer workspace's purchase of one or more leads."""

    __tablename__ = "marketplace_purchases"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    buyer_workspace_id = Column(String(36), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="pending")  # pending, completed, failed
    payment_method = Column(String(20), nullable=False, default="stripe")  # stripe, credits
    # Idempotency anchors: replays of either must be no-ops
    stripe_payment_intent_id = Column(String(255), nullable=True, unique=True)
    idempotency_key = Column(String(255), nullable=True, unique=True)
    total_price = Column(Numeric(12, 4), nullable=False)
    platform_fee = Column(Numeric(12, 4), nullable=True)
    error_message = Column(Text, nullable=True)
    commission_settled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    completed_at = Column(DateTime, nullable=True)

    items = relationship("PurchaseItem", back_populates="purchase", order_by="PurchaseItem.id")


class PurchaseItem(Base):
    """Links a purchase to one lead at its price-at-purchase."""

    __tablename__ = "marketplace_purchase_items"

    id = Column(Integer, primary_key=True, index=True)
    purchase_id = Column(
        String(36), ForeignKey("marketplace_purchases.id"), nullable=False, index=True
    )
    # A lead is sold at most once
    lead_id = Column(String(36), ForeignKey("leads.id"), nullable=False, unique=True)
    partner_id = Column(String(36), ForeignKey("partners.id"), nullable=True)
    price_at_purchase = Column(Numeric(12, 4), nullable=False)
    commission_rate = Column(Numeric(5, 4), nullable=True)
    commission_amount = Column(Numeric(12, 4), nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    purchase = relationship("MarketplacePurchase", back_populates="items")
    lead = relationship("CanonicalLead")


class DownloadAudit(Base):
    """One row per purchased-leads CSV download."""

    __tablename__ = "download_audits"

    id = Column(Integer, primary_key=True, index=True)
    purchase_id = Column(
        String(36), ForeignKey("marketplace_purchases.id"), nullable=False, index=True
    )
    workspace_id = Column(String(36), nullable=False)
    lead_count = Column(Integer, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
