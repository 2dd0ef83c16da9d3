"""Workspace credit ledger models."""
from sqlalchemy import Column, DateTime, Integer, Numeric, String
from sqlalchemy.sql import func

from leadmarket.database import Base


class WorkspaceCredits(Base):
    """Current credit balance for a buyer workspace."""

    __tablename__ = "workspace_credits"

    workspace_id = Column(String(36), primary_key=True)
    balance = Column(Numeric(12, 4), default=0, nullable=False)
    total_purchased = Column(Numeric(12, 4), default=0, nullable=False)
    total_used = Column(Numeric(12, 4), default=0, nullable=False)
    total_earned = Column(Numeric(12, 4), default=0, nullable=False)
    updated_at = Column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )


class CreditGrant(Base):
    """Existence of a row is the sole proof a free grant happened."""

    __tablename__ = "free_credit_grants"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String(36), nullable=False, unique=True)
    credits_granted = Column(Numeric(12, 4), nullable=False)
    # Set in the same transaction as the balance increment
    balance_applied_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)


class CreditTopUp(Base):
    """A paid credit top-up, keyed by its external payment reference."""

    __tablename__ = "credit_topups"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String(36), nullable=False, index=True)
    reference = Column(String(255), nullable=False, unique=True)
    credits = Column(Numeric(12, 4), nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
