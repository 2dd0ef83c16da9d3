"""Outbound webhook endpoint model."""
from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from leadmarket.database import Base


class Webhook(Base):
    """An owner's endpoint subscribed to one event type."""

    __tablename__ = "webhooks"

    id = Column(Integer, primary_key=True, index=True)
    # Partner id or buyer workspace id
    owner_id = Column(String(36), nullable=False, index=True)
    url = Column(String(2048), nullable=False)
    event_type = Column(String(100), nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )
