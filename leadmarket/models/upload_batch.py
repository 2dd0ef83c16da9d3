"""Upload batch model for tracking partner CSV ingestion."""
import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func

from leadmarket.database import Base

# Forward-only lifecycle: pending -> validating -> processing -> completed | failed
STARTABLE_STATUSES = ("pending", "validating")
TERMINAL_STATUSES = ("completed", "failed")


class UploadBatch(Base):
    """One partner-uploaded file of raw lead rows, processed as a unit."""

    __tablename__ = "upload_batches"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    partner_id = Column(String(36), ForeignKey("partners.id"), nullable=False, index=True)
    filename = Column(String(500), nullable=False)
    storage_path = Column(String(1024), nullable=False)
    file_size_bytes = Column(Integer, default=0, nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    total_rows = Column(Integer, default=0, nullable=False)
    processed_rows = Column(Integer, default=0, nullable=False)
    valid_rows = Column(Integer, default=0, nullable=False)
    invalid_rows = Column(Integer, default=0, nullable=False)
    duplicate_rows = Column(Integer, default=0, nullable=False)
    marketplace_listed = Column(Integer, default=0, nullable=False)
    rows_per_second = Column(Float, default=0.0, nullable=False)
    estimated_completion_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    rejected_rows_url = Column(String(2048), nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self):
        return f"<UploadBatch(id='{self.id}', status='{self.status}', processed={self.processed_rows}/{self.total_rows})>"
