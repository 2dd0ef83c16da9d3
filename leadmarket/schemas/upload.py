"""Upload batch request and response schemas."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class UploadBatchResponse(BaseModel):
    """An upload batch as stored."""

    id: str
    partner_id: str
    filename: str
    status: str
    file_size_bytes: int
    total_rows: int
    processed_rows: int
    valid_rows: int
    invalid_rows: int
    duplicate_rows: int
    marketplace_listed: int
    error_message: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class UploadCompleteResponse(BaseModel):
    """Response after triggering background processing."""

    batch_id: str
    status: str
    estimated_time_seconds: int
