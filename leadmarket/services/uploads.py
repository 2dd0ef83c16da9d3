"""Upload registration, completion trigger and status reporting."""
import logging
import math
from typing import BinaryIO, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from leadmarket.errors import ConflictError, IngestionFailure, NotFoundError
from leadmarket.models.upload_batch import UploadBatch
from leadmarket.services.storage import LocalStorage
from leadmarket.utils import utcnow

# Rough sizing used only for the estimate returned to the uploader
AVG_BYTES_PER_ROW = 100
EXPECTED_ROWS_PER_SECOND = 500

logger = logging.getLogger(__name__)


def estimate_processing_seconds(size_bytes: int) -> int:
    rows = size_bytes / AVG_BYTES_PER_ROW
    return max(1, math.ceil(rows / EXPECTED_ROWS_PER_SECOND))


def register_upload(
    db: Session, storage: LocalStorage, partner_id: str, filename: str, source: BinaryIO
) -> UploadBatch:
    """Store an uploaded CSV and create its ``pending`` batch."""
    batch = UploadBatch(partner_id=partner_id, filename=filename, storage_path="", status="pending")
    db.add(batch)
    db.flush()

    batch.storage_path = f"partner-uploads/{partner_id}/{batch.id}.csv"
    batch.file_size_bytes = storage.save_stream(batch.storage_path, source)
    db.commit()
    db.refresh(batch)
    logger.info(f"Registered upload {batch.id} for partner {partner_id} ({batch.file_size_bytes} bytes)")
    return batch


def get_partner_batch(db: Session, batch_id: str, partner_id: str) -> UploadBatch:
    batch = (
        db.query(UploadBatch)
        .filter(UploadBatch.id == batch_id, UploadBatch.partner_id == partner_id)
        .first()
    )
    if batch is None:
        raise NotFoundError("Upload batch not found")
    return batch


def complete_upload(db: Session, storage: LocalStorage, batch: UploadBatch) -> int:
    """
    Flip a ``pending`` batch to ``validating`` once its file is in storage.

    Returns:
        Estimated processing time in seconds

    Raises:
        ConflictError: batch already past ``pending``
        IngestionFailure: file missing from storage
    """
    if batch.status != "pending":
        raise ConflictError(f"Batch already {batch.status}")
    if not batch.storage_path or not storage.exists(batch.storage_path):
        raise IngestionFailure("Uploaded file not found in storage")

    size = storage.size(batch.storage_path)
    result = db.execute(
        update(UploadBatch)
        .where(UploadBatch.id == batch.id, UploadBatch.status == "pending")
        .values(status="validating", file_size_bytes=size)
    )
    db.commit()
    if result.rowcount != 1:
        raise ConflictError("Batch already processed")
    return estimate_processing_seconds(size)


def _elapsed_seconds(batch: UploadBatch) -> Optional[float]:
    if batch.started_at is None:
        return None
    end = batch.completed_at or utcnow()
    return round((end - batch.started_at).total_seconds(), 2)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def batch_status_payload(batch: UploadBatch) -> dict:
    """Read-only status view built from the last flushed counters."""
    total = batch.total_rows or 0
    percent = round(batch.processed_rows * 100.0 / total, 1) if total else 0.0
    elapsed = _elapsed_seconds(batch)

    payload = {
        "status": batch.status,
        "progress": {
            "total_rows": total,
            "processed_rows": batch.processed_rows,
            "percent": percent,
        },
        "results": {
            "valid": batch.valid_rows,
            "invalid": batch.invalid_rows,
            "duplicates": batch.duplicate_rows,
            "marketplace_listed": batch.marketplace_listed,
        },
        "timing": {
            "started_at": _iso(batch.started_at),
            "completed_at": _iso(batch.completed_at),
            "elapsed_seconds": elapsed,
            "rows_per_second": batch.rows_per_second,
            "estimated_completion": _iso(batch.estimated_completion_at),
        },
    }
    if batch.error_message:
        payload["error"] = batch.error_message
    if batch.rejected_rows_url:
        payload["rejected_rows_url"] = batch.rejected_rows_url
    if batch.status == "completed":
        processed = batch.processed_rows or 0
        payload["summary"] = {
            "success_rate": round(batch.valid_rows * 100.0 / processed, 1) if processed else 0.0,
            "duplicate_rate": round(batch.duplicate_rows * 100.0 / processed, 1) if processed else 0.0,
            "processing_time": elapsed,
            "leads_available_for_sale": batch.marketplace_listed,
        }
    return payload
