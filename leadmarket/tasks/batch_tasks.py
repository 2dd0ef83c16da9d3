"""Celery task for partner upload batch processing."""
import asyncio
import logging

from leadmarket.database import SessionLocal
from leadmarket.errors import IngestionFailure
from leadmarket.models.upload_batch import UploadBatch
from leadmarket.services.batch_processor import BatchProcessor
from leadmarket.services.webhook_service import trigger_webhooks
from leadmarket.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True)
def process_upload_batch(self, batch_id: str) -> dict:
    """
    Process one upload batch in a worker, outside the web request.

    Failed batches are not retried automatically; retry is an operator
    action.

    Args:
        self: Celery task instance
        batch_id: Upload batch ID

    Returns:
        Dict with the batch's final counters
    """
    logger.info(f"Starting upload batch task: batch_id={batch_id}")
    db = SessionLocal()
    try:
        try:
            result = BatchProcessor(db).process(batch_id)
        except IngestionFailure as e:
            partner_id = db.get(UploadBatch, batch_id).partner_id
            asyncio.run(
                trigger_webhooks(
                    partner_id, "batch.failed", {"batch_id": batch_id, "error": str(e)}, db
                )
            )
            raise

        if result.status == "completed":
            partner_id = db.get(UploadBatch, batch_id).partner_id
            asyncio.run(trigger_webhooks(partner_id, "batch.completed", result.to_dict(), db))
        return result.to_dict()
    finally:
        db.close()
