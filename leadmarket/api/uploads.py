"""Partner CSV upload API endpoints."""
import asyncio
import json
import logging

import redis
from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from fastapi.responses import Response, StreamingResponse
from sqlalchemy.orm import Session

from leadmarket.api.deps import get_current_partner, get_file_storage, http_error
from leadmarket.config import get_settings
from leadmarket.database import get_db
from leadmarket.errors import LeadMarketError
from leadmarket.models.partner import Partner
from leadmarket.models.upload_batch import TERMINAL_STATUSES, UploadBatch
from leadmarket.schemas.upload import UploadBatchResponse, UploadCompleteResponse
from leadmarket.services.storage import (
    LocalStorage,
    StorageError,
    rejected_rows_key,
    verify_rejected_rows_token,
)
from leadmarket.services.uploads import (
    batch_status_payload,
    complete_upload,
    get_partner_batch,
    register_upload,
)
from leadmarket.tasks.batch_tasks import process_upload_batch

router = APIRouter(prefix="/uploads", tags=["uploads"])

settings = get_settings()

logger = logging.getLogger(__name__)


@router.post("", response_model=UploadBatchResponse, status_code=201)
def upload_csv(
    file: UploadFile = File(...),
    partner: Partner = Depends(get_current_partner),
    storage: LocalStorage = Depends(get_file_storage),
    db: Session = Depends(get_db),
):
    """
    Store a partner's CSV and open a ``pending`` batch for it.

    Processing starts only when the partner calls ``/complete``.
    """
    if not file.filename or not file.filename.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="Only CSV files are allowed")

    try:
        batch = register_upload(db, storage, partner.id, file.filename, file.file)
    except StorageError as e:
        db.rollback()
        logger.error(f"Failed to store upload from partner {partner.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to store upload")
    return batch


@router.get("", response_model=list[UploadBatchResponse])
def list_uploads(
    limit: int = Query(20, ge=1, le=100),
    partner: Partner = Depends(get_current_partner),
    db: Session = Depends(get_db),
):
    """The partner's most recent upload batches."""
    return (
        db.query(UploadBatch)
        .filter(UploadBatch.partner_id == partner.id)
        .order_by(UploadBatch.created_at.desc())
        .limit(limit)
        .all()
    )


@router.post("/{batch_id}/complete", response_model=UploadCompleteResponse)
def complete(
    batch_id: str,
    partner: Partner = Depends(get_current_partner),
    storage: LocalStorage = Depends(get_file_storage),
    db: Session = Depends(get_db),
):
    """
    Trigger background processing of an uploaded batch.

    Only a ``pending`` batch whose file is in storage can be completed;
    anything else is a 400.
    """
    try:
        batch = get_partner_batch(db, batch_id, partner.id)
        estimate = complete_upload(db, storage, batch)
    except LeadMarketError as e:
        raise http_error(e)

    process_upload_batch.delay(batch_id)
    logger.info(f"Queued batch {batch_id} for processing (~{estimate}s)")
    return UploadCompleteResponse(
        batch_id=batch_id, status="validating", estimated_time_seconds=estimate
    )


@router.get("/{batch_id}/status")
def get_status(
    batch_id: str,
    partner: Partner = Depends(get_current_partner),
    db: Session = Depends(get_db),
):
    """
    Batch progress and results.

    Polling fallback for clients that cannot hold an SSE connection open.
    """
    try:
        batch = get_partner_batch(db, batch_id, partner.id)
    except LeadMarketError as e:
        raise http_error(e)
    return batch_status_payload(batch)


@router.get("/{batch_id}/stream")
async def stream_progress(
    batch_id: str,
    partner: Partner = Depends(get_current_partner),
    db: Session = Depends(get_db),
):
    """
    Server-Sent Events stream of a batch's progress.

    The current status is sent first, then every update the worker
    publishes until the batch completes or fails.
    """
    try:
        batch = get_partner_batch(db, batch_id, partner.id)
    except LeadMarketError as e:
        raise http_error(e)
    initial = {"batch_id": batch_id, **batch_status_payload(batch)}

    async def event_generator():
        yield f"data: {json.dumps(initial)}\n\n"
        if batch.status in TERMINAL_STATUSES:
            return

        redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        pubsub = redis_client.pubsub()
        pubsub.subscribe(f"upload:{batch_id}")
        try:
            while True:
                message = pubsub.get_message(timeout=1.0)
                if message and message["type"] == "message":
                    data = json.loads(message["data"])
                    yield f"data: {json.dumps(data)}\n\n"
                    if data.get("status") in TERMINAL_STATUSES:
                        break
                await asyncio.sleep(0.1)
        except redis.RedisError as e:
            logger.warning(f"SSE stream error for batch {batch_id}: {e}")
            yield f"data: {json.dumps({'status': 'error', 'error': 'Stream error'})}\n\n"
        finally:
            pubsub.unsubscribe(f"upload:{batch_id}")
            redis_client.close()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.get("/{batch_id}/rejected-rows")
def download_rejected_rows(
    batch_id: str,
    token: str = Query(...),
    storage: LocalStorage = Depends(get_file_storage),
):
    """Rejected-rows report behind a signed, expiring link."""
    if not verify_rejected_rows_token(batch_id, token):
        raise HTTPException(status_code=403, detail="Invalid or expired link")
    key = rejected_rows_key(batch_id)
    if not storage.exists(key):
        raise HTTPException(status_code=404, detail="No rejected rows for this batch")
    return Response(
        content=storage.read_text(key),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="rejected-{batch_id}.csv"'},
    )
