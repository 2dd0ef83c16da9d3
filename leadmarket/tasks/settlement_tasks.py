"""Periodic reconciliation of ledger side effects."""
import logging

from leadmarket.database import SessionLocal
from leadmarket.services.credit_ledger import apply_pending_grants
from leadmarket.services.purchase import reconcile_unsettled
from leadmarket.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task
def reconcile_settlements() -> dict:
    """Settle claimed-but-unsettled purchases and apply stranded credit grants."""
    db = SessionLocal()
    try:
        purchases = reconcile_unsettled(db)
        grants = apply_pending_grants(db)
        logger.info(f"Reconciliation pass: purchases={purchases}, grants={grants}")
        return {"purchases_settled": purchases, "grants_applied": grants}
    finally:
        db.close()
