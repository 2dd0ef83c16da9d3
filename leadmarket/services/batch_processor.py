"""Batch processor: stream, validate, deduplicate and list partner CSV uploads."""
import csv
import json
import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from io import StringIO
from typing import Callable, Optional

import redis
from pydantic import ValidationError
from sqlalchemy import func, update
from sqlalchemy.orm import Session

from leadmarket.config import get_settings
from leadmarket.database import insert_ignore
from leadmarket.errors import (
    DuplicateRowError,
    IngestionFailure,
    NotFoundError,
    RowValidationError,
)
from leadmarket.models.lead import CanonicalLead
from leadmarket.models.partner import Partner
from leadmarket.models.upload_batch import STARTABLE_STATUSES, TERMINAL_STATUSES, UploadBatch
from leadmarket.schemas.lead import LeadRow
from leadmarket.services.dedup import (
    DUPLICATE_CROSS_PARTNER,
    DUPLICATE_IN_BATCH,
    DUPLICATE_SAME_PARTNER,
    DedupIndex,
    compute_fingerprint,
    normalize_phone,
)
from leadmarket.services.pricing import FRESH_SCORE, intent_score, marketplace_price
from leadmarket.services.storage import LocalStorage, rejected_rows_key, sign_rejected_rows_url
from leadmarket.utils import utcnow

# Rows per INSERT statement; keeps bound parameters well under driver limits
INSERT_CHUNK = 200

REJECTION_COLUMNS = ["row", "reason", "field", "value", "message"]

DUPLICATE_MESSAGES = {
    DUPLICATE_IN_BATCH: "Duplicate of an earlier row in this file",
    DUPLICATE_SAME_PARTNER: "Already uploaded by you",
    DUPLICATE_CROSS_PARTNER: "Already listed in the marketplace",
}

settings = get_settings()
logger = logging.getLogger(__name__)


@dataclass
class RejectedRow:
    """One line of the rejected-rows report."""

    row_number: int
    reason: str
    message: str
    field: Optional[str] = None
    value: Optional[str] = None


@dataclass
class RowOutcome:
    """Result of validating one row; exactly one of ``row``/``error`` is set."""

    row_number: int
    row: Optional[LeadRow] = None
    fingerprint: Optional[str] = None
    error: Optional[RowValidationError] = None


@dataclass
class Counters:
    processed: int = 0
    valid: int = 0
    invalid: int = 0
    duplicate: int = 0
    listed: int = 0

    def add(self, other: "Counters") -> None:
        self.processed += other.processed
        self.valid += other.valid
        self.invalid += other.invalid
        self.duplicate += other.duplicate
        self.listed += other.listed


@dataclass
class BatchResult:
    """Final (or current, for replays) counters of a batch."""

    batch_id: str
    status: str
    total_rows: int
    processed_rows: int
    valid_rows: int
    invalid_rows: int
    duplicate_rows: int
    marketplace_listed: int
    rejected_rows_url: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def from_batch(cls, batch: UploadBatch) -> "BatchResult":
        return cls(
            batch_id=batch.id,
            status=batch.status,
            total_rows=batch.total_rows,
            processed_rows=batch.processed_rows,
            valid_rows=batch.valid_rows,
            invalid_rows=batch.invalid_rows,
            duplicate_rows=batch.duplicate_rows,
            marketplace_listed=batch.marketplace_listed,
            rejected_rows_url=batch.rejected_rows_url,
            error_message=batch.error_message,
        )

    def to_dict(self) -> dict:
        return asdict(self)


def _error_reason(error_type: str, field_name: Optional[str]) -> str:
    if error_type == "missing":
        return "MISSING_REQUIRED_FIELD"
    if field_name == "email":
        return "INVALID_EMAIL"
    if field_name == "state":
        return "INVALID_STATE"
    if field_name == "industry":
        return "INVALID_INDUSTRY"
    return "VALIDATION_ERROR"


def validate_row(raw: dict, row_number: int) -> RowOutcome:
    """
    Validate and normalize one raw CSV row.

    Never raises: every failure is captured on the outcome so one bad row
    cannot abort its batch.
    """
    try:
        row = LeadRow.model_validate(raw)
        fingerprint = compute_fingerprint(row.email, row.company_domain)
    except ValidationError as e:
        first = e.errors()[0]
        field_name = str(first["loc"][0]) if first["loc"] else None
        reason = _error_reason(first["type"], field_name)
        if reason == "MISSING_REQUIRED_FIELD":
            message = f"Missing required field: {field_name}"
        else:
            message = first["msg"]
        lowered = {str(k).strip().lower(): v for k, v in raw.items() if k is not None}
        value = lowered.get(field_name) if field_name else None
        return RowOutcome(
            row_number,
            error=RowValidationError(
                reason, message, field_name, str(value)[:100] if value else None
            ),
        )
    except Exception as e:
        logger.exception(f"Unexpected error validating row {row_number}")
        return RowOutcome(row_number, error=RowValidationError("VALIDATION_ERROR", str(e)))
    return RowOutcome(row_number, row=row, fingerprint=fingerprint)


def _duplicate_rejection(outcome: RowOutcome, error: DuplicateRowError) -> RejectedRow:
    return RejectedRow(
        outcome.row_number,
        error.reason,
        DUPLICATE_MESSAGES[error.reason],
        "email",
        outcome.row.email,
    )


def publish_progress(batch_id: str, payload: dict) -> None:
    """
    Publish progress to Redis pub/sub for real-time SSE streaming.

    Best effort: an unreachable Redis never fails the import.
    """
    try:
        redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        redis_client.publish(f"upload:{batch_id}", json.dumps({"batch_id": batch_id, **payload}))
    except redis.RedisError as e:
        logger.warning(f"Failed to publish progress for batch {batch_id}: {e}")


def render_rejections(rejections: list[RejectedRow]) -> str:
    """Rejected rows as CSV, ordered by source row number."""
    buffer = StringIO()
    writer = csv.writer(buffer)
    writer.writerow(REJECTION_COLUMNS)
    for r in sorted(rejections, key=lambda r: r.row_number):
        writer.writerow([r.row_number, r.reason, r.field or "", r.value or "", r.message])
    return buffer.getvalue()


class BatchProcessor:
    """
    Processes one upload batch end to end.

    Rows are read in row-groups of ``chunk_rows`` (or whatever arrived in
    ``flush_ms``). Each group is validated on a bounded thread pool, checked
    against the batch's own fingerprints and the persisted pool, inserted,
    and committed together with a single atomic counter increment. Already
    committed groups stay listed if a later group fails.
    """

    def __init__(
        self,
        db: Session,
        storage: Optional[LocalStorage] = None,
        chunk_rows: Optional[int] = None,
        flush_ms: Optional[int] = None,
        workers: Optional[int] = None,
        publisher: Callable[[str, dict], None] = publish_progress,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.storage = storage or LocalStorage()
        self.chunk_rows = chunk_rows or settings.progress_flush_rows
        self.flush_ms = flush_ms or settings.progress_flush_ms
        self.workers = workers or settings.row_workers
        self.publisher = publisher
        self.clock = clock

    def process(self, batch_id: str) -> BatchResult:
        """
        Process a ``pending``/``validating`` batch to ``completed`` or ``failed``.

        Redelivered work for a batch another worker already owns, or that
        already finished, returns its current counters without side effects.

        Raises:
            NotFoundError: unknown batch
            IngestionFailure: the file could not be read; batch is ``failed``
        """
        batch = self.db.get(UploadBatch, batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found")

        if batch.status in TERMINAL_STATUSES or batch.status == "processing":
            logger.info(f"Batch {batch_id} already {batch.status}, skipping")
            return BatchResult.from_batch(batch)

        claimed = self.db.execute(
            update(UploadBatch)
            .where(UploadBatch.id == batch_id, UploadBatch.status.in_(STARTABLE_STATUSES))
            .values(status="processing", started_at=utcnow())
        )
        self.db.commit()
        if claimed.rowcount != 1:
            self.db.refresh(batch)
            logger.info(f"Batch {batch_id} claimed by another worker ({batch.status})")
            return BatchResult.from_batch(batch)

        logger.info(f"Processing batch {batch_id} from {batch.storage_path}")
        try:
            total = self._count_rows(batch.storage_path)
            batch.total_rows = total
            self.db.commit()
            logger.info(f"Batch {batch_id}: {total} data rows")

            counters, rejections = self._stream(batch, total)
            rejected_url = self._store_rejections(batch_id, rejections)
            self._complete(batch_id, rejected_url)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Batch {batch_id} failed: {e}", exc_info=True)
            self._fail(batch_id, str(e))
            if isinstance(e, IngestionFailure):
                raise
            raise IngestionFailure(str(e)) from e

        self.db.refresh(batch)
        result = BatchResult.from_batch(batch)
        logger.info(
            f"Batch {batch_id} completed: valid={result.valid_rows}, "
            f"invalid={result.invalid_rows}, duplicates={result.duplicate_rows}"
        )
        self.publisher(batch_id, {"status": "completed", **result.to_dict()})
        return result

    def _count_rows(self, storage_path: str) -> int:
        if not self.storage.exists(storage_path):
            raise IngestionFailure(f"Upload file not found: {storage_path}")
        with self.storage.open_text(storage_path) as f:
            reader = csv.DictReader(f)
            if not reader.fieldnames:
                raise IngestionFailure("Upload file has no header row")
            return sum(1 for _ in reader)

    def _stream(self, batch: UploadBatch, total: int) -> tuple[Counters, list[RejectedRow]]:
        index = DedupIndex(self.db, batch.partner_id)
        counters = Counters()
        rejections: list[RejectedRow] = []
        started = self.clock()

        with ThreadPoolExecutor(max_workers=self.workers) as pool, \
                self.storage.open_text(batch.storage_path) as f:
            reader = csv.DictReader(f)
            pending: list[tuple[int, dict]] = []
            last_flush = self.clock()

            # Header is row 1
            for row_number, raw in enumerate(reader, start=2):
                pending.append((row_number, raw))
                elapsed_ms = (self.clock() - last_flush) * 1000
                if len(pending) >= self.chunk_rows or elapsed_ms >= self.flush_ms:
                    self._process_group(batch, index, pool, pending, counters, rejections, started, total)
                    pending = []
                    last_flush = self.clock()

            if pending:
                self._process_group(batch, index, pool, pending, counters, rejections, started, total)

        return counters, rejections

    def _process_group(
        self,
        batch: UploadBatch,
        index: DedupIndex,
        pool: ThreadPoolExecutor,
        rows: list[tuple[int, dict]],
        counters: Counters,
        rejections: list[RejectedRow],
        started: float,
        total: int,
    ) -> None:
        if counters.processed + len(rows) > total:
            raise IngestionFailure("Upload file changed while it was being processed")

        outcomes = list(pool.map(lambda item: validate_row(item[1], item[0]), rows))
        known = index.lookup_pool(o.fingerprint for o in outcomes if o.row is not None)

        delta = Counters(processed=len(outcomes))
        fresh: list[RowOutcome] = []
        refreshes: list[tuple[str, LeadRow]] = []

        for outcome in outcomes:
            if outcome.error is not None:
                delta.invalid += 1
                err = outcome.error
                rejections.append(
                    RejectedRow(outcome.row_number, err.reason, err.message, err.field, err.value)
                )
                continue

            match = index.classify(outcome.fingerprint, outcome.row_number, known)
            if match.is_new:
                fresh.append(outcome)
                continue

            delta.duplicate += 1
            rejections.append(
                _duplicate_rejection(
                    outcome, DuplicateRowError(match.outcome, outcome.fingerprint, match.existing_lead_id)
                )
            )
            if match.outcome == DUPLICATE_SAME_PARTNER:
                refreshes.append((match.existing_lead_id, outcome.row))

        inserted = self._insert_leads(batch, fresh)
        for outcome in fresh:
            if outcome.fingerprint in inserted:
                delta.valid += 1
                delta.listed += 1
            else:
                # Another batch committed the same fingerprint after our lookup
                delta.duplicate += 1
                rejections.append(
                    _duplicate_rejection(
                        outcome, DuplicateRowError(DUPLICATE_CROSS_PARTNER, outcome.fingerprint)
                    )
                )

        for lead_id, row in refreshes:
            self._refresh_lead(lead_id, row)

        self._flush(batch, delta, counters, started, total)
        self.db.commit()
        counters.add(delta)

        self.publisher(
            batch.id,
            {
                "status": "processing",
                "total_rows": total,
                "processed_rows": counters.processed,
                "valid_rows": counters.valid,
                "invalid_rows": counters.invalid,
                "duplicate_rows": counters.duplicate,
            },
        )
        logger.debug(f"Batch {batch.id}: {counters.processed}/{total} rows processed")

    def _insert_leads(self, batch: UploadBatch, outcomes: list[RowOutcome]) -> set[str]:
        """Insert new leads, ignoring fingerprints that already exist; returns those that landed."""
        inserted: set[str] = set()
        for start in range(0, len(outcomes), INSERT_CHUNK):
            values = [self._lead_values(batch, o) for o in outcomes[start:start + INSERT_CHUNK]]
            stmt = (
                insert_ignore(self.db, CanonicalLead, ["dedup_fingerprint"])
                .values(values)
                .returning(CanonicalLead.dedup_fingerprint)
            )
            inserted.update(self.db.execute(stmt).scalars().all())
        return inserted

    @staticmethod
    def _lead_values(batch: UploadBatch, outcome: RowOutcome) -> dict:
        row = outcome.row
        score = intent_score(row)
        return {
            "id": str(uuid.uuid4()),
            "dedup_fingerprint": outcome.fingerprint,
            "partner_id": batch.partner_id,
            "upload_batch_id": batch.id,
            "first_name": row.first_name,
            "last_name": row.last_name,
            "email": row.email.lower(),
            "phone": normalize_phone(row.phone) or None,
            "job_title": row.job_title,
            "seniority_level": row.seniority_level or "unknown",
            "linkedin_url": row.linkedin_url,
            "company_name": row.company_name or f"{row.first_name}'s Company",
            "company_domain": row.company_domain,
            "industry": row.industry,
            "company_size": row.company_size,
            "city": row.city,
            "state": row.state,
            "country": "US",
            "intent_score": score,
            "freshness_score": FRESH_SCORE,
            "verification_status": "pending",
            "price": marketplace_price(score, FRESH_SCORE, bool(row.phone)),
            "status": "available",
        }

    def _refresh_lead(self, lead_id: str, row: LeadRow) -> None:
        """Fill blank contact fields of a partner's own, still-unsold lead."""
        self.db.execute(
            update(CanonicalLead)
            .where(CanonicalLead.id == lead_id, CanonicalLead.status == "available")
            .values(
                phone=func.coalesce(CanonicalLead.phone, normalize_phone(row.phone) or None),
                job_title=func.coalesce(CanonicalLead.job_title, row.job_title),
                city=func.coalesce(CanonicalLead.city, row.city),
                linkedin_url=func.coalesce(CanonicalLead.linkedin_url, row.linkedin_url),
            )
        )

    def _flush(
        self,
        batch: UploadBatch,
        delta: Counters,
        counters: Counters,
        started: float,
        total: int,
    ) -> None:
        """One atomic increment per row-group, plus rate and ETA."""
        processed = counters.processed + delta.processed
        elapsed = max(self.clock() - started, 1e-6)
        rate = processed / elapsed
        remaining = max(total - processed, 0)
        eta = utcnow() + timedelta(seconds=remaining / rate) if rate > 0 else None

        self.db.execute(
            update(UploadBatch)
            .where(UploadBatch.id == batch.id)
            .values(
                processed_rows=UploadBatch.processed_rows + delta.processed,
                valid_rows=UploadBatch.valid_rows + delta.valid,
                invalid_rows=UploadBatch.invalid_rows + delta.invalid,
                duplicate_rows=UploadBatch.duplicate_rows + delta.duplicate,
                marketplace_listed=UploadBatch.marketplace_listed + delta.listed,
                rows_per_second=round(rate, 2),
                estimated_completion_at=eta,
            )
        )
        if delta.valid:
            self.db.execute(
                update(Partner)
                .where(Partner.id == batch.partner_id)
                .values(lifetime_leads_uploaded=Partner.lifetime_leads_uploaded + delta.valid)
            )

    def _store_rejections(self, batch_id: str, rejections: list[RejectedRow]) -> Optional[str]:
        if not rejections:
            return None
        self.storage.write_text(rejected_rows_key(batch_id), render_rejections(rejections))
        logger.info(f"Stored {len(rejections)} rejected rows for batch {batch_id}")
        return sign_rejected_rows_url(batch_id)

    def _complete(self, batch_id: str, rejected_url: Optional[str]) -> None:
        now = utcnow()
        self.db.execute(
            update(UploadBatch)
            .where(UploadBatch.id == batch_id, UploadBatch.status == "processing")
            .values(
                status="completed",
                completed_at=now,
                estimated_completion_at=now,
                rejected_rows_url=rejected_url,
            )
        )
        self.db.commit()

    def _fail(self, batch_id: str, message: str) -> None:
        self.db.execute(
            update(UploadBatch)
            .where(UploadBatch.id == batch_id, UploadBatch.status.notin_(TERMINAL_STATUSES))
            .values(status="failed", error_message=message[:2000], completed_at=utcnow())
        )
        self.db.commit()
        self.publisher(batch_id, {"status": "failed", "error": message})
