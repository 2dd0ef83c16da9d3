"""Tests for upload batch processing."""
import csv
import io
import threading

import pytest

from factories import lead_row, make_csv
from leadmarket.errors import IngestionFailure, NotFoundError
from leadmarket.models import CanonicalLead, Partner, UploadBatch
from leadmarket.services.batch_processor import BatchProcessor, validate_row
from leadmarket.services.storage import rejected_rows_key


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def __call__(self, batch_id, payload):
        self.events.append((batch_id, payload))


def processor(db, storage, publisher=None, chunk_rows=7):
    return BatchProcessor(
        db,
        storage=storage,
        chunk_rows=chunk_rows,
        flush_ms=60_000,
        workers=2,
        publisher=publisher or (lambda *args: None),
    )


def read_rejections(storage, batch_id):
    return list(csv.DictReader(io.StringIO(storage.read_text(rejected_rows_key(batch_id)))))


def mixed_rows():
    """85 valid rows, 5 invalid rows and 10 repeats of earlier rows."""
    rows = [lead_row(i) for i in range(85)]
    rows += [
        lead_row(100, email=""),
        lead_row(101, email="not-an-email"),
        lead_row(102, state="ZZ"),
        lead_row(103, industry="underwater basket weaving"),
        lead_row(104, first_name=""),
    ]
    rows += [lead_row(i) for i in range(10)]
    return rows


def test_validate_row_reason_codes():
    """Test that each kind of bad row maps to its reason code."""
    assert validate_row(lead_row(1), 2).error is None
    # csv.DictReader fills the missing cells of a short row with None
    short_row = {**lead_row(1), "state": None, "industry": None}
    cases = [
        ("MISSING_REQUIRED_FIELD", lead_row(1, email="  ")),
        ("MISSING_REQUIRED_FIELD", short_row),
        ("INVALID_EMAIL", lead_row(1, email="dana@")),
        ("INVALID_STATE", lead_row(1, state="Texas")),
        ("INVALID_INDUSTRY", lead_row(1, industry="widgets")),
    ]
    for reason, raw in cases:
        outcome = validate_row(raw, 5)
        assert outcome.row is None
        assert outcome.error.reason == reason
        assert outcome.row_number == 5


def test_validate_row_normalizes():
    outcome = validate_row(lead_row(1, state="tx", industry="Real Estate", seniority_level="VP"), 2)
    assert outcome.row.state == "TX"
    assert outcome.row.industry == "Real Estate"
    assert outcome.row.seniority_level == "vp"
    assert outcome.fingerprint


def test_process_mixed_batch(db, storage, make_partner, make_batch):
    """Test the 85 valid / 5 invalid / 10 duplicate upload end to end."""
    partner = make_partner()
    batch = make_batch(partner, make_csv(mixed_rows()))
    publisher = RecordingPublisher()

    result = processor(db, storage, publisher).process(batch.id)

    assert result.status == "completed"
    assert result.total_rows == 100
    assert result.processed_rows == 100
    assert result.valid_rows == 85
    assert result.invalid_rows == 5
    assert result.duplicate_rows == 10
    assert result.marketplace_listed == 85
    assert result.processed_rows == result.valid_rows + result.invalid_rows + result.duplicate_rows

    assert db.query(CanonicalLead).filter(CanonicalLead.upload_batch_id == batch.id).count() == 85
    db.refresh(partner)
    assert partner.lifetime_leads_uploaded == 85

    assert result.rejected_rows_url.startswith(f"/uploads/{batch.id}/rejected-rows?token=")
    rejected = read_rejections(storage, batch.id)
    assert len(rejected) == 15
    reasons = [r["reason"] for r in rejected]
    assert reasons.count("DUPLICATE_IN_BATCH") == 10
    assert "INVALID_STATE" in reasons
    assert [int(r["row"]) for r in rejected] == sorted(int(r["row"]) for r in rejected)

    statuses = [payload["status"] for _, payload in publisher.events]
    assert statuses[-1] == "completed"
    assert statuses.count("processing") == 15  # ceil(100 / 7) row-groups


def test_counters_never_exceed_total(db, storage, make_partner, make_batch):
    """Test that every progress event respects processed <= total."""
    partner = make_partner()
    batch = make_batch(partner, make_csv([lead_row(i) for i in range(20)]))
    publisher = RecordingPublisher()

    processor(db, storage, publisher, chunk_rows=3).process(batch.id)

    processed = [p["processed_rows"] for _, p in publisher.events if p["status"] == "processing"]
    assert processed == sorted(processed)
    assert all(p <= 20 for p in processed)
    assert processed[-1] == 20


def test_cross_partner_duplicates(db, storage, make_partner, make_batch):
    """Test that a second partner cannot relist leads already in the pool."""
    first = make_partner()
    second = make_partner(name="Southwind Leads")
    processor(db, storage).process(make_batch(first, make_csv([lead_row(i) for i in range(5)])).id)

    overlapping = [lead_row(i) for i in range(3, 8)]
    result = processor(db, storage).process(make_batch(second, make_csv(overlapping)).id)

    assert result.valid_rows == 3
    assert result.duplicate_rows == 2
    assert db.query(CanonicalLead).count() == 8
    assert db.query(CanonicalLead).filter(CanonicalLead.partner_id == second.id).count() == 3


def test_same_partner_reupload_fills_blank_fields(db, storage, make_partner, make_batch):
    """Test that re-uploading a lead counts as a duplicate but fills its gaps."""
    partner = make_partner()
    processor(db, storage).process(make_batch(partner, make_csv([lead_row(1, phone="")])).id)
    lead = db.query(CanonicalLead).one()
    assert lead.phone is None

    result = processor(db, storage).process(
        make_batch(partner, make_csv([lead_row(1, phone="512-555-0199")])).id
    )

    assert result.duplicate_rows == 1
    assert result.valid_rows == 0
    db.refresh(lead)
    assert lead.phone == "5125550199"
    rejected = read_rejections(storage, result.batch_id)
    assert rejected[0]["reason"] == "DUPLICATE_SAME_PARTNER"


def test_concurrent_batches_list_each_lead_once(session_factory, storage, make_partner, make_batch):
    """Test two partners racing the same contacts end up with one listing each."""
    first = make_partner()
    second = make_partner(name="Southwind Leads")
    rows = make_csv([lead_row(i) for i in range(40)])
    batches = [make_batch(first, rows), make_batch(second, rows)]
    results = {}

    def run(batch_id):
        session = session_factory()
        try:
            results[batch_id] = processor(session, storage, chunk_rows=5).process(batch_id)
        finally:
            session.close()

    threads = [threading.Thread(target=run, args=(b.id,)) for b in batches]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(r.valid_rows for r in results.values()) == 40
    assert sum(r.duplicate_rows for r in results.values()) == 40
    session = session_factory()
    try:
        assert session.query(CanonicalLead).count() == 40
    finally:
        session.close()


def test_missing_file_fails_batch(db, storage, make_partner, make_batch):
    """Test that an unreadable upload fails the batch with an error."""
    partner = make_partner()
    batch = make_batch(partner, make_csv([lead_row(1)]))
    batch.storage_path = f"partner-uploads/{partner.id}/missing.csv"
    db.commit()
    publisher = RecordingPublisher()

    with pytest.raises(IngestionFailure):
        processor(db, storage, publisher).process(batch.id)

    db.refresh(batch)
    assert batch.status == "failed"
    assert "not found" in batch.error_message
    assert batch.completed_at is not None
    assert publisher.events[-1][1]["status"] == "failed"


def test_completed_batch_is_not_reprocessed(db, storage, make_partner, make_batch):
    """Test that redelivered work for a finished batch changes nothing."""
    partner = make_partner()
    batch = make_batch(partner, make_csv([lead_row(i) for i in range(3)]))
    first = processor(db, storage).process(batch.id)

    again = processor(db, storage).process(batch.id)

    assert again.status == "completed"
    assert again.valid_rows == first.valid_rows == 3
    assert db.query(CanonicalLead).count() == 3
    assert db.get(Partner, partner.id).lifetime_leads_uploaded == 3


def test_unknown_batch(db, storage):
    with pytest.raises(NotFoundError):
        processor(db, storage).process("00000000-0000-0000-0000-000000000000")


def test_clean_batch_has_no_rejection_report(db, storage, make_partner, make_batch):
    partner = make_partner()
    batch = make_batch(partner, make_csv([lead_row(i) for i in range(4)]))

    result = processor(db, storage).process(batch.id)

    assert result.rejected_rows_url is None
    assert not storage.exists(rejected_rows_key(batch.id))
    assert db.get(UploadBatch, batch.id).status == "completed"


def test_listed_lead_phone_is_normalized(db, storage, make_partner, make_batch):
    partner = make_partner()
    processor(db, storage).process(
        make_batch(partner, make_csv([lead_row(1, phone="+1 (512) 555-0100")])).id
    )

    assert db.query(CanonicalLead).one().phone == "5125550100"
