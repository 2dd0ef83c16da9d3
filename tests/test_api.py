"""Tests for the HTTP API."""
import asyncio
import csv
import io
import threading
from decimal import Decimal

import httpx
import pytest

from factories import lead_row, make_csv
from leadmarket.api import uploads as uploads_api
from leadmarket.main import app
from leadmarket.models import DownloadAudit, UploadBatch
from leadmarket.services import webhook_service
from leadmarket.services.batch_processor import BatchProcessor
from leadmarket.services.rate_limiter import InMemoryRateLimiter, get_purchase_rate_limiter

ADMIN = {"X-Admin-Token": "test-admin-token"}


class QueuedTasks:
    def __init__(self):
        self.batch_ids = []

    def delay(self, batch_id):
        self.batch_ids.append(batch_id)


@pytest.fixture
def queued(monkeypatch):
    tasks = QueuedTasks()
    monkeypatch.setattr(uploads_api, "process_upload_batch", tasks)
    return tasks


def partner_headers(partner):
    return {"X-Partner-Id": partner.id}


def workspace(ws):
    return {"X-Workspace-Id": ws}


def upload(client, partner, content):
    return client.post(
        "/uploads",
        files={"file": ("leads.csv", content.encode("utf-8"), "text/csv")},
        headers=partner_headers(partner),
    )


def test_health_check(client):
    """Test health check endpoint."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_upload_and_complete(client, make_partner, queued):
    """Test the upload -> complete handshake and its 400s."""
    partner = make_partner()
    response = upload(client, partner, make_csv([lead_row(i) for i in range(3)]))
    assert response.status_code == 201
    batch = response.json()
    assert batch["status"] == "pending"
    assert batch["file_size_bytes"] > 0

    response = client.post(f"/uploads/{batch['id']}/complete", headers=partner_headers(partner))
    assert response.status_code == 200
    assert response.json() == {
        "batch_id": batch["id"],
        "status": "validating",
        "estimated_time_seconds": 1,
    }
    assert queued.batch_ids == [batch["id"]]

    response = client.post(f"/uploads/{batch['id']}/complete", headers=partner_headers(partner))
    assert response.status_code == 400
    assert queued.batch_ids == [batch["id"]]


def test_upload_rejects_non_csv(client, make_partner):
    partner = make_partner()
    response = client.post(
        "/uploads",
        files={"file": ("leads.xlsx", b"binary", "application/octet-stream")},
        headers=partner_headers(partner),
    )
    assert response.status_code == 400


def test_complete_with_missing_file(client, make_partner, storage, queued):
    partner = make_partner()
    batch = upload(client, partner, make_csv([lead_row(1)])).json()
    (storage.root / f"partner-uploads/{partner.id}/{batch['id']}.csv").unlink()

    response = client.post(f"/uploads/{batch['id']}/complete", headers=partner_headers(partner))

    assert response.status_code == 400
    assert queued.batch_ids == []


def test_batches_are_partner_scoped(client, make_partner, queued):
    owner = make_partner()
    other = make_partner(name="Southwind Leads")
    batch = upload(client, owner, make_csv([lead_row(1)])).json()

    assert client.get(f"/uploads/{batch['id']}/status", headers=partner_headers(other)).status_code == 404
    assert client.post(f"/uploads/{batch['id']}/complete", headers=partner_headers(other)).status_code == 404
    assert client.get("/uploads", headers={"X-Partner-Id": "nobody"}).status_code == 403


def test_status_and_rejected_rows(client, session_factory, storage, make_partner, make_batch):
    """Test the status payload of a finished batch and its rejected-rows link."""
    partner = make_partner()
    rows = [lead_row(i) for i in range(8)] + [lead_row(50, state="ZZ"), lead_row(0)]
    batch = make_batch(partner, make_csv(rows))
    session = session_factory()
    try:
        BatchProcessor(session, storage=storage, publisher=lambda *a: None).process(batch.id)
    finally:
        session.close()

    response = client.get(f"/uploads/{batch.id}/status", headers=partner_headers(partner))
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "completed"
    assert data["progress"] == {"total_rows": 10, "processed_rows": 10, "percent": 100.0}
    assert data["results"] == {"valid": 8, "invalid": 1, "duplicates": 1, "marketplace_listed": 8}
    assert data["summary"]["success_rate"] == 80.0
    assert data["summary"]["duplicate_rate"] == 10.0
    assert data["summary"]["leads_available_for_sale"] == 8
    assert data["timing"]["completed_at"] is not None

    response = client.get(data["rejected_rows_url"])
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    rejected = list(csv.DictReader(io.StringIO(response.text)))
    assert [(r["row"], r["reason"]) for r in rejected] == [
        ("10", "INVALID_STATE"),
        ("11", "DUPLICATE_IN_BATCH"),
    ]

    bad = client.get(f"/uploads/{batch.id}/rejected-rows", params={"token": "forged"})
    assert bad.status_code == 403


def test_status_while_pending_has_no_summary(client, make_partner, make_batch):
    partner = make_partner()
    batch = make_batch(partner, make_csv([lead_row(1)]), status="pending")

    data = client.get(f"/uploads/{batch.id}/status", headers=partner_headers(partner)).json()

    assert data["status"] == "pending"
    assert data["progress"]["percent"] == 0.0
    assert "summary" not in data


def test_marketplace_listing_masks_contacts(client, make_partner, make_lead):
    partner = make_partner()
    make_lead(partner, email="riley.okafor@acme-hvac.com")
    make_lead(partner, state="CA", industry="Solar")
    make_lead(partner, status="sold", workspace_id="ws-other")

    response = client.get("/marketplace/leads", params={"state": "TX"})

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    item = data["items"][0]
    assert item["email_masked"] == "r***@acme-hvac.com"
    assert "email" not in item
    assert "phone" not in item
    assert item["has_phone"] is True

    assert client.get("/marketplace/leads", params={"industry": "solar"}).json()["total"] == 1


def test_purchase_flow(client, gateway, session_factory, make_partner, make_lead):
    """Test intent -> confirm -> replay -> download for one buyer."""
    partner = make_partner()
    lead = make_lead(partner, email="riley.okafor@acme-hvac.com")

    response = client.post(f"/leads/{lead.id}/purchase", headers=workspace("ws-harbor"))
    assert response.status_code == 200
    intent = response.json()
    assert intent["lead_id"] == lead.id
    assert Decimal(intent["amount"]) == Decimal("0.22")
    gateway.succeed(intent["payment_intent_id"])

    body = {"payment_intent_id": intent["payment_intent_id"]}
    response = client.post(f"/leads/{lead.id}/confirm-purchase", json=body, headers=workspace("ws-harbor"))
    assert response.status_code == 200
    first = response.json()
    assert first["success"] is True
    assert first.get("alreadyRecorded") is None

    response = client.post(f"/leads/{lead.id}/confirm-purchase", json=body, headers=workspace("ws-harbor"))
    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "purchaseId": first["purchaseId"],
        "alreadyRecorded": True,
    }

    purchases = client.get("/marketplace/purchases", headers=workspace("ws-harbor")).json()
    assert [p["id"] for p in purchases] == [first["purchaseId"]]
    assert purchases[0]["lead_count"] == 1

    response = client.post(f"/marketplace/download/{first['purchaseId']}", headers=workspace("ws-harbor"))
    assert response.status_code == 200
    rows = list(csv.reader(io.StringIO(response.text)))
    assert rows[0][:3] == ["Company Name", "Domain", "Industry"]
    assert len(rows) == 2
    assert "riley.okafor@acme-hvac.com" in rows[1]

    response = client.post(f"/marketplace/download/{first['purchaseId']}", headers=workspace("ws-other"))
    assert response.status_code == 404

    session = session_factory()
    try:
        audits = session.query(DownloadAudit).all()
        assert [(a.workspace_id, a.lead_count) for a in audits] == [("ws-harbor", 1)]
    finally:
        session.close()


def test_losing_buyer_gets_409(client, gateway, make_lead):
    lead = make_lead()
    intents = {}
    for ws in ("ws-first", "ws-second"):
        intents[ws] = client.post(f"/leads/{lead.id}/purchase", headers=workspace(ws)).json()
        gateway.succeed(intents[ws]["payment_intent_id"])

    for ws, expected in (("ws-first", 200), ("ws-second", 409)):
        response = client.post(
            f"/leads/{lead.id}/confirm-purchase",
            json={"payment_intent_id": intents[ws]["payment_intent_id"]},
            headers=workspace(ws),
        )
        assert response.status_code == expected

    response = client.post(f"/leads/{lead.id}/purchase", headers=workspace("ws-third"))
    assert response.status_code == 400


def test_provider_timeout_is_504(client, gateway, make_lead):
    lead = make_lead()
    intent = client.post(f"/leads/{lead.id}/purchase", headers=workspace("ws-harbor")).json()
    gateway.succeed(intent["payment_intent_id"])
    gateway.timeout = True

    response = client.post(
        f"/leads/{lead.id}/confirm-purchase",
        json={"payment_intent_id": intent["payment_intent_id"]},
        headers=workspace("ws-harbor"),
    )

    assert response.status_code == 504


def test_unknown_lead_is_404(client):
    response = client.post("/leads/no-such-lead/purchase", headers=workspace("ws-harbor"))
    assert response.status_code == 404


def test_purchase_rate_limit(client, make_lead):
    """Test that purchase attempts beyond the limit answer 429."""
    limiter = InMemoryRateLimiter(limit=2, window_seconds=60)
    app.dependency_overrides[get_purchase_rate_limiter] = lambda: limiter
    lead = make_lead()

    codes = [
        client.post(f"/leads/{lead.id}/purchase", headers=workspace("ws-harbor")).status_code
        for _ in range(3)
    ]

    assert codes == [200, 200, 429]
    other = client.post(f"/leads/{lead.id}/purchase", headers=workspace("ws-other"))
    assert other.status_code == 200


def test_credits_endpoints(client, make_lead):
    """Test free grant idempotency and a credit-paid purchase."""
    first = client.post("/credits/grant-free", headers=workspace("ws-harbor"))
    assert first.status_code == 200
    assert first.json()["alreadyGranted"] is False
    assert Decimal(first.json()["credits"]) == Decimal("10")

    second = client.post("/credits/grant-free", headers=workspace("ws-harbor"))
    assert second.json()["alreadyGranted"] is True

    lead = make_lead()
    response = client.post(
        f"/leads/{lead.id}/purchase-with-credits",
        json={"idempotency_key": "buy-lead-1"},
        headers=workspace("ws-harbor"),
    )
    assert response.status_code == 200
    assert response.json()["success"] is True

    balance = client.get("/credits", headers=workspace("ws-harbor")).json()
    assert Decimal(balance["balance"]) == Decimal("9.7825")

    broke = client.post(f"/leads/{make_lead().id}/purchase-with-credits", headers=workspace("ws-empty"))
    assert broke.status_code == 400
    assert broke.json()["detail"]["reason"] == "INSUFFICIENT_CREDITS"


def test_partner_ledger_and_payouts(client, make_partner, gateway):
    """Test ledger view, payout refusal codes and the admin lifecycle."""
    partner = make_partner(available_balance=Decimal("120"), lifetime_leads_uploaded=1000)
    headers = partner_headers(partner)

    ledger = client.get("/partner/ledger", headers=headers).json()
    assert ledger["tier"] == "silver"
    assert Decimal(ledger["commission_rate"]) == Decimal("0.35")

    response = client.post("/partner/payouts/request", json={"amount": "10"}, headers=headers)
    assert response.status_code == 400
    assert response.json()["detail"]["reason"] == "BELOW_PAYOUT_THRESHOLD"

    response = client.post("/partner/payouts/request", json={"amount": "100"}, headers=headers)
    assert response.status_code == 201
    payout = response.json()
    assert payout["status"] == "pending"

    response = client.post("/partner/payouts/request", json={"amount": "50"}, headers=headers)
    assert response.json()["detail"]["reason"] == "PAYOUT_ALREADY_PENDING"

    assert client.post(f"/admin/payouts/{payout['id']}/complete").status_code == 422
    assert client.post(
        f"/admin/payouts/{payout['id']}/complete", headers={"X-Admin-Token": "wrong"}
    ).status_code == 403

    response = client.post(f"/admin/payouts/{payout['id']}/complete", headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    response = client.post(
        f"/admin/payouts/{payout['id']}/reject", json={"reason": "too late"}, headers=ADMIN
    )
    assert response.status_code == 400
    assert response.json()["detail"]["reason"] == "PAYOUT_NOT_OPEN"

    ledger = client.get("/partner/ledger", headers=headers).json()
    assert Decimal(ledger["available_balance"]) == Decimal("20")
    assert Decimal(ledger["total_paid_out"]) == Decimal("100")
    assert [p["status"] for p in client.get("/partner/payouts", headers=headers).json()] == ["completed"]


def test_admin_reconcile(client):
    response = client.post("/admin/reconcile", headers=ADMIN)
    assert response.status_code == 200
    assert response.json() == {"settled_purchases": 0, "applied_grants": 0}


def test_webhook_crud_is_owner_scoped(client):
    """Test webhook registration, update and deletion per owner."""
    owner = workspace("ws-harbor")
    response = client.post(
        "/webhooks",
        json={"url": "https://hooks.harbor-crm.com/leads", "event_type": "lead.purchased"},
        headers=owner,
    )
    assert response.status_code == 201
    webhook = response.json()
    assert webhook["owner_id"] == "ws-harbor"
    assert webhook["enabled"] is True

    bad = client.post(
        "/webhooks",
        json={"url": "https://hooks.harbor-crm.com/leads", "event_type": "product.created"},
        headers=owner,
    )
    assert bad.status_code == 422

    assert client.get(f"/webhooks/{webhook['id']}", headers=workspace("ws-other")).status_code == 404
    assert client.get("/webhooks", headers=workspace("ws-other")).json() == []

    response = client.put(f"/webhooks/{webhook['id']}", json={"enabled": False}, headers=owner)
    assert response.json()["enabled"] is False
    assert response.json()["url"] == "https://hooks.harbor-crm.com/leads"

    assert client.delete(f"/webhooks/{webhook['id']}", headers=owner).status_code == 204
    assert client.get("/webhooks", headers=owner).json() == []


def test_batch_record_is_created_pending(client, session_factory, make_partner):
    partner = make_partner()
    batch_id = upload(client, partner, make_csv([lead_row(1)])).json()["id"]

    session = session_factory()
    try:
        batch = session.get(UploadBatch, batch_id)
        assert batch.status == "pending"
        assert batch.storage_path == f"partner-uploads/{partner.id}/{batch_id}.csv"
    finally:
        session.close()


def test_confirms_for_different_leads_run_concurrently(client, gateway, make_lead, monkeypatch):
    """Test that a slow provider call in one confirmation does not hold up another."""
    leads = [make_lead(), make_lead()]
    intents = []
    for lead in leads:
        intent = client.post(f"/leads/{lead.id}/purchase", headers=workspace("ws-harbor")).json()
        gateway.succeed(intent["payment_intent_id"])
        intents.append(intent)

    # Each provider call waits until the other one is in flight too
    both_in_flight = threading.Barrier(2, timeout=5)
    retrieve = gateway.retrieve_payment_intent

    def slow_retrieve(payment_intent_id):
        both_in_flight.wait()
        return retrieve(payment_intent_id)

    monkeypatch.setattr(gateway, "retrieve_payment_intent", slow_retrieve)

    async def confirm_both():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
            confirms = [
                http.post(
                    f"/leads/{lead.id}/confirm-purchase",
                    json={"payment_intent_id": intent["payment_intent_id"]},
                    headers=workspace("ws-harbor"),
                )
                for lead, intent in zip(leads, intents)
            ]
            return await asyncio.gather(*confirms, http.get("/health"))

    responses = asyncio.run(confirm_both())

    assert [r.status_code for r in responses] == [200, 200, 200]
    assert all(r.json()["success"] for r in responses[:2])


def test_sale_webhooks_reach_buyer_and_partner(client, gateway, make_partner, make_lead, monkeypatch):
    """Test that a sale notifies both sides once and a replay notifies nobody."""
    received = []

    def handler(request):
        received.append(str(request.url))
        return httpx.Response(200)

    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        webhook_service.httpx,
        "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )

    partner = make_partner()
    lead = make_lead(partner)
    for url, headers in (
        ("https://hooks.harbor-crm.com/sales", workspace("ws-harbor")),
        ("https://hooks.northwind-data.com/sold", partner_headers(partner)),
    ):
        response = client.post(
            "/webhooks", json={"url": url, "event_type": "lead.purchased"}, headers=headers
        )
        assert response.status_code == 201

    intent = client.post(f"/leads/{lead.id}/purchase", headers=workspace("ws-harbor")).json()
    gateway.succeed(intent["payment_intent_id"])
    body = {"payment_intent_id": intent["payment_intent_id"]}

    for _ in range(2):
        response = client.post(
            f"/leads/{lead.id}/confirm-purchase", json=body, headers=workspace("ws-harbor")
        )
        assert response.status_code == 200

    assert sorted(received) == [
        "https://hooks.harbor-crm.com/sales",
        "https://hooks.northwind-data.com/sold",
    ]
