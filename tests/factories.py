"""Test doubles and CSV builders shared by the test modules."""
import csv
import io
import itertools
import threading

from leadmarket.errors import PaymentProviderTimeout
from leadmarket.services.payments import PaymentGateway, PaymentIntent, to_minor_units

CSV_COLUMNS = [
    "first_name",
    "last_name",
    "email",
    "phone",
    "company_name",
    "company_domain",
    "job_title",
    "seniority_level",
    "city",
    "state",
    "industry",
]


class FakeGateway(PaymentGateway):
    """In-memory payment provider; intents succeed only when told to."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.intents: dict[str, PaymentIntent] = {}
        self.transfers: list[dict] = []
        self.timeout = False

    def create_payment_intent(self, amount, currency, metadata, idempotency_key=None):
        with self._lock:
            intent_id = f"pi_test_{next(self._ids)}"
            intent = PaymentIntent(
                id=intent_id,
                status="requires_payment_method",
                amount=to_minor_units(amount),
                currency=currency,
                client_secret=f"{intent_id}_secret",
                metadata=dict(metadata),
            )
            self.intents[intent_id] = intent
        return intent

    def succeed(self, intent_id: str) -> None:
        self.intents[intent_id].status = "succeeded"

    def retrieve_payment_intent(self, payment_intent_id):
        if self.timeout:
            raise PaymentProviderTimeout("Payment provider unreachable: timed out")
        intent = self.intents[payment_intent_id]
        return PaymentIntent(**{**intent.__dict__, "metadata": dict(intent.metadata)})

    def create_transfer(self, amount, destination, idempotency_key, metadata=None):
        with self._lock:
            self.transfers.append(
                {"amount": amount, "destination": destination, "idempotency_key": idempotency_key}
            )
            return f"tr_test_{len(self.transfers)}"


def make_csv(rows: list[dict], columns: list[str] = CSV_COLUMNS) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns, extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow({c: row.get(c, "") for c in columns})
    return buffer.getvalue()


def lead_row(i: int, **overrides) -> dict:
    """A valid CSV row whose email is unique per ``i``."""
    row = {
        "first_name": f"Dana{i}",
        "last_name": "Whitfield",
        "email": f"dana.whitfield{i}@northwind-roofing.com",
        "phone": "(512) 555-0100",
        "company_name": "Northwind Roofing",
        "company_domain": "northwind-roofing.com",
        "job_title": "Operations Manager",
        "seniority_level": "manager",
        "city": "Austin",
        "state": "TX",
        "industry": "roofing",
    }
    row.update(overrides)
    return row


