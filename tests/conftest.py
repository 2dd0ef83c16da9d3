"""Pytest configuration and fixtures."""
import io
import os
import uuid
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SIGNING_SECRET", "test-signing-secret")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from leadmarket import models  # noqa: E402,F401
from leadmarket.api.deps import get_file_storage, get_gateway  # noqa: E402
from leadmarket.database import Base, get_db  # noqa: E402
from leadmarket.main import app  # noqa: E402
from leadmarket.models import CanonicalLead, Partner, UploadBatch  # noqa: E402
from leadmarket.services.dedup import compute_fingerprint  # noqa: E402
from leadmarket.services.rate_limiter import (  # noqa: E402
    InMemoryRateLimiter,
    get_purchase_rate_limiter,
)
from leadmarket.services.storage import LocalStorage  # noqa: E402
from factories import FakeGateway  # noqa: E402


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so concurrent sessions really contend."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'leadmarket-test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(str(tmp_path / "storage"))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def rate_limiter():
    return InMemoryRateLimiter(limit=100, window_seconds=60)


@pytest.fixture
def client(session_factory, storage, gateway, rate_limiter):
    """API client wired to the test database, storage and fakes."""

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_file_storage] = lambda: storage
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_purchase_rate_limiter] = lambda: rate_limiter

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def make_partner(db):
    def _make(**kwargs) -> Partner:
        values = {
            "name": "Northwind Data Co",
            "email": f"ops-{uuid.uuid4().hex[:8]}@northwind-data.com",
            "stripe_account_id": "acct_test_partner",
            "stripe_onboarding_complete": True,
        }
        values.update(kwargs)
        partner = Partner(**values)
        db.add(partner)
        db.commit()
        db.refresh(partner)
        return partner

    return _make


@pytest.fixture
def make_lead(db):
    def _make(partner: Partner = None, **kwargs) -> CanonicalLead:
        email = kwargs.pop("email", f"lead-{uuid.uuid4().hex[:10]}@acme-hvac.com")
        values = {
            "dedup_fingerprint": compute_fingerprint(email),
            "partner_id": partner.id if partner else None,
            "first_name": "Riley",
            "last_name": "Okafor",
            "email": email,
            "phone": "5125550142",
            "job_title": "Owner",
            "seniority_level": "c_suite",
            "company_name": "Acme HVAC",
            "company_domain": "acme-hvac.com",
            "industry": "HVAC",
            "city": "Dallas",
            "state": "TX",
            "intent_score": 80,
            "freshness_score": 100,
            "price": Decimal("0.2175"),
        }
        values.update(kwargs)
        lead = CanonicalLead(**values)
        db.add(lead)
        db.commit()
        db.refresh(lead)
        return lead

    return _make


@pytest.fixture
def make_batch(db, storage):
    """Store a CSV and create a batch for it, as ``POST /uploads`` would."""

    def _make(partner: Partner, content: str, status: str = "validating") -> UploadBatch:
        batch = UploadBatch(
            partner_id=partner.id,
            filename="leads.csv",
            storage_path="",
            status=status,
        )
        db.add(batch)
        db.flush()
        batch.storage_path = f"partner-uploads/{partner.id}/{batch.id}.csv"
        storage.save_stream(batch.storage_path, io.BytesIO(content.encode("utf-8")))
        batch.file_size_bytes = storage.size(batch.storage_path)
        db.commit()
        db.refresh(batch)
        return batch

    return _make
