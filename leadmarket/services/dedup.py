"""Dedup fingerprints and the persisted fingerprint -> lead index."""
import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from leadmarket.models.lead import CanonicalLead

logger = logging.getLogger(__name__)

GMAIL_DOMAINS = {"gmail.com", "googlemail.com"}
NON_DIGIT = re.compile(r"\D")
WHITESPACE = re.compile(r"\s+")

# Fingerprint lookups are chunked to keep IN clauses bounded
LOOKUP_CHUNK = 500

NEW = "new"
DUPLICATE_IN_BATCH = "DUPLICATE_IN_BATCH"
DUPLICATE_SAME_PARTNER = "DUPLICATE_SAME_PARTNER"
DUPLICATE_CROSS_PARTNER = "DUPLICATE_CROSS_PARTNER"


def normalize_email(email: Optional[str]) -> str:
    """
    Lowercase and trim an email; Gmail local parts ignore dots.

    >>> normalize_email(" J.Doe@GMail.com ")
    'jdoe@gmail.com'
    """
    if not email:
        return ""
    cleaned = email.strip().lower()
    local, sep, domain = cleaned.partition("@")
    if not sep or not local or not domain:
        return cleaned
    if domain in GMAIL_DOMAINS:
        local = local.replace(".", "")
    return f"{local}@{domain}"


def normalize_domain(domain: Optional[str]) -> str:
    """Strip scheme, ``www.`` and any path from a company domain."""
    if not domain:
        return ""
    cleaned = domain.strip().lower()
    for prefix in ("https://", "http://"):
        if cleaned.startswith(prefix):
            cleaned = cleaned[len(prefix):]
    if cleaned.startswith("www."):
        cleaned = cleaned[4:]
    return cleaned.split("/", 1)[0]


def normalize_phone(phone: Optional[str]) -> str:
    """Digits only; an 11-digit US number loses its leading 1."""
    if not phone:
        return ""
    digits = NON_DIGIT.sub("", phone)
    if len(digits) == 11 and digits.startswith("1"):
        return digits[1:]
    return digits


def _normalize_text(value: Optional[str]) -> str:
    if not value:
        return ""
    return WHITESPACE.sub(" ", value.strip()).lower()


def compute_fingerprint(
    email: Optional[str],
    company_domain: Optional[str] = None,
    company_name: Optional[str] = None,
    city: Optional[str] = None,
    state: Optional[str] = None,
) -> str:
    """
    Derive the dedup key for a lead.

    Contact rows key on normalized email + domain (the explicit company
    domain, else the email's). Rows without a contact fall back to
    business name + address.

    Returns:
        SHA256 hex digest
    """
    norm_email = normalize_email(email)
    if norm_email:
        domain = normalize_domain(company_domain) or norm_email.partition("@")[2]
        payload = f"e|{norm_email}|{domain}"
    else:
        name = _normalize_text(company_name)
        if not name:
            raise ValueError("fingerprint needs an email or a company name")
        payload = f"a|{name}|{_normalize_text(city)}|{_normalize_text(state)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class DedupMatch:
    """Outcome of checking one fingerprint."""

    outcome: str
    existing_lead_id: Optional[str] = None
    existing_partner_id: Optional[str] = None

    @property
    def is_new(self) -> bool:
        return self.outcome == NEW


class DedupIndex:
    """
    Answers "new, duplicate of the pool, or duplicate within this batch?".

    One instance lives for one batch: it remembers every fingerprint the
    batch has already claimed, and consults the persisted pool (the unique
    ``leads.dedup_fingerprint`` column) for the rest.
    """

    def __init__(self, db: Session, partner_id: str):
        self.db = db
        self.partner_id = partner_id
        self._seen: dict[str, int] = {}

    def lookup_pool(self, fingerprints: Iterable[str]) -> dict[str, tuple[str, Optional[str]]]:
        """Map each already-persisted fingerprint to (lead_id, partner_id)."""
        unique = list(dict.fromkeys(fingerprints))
        found: dict[str, tuple[str, Optional[str]]] = {}
        for start in range(0, len(unique), LOOKUP_CHUNK):
            chunk = unique[start:start + LOOKUP_CHUNK]
            rows = self.db.execute(
                select(
                    CanonicalLead.dedup_fingerprint,
                    CanonicalLead.id,
                    CanonicalLead.partner_id,
                ).where(CanonicalLead.dedup_fingerprint.in_(chunk))
            ).all()
            for fingerprint, lead_id, partner_id in rows:
                found[fingerprint] = (lead_id, partner_id)
        return found

    def classify(
        self,
        fingerprint: str,
        row_number: int,
        pool: dict[str, tuple[str, Optional[str]]],
    ) -> DedupMatch:
        """
        Classify one row and, if new, reserve its fingerprint for this batch.

        Within-batch duplicates are checked first so that the first row of a
        batch wins over later copies of itself.
        """
        if fingerprint in self._seen:
            return DedupMatch(DUPLICATE_IN_BATCH)

        existing = pool.get(fingerprint)
        if existing is not None:
            lead_id, owner_id = existing
            self._seen[fingerprint] = row_number
            if owner_id == self.partner_id:
                return DedupMatch(DUPLICATE_SAME_PARTNER, lead_id, owner_id)
            return DedupMatch(DUPLICATE_CROSS_PARTNER, lead_id, owner_id)

        self._seen[fingerprint] = row_number
        return DedupMatch(NEW)
