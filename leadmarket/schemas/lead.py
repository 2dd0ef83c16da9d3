"""Lead row, listing and purchase schemas."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

VALID_STATES = {
    "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "FL", "GA",
    "HI", "ID", "IL", "IN", "IA", "KS", "KY", "LA", "ME", "MD",
    "MA", "MI", "MN", "MS", "MO", "MT", "NE", "NV", "NH", "NJ",
    "NM", "NY", "NC", "ND", "OH", "OK", "OR", "PA", "RI", "SC",
    "SD", "TN", "TX", "UT", "VT", "VA", "WA", "WV", "WI", "WY",
    "DC",
}

INDUSTRY_MAP = {
    "hvac": "HVAC",
    "roofing": "Roofing",
    "plumbing": "Plumbing",
    "electrical": "Electrical",
    "solar": "Solar",
    "real estate": "Real Estate",
    "real_estate": "Real Estate",
    "realestate": "Real Estate",
    "insurance": "Insurance",
    "landscaping": "Landscaping",
    "pest control": "Pest Control",
    "cleaning": "Cleaning Services",
    "auto": "Auto Services",
    "legal": "Legal Services",
    "financial": "Financial Services",
    "healthcare": "Healthcare",
    "technology": "Technology",
    "manufacturing": "Manufacturing",
    "retail": "Retail",
    "construction": "Construction",
    "education": "Education",
    "hospitality": "Hospitality",
    "transportation": "Transportation",
    "consulting": "Consulting",
    "professional_services": "Professional Services",
}

Seniority = Literal["c_suite", "vp", "director", "manager", "ic", "unknown"]


class LeadRow(BaseModel):
    """One validated and normalized CSV row."""

    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    state: str
    industry: str
    phone: Optional[str] = Field(None, max_length=50)
    company_name: Optional[str] = Field(None, max_length=200)
    company_domain: Optional[str] = Field(None, max_length=200)
    job_title: Optional[str] = Field(None, max_length=200)
    city: Optional[str] = Field(None, max_length=100)
    seniority_level: Optional[Seniority] = None
    company_size: Optional[str] = Field(None, max_length=50)
    linkedin_url: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="before")
    @classmethod
    def drop_blank_cells(cls, data: Any) -> Any:
        """Blank and short-row cells count as absent, so required fields report 'missing'."""
        if not isinstance(data, dict):
            return data
        cleaned = {}
        for key, value in data.items():
            if key is None or value is None:
                continue
            if isinstance(value, str):
                value = value.strip()
                if not value:
                    continue
            cleaned[key.strip().lower()] = value
        return cleaned

    @field_validator("state")
    @classmethod
    def check_state(cls, value: str) -> str:
        code = value.strip().upper()
        if code not in VALID_STATES:
            raise ValueError(f"Invalid state: {value}")
        return code

    @field_validator("industry")
    @classmethod
    def check_industry(cls, value: str) -> str:
        canonical = INDUSTRY_MAP.get(value.strip().lower())
        if canonical is None:
            raise ValueError(f"Invalid industry: {value}")
        return canonical

    @field_validator("seniority_level", mode="before")
    @classmethod
    def lower_seniority(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class LeadListingResponse(BaseModel):
    """A listed lead with contact details masked until purchase."""

    id: str
    company_name: Optional[str] = None
    company_domain: Optional[str] = None
    industry: Optional[str] = None
    company_size: Optional[str] = None
    job_title: Optional[str] = None
    seniority_level: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    email_masked: Optional[str] = None
    has_phone: bool
    intent_score: int
    freshness_score: int
    verification_status: str
    price: Decimal
    created_at: datetime


class LeadListResponse(BaseModel):
    """Paginated marketplace listing."""

    items: list[LeadListingResponse]
    total: int
    page: int
    page_size: int
    pages: int


class PurchaseIntentResponse(BaseModel):
    """Payment intent created for one lead and one buyer."""

    lead_id: str
    payment_intent_id: str
    client_secret: Optional[str] = None
    amount: Decimal
    currency: str


class ConfirmPurchaseRequest(BaseModel):
    """Client/webhook confirmation of a payment intent."""

    payment_intent_id: str = Field(..., min_length=1, max_length=255)


class ConfirmPurchaseResponse(BaseModel):
    """Outcome of confirm-purchase; replays set ``alreadyRecorded``."""

    success: bool
    purchaseId: str
    alreadyRecorded: Optional[bool] = None


class CreditPurchaseRequest(BaseModel):
    """Buy a lead with workspace credits."""

    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=255)


class PurchaseSummary(BaseModel):
    """A buyer's purchase as listed in their history."""

    id: str
    status: str
    payment_method: str
    total_price: Decimal
    lead_count: int
    created_at: datetime
    completed_at: Optional[datetime] = None
