"""Intent scoring and marketplace pricing for newly ingested leads."""
from decimal import ROUND_HALF_UP, Decimal

from leadmarket.schemas.lead import LeadRow

BASE_PRICE = Decimal("0.05")
PHONE_ADD_ON = Decimal("0.03")
FRESH_SCORE = 100
PRICE_PLACES = Decimal("0.0001")

SENIORITY_POINTS = {
    "c_suite": 40,
    "vp": 35,
    "director": 30,
    "manager": 20,
    "ic": 10,
    "unknown": 5,
}

COMPLETENESS_FIELDS = (
    "first_name",
    "last_name",
    "email",
    "phone",
    "company_name",
    "company_domain",
    "job_title",
    "city",
    "state",
    "industry",
    "seniority_level",
    "company_size",
)


def data_completeness(row: LeadRow) -> float:
    """Percentage of scoring fields that carry a value."""
    filled = sum(1 for name in COMPLETENESS_FIELDS if getattr(row, name))
    return filled * 100.0 / len(COMPLETENESS_FIELDS)


def intent_score(row: LeadRow) -> int:
    """0-100: seniority carries up to 40 points, completeness up to 60."""
    seniority = SENIORITY_POINTS[row.seniority_level or "unknown"]
    score = seniority + data_completeness(row) * 0.6
    return max(0, min(100, round(score)))


def marketplace_price(score: int, freshness: int, has_phone: bool) -> Decimal:
    """Price a lead from its intent and freshness scores."""
    intent_multiplier = Decimal("1")
    if score >= 67:
        intent_multiplier = Decimal("2.5")
    elif score >= 34:
        intent_multiplier = Decimal("1.5")

    freshness_multiplier = Decimal("1")
    if freshness >= 80:
        freshness_multiplier = Decimal("1.5")
    elif freshness < 30:
        freshness_multiplier = Decimal("0.5")

    price = BASE_PRICE * intent_multiplier * freshness_multiplier
    if has_phone:
        price += PHONE_ADD_ON
    return price.quantize(PRICE_PLACES, rounding=ROUND_HALF_UP)
