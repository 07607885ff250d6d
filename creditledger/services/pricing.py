"""Server-side price table. Client-supplied prices are never trusted."""

from pydantic import BaseModel

from creditledger.core.exceptions import BadRequestError

SPREAD_COSTS: dict[str, int] = {
    "SINGLE": 1,
    "TWO_CARD": 2,
    "THREE_CARD": 3,
    "FIVE_CARD": 5,
    "LOVE": 5,
    "CAREER": 5,
    "HORSESHOE": 7,
    "CELTIC_CROSS": 10,
}

OPERATION_COSTS: dict[str, int] = {
    "FOLLOW_UP": 1,
    "CLARIFICATION": 1,
    "SUMMARIZE_QUESTION": 1,
}

INTERPRETATION_STYLES = ("CLASSIC", "SPIRITUAL", "PSYCHO_EMOTIONAL", "NUMEROLOGY", "ELEMENTAL")

ADVANCED_STYLE_SURCHARGE = 1
EXTENDED_QUESTION_SURCHARGE = 1


class ReadingCost(BaseModel):
    base_cost: int
    style_cost: int
    extended_cost: int
    total_cost: int


class CreditPackage(BaseModel):
    id: str
    name: str
    credits: int
    price_minor: int  # cents
    discount: int = 0
    badge: str | None = None


CREDIT_PACKAGES: list[CreditPackage] = [
    CreditPackage(id="starter", name="Starter", credits=10, price_minor=500),
    CreditPackage(id="basic", name="Basic", credits=25, price_minor=1000, discount=20),
    CreditPackage(id="popular", name="Popular", credits=60, price_minor=2000, discount=34, badge="popular"),
    CreditPackage(id="value", name="Value", credits=100, price_minor=3000, discount=40, badge="value"),
    CreditPackage(id="premium", name="Premium", credits=200, price_minor=5000, discount=50, badge="premium"),
]


def normalize_key(name: str) -> str:
    """'three-card' -> 'THREE_CARD'."""
    return name.strip().upper().replace("-", "_").replace(" ", "_")


def normalize_spread(spread_type: str) -> str:
    key = normalize_key(spread_type or "")
    if key not in SPREAD_COSTS:
        raise BadRequestError(f"Invalid spread type: {spread_type}", details={"spread_type": spread_type})
    return key


def normalize_style(style: str | None) -> str:
    if not style:
        return "CLASSIC"
    key = normalize_key(style)
    if key not in INTERPRETATION_STYLES:
        raise BadRequestError(f"Invalid interpretation style: {style}", details={"interpretation_style": style})
    return key


def cost_of(operation_kind: str) -> int:
    """Pure lookup: 'SPREAD:CELTIC_CROSS', 'celtic-cross' or 'FOLLOW_UP'."""
    key = normalize_key(operation_kind)
    if key.startswith("SPREAD:"):
        key = key.split(":", 1)[1]
    if key in SPREAD_COSTS:
        return SPREAD_COSTS[key]
    if key in OPERATION_COSTS:
        return OPERATION_COSTS[key]
    raise BadRequestError(f"Unknown operation: {operation_kind}", details={"operation": operation_kind})


def reading_cost(spread_type: str, interpretation_style: str | None = None, extended_question: bool = False) -> ReadingCost:
    base = SPREAD_COSTS[normalize_spread(spread_type)]
    style_cost = ADVANCED_STYLE_SURCHARGE if normalize_style(interpretation_style) != "CLASSIC" else 0
    extended_cost = EXTENDED_QUESTION_SURCHARGE if extended_question else 0
    return ReadingCost(
        base_cost=base,
        style_cost=style_cost,
        extended_cost=extended_cost,
        total_cost=base + style_cost + extended_cost,
    )


def price_table() -> dict:
    return {
        "spreads": dict(SPREAD_COSTS),
        "operations": dict(OPERATION_COSTS),
        "advanced_style_surcharge": ADVANCED_STYLE_SURCHARGE,
        "extended_question_surcharge": EXTENDED_QUESTION_SURCHARGE,
    }


def get_package(package_id: str) -> CreditPackage:
    for package in CREDIT_PACKAGES:
        if package.id == package_id:
            return package
    raise BadRequestError("Invalid package", details={"package_id": package_id})
