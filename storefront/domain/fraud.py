"""Order fraud-risk scoring.

Additive point model against fixed thresholds. The evaluator is a pure
function of the order and the customer's history: no I/O, no clock, and it
never raises. Bad input degrades into a risk signal instead.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Sequence

from .models import FraudRisk

HIGH_VALUE_THRESHOLD = Decimal("1000")
FIRST_ORDER_THRESHOLD = Decimal("500")
BULK_UNIT_PRICE_THRESHOLD = Decimal("300")
BULK_QUANTITY_THRESHOLD = 3

HIGH_VALUE_POINTS = 40
FIRST_ORDER_POINTS = 50
BULK_ITEM_POINTS = 30
INVALID_AMOUNT_POINTS = 10

HIGH_RISK_SCORE = 70
MEDIUM_RISK_SCORE = 40


@dataclass(frozen=True)
class FraudLine:
    name: str
    unit_price: Any
    quantity: Any


@dataclass(frozen=True)
class FraudOrder:
    total_amount: Any
    items: Sequence[FraudLine] = ()
    shipping_address: Optional[str] = None


@dataclass(frozen=True)
class OrderHistory:
    total_orders: int = 0
    total_spent: Decimal = Decimal("0")


@dataclass(frozen=True)
class FraudAssessment:
    risk: FraudRisk
    score: int
    reasons: list[str] = field(default_factory=list)


def _to_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not amount.is_finite():
        return None
    return amount


def band_for(score: int) -> FraudRisk:
    if score >= HIGH_RISK_SCORE:
        return FraudRisk.HIGH
    if score >= MEDIUM_RISK_SCORE:
        return FraudRisk.MEDIUM
    return FraudRisk.LOW


def evaluate(order: FraudOrder, history: Optional[OrderHistory]) -> FraudAssessment:
    score = 0
    reasons: list[str] = []

    total = _to_decimal(order.total_amount)
    if total is None:
        score += INVALID_AMOUNT_POINTS
        reasons.append("Invalid order amount detected.")
    else:
        if total > HIGH_VALUE_THRESHOLD:
            score += HIGH_VALUE_POINTS
            reasons.append(f"High order value (${total:.2f})")

        if history is not None and history.total_orders == 0 and total > FIRST_ORDER_THRESHOLD:
            score += FIRST_ORDER_POINTS
            reasons.append("Unusually large order for a first-time customer.")

    # Only the first offending line counts
    for line in order.items or ():
        unit_price = _to_decimal(line.unit_price)
        quantity = _to_decimal(line.quantity)
        if unit_price is None or quantity is None:
            continue
        if unit_price > BULK_UNIT_PRICE_THRESHOLD and quantity > BULK_QUANTITY_THRESHOLD:
            score += BULK_ITEM_POINTS
            reasons.append(f"Bulk order of high-value item: {line.name}")
            break

    return FraudAssessment(risk=band_for(score), score=score, reasons=reasons)
