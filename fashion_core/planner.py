"""
Production planning from a demand score.

Maps a demand score to a recommended production run, the audience needed to
sell it, and the revenue/cost/margin that run implies.
"""

import math
from decimal import ROUND_CEILING, Decimal
from typing import Tuple

from fashion_core.errors import InvalidInput
from fashion_core.models import ProductionPlan

# (lower bound, base quantity, units per demand point above the bound, conversion rate)
DEMAND_TIERS: Tuple[Tuple[int, Decimal, Decimal, Decimal], ...] = (
    (80, Decimal("100"), Decimal("5"), Decimal("0.05")),
    (60, Decimal("50"), Decimal("2.5"), Decimal("0.03")),
    (40, Decimal("30"), Decimal("1.5"), Decimal("0.02")),
    (0, Decimal("10"), Decimal("0.5"), Decimal("0.01")),
)


def _tier(demand_score: int) -> Tuple[int, Decimal, Decimal, Decimal]:
    for tier in DEMAND_TIERS:
        if demand_score >= tier[0]:
            return tier
    return DEMAND_TIERS[-1]


def recommended_quantity(demand_score: int) -> int:
    """
    Units to produce for a demand score.

    80-100: 100 + (d-80)*5, 60-79: 50 + (d-60)*2.5, 40-59: 30 + (d-40)*1.5,
    0-39: 10 + d*0.5; all floored.
    """
    lower, base, slope, _ = _tier(demand_score)
    return int(base + (demand_score - lower) * slope)


def conversion_rate(demand_score: int) -> float:
    return float(_tier(demand_score)[3])


def _check_inputs(demand_score: int, estimated_price: float, estimated_production_cost: float) -> None:
    if isinstance(demand_score, bool) or not isinstance(demand_score, int):
        raise InvalidInput(f"demand_score must be an integer, got {demand_score!r}")
    if not 0 <= demand_score <= 100:
        raise InvalidInput(f"demand_score must be within [0, 100], got {demand_score}")
    for name, value in (("estimated_price", estimated_price), ("estimated_production_cost", estimated_production_cost)):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise InvalidInput(f"{name} must be a finite number, got {value!r}")
        if value < 0:
            raise InvalidInput(f"{name} must not be negative, got {value}")


def plan(demand_score: int, estimated_price: float, estimated_production_cost: float) -> ProductionPlan:
    """
    Derive the production plan for a product.

    Args:
        demand_score: Composite demand score, integer in [0, 100].
        estimated_price: Expected unit market price.
        estimated_production_cost: Expected unit production cost.

    Returns:
        ProductionPlan: Quantity, target audience and financial projections.

    Raises:
        InvalidInput: If the score is out of range or a price/cost is negative.
    """
    _check_inputs(demand_score, estimated_price, estimated_production_cost)

    quantity = recommended_quantity(demand_score)
    rate = _tier(demand_score)[3]
    audience = int((Decimal(quantity) / rate).to_integral_value(rounding=ROUND_CEILING))

    margin = 0.0
    if estimated_price > 0:
        margin = (estimated_price - estimated_production_cost) / estimated_price * 100

    return ProductionPlan(
        recommended_quantity=quantity,
        conversion_rate=float(rate),
        target_audience_size=audience,
        projected_revenue=estimated_price * quantity,
        total_production_cost=estimated_production_cost * quantity,
        profit_margin_pct=margin,
    )
