"""
Tests for production planning from a demand score.
"""

import pytest

from fashion_core.errors import InvalidInput
from fashion_core.planner import conversion_rate, plan, recommended_quantity


@pytest.mark.parametrize(
    "demand_score, expected_quantity",
    [
        (100, 200),
        (85, 125),
        (80, 100),
        (79, 97),
        (61, 52),
        (60, 50),
        (59, 58),
        (41, 31),
        (40, 30),
        (39, 29),
        (1, 10),
        (0, 10),
    ],
)
def test_recommended_quantity_tiers(demand_score: int, expected_quantity: int) -> None:
    """Each tier is its own linear function of the score, floored."""
    assert recommended_quantity(demand_score) == expected_quantity


@pytest.mark.parametrize(
    "demand_score, expected_rate",
    [(100, 0.05), (80, 0.05), (79, 0.03), (60, 0.03), (59, 0.02), (40, 0.02), (39, 0.01), (0, 0.01)],
)
def test_conversion_rate_tiers(demand_score: int, expected_rate: float) -> None:
    assert conversion_rate(demand_score) == expected_rate


def test_plan_for_high_demand() -> None:
    """85 -> 125 units; 125 / 0.05 is exactly 2500 people."""
    result = plan(85, estimated_price=100.0, estimated_production_cost=40.0)
    assert result.recommended_quantity == 125
    assert result.conversion_rate == 0.05
    assert result.target_audience_size == 2500
    assert result.projected_revenue == pytest.approx(12500.0)
    assert result.total_production_cost == pytest.approx(5000.0)
    assert result.profit_margin_pct == pytest.approx(60.0)


def test_plan_rounds_audience_up() -> None:
    """79 -> 97 units at 3% conversion needs ceil(3233.33) = 3234 people."""
    result = plan(79, estimated_price=10.0, estimated_production_cost=5.0)
    assert result.recommended_quantity == 97
    assert result.target_audience_size == 3234


def test_plan_for_lowest_tiers() -> None:
    assert plan(40, 50.0, 20.0).recommended_quantity == 30
    zero = plan(0, 50.0, 20.0)
    assert zero.recommended_quantity == 10
    assert zero.target_audience_size == 1000


def test_zero_price_has_zero_margin() -> None:
    """A free product has no defined margin; it is reported as 0."""
    result = plan(70, estimated_price=0.0, estimated_production_cost=10.0)
    assert result.profit_margin_pct == 0.0
    assert result.projected_revenue == 0.0
    assert result.total_production_cost == pytest.approx(10.0 * result.recommended_quantity)


def test_cost_above_price_gives_negative_margin() -> None:
    assert plan(50, estimated_price=10.0, estimated_production_cost=15.0).profit_margin_pct == pytest.approx(-50.0)


@pytest.mark.parametrize(
    "demand_score, price, cost",
    [(50, -1.0, 10.0), (50, 10.0, -0.01), (-1, 10.0, 5.0), (101, 10.0, 5.0), (50.5, 10.0, 5.0), (50, float("nan"), 1.0)],
    ids=["negative_price", "negative_cost", "score_below_range", "score_above_range", "fractional_score", "nan_price"],
)
def test_invalid_inputs_are_rejected(demand_score, price, cost) -> None:
    """Invalid inputs raise before anything is computed."""
    with pytest.raises(InvalidInput):
        plan(demand_score, price, cost)
