"""
tests/test_fallback.py

Fallback distribution: flagged, scaled loosely, never raises.
"""

import pytest

from dealer_optimiser.fallback import ALGORITHM_FALLBACK, HISTORICAL_DISTRIBUTION, fallback
from dealer_optimiser.models import AllocationRequest


def test_fallback_at_historical_volume():
    result = fallback(AllocationRequest(monthly_volume=28))

    assert result.algorithm_used == ALGORITHM_FALLBACK
    assert result.total_units == 28
    assert result.constraints_satisfied
    assert result.confidence_level == 0.0
    assert result.recommendations[0].startswith("Warning")
    assert len(result.variables) == len(HISTORICAL_DISTRIBUTION)


def test_fallback_profit_uses_unit_rows():
    result = fallback({"monthly_volume": 28})
    crv = [v for v in result.variables if v.vehicle_line == "CR-V"][0]
    assert crv.institution == "Banorte"
    assert crv.unit_profit == 30000.0
    assert result.total_profit == sum(v.quantity * v.unit_profit for v in result.variables)


def test_fallback_scales_with_minimum_one_unit():
    result = fallback(AllocationRequest(monthly_volume=56))
    quantities = {v.vehicle_line: v.quantity for v in result.variables}
    assert quantities["CR-V"] == 14
    assert quantities["Accord"] == 2

    small = fallback(AllocationRequest(monthly_volume=3))
    assert all(v.quantity >= 1 for v in small.variables)
    assert small.constraints_satisfied == (small.total_units == 3)


@pytest.mark.parametrize("request_value", [None, {}, {"monthly_volume": "x"}, {"monthly_volume": -4}, 42])
def test_fallback_never_raises(request_value):
    result = fallback(request_value, reason="boom")
    assert result.total_units == 28
    assert not result.constraints_satisfied
    assert "Optimization failed: boom" in result.recommendations


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
