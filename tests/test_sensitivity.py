"""
tests/test_sensitivity.py

What-if analysis over request parameters.
"""

import pytest

from dealer_optimiser.errors import ValidationError
from dealer_optimiser.models import AllocationRequest
from dealer_optimiser.sensitivity import (
    parameter_value,
    rescale_volumes,
    run_sensitivity,
    vary_request,
)


def test_monthly_volume_sweep(engine, historical_request):
    analysis = run_sensitivity(engine, historical_request, "monthly_volume", [-4, 0, 4])

    assert analysis.parameter == "monthly_volume"
    assert analysis.base_value == 28
    assert [p.value for p in analysis.points] == [24, 28, 32]

    unchanged = analysis.points[1]
    assert unchanged.profit_impact == 0
    assert all(v == pytest.approx(0.0) for v in unchanged.share_impact.values())

    # More units, more profit
    assert analysis.points[2].profit_impact > 0
    assert analysis.max_gain() is analysis.points[2]
    assert analysis.max_loss() is analysis.points[0]


def test_frame(engine, historical_request):
    df = run_sensitivity(engine, historical_request, "vehicle_prices", [-10, 10]).to_frame()
    assert list(df["variation"]) == [-10.0, 10.0]
    assert "profit_impact" in df.columns


def test_rescale_volumes_exact_total():
    volumes = {"CR-V": 7, "HR-V": 6, "BR-V": 5, "City": 3, "Civic": 3, "Pilot": 2, "Odyssey": 1, "Accord": 1}
    for total in (20, 24, 32, 36):
        assert sum(rescale_volumes(volumes, total).values()) == total


def test_vary_request_variants(historical_request):
    smaller = vary_request(historical_request, "monthly_volume", -40)
    assert smaller.monthly_volume == 1

    staff = vary_request(historical_request, "salespeople_count", -10)
    assert staff.salespeople_count == 1

    priced = AllocationRequest(monthly_volume=10, vehicle_prices={"City": 400000.0})
    assert vary_request(priced, "vehicle_prices", 10).vehicle_prices["City"] == 440000.0

    prefs = AllocationRequest(monthly_volume=10, engagement_preferences={"BBVA": 48.0, "Banorte": 8.0})
    up = vary_request(prefs, "engagement_preferences", 5)
    down = vary_request(prefs, "engagement_preferences", -5)
    assert up.engagement_preferences == {"BBVA": 50.0, "Banorte": 13.0}
    assert down.engagement_preferences == {"BBVA": 43.0, "Banorte": 5.0}

    # The original request is untouched
    assert historical_request.monthly_volume == 28


def test_parameter_value_averages(historical_request):
    prefs = AllocationRequest(monthly_volume=10, engagement_preferences={"BBVA": 20.0, "Banorte": 40.0})
    assert parameter_value(prefs, "engagement_preferences") == 30.0
    assert parameter_value(historical_request, "vehicle_prices") == 0.0


def test_unknown_parameter(engine, historical_request):
    with pytest.raises(ValidationError):
        run_sensitivity(engine, historical_request, "weather")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
