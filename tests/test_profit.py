"""
tests/test_profit.py

Commission rules, down payment choice and the profit matrix.
"""

import pytest

from dealer_optimiser.models import (
    FINANCING_CREDIT,
    FINANCING_LEASE,
    BonusTable,
    Database,
    FinancialInstitution,
    FlatCommission,
    NormalizedParams,
    VehicleLine,
)
from dealer_optimiser.normalizer import normalize
from dealer_optimiser.profit import ProfitEntry, ProfitMatrixCalculator, optimal_down_payment
from dealer_optimiser.reference import COMMISSION_RULES


# ============ Test Fixtures ============

@pytest.fixture
def calculator(database, constraints, settings):
    return ProfitMatrixCalculator(database, constraints, settings)


@pytest.fixture
def params(historical_request, constraints):
    return normalize(historical_request, constraints)


# ============ Commission ============

@pytest.mark.parametrize("down_payment,rate", [
    (10.0, 0.015),
    (20.0, 0.025),
    (30.0, 0.035),
    (39.9, 0.035),
    (40.0, 0.04),
    (45.0, 0.04),
    (50.0, 0.05),
])
def test_banorte_tiers(down_payment, rate):
    assert COMMISSION_RULES["Banorte"].rate_for(down_payment) == rate


def test_flat_commission():
    rule = FlatCommission(0.025)
    assert rule.rate_for(10.0) == rule.rate_for(50.0) == 0.025
    assert rule.commission(100000.0, 20.0) == pytest.approx(2500.0)


def test_banorte_preference_45_uses_4_percent(calculator, params):
    prefs = NormalizedParams(
        monthly_volume=params.monthly_volume,
        vehicle_prices={},
        vehicle_volumes=params.vehicle_volumes,
        engagement_preferences={"Banorte": 45.0},
    )
    entry = calculator.compute_entry("CR-V", "Banorte", prefs)
    assert entry.down_payment_pct == 45.0
    assert entry.credit_commission == pytest.approx(720000.0 * 0.55 * 0.04)


def test_zero_preference_is_used_not_replaced(calculator, params):
    """An explicit 0% preference is kept and then clamped to the SUV plan minimum of 20%"""
    prefs = NormalizedParams(
        monthly_volume=params.monthly_volume,
        vehicle_prices={},
        vehicle_volumes=params.vehicle_volumes,
        engagement_preferences={"Banorte": 0.0},
    )
    entry = calculator.compute_entry("CR-V", "Banorte", prefs)
    assert entry.down_payment_pct == 20.0


# ============ Down Payment ============

def test_optimal_down_payment(database, settings):
    assert optimal_down_payment(database.institution("BBVA"), settings) == 20.0
    assert optimal_down_payment(database.institution("Banorte"), settings) == 30.0
    assert optimal_down_payment(database.institution("Santander"), settings) == 25.0


def test_optimal_down_payment_without_overlap(settings):
    inst = FinancialInstitution(
        institution_id="x", name="X", commission_rule=FlatCommission(0.02),
        down_payment_range=(45.0, 60.0),
    )
    assert optimal_down_payment(inst, settings) == 45.0


# ============ Profit Entries ============

def test_credit_profit_components(calculator, params):
    """Banorte CR-V: SUV plan subsidy, 30% down payment tier, 1000 incentive"""
    entry = calculator.compute_entry("CR-V", "Banorte", params)
    assert entry.plan_id == "banorte-suv"
    assert entry.down_payment_pct == 30.0
    assert entry.credit_commission == pytest.approx(round(720000.0 * 0.7 * 0.035))
    assert entry.credit_bonus == pytest.approx(21000.0)
    assert entry.lease_profit == pytest.approx(720000.0 * 0.02 + 10000.0)
    assert entry.financing_type == FINANCING_CREDIT
    assert entry.unit_profit == pytest.approx(entry.credit_profit)


def test_plan_miss_makes_pair_ineligible(calculator, params):
    entry = calculator.compute_entry("Odyssey", "Banorte", params)
    assert not entry.eligible
    assert entry.unit_profit == 0.0


def test_bonus_table_used_without_plans(settings, constraints):
    inst = FinancialInstitution(
        institution_id="x", name="X", commission_rule=FlatCommission(0.0),
        bonus_table=BonusTable({"City": {"2025": {"LX": 5000.0, "Sport": 8000.0}}}),
    )
    db = Database(
        vehicle_lines=(VehicleLine("vehicle_1", "City", 450000.0),),
        institutions=(inst,),
    )
    calc = ProfitMatrixCalculator(db, constraints, settings)
    params = NormalizedParams(monthly_volume=1, vehicle_prices={}, vehicle_volumes={"City": 1})

    entry = calc.compute_entry("City", "X", params)
    assert entry.eligible
    assert entry.credit_bonus == 8000.0
    # Lease beats a zero-commission credit: 2% of price + half the bonus
    assert entry.financing_type == FINANCING_LEASE
    assert entry.unit_profit == pytest.approx(9000.0 + 4000.0)


def test_lease_path_for_entry():
    entry = ProfitEntry("City", "X", 20.0, credit_commission=1000.0, credit_bonus=2000.0,
                        lease_commission=9000.0, lease_bonus=500.0)
    assert entry.financing_type == FINANCING_LEASE
    assert entry.path(FINANCING_CREDIT) == (3000.0, 1000.0, 2000.0)
    assert entry.commission == 9000.0


def test_profit_never_negative():
    entry = ProfitEntry("City", "X", 20.0, credit_commission=-5000.0, credit_bonus=0.0,
                        lease_commission=-1.0, lease_bonus=0.0)
    assert entry.unit_profit == 0.0


def test_request_price_overrides_list_price(calculator, params):
    priced = NormalizedParams(
        monthly_volume=params.monthly_volume,
        vehicle_prices={"City": 300000.0},
        vehicle_volumes=params.vehicle_volumes,
    )
    assert calculator.price_for("City", priced) == 300000.0
    assert calculator.price_for("Civic", priced) == 520000.0
    assert calculator.price_for("Passport", priced) == 650000.0


# ============ Matrix ============

def test_build_matrix(calculator, params):
    matrix = calculator.build_matrix(params)
    assert len(matrix) == 8 * 3
    assert all(e.unit_profit >= 0 for e in matrix)

    ranked = matrix.ranked()
    assert len(ranked) == 23
    profits = [e.unit_profit for e in ranked]
    assert profits == sorted(profits, reverse=True)

    df = matrix.to_frame()
    assert list(df["eligible"]).count(False) == 1

    table = matrix.profit_table()
    assert list(table.index) == list(params.vehicle_volumes.keys())
    assert table.loc["Odyssey", "Banorte"] == 0.0


def test_vehicle_version_reaches_plan_resolution(calculator, params):
    versioned = NormalizedParams(
        monthly_volume=params.monthly_volume,
        vehicle_prices={},
        vehicle_volumes=params.vehicle_volumes,
        vehicle_versions={"CR-V": "EX-L"},
    )
    assert calculator.compute_entry("CR-V", "Santander", versioned).plan_id == "santander-hibrido"
    assert calculator.compute_entry("CR-V", "Santander", params).plan_id == "santander-preferente"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
