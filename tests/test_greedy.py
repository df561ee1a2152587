"""
tests/test_greedy.py

Greedy assignment under concentration, line and credit caps.
"""

import pytest

from dealer_optimiser.config import Settings
from dealer_optimiser.greedy import AllocationLedger, greedy_allocate
from dealer_optimiser.models import FINANCING_CREDIT, FINANCING_LEASE, AllocationRequest
from dealer_optimiser.normalizer import normalize
from dealer_optimiser.profit import ProfitEntry, ProfitMatrixCalculator


@pytest.fixture
def greedy_inputs(historical_request, database, constraints, settings):
    params = normalize(historical_request, constraints)
    matrix = ProfitMatrixCalculator(database, constraints, settings).build_matrix(params)
    return params, matrix


def test_greedy_fills_historical_request(greedy_inputs, constraints, settings):
    params, matrix = greedy_inputs
    ledger = greedy_allocate(params, matrix, constraints, settings)

    assert ledger.total == 28
    for institution in ledger.institutions_used():
        assert ledger.institution_total(institution) <= constraints.institution_cap(28)
    for line, volume in params.vehicle_volumes.items():
        assert ledger.line_total(line) <= min(volume, constraints.line_cap(28))


def test_credit_ratio_cap(greedy_inputs, constraints, settings):
    params, matrix = greedy_inputs
    allocations = greedy_allocate(params, matrix, constraints, settings).to_allocations()

    credit_units = sum(a.quantity for a in allocations if a.financing_type == FINANCING_CREDIT)
    lease_units = sum(a.quantity for a in allocations if a.financing_type == FINANCING_LEASE)
    assert credit_units <= constraints.credit_cap(28)
    assert credit_units + lease_units == 28


def test_ineligible_pairs_never_used(greedy_inputs, constraints, settings):
    params, matrix = greedy_inputs
    allocations = greedy_allocate(params, matrix, constraints, settings).to_allocations()
    assert not any(a.vehicle_line == "Odyssey" and a.institution == "Banorte" for a in allocations)


def test_per_assignment_cap_of_one_still_fills(greedy_inputs, constraints):
    """A cap of 1 still reaches the target over repeated passes"""
    params, matrix = greedy_inputs
    settings = Settings(_env_file=None, per_assignment_cap=1)
    ledger = greedy_allocate(params, matrix, constraints, settings)

    best = matrix.ranked()[0]
    assert ledger.line_total(best.line) >= 1
    assert ledger.total == 28


def test_small_target_leaves_repair_work(database, constraints, settings):
    """T=1: floor caps are 0, so greedy books nothing"""
    params = normalize(AllocationRequest(monthly_volume=1), constraints, database.line_names())
    matrix = ProfitMatrixCalculator(database, constraints, settings).build_matrix(params)

    ledger = greedy_allocate(params, matrix, constraints, settings)
    assert ledger.total == 0


def test_ledger_books_overflow_as_lease():
    entry = ProfitEntry("CR-V", "BBVA", 20.0, credit_commission=8640.0, credit_bonus=24800.0,
                        lease_commission=14400.0, lease_bonus=12150.0)
    ledger = AllocationLedger(credit_cap=1)
    ledger.book(entry, 3)

    rows = {a.financing_type: a for a in ledger.to_allocations()}
    assert rows[FINANCING_CREDIT].quantity == 1
    assert rows[FINANCING_CREDIT].unit_profit == 33440.0
    assert rows[FINANCING_LEASE].quantity == 2
    assert rows[FINANCING_LEASE].unit_profit == 26550.0
    assert ledger.total == 3
    assert ledger.credit_units == 1
    assert ledger.total_profit() == pytest.approx(33440.0 + 2 * 26550.0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
