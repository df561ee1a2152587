"""
dealer_optimiser/greedy.py

Greedy assignment of units to (line, institution) pairs.

Pairs are visited most profitable first. Each visit books at most
per_assignment_cap units, bounded by what is left of the monthly target,
the line's normalized volume (and line concentration cap) and the
institution's concentration cap. Passes repeat until nothing more fits, so a
high-profit pair is revisited only after every other pair had a turn.
"""

import logging
from typing import Dict, List, Tuple

from .config import Settings
from .models import FINANCING_CREDIT, FINANCING_LEASE, Allocation, Constraints, NormalizedParams
from .profit import ProfitEntry, ProfitMatrix

logger = logging.getLogger(__name__)


class AllocationLedger:
    """
    Working allocation for a single run.

    Quantities are keyed by (line, institution, financing type). Credit units
    beyond the credit cap are booked as lease.
    """

    def __init__(self, credit_cap: int):
        self.credit_cap = credit_cap
        self._rows: Dict[Tuple[str, str, str], Tuple[ProfitEntry, int]] = {}
        self._line_totals: Dict[str, int] = {}
        self._institution_totals: Dict[str, int] = {}
        self.credit_units = 0
        self.total = 0

    def line_total(self, line: str) -> int:
        return self._line_totals.get(line, 0)

    def institution_total(self, institution: str) -> int:
        return self._institution_totals.get(institution, 0)

    def institutions_used(self) -> List[str]:
        return [name for name, qty in self._institution_totals.items() if qty > 0]

    def book(self, entry: ProfitEntry, quantity: int) -> None:
        if quantity <= 0:
            return
        if entry.financing_type == FINANCING_CREDIT:
            credit_qty = max(0, min(quantity, self.credit_cap - self.credit_units))
        else:
            credit_qty = 0
        lease_qty = quantity - credit_qty

        if credit_qty:
            self._add(entry, FINANCING_CREDIT, credit_qty)
            self.credit_units += credit_qty
        if lease_qty:
            self._add(entry, FINANCING_LEASE, lease_qty)

        self._line_totals[entry.line] = self.line_total(entry.line) + quantity
        self._institution_totals[entry.institution] = self.institution_total(entry.institution) + quantity
        self.total += quantity

    def _add(self, entry: ProfitEntry, financing_type: str, quantity: int) -> None:
        key = (entry.line, entry.institution, financing_type)
        _, current = self._rows.get(key, (entry, 0))
        self._rows[key] = (entry, current + quantity)

    def total_profit(self) -> float:
        return sum(a.total_profit for a in self.to_allocations())

    def to_allocations(self) -> List[Allocation]:
        allocations = []
        for (line, institution, financing_type), (entry, qty) in self._rows.items():
            unit_profit, commission, bonus = entry.path(financing_type)
            allocations.append(Allocation(
                vehicle_line=line,
                institution=institution,
                quantity=qty,
                down_payment_pct=entry.down_payment_pct,
                commission=commission,
                bonus=bonus,
                unit_profit=unit_profit,
                financing_type=financing_type,
            ))
        return allocations


def line_capacity(line: str, params: NormalizedParams, constraints: Constraints) -> int:
    target = params.vehicle_volumes.get(line, 0)
    return min(target, constraints.line_cap(params.monthly_volume))


def greedy_allocate(params: NormalizedParams, matrix: ProfitMatrix, constraints: Constraints,
                    settings: Settings) -> AllocationLedger:
    """
    Fill the monthly target from the profit-ranked pair list.

    Returns:
        AllocationLedger; its total may fall short of the target when the
        caps leave no room (repair_volume closes the gap)
    """
    target = params.monthly_volume
    institution_cap = constraints.institution_cap(target)
    ledger = AllocationLedger(credit_cap=constraints.credit_cap(target))
    ranked = matrix.ranked()

    passes = 0
    while ledger.total < target:
        passes += 1
        progress = False
        for entry in ranked:
            remaining = target - ledger.total
            if remaining <= 0:
                break

            line_room = line_capacity(entry.line, params, constraints) - ledger.line_total(entry.line)
            institution_room = institution_cap - ledger.institution_total(entry.institution)
            qty = min(remaining, line_room, institution_room, settings.per_assignment_cap)
            if qty <= 0:
                continue

            ledger.book(entry, qty)
            progress = True

        if not progress:
            break

    logger.info(
        f"Greedy pass: {ledger.total}/{target} units in {passes} passes across "
        f"{len(ledger.institutions_used())} institutions"
    )
    return ledger
