"""
dealer_optimiser/validation.py

Volume repair, result assembly and confidence scoring.
"""

import logging
from typing import Dict, List, Mapping, Optional, Sequence

from .config import Settings
from .greedy import AllocationLedger
from .models import Allocation, Constraints, NormalizedParams, OptimizationResult
from .profit import ProfitMatrix
from .reference import HISTORICAL_LINE_SHARES

logger = logging.getLogger(__name__)


# ================= Volume Repair =================

def _fill_line(ledger: AllocationLedger, matrix: ProfitMatrix, line: str, missing: int,
               target: int, institution_cap: Optional[int]) -> int:
    """Book up to `missing` units of a line on its best pairs; returns what is still missing."""
    for entry in matrix.eligible_for_line(line):
        if missing <= 0 or ledger.total >= target:
            break
        room = missing if institution_cap is None else institution_cap - ledger.institution_total(entry.institution)
        qty = min(missing, room, target - ledger.total)
        if qty > 0:
            ledger.book(entry, qty)
            missing -= qty
    return missing


def _spill_over(ledger: AllocationLedger, matrix: ProfitMatrix, constraints: Constraints,
                target: int, institution_cap: Optional[int]) -> None:
    """Book remaining units on any line with room below its bounds max, most profitable pairs first."""
    for entry in matrix.ranked():
        if ledger.total >= target:
            break
        line_room = constraints.bounds_for(entry.line).max - ledger.line_total(entry.line)
        inst_room = line_room if institution_cap is None else institution_cap - ledger.institution_total(entry.institution)
        qty = min(line_room, inst_room, target - ledger.total)
        if qty > 0:
            ledger.book(entry, qty)


def repair_volume(ledger: AllocationLedger, params: NormalizedParams, matrix: ProfitMatrix,
                  constraints: Constraints) -> AllocationLedger:
    """
    Place units the greedy pass left unassigned.

    Each line is topped up to its normalized volume on its most profitable
    eligible pairs, first under the relaxed institution cap
    ceil(T x max_concentration_per_institution). Whatever still does not fit
    is placed with no institution cap, which is the only way to conserve
    volume when too few institutions are eligible (e.g. T=1).

    Units of lines no institution can finance are then moved to other lines
    with room below their bounds max, again relaxed cap first.
    """
    target = params.monthly_volume
    if ledger.total >= target:
        return ledger

    lines = sorted(params.vehicle_volumes, key=lambda line: params.vehicle_volumes[line], reverse=True)
    relaxed_cap = constraints.relaxed_institution_cap(target)

    for cap in (relaxed_cap, None):
        for line in lines:
            missing = params.vehicle_volumes[line] - ledger.line_total(line)
            if missing > 0:
                _fill_line(ledger, matrix, line, missing, target, cap)
        if ledger.total >= target:
            break
        if cap is not None:
            logger.warning(
                f"Relaxed institution cap {relaxed_cap} leaves {target - ledger.total} units unplaced; "
                f"placing them without a concentration cap"
            )

    if ledger.total < target:
        logger.warning(
            f"{target - ledger.total} units belong to lines without an eligible pair; "
            f"moving them to other lines within their bounds"
        )
        for cap in (relaxed_cap, None):
            _spill_over(ledger, matrix, constraints, target, cap)
            if ledger.total >= target:
                break

    if ledger.total != target:
        logger.error(f"Volume repair incomplete: {ledger.total}/{target} units allocated")
    return ledger


# ================= Scoring =================

def line_shares(allocations: Sequence[Allocation], total: int) -> Dict[str, float]:
    shares: Dict[str, float] = {}
    if total <= 0:
        return shares
    for a in allocations:
        shares[a.vehicle_line] = shares.get(a.vehicle_line, 0.0) + a.quantity / total
    return shares


def institution_shares(allocations: Sequence[Allocation], total: int) -> Dict[str, float]:
    shares: Dict[str, float] = {}
    if total <= 0:
        return shares
    for a in allocations:
        shares[a.institution] = shares.get(a.institution, 0.0) + a.quantity / total
    return shares


def confidence_score(allocations: Sequence[Allocation], target_volume: int, constraints: Constraints,
                     volume_conserved: bool,
                     historical_shares: Optional[Mapping[str, float]] = None) -> float:
    """
    Heuristic 0-100 score.

    30 points for meeting the minimum institution count (15 otherwise), up
    to 40 points for matching the historical line mix, 30 points when the
    volume is conserved.
    """
    historical_shares = HISTORICAL_LINE_SHARES if historical_shares is None else historical_shares

    institutions = {a.institution for a in allocations if a.quantity > 0}
    score = 30.0 if len(institutions) >= constraints.min_institutions else 15.0

    if historical_shares:
        actual = line_shares(allocations, target_volume)
        alignment = [
            max(0.0, 1.0 - abs(hist - actual.get(line, 0.0)) * 2)
            for line, hist in historical_shares.items()
        ]
        score += 40.0 * sum(alignment) / len(alignment)

    if volume_conserved:
        score += 30.0

    return round(min(score, 100.0), 1)


def build_recommendations(allocations: Sequence[Allocation], target_volume: int, settings: Settings,
                          confidence: Optional[float] = None) -> List[str]:
    recommendations: List[str] = []
    total = sum(a.quantity for a in allocations)
    if total == 0:
        recommendations.append("No units could be allocated; review line volumes and plan coverage")
        return recommendations

    shares = institution_shares(allocations, total)
    top_institution = max(shares, key=shares.get)
    recommendations.append(
        f"{top_institution} receives the largest share: {shares[top_institution]:.0%} of {total} units"
    )

    best_per_line: Dict[str, float] = {}
    for a in allocations:
        best_per_line[a.vehicle_line] = max(best_per_line.get(a.vehicle_line, 0.0), a.unit_profit)
    top_lines = sorted(best_per_line.items(), key=lambda kv: kv[1], reverse=True)[:3]
    recommendations.append(
        "Most profitable lines: " + ", ".join(f"{line} (${profit:,.0f}/unit)" for line, profit in top_lines)
    )

    avg_down_payment = sum(a.down_payment_pct * a.quantity for a in allocations) / total
    recommendations.append(f"Average down payment: {avg_down_payment:.1f}%")

    for institution, share in shares.items():
        if share > settings.concentration_warning_share:
            recommendations.append(
                f"Diversification warning: {institution} holds {share:.0%} of the volume; "
                f"consider spreading units across more institutions"
            )

    if target_volume and total != target_volume:
        recommendations.append(f"Allocated {total} units against a target of {target_volume}")

    if confidence is not None:
        recommendations.append(f"Confidence: {confidence:.1f}%")
    return recommendations


# ================= Result =================

def lines_within_bounds(allocations: Sequence[Allocation], constraints: Constraints) -> bool:
    totals: Dict[str, int] = {}
    for a in allocations:
        totals[a.vehicle_line] = totals.get(a.vehicle_line, 0) + a.quantity
    return all(qty <= constraints.bounds_for(line).max for line, qty in totals.items())


def finalize(allocations: Sequence[Allocation], params: NormalizedParams, constraints: Constraints,
             settings: Settings, algorithm_used: str, optimization_time: float,
             warnings: Sequence[str] = ()) -> OptimizationResult:
    """
    Assemble the immutable result.

    A total that does not match the target is reported (logged at ERROR and
    flagged via constraints_satisfied), never rounded away.
    """
    target = params.monthly_volume
    allocations = [a for a in allocations if a.quantity > 0]
    total_units = sum(a.quantity for a in allocations)
    volume_conserved = total_units == target

    warnings = list(warnings)
    if not volume_conserved:
        message = f"Volume mismatch: allocated {total_units} units, target {target}"
        logger.error(message)
        warnings.append(message)

    total_profit = float(sum(a.unit_profit * a.quantity for a in allocations))
    confidence = confidence_score(allocations, target, constraints, volume_conserved)
    recommendations = build_recommendations(allocations, target, settings, confidence)

    return OptimizationResult(
        variables=tuple(allocations),
        total_profit=total_profit,
        constraints_satisfied=volume_conserved and lines_within_bounds(allocations, constraints),
        optimization_time=optimization_time,
        algorithm_used=algorithm_used,
        recommendations=tuple(recommendations),
        confidence_level=confidence,
        warnings=tuple(warnings),
    )
