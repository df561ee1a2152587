"""
dealer_optimiser/sensitivity.py

What-if analysis: re-run the engine with one request parameter varied and
report how profit and the lender mix move.

    monthly_volume          absolute change, minimum 1; per-line volumes rescaled
    salespeople_count       absolute change, minimum 1
    vehicle_prices          percent change
    engagement_preferences  change in down payment points, clamped to 5-50
"""

import logging
from dataclasses import dataclass
from typing import Dict, Any, List, Tuple, Optional, Sequence

import pandas as pd

from .errors import ValidationError
from .models import AllocationRequest, OptimizationResult

logger = logging.getLogger(__name__)

DEFAULT_VARIATIONS: Dict[str, Tuple[float, ...]] = {
    "monthly_volume": (-8, -4, -2, 0, 2, 4, 8),
    "salespeople_count": (-2, -1, 0, 1, 2),
    "vehicle_prices": (-20, -10, -5, 0, 5, 10, 20),
    "engagement_preferences": (-10, -5, 0, 5, 10),
}


@dataclass(frozen=True)
class SensitivityPoint:
    variation: float
    value: float
    total_profit: float
    profit_impact: float
    profit_impact_pct: float
    share_impact: Dict[str, float]  # percentage points per institution
    algorithm_used: str


@dataclass(frozen=True)
class SensitivityAnalysis:
    parameter: str
    base_value: float
    base_profit: float
    points: Tuple[SensitivityPoint, ...]

    def to_frame(self) -> pd.DataFrame:
        rows = []
        for p in self.points:
            row = {
                "variation": p.variation,
                "value": p.value,
                "total_profit": p.total_profit,
                "profit_impact": p.profit_impact,
                "profit_impact_pct": p.profit_impact_pct,
                "algorithm_used": p.algorithm_used,
            }
            for institution, impact in p.share_impact.items():
                row[f"share_impact_{institution}"] = impact
            rows.append(row)
        return pd.DataFrame(rows)

    def max_gain(self) -> Optional[SensitivityPoint]:
        return max(self.points, key=lambda p: p.profit_impact) if self.points else None

    def max_loss(self) -> Optional[SensitivityPoint]:
        return min(self.points, key=lambda p: p.profit_impact) if self.points else None


# ================= Request Variation =================

def _mean(values) -> float:
    values = list(values)
    return sum(values) / len(values) if values else 0.0


def parameter_value(request: AllocationRequest, parameter: str) -> float:
    if parameter == "monthly_volume":
        return float(request.monthly_volume)
    if parameter == "salespeople_count":
        return float(request.salespeople_count)
    if parameter == "vehicle_prices":
        return _mean(request.vehicle_prices.values())
    if parameter == "engagement_preferences":
        return _mean(request.engagement_preferences.values())
    raise ValidationError(f"Unknown sensitivity parameter: {parameter}")


def rescale_volumes(volumes: Dict[str, int], new_total: int) -> Dict[str, int]:
    """Scale per-line volumes to a new total, fixing rounding on the largest lines."""
    current_total = sum(volumes.values())
    if not volumes or current_total <= 0:
        return dict(volumes)

    factor = new_total / current_total
    scaled = {line: max(0, int(round(v * factor))) for line, v in volumes.items()}

    difference = new_total - sum(scaled.values())
    if difference != 0:
        ordered = sorted(scaled, key=lambda line: scaled[line], reverse=True)
        for line in ordered[:abs(difference)]:
            if difference > 0:
                scaled[line] += 1
            elif scaled[line] > 0:
                scaled[line] -= 1
    return scaled


def vary_request(request: AllocationRequest, parameter: str, variation: float) -> AllocationRequest:
    """Copy of the request with one parameter moved by `variation`."""
    if parameter == "monthly_volume":
        new_volume = max(1, int(request.monthly_volume + variation))
        update: Dict[str, Any] = {"monthly_volume": new_volume}
        if request.vehicle_volumes:
            update["vehicle_volumes"] = rescale_volumes(dict(request.vehicle_volumes), new_volume)
        return request.model_copy(update=update)

    if parameter == "salespeople_count":
        return request.model_copy(update={"salespeople_count": max(1, int(request.salespeople_count + variation))})

    if parameter == "vehicle_prices":
        prices = {line: float(round(p * (1 + variation / 100.0))) for line, p in request.vehicle_prices.items()}
        return request.model_copy(update={"vehicle_prices": prices})

    if parameter == "engagement_preferences":
        prefs = {inst: max(5.0, min(50.0, v + variation)) for inst, v in request.engagement_preferences.items()}
        return request.model_copy(update={"engagement_preferences": prefs})

    raise ValidationError(f"Unknown sensitivity parameter: {parameter}")


# ================= Analysis =================

def share_impact(base: OptimizationResult, new: OptimizationResult) -> Dict[str, float]:
    """Change in each institution's share of units, in percentage points."""
    base_units, new_units = base.total_units, new.total_units
    base_dist, new_dist = base.by_institution(), new.by_institution()
    impact = {}
    for institution in list(base_dist) + [i for i in new_dist if i not in base_dist]:
        base_pct = base_dist.get(institution, 0) / base_units * 100 if base_units else 0.0
        new_pct = new_dist.get(institution, 0) / new_units * 100 if new_units else 0.0
        impact[institution] = new_pct - base_pct
    return impact


def run_sensitivity(engine, request: Any, parameter: str,
                    variations: Optional[Sequence[float]] = None) -> SensitivityAnalysis:
    """
    Run the engine once for the base request and once per variation.

    Args:
        engine: OptimizationEngine
        request: AllocationRequest or JSON-shaped dict
        parameter: one of DEFAULT_VARIATIONS' keys
        variations: defaults to DEFAULT_VARIATIONS[parameter]

    Raises:
        ValidationError: unknown parameter or invalid base request
    """
    if parameter not in DEFAULT_VARIATIONS:
        raise ValidationError(f"Unknown sensitivity parameter: {parameter}")
    request = AllocationRequest.from_payload(request)
    if variations is None:
        variations = DEFAULT_VARIATIONS[parameter]

    base_result = engine.optimize(request)
    base_profit = base_result.total_profit

    points: List[SensitivityPoint] = []
    for variation in variations:
        modified = vary_request(request, parameter, variation)
        result = engine.optimize(modified)
        impact = result.total_profit - base_profit
        points.append(SensitivityPoint(
            variation=float(variation),
            value=parameter_value(modified, parameter),
            total_profit=result.total_profit,
            profit_impact=impact,
            profit_impact_pct=round(impact / base_profit * 100, 1) if base_profit else 0.0,
            share_impact=share_impact(base_result, result),
            algorithm_used=result.algorithm_used,
        ))
        logger.debug(f"Sensitivity {parameter} {variation:+}: profit impact {impact:,.0f}")

    logger.info(f"Sensitivity analysis on {parameter}: {len(points)} variations")
    return SensitivityAnalysis(
        parameter=parameter,
        base_value=parameter_value(request, parameter),
        base_profit=base_profit,
        points=tuple(points),
    )
