"""
dealer_optimiser/fallback.py

Safe distribution used when the optimiser fails.

The rows follow the historical monthly mix (28 units). They are scaled to
the requested volume only loosely: every row keeps at least one unit, so the
total may differ from the target and constraints_satisfied reports it.
"""

import logging
import time
from typing import Any, List, Optional

from .models import FINANCING_CREDIT, Allocation, OptimizationResult

logger = logging.getLogger(__name__)

ALGORITHM_FALLBACK = "Fallback"
HISTORICAL_TOTAL = 28

# (line, institution, quantity, down payment %, commission, bonus)
HISTORICAL_DISTRIBUTION = (
    ("CR-V", "Banorte", 7, 25.0, 20000.0, 10000.0),
    ("HR-V", "Banorte", 6, 25.0, 18000.0, 10000.0),
    ("BR-V", "BBVA", 5, 20.0, 15000.0, 10000.0),
    ("City", "BBVA", 3, 20.0, 12000.0, 8000.0),
    ("Civic", "Santander", 3, 30.0, 14000.0, 8000.0),
    ("Pilot", "Banorte", 2, 30.0, 30000.0, 15000.0),
    ("Odyssey", "BBVA", 1, 25.0, 27000.0, 15000.0),
    ("Accord", "Santander", 1, 30.0, 20000.0, 15000.0),
)


def _target_volume(request: Any) -> Optional[int]:
    target = getattr(request, "monthly_volume", None)
    if target is None and isinstance(request, dict):
        target = request.get("monthly_volume")
    try:
        target = int(target)
    except (TypeError, ValueError, OverflowError):
        return None
    return target if target > 0 else None


def fallback(request: Any = None, reason: Optional[str] = None,
             optimization_time: float = 0.0) -> OptimizationResult:
    """
    Build the fallback result. Never raises.

    Args:
        request: AllocationRequest, raw payload or None; only the monthly
            volume is read, and an unusable one leaves the rows unscaled
        reason: failure description added to the recommendations
    """
    started = time.perf_counter()
    target = _target_volume(request)
    scale = target / HISTORICAL_TOTAL if target else 1.0

    variables: List[Allocation] = []
    for line, institution, quantity, down_payment, commission, bonus in HISTORICAL_DISTRIBUTION:
        variables.append(Allocation(
            vehicle_line=line,
            institution=institution,
            quantity=max(1, int(round(quantity * scale))),
            down_payment_pct=down_payment,
            commission=commission,
            bonus=bonus,
            unit_profit=commission + bonus,
            financing_type=FINANCING_CREDIT,
        ))

    total_units = sum(v.quantity for v in variables)
    recommendations = ["Warning: fallback distribution based on historical patterns; this is not an optimized result"]
    if reason:
        recommendations.append(f"Optimization failed: {reason}")
    recommendations.append("Review the input parameters and run the optimization again")
    if target and total_units != target:
        recommendations.append(f"Fallback allocates {total_units} units against a target of {target}")

    logger.warning(f"Returning fallback distribution ({total_units} units, target {target})")

    return OptimizationResult(
        variables=tuple(variables),
        total_profit=float(sum(v.total_profit for v in variables)),
        constraints_satisfied=target is not None and total_units == target,
        optimization_time=optimization_time + (time.perf_counter() - started),
        algorithm_used=ALGORITHM_FALLBACK,
        recommendations=tuple(recommendations),
        confidence_level=0.0,
    )
