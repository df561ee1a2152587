"""
dealer_optimiser/normalizer.py

Brings a raw request into realistic bounds.

1. Apply segment price factors to the requested prices
2. Clamp each line's requested volume into its historical bounds
3. Redistribute the difference to the monthly target one unit at a time,
   largest lines first, until the sum matches or no line can move
"""

import logging
from typing import Dict, List, Optional

from .errors import ValidationError
from .models import AllocationRequest, Constraints, NormalizedParams

logger = logging.getLogger(__name__)


def adjust_prices(prices: Dict[str, float], constraints: Constraints) -> Dict[str, float]:
    return {
        line: float(round(price * constraints.price_factor(line)))
        for line, price in prices.items()
    }


def clamp_volumes(volumes: Dict[str, int], constraints: Constraints) -> Dict[str, int]:
    clamped = {}
    for line, volume in volumes.items():
        bounds = constraints.bounds_for(line)
        clamped[line] = min(max(int(volume), bounds.min), bounds.max)
    return clamped


def redistribute(volumes: Dict[str, int], target: int, constraints: Constraints) -> int:
    """
    Move volumes towards the target in place.

    Lines are visited in descending volume order, one unit per line per
    cycle, respecting each line's max when increasing and its min when
    decreasing.

    Returns:
        Residual difference (target - sum) that could not be absorbed
    """
    difference = target - sum(volumes.values())
    if difference == 0:
        return 0

    order = sorted(volumes.keys(), key=lambda line: volumes[line], reverse=True)
    step = 1 if difference > 0 else -1

    while difference != 0:
        moved = False
        for line in order:
            if difference == 0:
                break
            bounds = constraints.bounds_for(line)
            if step > 0 and volumes[line] < bounds.max:
                volumes[line] += 1
                difference -= 1
                moved = True
            elif step < 0 and volumes[line] > bounds.min:
                volumes[line] -= 1
                difference += 1
                moved = True
        if not moved:
            break

    return difference


def normalize(request: AllocationRequest, constraints: Constraints,
              line_names: Optional[List[str]] = None) -> NormalizedParams:
    """
    Normalise a request so its per-line volumes sum to the monthly target.

    Args:
        request: validated request
        constraints: static bounds and price factors
        line_names: lines to seed with their suggested volume when the
            request carries no volumes at all

    Returns:
        NormalizedParams; shortfall != 0 when the bounds could not absorb
        the difference

    Raises:
        ValidationError: monthly volume is not positive
    """
    target = request.monthly_volume
    if target is None or target <= 0:
        raise ValidationError(f"Invalid monthly volume: {target}")

    prices = adjust_prices(dict(request.vehicle_prices), constraints)

    raw_volumes = dict(request.vehicle_volumes)
    if not raw_volumes:
        seed_lines = line_names if line_names is not None else list(constraints.line_bounds.keys())
        raw_volumes = {line: constraints.bounds_for(line).suggested for line in seed_lines}
        logger.info(f"No per-line volumes supplied; seeding {len(raw_volumes)} lines with suggested volumes")

    volumes = clamp_volumes(raw_volumes, constraints)
    logger.debug(f"Volumes before redistribution: target={target}, current={sum(volumes.values())}")

    shortfall = redistribute(volumes, target, constraints)

    warnings: List[str] = []
    if shortfall != 0:
        message = (
            f"Could not match monthly volume within line bounds: target {target}, "
            f"normalized {sum(volumes.values())} (difference {shortfall})"
        )
        logger.error(message)
        warnings.append(message)

    return NormalizedParams(
        monthly_volume=target,
        vehicle_prices=prices,
        vehicle_volumes=volumes,
        vehicle_versions=dict(request.vehicle_versions),
        engagement_preferences=dict(request.engagement_preferences),
        bonus_weights=dict(request.bonus_weights),
        shortfall=shortfall,
        warnings=tuple(warnings),
    )
