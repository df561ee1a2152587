"""
dealer_optimiser/engine.py

Optimisation entry point.

    IDLE -> NORMALIZING -> COMPUTING_PROFIT -> ALLOCATING -> VALIDATING -> DONE

Any unexpected exception moves the run to FALLBACK and then DONE with the
fallback distribution. ValidationError is the one failure that reaches the
caller. Nothing is retried.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple

import numpy as np

from .config import Settings, get_settings
from .errors import OptimizationFailure, ValidationError
from .fallback import fallback
from .genetic import GeneticRefiner
from .greedy import AllocationLedger, greedy_allocate
from .models import AllocationRequest, Constraints, Database, NormalizedParams, OptimizationResult
from .normalizer import normalize
from .plans import PlanResolver
from .profit import ProfitMatrix, ProfitMatrixCalculator
from .reference import DEFAULT_CONSTRAINTS, default_database
from .validation import finalize, repair_volume

logger = logging.getLogger(__name__)

ALGORITHM_GREEDY = "Realistic Greedy"
ALGORITHM_GENETIC = "Greedy + Genetic Refinement"


class EngineState(Enum):
    IDLE = "idle"
    NORMALIZING = "normalizing"
    COMPUTING_PROFIT = "computing_profit"
    ALLOCATING = "allocating"
    VALIDATING = "validating"
    FALLBACK = "fallback"
    DONE = "done"


@dataclass
class RunContext:
    """Everything one optimize() call works on. Never shared between calls."""
    request: AllocationRequest
    state: EngineState = EngineState.IDLE
    history: List[EngineState] = field(default_factory=lambda: [EngineState.IDLE])
    params: Optional[NormalizedParams] = None
    matrix: Optional[ProfitMatrix] = None
    ledger: Optional[AllocationLedger] = None
    result: Optional[OptimizationResult] = None
    error: Optional[OptimizationFailure] = None
    started: float = field(default_factory=time.perf_counter)

    def transition(self, state: EngineState) -> None:
        logger.debug(f"Engine state: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def elapsed(self) -> float:
        return time.perf_counter() - self.started


class OptimizationEngine:
    """
    Allocates a monthly volume across lenders.

    The engine only holds read-only reference data, so one instance can serve
    concurrent calls.
    """

    def __init__(self, database: Optional[Database] = None, constraints: Optional[Constraints] = None,
                 settings: Optional[Settings] = None):
        self.database = database if database is not None else default_database()
        self.constraints = constraints if constraints is not None else DEFAULT_CONSTRAINTS
        self.settings = settings if settings is not None else get_settings()
        self.resolver = PlanResolver.from_database(self.database)
        self.calculator = ProfitMatrixCalculator(self.database, self.constraints, self.settings, self.resolver)
        self.refiner = GeneticRefiner(self.calculator, self.constraints, self.settings)

    def optimize(self, request: Any, rng: Optional[np.random.Generator] = None,
                 should_stop: Optional[Callable[[], bool]] = None) -> OptimizationResult:
        """
        Run one optimisation.

        Args:
            request: AllocationRequest or JSON-shaped dict
            rng: random source for the genetic refinement
            should_stop: cancellation check polled by the genetic refinement

        Raises:
            ValidationError: malformed request or non-positive monthly volume
        """
        return self.run(request, rng=rng, should_stop=should_stop).result

    def run(self, request: Any, rng: Optional[np.random.Generator] = None,
            should_stop: Optional[Callable[[], bool]] = None) -> RunContext:
        """Like optimize(), but returns the whole run context."""
        request = AllocationRequest.from_payload(request)
        ctx = RunContext(request=request)
        logger.info(f"Starting optimization: {request.monthly_volume} units, {len(request.vehicle_volumes)} lines")

        try:
            ctx.transition(EngineState.NORMALIZING)
            ctx.params = normalize(request, self.constraints, self.database.line_names())

            ctx.transition(EngineState.COMPUTING_PROFIT)
            ctx.matrix = self.calculator.build_matrix(ctx.params)

            ctx.transition(EngineState.ALLOCATING)
            ctx.ledger, algorithm = self._allocate(ctx.params, ctx.matrix, rng, should_stop)

            ctx.transition(EngineState.VALIDATING)
            ctx.result = finalize(
                ctx.ledger.to_allocations(),
                ctx.params,
                self.constraints,
                self.settings,
                algorithm_used=algorithm,
                optimization_time=ctx.elapsed(),
                warnings=ctx.params.warnings,
            )
        except ValidationError:
            raise
        except Exception as e:
            logger.error(f"Optimization failed while {ctx.state.value}: {e}", exc_info=True)
            ctx.error = OptimizationFailure(f"{ctx.state.value}: {e}")
            ctx.transition(EngineState.FALLBACK)
            ctx.result = fallback(request, reason=str(e), optimization_time=ctx.elapsed())

        ctx.transition(EngineState.DONE)
        logger.info(
            f"Optimization finished with {ctx.result.algorithm_used}: "
            f"{ctx.result.total_units} units, profit ${ctx.result.total_profit:,.0f} "
            f"in {ctx.result.optimization_time:.3f}s"
        )
        return ctx

    def _allocate(self, params: NormalizedParams, matrix: ProfitMatrix,
                  rng: Optional[np.random.Generator],
                  should_stop: Optional[Callable[[], bool]]) -> Tuple[AllocationLedger, str]:
        ledger = greedy_allocate(params, matrix, self.constraints, self.settings)
        ledger = repair_volume(ledger, params, matrix, self.constraints)

        if not self.settings.refine_with_genetic:
            return ledger, ALGORITHM_GREEDY

        outcome = self.refiner.refine(params, matrix, ledger, rng=rng, should_stop=should_stop)
        target = params.monthly_volume
        conserves = abs(outcome.ledger.total - target) <= abs(ledger.total - target)
        if outcome.improved and conserves and outcome.ledger.total_profit() > ledger.total_profit():
            return outcome.ledger, ALGORITHM_GENETIC

        logger.info("Genetic refinement did not beat the greedy allocation; keeping greedy result")
        return ledger, ALGORITHM_GREEDY
