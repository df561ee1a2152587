"""
dealer_optimiser/genetic.py

Genetic refinement of a greedy allocation.

An individual is a vector over the eligible (line, institution) pairs, each
gene carrying a unit quantity and a down payment. Fitness is total profit
minus a heavy penalty per unit of volume mismatch and softer penalties for
concentration and line overflows. Children are repaired after crossover and
mutation so they keep the monthly target whenever the line volumes allow it.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from .config import Settings
from .greedy import AllocationLedger
from .models import Constraints, NormalizedParams
from .profit import ProfitEntry, ProfitMatrix, ProfitMatrixCalculator

logger = logging.getLogger(__name__)

DEFAULT_DOWN_PAYMENT_BOUNDS = (5.0, 50.0)
DOWN_PAYMENT_STEP = 5.0


@dataclass
class Individual:
    quantities: np.ndarray
    down_payments: np.ndarray
    fitness: float = float("-inf")

    def copy(self) -> "Individual":
        return Individual(self.quantities.copy(), self.down_payments.copy(), self.fitness)


@dataclass(frozen=True)
class GeneticOutcome:
    ledger: AllocationLedger
    fitness: float
    seed_fitness: float
    generations_run: int
    stopped_early: bool

    @property
    def improved(self) -> bool:
        return self.fitness > self.seed_fitness


class GeneticRefiner:
    """
    Population search seeded with the greedy allocation.

    Per-run state (genes, profit cache) lives inside refine(); the refiner
    itself only holds read-only collaborators and can be shared.
    """

    def __init__(self, calculator: ProfitMatrixCalculator, constraints: Constraints, settings: Settings):
        self.calculator = calculator
        self.constraints = constraints
        self.settings = settings

    def refine(self, params: NormalizedParams, matrix: ProfitMatrix, seed: AllocationLedger,
               rng: Optional[np.random.Generator] = None,
               max_generations: Optional[int] = None,
               deadline_seconds: Optional[float] = None,
               should_stop: Optional[Callable[[], bool]] = None) -> GeneticOutcome:
        """
        Evolve the population and return the best allocation found.

        Args:
            rng: random source; seeded from settings.ga_seed when omitted
            max_generations: defaults to settings.ga_generations
            deadline_seconds: wall-clock budget for the generation loop
            should_stop: polled before every generation; True ends the loop
        """
        if rng is None:
            rng = np.random.default_rng(self.settings.ga_seed)
        if max_generations is None:
            max_generations = self.settings.ga_generations
        if deadline_seconds is None:
            deadline_seconds = self.settings.ga_deadline_seconds

        run = _Run(self, params, matrix, rng)
        seed_individual = run.from_ledger(seed)
        run.evaluate(seed_individual)
        if not run.genes:
            return GeneticOutcome(seed, seed_individual.fitness, seed_individual.fitness, 0, False)

        population = [seed_individual] + [
            run.random_individual() for _ in range(max(self.settings.ga_population_size - 1, 1))
        ]
        for ind in population:
            run.evaluate(ind)
        best = max(population, key=lambda ind: ind.fitness).copy()

        started = time.perf_counter()
        generation = 0
        stopped_early = False
        while generation < max_generations:
            if should_stop is not None and should_stop():
                stopped_early = True
                break
            if deadline_seconds is not None and time.perf_counter() - started >= deadline_seconds:
                stopped_early = True
                break

            # Elitism: the best individual so far always survives
            next_population = [best.copy()]
            while len(next_population) < len(population):
                parent_a = run.tournament(population)
                parent_b = run.tournament(population)
                child = run.crossover(parent_a, parent_b)
                run.mutate(child)
                run.repair(child)
                run.evaluate(child)
                next_population.append(child)

            population = next_population
            generation += 1
            leader = max(population, key=lambda ind: ind.fitness)
            if leader.fitness > best.fitness:
                best = leader.copy()

        if stopped_early:
            logger.info(f"Genetic refinement stopped after {generation} generations")
        logger.info(
            f"Genetic refinement: seed fitness {seed_individual.fitness:,.0f}, "
            f"best {best.fitness:,.0f} after {generation} generations"
        )
        return GeneticOutcome(
            ledger=run.to_ledger(best),
            fitness=best.fitness,
            seed_fitness=seed_individual.fitness,
            generations_run=generation,
            stopped_early=stopped_early,
        )


class _Run:
    """Working state of one refine() call."""

    def __init__(self, refiner: GeneticRefiner, params: NormalizedParams, matrix: ProfitMatrix,
                 rng: np.random.Generator):
        self.calculator = refiner.calculator
        self.constraints = refiner.constraints
        self.settings = refiner.settings
        self.params = params
        self.rng = rng
        self.target = params.monthly_volume

        self.genes: List[ProfitEntry] = [e for e in matrix if e.eligible]
        self.gene_lines = [g.line for g in self.genes]
        self.gene_institutions = [g.institution for g in self.genes]
        self.line_targets = {line: params.vehicle_volumes.get(line, 0) for line in set(self.gene_lines)}
        self.dp_bounds = [self._dp_bounds(g.institution) for g in self.genes]
        self.institution_cap = self.constraints.relaxed_institution_cap(self.target)
        self._cache: Dict[Tuple[int, float], ProfitEntry] = {}

    def _dp_bounds(self, institution: str) -> Tuple[float, float]:
        inst = self.calculator.database.institution(institution)
        if inst is not None and inst.down_payment_range:
            return inst.down_payment_range
        return DEFAULT_DOWN_PAYMENT_BOUNDS

    def entry(self, index: int, down_payment: float) -> ProfitEntry:
        key = (index, round(float(down_payment), 2))
        if key not in self._cache:
            gene = self.genes[index]
            if key[1] == round(gene.down_payment_pct, 2):
                self._cache[key] = gene
            else:
                self._cache[key] = self.calculator.compute_entry(gene.line, gene.institution, self.params, key[1])
        return self._cache[key]

    def unit_profit(self, index: int, down_payment: float) -> float:
        return self.entry(index, down_payment).unit_profit

    # ================= Construction =================

    def from_ledger(self, ledger: AllocationLedger) -> Individual:
        quantities = np.zeros(len(self.genes), dtype=int)
        down_payments = np.array([g.down_payment_pct for g in self.genes], dtype=float)
        index = {(g.line, g.institution): i for i, g in enumerate(self.genes)}
        for a in ledger.to_allocations():
            i = index.get((a.vehicle_line, a.institution))
            if i is not None:
                quantities[i] += a.quantity
        return Individual(quantities, down_payments)

    def random_individual(self) -> Individual:
        """Each line's volume spread at random over that line's pairs."""
        quantities = np.zeros(len(self.genes), dtype=int)
        for line, volume in self.line_targets.items():
            idx = [i for i, l in enumerate(self.gene_lines) if l == line]
            if volume <= 0 or not idx:
                continue
            quantities[idx] = self.rng.multinomial(volume, [1.0 / len(idx)] * len(idx))
        down_payments = np.array([g.down_payment_pct for g in self.genes], dtype=float)
        ind = Individual(quantities, down_payments)
        self.repair(ind)
        return ind

    def to_ledger(self, ind: Individual) -> AllocationLedger:
        """Most profitable genes are booked first so they get the credit quota."""
        ledger = AllocationLedger(credit_cap=self.constraints.credit_cap(self.target))
        entries = [
            (self.entry(i, ind.down_payments[i]), int(q))
            for i, q in enumerate(ind.quantities) if q > 0
        ]
        for entry, qty in sorted(entries, key=lambda eq: eq[0].unit_profit, reverse=True):
            ledger.book(entry, qty)
        return ledger

    # ================= Fitness =================

    def evaluate(self, ind: Individual) -> float:
        quantities = ind.quantities
        profit = sum(
            self.unit_profit(i, ind.down_payments[i]) * int(q)
            for i, q in enumerate(quantities) if q > 0
        )
        total = int(quantities.sum())
        penalty = self.settings.ga_volume_penalty * abs(total - self.target)

        institution_totals: Dict[str, int] = {}
        line_totals: Dict[str, int] = {}
        for i, q in enumerate(quantities):
            if q > 0:
                institution_totals[self.gene_institutions[i]] = institution_totals.get(self.gene_institutions[i], 0) + int(q)
                line_totals[self.gene_lines[i]] = line_totals.get(self.gene_lines[i], 0) + int(q)

        soft = 0
        soft += sum(max(0, qty - self.institution_cap) for qty in institution_totals.values())
        soft += sum(max(0, qty - self.line_targets.get(line, 0)) for line, qty in line_totals.items())
        if self.target >= self.constraints.min_institutions:
            soft += max(0, self.constraints.min_institutions - len(institution_totals))
        penalty += self.settings.ga_concentration_penalty * soft

        ind.fitness = float(profit - penalty)
        return ind.fitness

    # ================= Operators =================

    def tournament(self, population: List[Individual]) -> Individual:
        size = min(self.settings.ga_tournament_size, len(population))
        picks = self.rng.choice(len(population), size=size, replace=False)
        return max((population[i] for i in picks), key=lambda ind: ind.fitness)

    def crossover(self, a: Individual, b: Individual) -> Individual:
        n = len(self.genes)
        if n < 2:
            return a.copy()
        point = int(self.rng.integers(1, n))
        quantities = np.concatenate([a.quantities[:point], b.quantities[point:]])
        down_payments = np.concatenate([a.down_payments[:point], b.down_payments[point:]])
        return Individual(quantities, down_payments)

    def mutate(self, ind: Individual) -> None:
        for i in range(len(self.genes)):
            if self.rng.random() < self.settings.ga_mutation_rate:
                step = 1 if self.rng.random() < 0.5 else -1
                ind.quantities[i] = max(0, ind.quantities[i] + step)
            if self.rng.random() < self.settings.ga_mutation_rate * self.settings.ga_down_payment_mutation_rate:
                step = DOWN_PAYMENT_STEP if self.rng.random() < 0.5 else -DOWN_PAYMENT_STEP
                lo, hi = self.dp_bounds[i]
                ind.down_payments[i] = min(max(ind.down_payments[i] + step, lo), hi)

    def repair(self, ind: Individual) -> None:
        """
        Restore line volumes and the monthly target.

        Lines over their volume lose units from their least profitable
        pairs; the total is then moved to the target by adding to the most
        profitable pairs whose line has room, or removing from the least
        profitable pairs.
        """
        q = ind.quantities

        def profit_order(indices, reverse):
            return sorted(indices, key=lambda i: self.unit_profit(i, ind.down_payments[i]), reverse=reverse)

        line_totals: Dict[str, int] = {line: 0 for line in self.line_targets}
        for i, qty in enumerate(q):
            line_totals[self.gene_lines[i]] += int(qty)

        for line, volume in self.line_targets.items():
            excess = line_totals[line] - volume
            if excess <= 0:
                continue
            for i in profit_order([i for i, l in enumerate(self.gene_lines) if l == line and q[i] > 0], False):
                take = min(excess, int(q[i]))
                q[i] -= take
                excess -= take
                line_totals[line] -= take
                if excess == 0:
                    break

        total = int(q.sum())
        if total < self.target:
            for i in profit_order(range(len(self.genes)), True):
                room = self.line_targets[self.gene_lines[i]] - line_totals[self.gene_lines[i]]
                add = min(room, self.target - total)
                if add > 0:
                    q[i] += add
                    line_totals[self.gene_lines[i]] += add
                    total += add
                if total == self.target:
                    break
        elif total > self.target:
            for i in profit_order([i for i in range(len(self.genes)) if q[i] > 0], False):
                take = min(int(q[i]), total - self.target)
                q[i] -= take
                total -= take
                if total == self.target:
                    break
