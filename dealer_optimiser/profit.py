"""
dealer_optimiser/profit.py

Per-unit dealer profit for every (line, lender) pair.

Credit path: commission on the financed balance + best subsidy + the
lender's fixed incentive. Lease path: flat commission on the invoice price
+ half the subsidy. The larger of the two is the unit profit; the pair
remembers which path produced it.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import pandas as pd

from .config import Settings
from .models import (
    FINANCING_CREDIT,
    FINANCING_LEASE,
    Constraints,
    Database,
    FinancialInstitution,
    FinancingPlan,
    NormalizedParams,
)
from .plans import PlanResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProfitEntry:
    line: str
    institution: str
    down_payment_pct: float
    credit_commission: float
    credit_bonus: float
    lease_commission: float
    lease_bonus: float
    plan_id: str = ""
    eligible: bool = True

    @property
    def credit_profit(self) -> float:
        return self.credit_commission + self.credit_bonus

    @property
    def lease_profit(self) -> float:
        return self.lease_commission + self.lease_bonus

    @property
    def financing_type(self) -> str:
        return FINANCING_CREDIT if self.credit_profit >= self.lease_profit else FINANCING_LEASE

    @property
    def unit_profit(self) -> float:
        if not self.eligible:
            return 0.0
        return max(self.credit_profit, self.lease_profit, 0.0)

    @property
    def commission(self) -> float:
        return self.path(self.financing_type)[1]

    @property
    def bonus(self) -> float:
        return self.path(self.financing_type)[2]

    def path(self, financing_type: str) -> Tuple[float, float, float]:
        """(unit profit, commission, bonus) when sold under the given financing type."""
        if not self.eligible:
            return 0.0, 0.0, 0.0
        if financing_type == FINANCING_LEASE:
            return max(self.lease_profit, 0.0), self.lease_commission, self.lease_bonus
        return max(self.credit_profit, 0.0), self.credit_commission, self.credit_bonus


def ineligible_entry(line: str, institution: str) -> ProfitEntry:
    return ProfitEntry(
        line=line, institution=institution, down_payment_pct=0.0,
        credit_commission=0.0, credit_bonus=0.0, lease_commission=0.0, lease_bonus=0.0,
        eligible=False,
    )


class ProfitMatrix:
    """Profit entries keyed by (line, institution), in construction order."""

    def __init__(self, entries: List[ProfitEntry]):
        self._entries: Dict[Tuple[str, str], ProfitEntry] = {}
        self.lines: List[str] = []
        self.institutions: List[str] = []
        for e in entries:
            self._entries[(e.line, e.institution)] = e
            if e.line not in self.lines:
                self.lines.append(e.line)
            if e.institution not in self.institutions:
                self.institutions.append(e.institution)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries.values())

    def get(self, line: str, institution: str) -> Optional[ProfitEntry]:
        return self._entries.get((line, institution))

    def ranked(self) -> List[ProfitEntry]:
        """Eligible entries, most profitable first (stable on ties)."""
        eligible = [e for e in self._entries.values() if e.eligible]
        return sorted(eligible, key=lambda e: e.unit_profit, reverse=True)

    def eligible_for_line(self, line: str) -> List[ProfitEntry]:
        return [e for e in self.ranked() if e.line == line]

    def to_frame(self) -> pd.DataFrame:
        rows = [{
            "line": e.line,
            "institution": e.institution,
            "unit_profit": e.unit_profit,
            "commission": e.commission,
            "bonus": e.bonus,
            "down_payment_pct": e.down_payment_pct,
            "financing_type": e.financing_type,
            "plan_id": e.plan_id,
            "eligible": e.eligible,
        } for e in self._entries.values()]
        return pd.DataFrame(rows)

    def profit_table(self) -> pd.DataFrame:
        """Lines as rows, institutions as columns, unit profit as values."""
        df = self.to_frame()
        if df.empty:
            return df
        return df.pivot(index="line", columns="institution", values="unit_profit").reindex(self.lines)


# ================= Down Payment =================

def optimal_down_payment(institution: FinancialInstitution, settings: Settings,
                         plan: Optional[FinancingPlan] = None) -> float:
    """
    Down payment balancing commission against market viability.

    Candidates are the edges of the viable window (the configured window
    intersected with the lender's and the plan's ranges) and any commission
    tier threshold inside it. The candidate with the highest commission per
    unit of price wins; ties go to the lower down payment.
    """
    lo, hi = settings.down_payment_window_min, settings.down_payment_window_max
    ranges = []
    if institution.down_payment_range:
        ranges.append(institution.down_payment_range)
    if plan is not None:
        ranges.append((plan.min_down_payment_pct, plan.max_down_payment_pct or 99.0))
    for r_lo, r_hi in ranges:
        lo, hi = max(lo, r_lo), min(hi, r_hi)

    if lo > hi:
        # Window and lender range do not overlap; take the lender's floor
        fallback = ranges[0][0] if ranges else settings.down_payment_window_min
        logger.debug(f"No viable down payment window for {institution.name}; using {fallback}%")
        return float(fallback)

    candidates = {lo, hi}
    candidates.update(t for t in institution.commission_rule.thresholds() if lo <= t <= hi)

    rule = institution.commission_rule
    return float(max(sorted(candidates), key=lambda dp: ((1 - dp / 100.0) * rule.rate_for(dp), -dp)))


# ================= Calculator =================

class ProfitMatrixCalculator:
    """Builds profit entries from reference data. Holds no per-request state."""

    def __init__(self, database: Database, constraints: Constraints, settings: Settings,
                 resolver: Optional[PlanResolver] = None):
        self.database = database
        self.constraints = constraints
        self.settings = settings
        self.resolver = resolver or PlanResolver.from_database(database)

    def price_for(self, line: str, params: NormalizedParams) -> float:
        price = params.vehicle_prices.get(line)
        if price:
            return float(price)
        vl = self.database.line(line)
        if vl is not None and vl.list_price:
            return float(vl.list_price)
        return float(self.database.reference_price)

    def compute_entry(self, line: str, institution_name: str, params: NormalizedParams,
                      down_payment_pct: Optional[float] = None) -> ProfitEntry:
        """
        Profit entry for one pair.

        Args:
            down_payment_pct: overrides the request preference and the computed optimum
        """
        institution = self.database.institution(institution_name)
        if institution is None:
            logger.warning(f"Unknown institution {institution_name}; pair with {line} is ineligible")
            return ineligible_entry(line, institution_name)

        plan = None
        if self.resolver.has_plans(institution_name):
            plan = self.resolver.resolve(institution_name, line, params.version_for(line))
            if plan is None:
                return ineligible_entry(line, institution_name)

        if down_payment_pct is None:
            down_payment_pct = params.engagement_preferences.get(institution_name)
        if down_payment_pct is None:
            down_payment_pct = optimal_down_payment(institution, self.settings, plan)
        elif plan is not None:
            down_payment_pct = min(max(down_payment_pct, plan.min_down_payment_pct),
                                   plan.max_down_payment_pct or 99.0)

        price = self.price_for(line, params)
        financed_balance = price * (1 - down_payment_pct / 100.0)
        commission = institution.commission_rule.commission(financed_balance, down_payment_pct)

        bonus = institution.bonus_table.best_bonus(line).amount
        if plan is not None and plan.subsidy > 0:
            bonus = plan.subsidy

        return ProfitEntry(
            line=line,
            institution=institution_name,
            down_payment_pct=float(down_payment_pct),
            credit_commission=float(round(commission)),
            credit_bonus=float(round(bonus + institution.incentive_bonus)),
            lease_commission=float(round(price * self.settings.lease_commission_rate)),
            lease_bonus=float(round(bonus * self.settings.lease_bonus_factor)),
            plan_id=plan.plan_id if plan is not None else "",
        )

    def compute_profit(self, line: str, institution_name: str, params: NormalizedParams) -> float:
        return self.compute_entry(line, institution_name, params).unit_profit

    def build_matrix(self, params: NormalizedParams, lines: Optional[List[str]] = None) -> ProfitMatrix:
        """Profit entries for every requested line against every lender."""
        if lines is None:
            lines = [line for line, volume in params.vehicle_volumes.items() if volume > 0]
        entries = [
            self.compute_entry(line, inst, params)
            for line in lines
            for inst in self.database.institution_names()
        ]
        matrix = ProfitMatrix(entries)
        ineligible = sum(1 for e in matrix if not e.eligible)
        logger.info(f"Profit matrix built: {len(matrix)} pairs, {ineligible} ineligible")
        return matrix
