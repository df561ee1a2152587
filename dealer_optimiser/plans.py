"""
dealer_optimiser/plans.py

Financing plan resolution.

A lender publishes several overlapping plans, each scoped to some lines or
versions and carrying up to three exceptions. For a given (lender, line,
version) the resolver picks the single most specific plan that applies:

    exact line + version      -> 100
    line, any version         -> 50
    every line                -> 10
    no matching entry         -> -1 (not applicable)

A plan whose exceptions match the line (or the exact version, when the
exception names one) is disqualified before scoring.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .errors import PlanResolutionMiss
from .models import Database, FinancingPlan

logger = logging.getLogger(__name__)


SCORE_EXACT = 100
SCORE_LINE = 50
SCORE_GENERIC = 10
SCORE_NONE = -1


@dataclass(frozen=True)
class FinancingCalculation:
    """Dealer-side breakdown of financing one unit under a plan."""
    institution: str
    plan: FinancingPlan
    list_price: float
    down_payment_pct: float
    down_payment_amount: float
    financed_balance: float
    opening_commission: float
    dealer_payment: float
    dealer_incentive_cost: float
    net_profit: float


@dataclass
class ConfigurationReport:
    is_valid: bool
    errors: List[str] = field(default_factory=list)


# ================= Matching =================

def is_excluded(plan: FinancingPlan, line: str, version: Optional[str] = None) -> bool:
    """True when one of the plan's exceptions covers this line/version."""
    return any(exc.matches(line, version) for exc in plan.exceptions)


def score_entry(entry_line: str, entry_version: str, line: str, version: Optional[str] = None) -> int:
    if entry_line == line and entry_version and entry_version == (version or ""):
        return SCORE_EXACT
    if entry_line == line and not entry_version:
        return SCORE_LINE
    if not entry_line and not entry_version:
        return SCORE_GENERIC
    return SCORE_NONE


def score_plan(plan: FinancingPlan, line: str, version: Optional[str] = None) -> int:
    """Best specificity score over all the plan's applicability entries."""
    return max(score_entry(l, v, line, version) for l, v in plan.applicability())


# ================= Resolver =================

class PlanResolver:
    """Selects the applicable financing plan for a lender and vehicle."""

    def __init__(self, plans):
        self._plans: Tuple[FinancingPlan, ...] = tuple(plans)

    @classmethod
    def from_database(cls, database: Database) -> "PlanResolver":
        return cls(database.plans)

    def plans_for(self, institution: str) -> List[FinancingPlan]:
        return [p for p in self._plans if p.institution == institution and p.active]

    def has_plans(self, institution: str) -> bool:
        return bool(self.plans_for(institution))

    def institutions(self) -> List[str]:
        seen: List[str] = []
        for p in self._plans:
            if p.institution not in seen:
                seen.append(p.institution)
        return seen

    def resolve_scored(self, institution: str, line: str,
                       version: Optional[str] = None) -> Tuple[Optional[FinancingPlan], int]:
        """Winning plan and its score; (None, -1) when nothing applies."""
        best_plan: Optional[FinancingPlan] = None
        best_score = SCORE_NONE

        for plan in self.plans_for(institution):
            if is_excluded(plan, line, version):
                continue
            score = score_plan(plan, line, version)
            # Strict comparison: the first plan in configuration order wins ties
            if score > best_score:
                best_plan = plan
                best_score = score

        return best_plan, best_score

    def resolve(self, institution: str, line: str, version: Optional[str] = None) -> Optional[FinancingPlan]:
        plan, score = self.resolve_scored(institution, line, version)
        if plan is None:
            logger.warning(f"No applicable plan for {institution} - {line} {version or ''}".rstrip())
        else:
            logger.debug(f"Plan selected: {plan.name or plan.plan_id} (score {score}) for {line} {version or ''}")
        return plan

    def resolve_or_raise(self, institution: str, line: str, version: Optional[str] = None) -> FinancingPlan:
        plan = self.resolve(institution, line, version)
        if plan is None:
            raise PlanResolutionMiss(institution, line, version or "")
        return plan

    # ================= Financing Calculations =================

    def calculate_financing(self, institution: str, line: str, version: Optional[str],
                            list_price: float, down_payment_pct: float,
                            customer_incentive: Optional[float] = None,
                            dealer_share: Optional[float] = None) -> Optional[FinancingCalculation]:
        """
        Dealer profit for financing one unit under the resolved plan.

        Args:
            customer_incentive: subsidy given to the customer; defaults to the plan subsidy
            dealer_share: fraction of the incentive paid by the dealer; defaults to
                (100 - institution share) / 100

        Returns:
            FinancingCalculation, or None when no plan applies
        """
        plan = self.resolve(institution, line, version)
        if plan is None:
            return None

        max_dp = plan.max_down_payment_pct or 99.0
        if down_payment_pct < plan.min_down_payment_pct or down_payment_pct > max_dp:
            logger.warning(
                f"Down payment {down_payment_pct}% outside range for {institution}: "
                f"{plan.min_down_payment_pct}% - {max_dp}%"
            )

        incentive = plan.subsidy if customer_incentive is None else customer_incentive
        share = (100.0 - plan.institution_share_pct) / 100.0 if dealer_share is None else dealer_share

        down_payment_amount = list_price * (down_payment_pct / 100.0)
        incentive_cost = incentive * share
        financed_balance = (list_price - incentive) - down_payment_amount
        opening_commission = financed_balance * (plan.opening_commission_pct / 100.0)
        dealer_payment = financed_balance * (plan.dealer_payment_pct / 100.0)

        return FinancingCalculation(
            institution=institution,
            plan=plan,
            list_price=list_price,
            down_payment_pct=down_payment_pct,
            down_payment_amount=down_payment_amount,
            financed_balance=financed_balance,
            opening_commission=opening_commission,
            dealer_payment=dealer_payment,
            dealer_incentive_cost=incentive_cost,
            net_profit=dealer_payment - incentive_cost,
        )

    def compare_institutions(self, line: str, version: Optional[str], list_price: float,
                             down_payment_pct: float) -> List[FinancingCalculation]:
        """Financing outcome under every lender, best net profit first."""
        results = []
        for institution in self.institutions():
            calc = self.calculate_financing(institution, line, version, list_price, down_payment_pct)
            if calc is not None:
                results.append(calc)
        return sorted(results, key=lambda c: c.net_profit, reverse=True)

    def down_payment_sensitivity(self, institution: str, line: str, version: Optional[str],
                                 list_price: float, steps: int = 10) -> Dict[str, object]:
        """
        Sweep the down payment from the plan minimum to its maximum.

        Returns:
            Dict with 'down_payments', 'profits' and 'optimum' ({down_payment, profit})
        """
        plan = self.resolve(institution, line, version)
        if plan is None or steps <= 0:
            return {"down_payments": [], "profits": [], "optimum": {"down_payment": 0.0, "profit": 0.0}}

        dp_min = plan.min_down_payment_pct
        dp_max = plan.max_down_payment_pct or 99.0
        step = (dp_max - dp_min) / steps

        down_payments: List[float] = []
        profits: List[float] = []
        best_dp, best_profit = dp_min, 0.0
        for i in range(steps + 1):
            dp = dp_min + i * step
            calc = self.calculate_financing(institution, line, version, list_price, dp)
            if calc is None:
                continue
            down_payments.append(dp)
            profits.append(calc.net_profit)
            if calc.net_profit > best_profit:
                best_dp, best_profit = dp, calc.net_profit

        return {
            "down_payments": down_payments,
            "profits": profits,
            "optimum": {"down_payment": best_dp, "profit": best_profit},
        }

    # ================= Configuration Checks =================

    def validate_configuration(self, institution: str) -> ConfigurationReport:
        plans = [p for p in self._plans if p.institution == institution]
        errors: List[str] = []

        if not plans:
            errors.append(f"No plans configured for {institution}")
            return ConfigurationReport(is_valid=False, errors=errors)

        for plan in plans:
            label = plan.name or plan.plan_id
            if not 0 <= plan.institution_share_pct <= 100:
                errors.append(f"Plan {label}: institution share must be between 0 and 100")
            if not 0 <= plan.min_down_payment_pct <= 100:
                errors.append(f"Plan {label}: minimum down payment must be between 0 and 100")
            if plan.max_down_payment_pct < plan.min_down_payment_pct:
                errors.append(f"Plan {label}: maximum down payment must not be below the minimum")
            if plan.subsidy < 0:
                errors.append(f"Plan {label}: subsidy must not be negative")

        return ConfigurationReport(is_valid=not errors, errors=errors)

    def summary(self) -> Dict[str, object]:
        per_institution: Dict[str, int] = {}
        for p in self._plans:
            per_institution[p.institution] = per_institution.get(p.institution, 0) + 1
        return {
            "institutions": len(per_institution),
            "total_plans": len(self._plans),
            "plans_per_institution": per_institution,
        }
