"""
dealer_optimiser/models.py

Data model for the allocation engine.

Reference data (vehicle lines, lenders, bonus tables, financing plans) is
immutable and supplied from outside the core. The request is validated with
pydantic; everything the engine produces is a frozen dataclass.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, Any, List, Tuple, Optional, Mapping

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field, NonNegativeFloat
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


# ================= Constants =================
FINANCING_CREDIT = "credit"
FINANCING_LEASE = "lease"
MAX_PLAN_EXCEPTIONS = 3


# ================= String Utilities =================

def sstr(x) -> str:
    """Safely convert value to string."""
    if x is None:
        return ""
    if isinstance(x, float) and (math.isnan(x) or math.isinf(x)):
        return ""
    return str(x).strip()


def sstr_all(values) -> List[str]:
    """Normalise a sequence of optional strings; None becomes empty."""
    if values is None:
        return []
    return [sstr(v) for v in values]


# ================= Vehicle Lines =================

@dataclass(frozen=True)
class LineBounds:
    """Per-line allocation bounds derived from historical sales"""
    min: int = 0
    max: int = 5
    suggested: int = 0


@dataclass(frozen=True)
class VehicleLine:
    line_id: str
    name: str
    list_price: float
    bounds: LineBounds = field(default_factory=LineBounds)
    versions: Tuple[str, ...] = ()


# ================= Bonus Tables =================

@dataclass(frozen=True)
class BonusLookup:
    """Result of a bonus table lookup. An empty model means nothing was found."""
    amount: float = 0.0
    model_year: str = ""
    model: str = ""

    @property
    def found(self) -> bool:
        return bool(self.model)


BONUS_NOT_FOUND = BonusLookup()


@dataclass(frozen=True)
class BonusTable:
    """Subsidy amounts keyed line -> model year -> model."""
    entries: Mapping[str, Mapping[str, Mapping[str, float]]] = field(default_factory=dict)

    def lookup_key(self, line: str) -> Optional[str]:
        """Bulletins are keyed by base line, so hybrids fall back to it."""
        if line in self.entries:
            return line
        base = line.replace(" Hybrid", "").strip()
        if base in self.entries:
            return base
        return None

    def best_bonus(self, line: str) -> BonusLookup:
        key = self.lookup_key(line)
        if key is None:
            return BONUS_NOT_FOUND

        best = BONUS_NOT_FOUND
        for model_year, models in self.entries[key].items():
            for model, amount in models.items():
                value = float(amount or 0.0)
                if value > best.amount:
                    best = BonusLookup(amount=value, model_year=str(model_year), model=str(model))
        return best

    def models_for(self, line: str) -> List[str]:
        key = self.lookup_key(line)
        if key is None:
            return []
        models = set()
        for year_models in self.entries[key].values():
            models.update(str(m) for m in year_models.keys())
        return sorted(models)


# ================= Commission Rules =================

class CommissionRule:
    """Commission rate paid by a lender over the financed balance."""

    def rate_for(self, down_payment_pct: float) -> float:
        raise NotImplementedError

    def thresholds(self) -> List[float]:
        """Down payment percentages at which the rate changes."""
        return []

    def commission(self, financed_balance: float, down_payment_pct: float) -> float:
        return financed_balance * self.rate_for(down_payment_pct)


@dataclass(frozen=True)
class FlatCommission(CommissionRule):
    rate: float

    def rate_for(self, down_payment_pct: float) -> float:
        return self.rate


@dataclass(frozen=True)
class TieredCommission(CommissionRule):
    """
    Rate ladder keyed by down payment.

    Each bracket is (minimum down payment %, rate). The highest bracket whose
    minimum is met wins; below every bracket the floor rate applies.
    """
    brackets: Tuple[Tuple[float, float], ...]
    floor_rate: float = 0.0

    def rate_for(self, down_payment_pct: float) -> float:
        for threshold, rate in sorted(self.brackets, reverse=True):
            if down_payment_pct >= threshold:
                return rate
        return self.floor_rate

    def thresholds(self) -> List[float]:
        return sorted(float(t) for t, _ in self.brackets)


# ================= Institutions and Plans =================

@dataclass(frozen=True)
class FinancialInstitution:
    institution_id: str
    name: str
    commission_rule: CommissionRule
    bonus_table: BonusTable = field(default_factory=BonusTable)
    down_payment_range: Optional[Tuple[float, float]] = None
    incentive_bonus: float = 0.0  # fixed per-unit add-on on the credit path


@dataclass(frozen=True)
class PlanException:
    """A line (or a single version of it) a plan does not cover."""
    line: str
    version: str = ""

    def matches(self, line: str, version: Optional[str] = None) -> bool:
        if self.line != line:
            return False
        if not self.version:
            return True
        return self.version == (version or "")


@dataclass(frozen=True)
class FinancingPlan:
    """
    A lender's financing offer.

    applicable_lines and applicable_versions are parallel: the version at
    index i narrows the line at index i. An empty lines list means the plan
    covers every line.
    """
    plan_id: str
    institution: str
    name: str = ""
    applicable_lines: Tuple[str, ...] = ()
    applicable_versions: Tuple[str, ...] = ()
    exceptions: Tuple[PlanException, ...] = ()
    institution_share_pct: float = 0.0
    opening_commission_pct: float = 0.0
    dealer_payment_pct: float = 0.0
    min_down_payment_pct: float = 0.0
    max_down_payment_pct: float = 99.0
    subsidy: float = 0.0
    priority: int = 1
    rate: float = 0.0
    term_months: int = 12
    active: bool = True

    def __post_init__(self):
        object.__setattr__(self, "applicable_lines", tuple(sstr_all(self.applicable_lines)))
        object.__setattr__(self, "applicable_versions", tuple(sstr_all(self.applicable_versions)))
        object.__setattr__(self, "exceptions", tuple(self.exceptions))

        if len(self.exceptions) > MAX_PLAN_EXCEPTIONS:
            raise ValidationError(
                f"Plan {self.plan_id}: at most {MAX_PLAN_EXCEPTIONS} exceptions allowed, "
                f"got {len(self.exceptions)}"
            )
        for line, version in self.applicability():
            if version and not line:
                raise ValidationError(f"Plan {self.plan_id}: version '{version}' given without a line")
        for exc in self.exceptions:
            if exc.version and not exc.line:
                raise ValidationError(f"Plan {self.plan_id}: exception version '{exc.version}' given without a line")

    def applicability(self) -> List[Tuple[str, str]]:
        """(line, version) entries; a missing version entry counts as empty."""
        if not self.applicable_lines:
            return [("", "")]
        entries = []
        for i, line in enumerate(self.applicable_lines):
            version = self.applicable_versions[i] if i < len(self.applicable_versions) else ""
            entries.append((line, version))
        return entries


# ================= Constraints =================

@dataclass(frozen=True)
class Constraints:
    """Process-wide diversification and realism limits. Read-only."""
    max_concentration_per_institution: float = 0.70
    max_concentration_per_line: float = 0.40
    min_institutions: int = 2
    max_credit_ratio: float = 0.85
    line_bounds: Mapping[str, LineBounds] = field(default_factory=dict)
    price_adjustments: Mapping[str, float] = field(default_factory=dict)
    default_bounds: LineBounds = LineBounds(0, 5, 0)

    def bounds_for(self, line: str) -> LineBounds:
        return self.line_bounds.get(line, self.default_bounds)

    def price_factor(self, line: str) -> float:
        return float(self.price_adjustments.get(line, 1.0))

    # Caps round first: 10 * 0.7 is 7.000000000000001 in binary floating point
    def institution_cap(self, target_volume: int) -> int:
        return int(math.floor(round(target_volume * self.max_concentration_per_institution, 9)))

    def relaxed_institution_cap(self, target_volume: int) -> int:
        return int(math.ceil(round(target_volume * self.max_concentration_per_institution, 9)))

    def line_cap(self, target_volume: int) -> int:
        return int(math.floor(round(target_volume * self.max_concentration_per_line, 9)))

    def credit_cap(self, target_volume: int) -> int:
        return int(math.floor(round(target_volume * self.max_credit_ratio, 9)))


# ================= Database =================

@dataclass(frozen=True)
class Database:
    """Reference data supplied by the persistence layer."""
    vehicle_lines: Tuple[VehicleLine, ...]
    institutions: Tuple[FinancialInstitution, ...]
    plans: Tuple[FinancingPlan, ...] = ()
    reference_price: float = 650000.0

    def line(self, name: str) -> Optional[VehicleLine]:
        for vl in self.vehicle_lines:
            if vl.name == name:
                return vl
        return None

    def institution(self, name: str) -> Optional[FinancialInstitution]:
        for inst in self.institutions:
            if inst.name == name:
                return inst
        return None

    def line_names(self) -> List[str]:
        return [vl.name for vl in self.vehicle_lines]

    def institution_names(self) -> List[str]:
        return [inst.name for inst in self.institutions]

    def plans_for(self, institution: str) -> List[FinancingPlan]:
        return [p for p in self.plans if p.institution == institution and p.active]

# ================= Request =================

class AllocationRequest(BaseModel):
    """Optimisation parameters as sent by the surrounding application"""

    model_config = ConfigDict(frozen=True, extra="ignore")

    vehicle_prices: Dict[str, NonNegativeFloat] = Field(default_factory=dict)
    vehicle_volumes: Dict[str, int] = Field(default_factory=dict)
    vehicle_versions: Dict[str, str] = Field(default_factory=dict)
    monthly_volume: int
    salespeople_count: int = 0
    engagement_preferences: Dict[str, float] = Field(default_factory=dict)
    bonus_weights: Dict[str, float] = Field(
        default_factory=lambda: {"commission": 0.7, "bonus": 0.3}
    )

    @classmethod
    def from_payload(cls, payload: Any) -> "AllocationRequest":
        """Build a request from a JSON-shaped dict, raising ValidationError on bad shapes."""
        if isinstance(payload, cls):
            return payload
        if not isinstance(payload, Mapping):
            raise ValidationError(f"Request must be a mapping, got {type(payload).__name__}")
        try:
            return cls.model_validate(dict(payload))
        except PydanticValidationError as e:
            raise ValidationError(f"Malformed request: {e}") from e


@dataclass(frozen=True)
class NormalizedParams:
    """Request after price adjustment and volume redistribution."""
    monthly_volume: int
    vehicle_prices: Dict[str, float]
    vehicle_volumes: Dict[str, int]
    vehicle_versions: Dict[str, str] = field(default_factory=dict)
    engagement_preferences: Dict[str, float] = field(default_factory=dict)
    bonus_weights: Dict[str, float] = field(default_factory=dict)
    shortfall: int = 0
    warnings: Tuple[str, ...] = ()

    @property
    def total_volume(self) -> int:
        return sum(self.vehicle_volumes.values())

    def version_for(self, line: str) -> Optional[str]:
        return self.vehicle_versions.get(line) or None


# ================= Results =================

@dataclass(frozen=True)
class Allocation:
    vehicle_line: str
    institution: str
    quantity: int
    down_payment_pct: float
    commission: float
    bonus: float
    unit_profit: float
    financing_type: str = FINANCING_CREDIT

    @property
    def total_profit(self) -> float:
        return self.unit_profit * self.quantity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vehicle_line": self.vehicle_line,
            "institution": self.institution,
            "quantity": self.quantity,
            "down_payment_pct": self.down_payment_pct,
            "commission": self.commission,
            "bonus": self.bonus,
            "unit_profit": self.unit_profit,
            "financing_type": self.financing_type,
        }


@dataclass(frozen=True)
class OptimizationResult:
    variables: Tuple[Allocation, ...]
    total_profit: float
    constraints_satisfied: bool
    optimization_time: float
    algorithm_used: str
    recommendations: Tuple[str, ...] = ()
    confidence_level: Optional[float] = None
    warnings: Tuple[str, ...] = ()

    @property
    def total_units(self) -> int:
        return sum(a.quantity for a in self.variables)

    def by_institution(self) -> Dict[str, int]:
        totals: Dict[str, int] = {}
        for a in self.variables:
            totals[a.institution] = totals.get(a.institution, 0) + a.quantity
        return totals

    def by_line(self) -> Dict[str, int]:
        totals: Dict[str, int] = {}
        for a in self.variables:
            totals[a.vehicle_line] = totals.get(a.vehicle_line, 0) + a.quantity
        return totals

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "variables": [a.to_dict() for a in self.variables],
            "total_profit": self.total_profit,
            "constraints_satisfied": self.constraints_satisfied,
            "optimization_time": self.optimization_time,
            "algorithm_used": self.algorithm_used,
            "recommendations": list(self.recommendations),
        }
        if self.confidence_level is not None:
            out["confidence_level"] = self.confidence_level
        if self.warnings:
            out["warnings"] = list(self.warnings)
        return out

    def to_frame(self) -> pd.DataFrame:
        """One row per allocation, with a total_profit column."""
        columns = [
            "vehicle_line", "institution", "quantity", "down_payment_pct",
            "commission", "bonus", "unit_profit", "financing_type", "total_profit",
        ]
        rows = []
        for a in self.variables:
            row = a.to_dict()
            row["total_profit"] = a.total_profit
            rows.append(row)
        return pd.DataFrame(rows, columns=columns)
