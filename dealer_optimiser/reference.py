"""
dealer_optimiser/reference.py

Reference data for the allocation engine.

Holds the static constraint table, the historical market shares used for
confidence scoring, and builders that turn the persistence layer's shapes
(the JSON database document and the flat plans table) into typed models.
"""

import json
import logging
import re
from typing import Dict, Any, List, Tuple, Optional, Mapping

import pandas as pd

from .errors import ValidationError
from .models import (
    BonusTable,
    CommissionRule,
    Constraints,
    Database,
    FinancialInstitution,
    FinancingPlan,
    FlatCommission,
    LineBounds,
    PlanException,
    TieredCommission,
    VehicleLine,
    sstr,
)

logger = logging.getLogger(__name__)


# ================= Static Tables =================

REFERENCE_PRICE = 650000.0

# Average list price per line (MXN)
LINE_LIST_PRICES: Dict[str, float] = {
    "City": 450000.0,
    "Civic": 520000.0,
    "BR-V": 550000.0,
    "HR-V": 580000.0,
    "CR-V": 720000.0,
    "Accord": 850000.0,
    "Pilot": 1200000.0,
    "Odyssey": 1300000.0,
    "CR-V Hybrid": 800000.0,
    "Accord Hybrid": 900000.0,
    "Civic Hybrid": 620000.0,
}

LINE_VERSIONS: Dict[str, Tuple[str, ...]] = {
    "City": ("LX", "Sport", "Prime"),
    "Civic": ("i-Style", "Touring"),
    "BR-V": ("Uniq", "Prime"),
    "HR-V": ("Uniq", "Touring"),
    "CR-V": ("EX", "EX-L", "Touring"),
    "Accord": ("EX", "Touring"),
    "Pilot": ("Touring", "Black Edition"),
    "Odyssey": ("Touring",),
    "CR-V Hybrid": ("Hybrid",),
    "Accord Hybrid": ("Hybrid",),
    "Civic Hybrid": ("Hybrid",),
}

# Historical monthly volume bounds per line; no line has a hard minimum
LINE_BOUNDS: Dict[str, LineBounds] = {
    "CR-V": LineBounds(0, 50, 7),
    "HR-V": LineBounds(0, 40, 6),
    "BR-V": LineBounds(0, 30, 5),
    "City": LineBounds(0, 25, 3),
    "Civic": LineBounds(0, 25, 3),
    "Pilot": LineBounds(0, 4, 2),
    "Odyssey": LineBounds(0, 3, 1),
    "Accord": LineBounds(0, 3, 1),
    "CR-V Hybrid": LineBounds(0, 2, 0),
    "Accord Hybrid": LineBounds(0, 2, 0),
    "Civic Hybrid": LineBounds(0, 2, 0),
}

# Segment price factors applied to requested prices
PRICE_ADJUSTMENTS: Dict[str, float] = {
    "City": 0.7,
    "Civic": 0.8,
    "BR-V": 0.85,
    "HR-V": 0.9,
    "CR-V": 1.1,
    "Accord": 1.3,
    "Pilot": 1.8,
    "Odyssey": 2.0,
    "CR-V Hybrid": 1.2,
    "Accord Hybrid": 1.4,
    "Civic Hybrid": 0.95,
}

# Share of monthly sales per line over the reference period
HISTORICAL_LINE_SHARES: Dict[str, float] = {
    "CR-V": 0.267,
    "HR-V": 0.229,
    "BR-V": 0.164,
    "City": 0.120,
    "Civic": 0.104,
    "Pilot": 0.071,
    "Odyssey": 0.038,
    "Accord": 0.023,
}

DOWN_PAYMENT_RANGES: Dict[str, Tuple[float, float]] = {
    "BBVA": (15.0, 45.0),
    "Banorte": (20.0, 50.0),
    "Santander": (25.0, 40.0),
}

COMMISSION_RULES: Dict[str, CommissionRule] = {
    "BBVA": FlatCommission(0.015),
    "Banorte": TieredCommission(
        brackets=((50.0, 0.05), (40.0, 0.04), (30.0, 0.035), (20.0, 0.025)),
        floor_rate=0.015,
    ),
    "Santander": FlatCommission(0.025),
}
DEFAULT_COMMISSION_RATE = 0.02

INCENTIVE_BONUSES: Dict[str, float] = {
    "Banorte": 1000.0,
    "BBVA": 500.0,
    "Santander": 750.0,
}

DEFAULT_CONSTRAINTS = Constraints(
    max_concentration_per_institution=0.70,
    max_concentration_per_line=0.40,
    min_institutions=2,
    max_credit_ratio=0.85,
    line_bounds=LINE_BOUNDS,
    price_adjustments=PRICE_ADJUSTMENTS,
)

# Subsidy bulletins (bono sin IVA) per lender: line -> model year -> model
DEFAULT_BONUS_TABLES: Dict[str, Dict[str, Dict[str, Dict[str, float]]]] = {
    "BBVA": {
        "CR-V": {"2025": {"EX": 18000.0, "Touring": 25000.0}, "2024": {"EX-L": 21000.0}},
        "HR-V": {"2025": {"Uniq": 15000.0, "Touring": 17000.0}},
        "BR-V": {"2025": {"Prime": 12000.0}},
        "City": {"2025": {"Sport": 8000.0}},
        "Civic": {"2025": {"Touring": 14000.0}},
        "Pilot": {"2025": {"Touring": 35000.0}},
        "Odyssey": {"2025": {"Touring": 30000.0}},
        "Accord": {"2025": {"EX": 20000.0}},
    },
    "Banorte": {
        "CR-V": {"2025": {"Touring": 22000.0}, "2024": {"EX": 19000.0}},
        "HR-V": {"2025": {"Uniq": 14000.0}},
        "BR-V": {"2025": {"Prime": 11000.0}},
        "City": {"2025": {"Prime": 9000.0}},
        "Civic": {"2025": {"i-Style": 12000.0}},
        "Pilot": {"2025": {"Black Edition": 40000.0}},
        "Accord": {"2025": {"Touring": 18000.0}},
    },
    "Santander": {
        "CR-V": {"2025": {"EX-L": 20000.0}},
        "HR-V": {"2025": {"Touring": 13000.0}},
        "City": {"2025": {"LX": 7000.0}},
        "Civic": {"2025": {"Touring": 15000.0}},
        "Accord": {"2025": {"Touring": 22000.0}},
    },
}


def default_plans() -> List[FinancingPlan]:
    """Financing plans currently offered by the default lenders."""
    return [
        FinancingPlan(
            plan_id="bbva-standard", institution="BBVA", name="Plan Estandar BBVA",
            rate=8.5, term_months=24, min_down_payment_pct=20.0,
            opening_commission_pct=2.5, dealer_payment_pct=16.5, subsidy=24300.0, priority=1,
        ),
        FinancingPlan(
            plan_id="bbva-premium", institution="BBVA", name="Plan Premium BBVA",
            applicable_lines=("Pilot", "Odyssey"),
            rate=7.9, term_months=36, min_down_payment_pct=15.0,
            opening_commission_pct=2.0, dealer_payment_pct=18.0, subsidy=35000.0, priority=2,
        ),
        FinancingPlan(
            plan_id="banorte-base", institution="Banorte", name="Plan Base Banorte",
            exceptions=(PlanException("Odyssey"), PlanException("Pilot")),
            rate=9.2, term_months=24, min_down_payment_pct=10.0,
            opening_commission_pct=5.0, dealer_payment_pct=5.0, subsidy=15000.0, priority=1,
        ),
        FinancingPlan(
            plan_id="banorte-suv", institution="Banorte", name="Plan SUV Banorte",
            applicable_lines=("CR-V", "HR-V", "Pilot", "Passport"),
            rate=8.8, term_months=30, min_down_payment_pct=20.0,
            opening_commission_pct=4.0, dealer_payment_pct=6.5, subsidy=20000.0, priority=2,
        ),
        FinancingPlan(
            plan_id="santander-preferente", institution="Santander", name="Plan Preferente Santander",
            rate=8.9, term_months=24, min_down_payment_pct=15.0,
            opening_commission_pct=2.69, dealer_payment_pct=2.69, subsidy=12000.0, priority=1,
        ),
        FinancingPlan(
            plan_id="santander-hibrido", institution="Santander", name="Plan Hibrido Santander",
            applicable_lines=("Accord", "CR-V", "Civic"),
            applicable_versions=("Hybrid", "EX-L", ""),
            rate=7.5, term_months=36, min_down_payment_pct=25.0,
            opening_commission_pct=1.5, dealer_payment_pct=4.0, subsidy=18000.0, priority=3,
        ),
    ]


# ================= Builders =================

def build_vehicle_lines(names: List[str], prices: Optional[Mapping[str, float]] = None,
                        reference_price: float = REFERENCE_PRICE) -> Tuple[VehicleLine, ...]:
    """Vehicle lines with list prices and bounds from the static tables."""
    prices = prices or {}
    lines = []
    for i, name in enumerate(names):
        price = prices.get(name, LINE_LIST_PRICES.get(name, reference_price))
        lines.append(VehicleLine(
            line_id=f"vehicle_{i + 1}",
            name=name,
            list_price=float(price),
            bounds=DEFAULT_CONSTRAINTS.bounds_for(name),
            versions=LINE_VERSIONS.get(name, ()),
        ))
    return tuple(lines)


def build_institution(name: str, bonus_entries: Optional[Mapping[str, Any]] = None,
                      plan_terms: Optional[Mapping[str, Any]] = None) -> FinancialInstitution:
    """
    Build a lender from its name and raw bonus bulletin.

    The commission rule comes from the known rule table; unknown lenders fall
    back to the average of the commission figures quoted in their plan terms,
    or to a flat 2%.
    """
    rule = COMMISSION_RULES.get(name)
    if rule is None:
        rule = commission_rule_from_terms(plan_terms or {})

    return FinancialInstitution(
        institution_id=name.lower().replace(" ", "_"),
        name=name,
        commission_rule=rule,
        bonus_table=BonusTable(parse_bonus_entries(bonus_entries or {})),
        down_payment_range=DOWN_PAYMENT_RANGES.get(name),
        incentive_bonus=INCENTIVE_BONUSES.get(name, 0.0),
    )


def parse_bonus_entries(raw: Mapping[str, Any]) -> Dict[str, Dict[str, Dict[str, float]]]:
    """
    Normalise a bonus bulletin to line -> year -> model -> amount.

    Model entries may be plain numbers or dicts carrying 'bono_sin_iva'.
    """
    table: Dict[str, Dict[str, Dict[str, float]]] = {}
    for line, years in raw.items():
        if not isinstance(years, Mapping):
            continue
        for year, models in years.items():
            if not isinstance(models, Mapping):
                continue
            for model, value in models.items():
                if isinstance(value, Mapping):
                    value = value.get("bono_sin_iva", 0)
                try:
                    amount = float(value or 0)
                except (TypeError, ValueError):
                    logger.warning(f"Ignoring non-numeric bonus for {line}/{year}/{model}: {value!r}")
                    continue
                table.setdefault(sstr(line), {}).setdefault(sstr(year), {})[sstr(model)] = amount
    return table


def commission_rule_from_terms(plan_terms: Mapping[str, Any]) -> CommissionRule:
    """Average the highest commission percentage quoted in each plan."""
    total_rate = 0.0
    plan_count = 0
    for terms in plan_terms.values():
        if not isinstance(terms, Mapping) or not terms.get("comision"):
            continue
        numbers = re.findall(r"\d+\.?\d*", str(terms["comision"]))
        if numbers:
            total_rate += max(float(n) for n in numbers) / 100.0
            plan_count += 1
    if plan_count == 0:
        return FlatCommission(DEFAULT_COMMISSION_RATE)
    return FlatCommission(total_rate / plan_count)


def default_database() -> Database:
    """Reference database with the default lenders, bulletins and plans."""
    names = list(LINE_LIST_PRICES.keys())
    institutions = tuple(
        build_institution(name, DEFAULT_BONUS_TABLES.get(name, {}))
        for name in ("BBVA", "Banorte", "Santander")
    )
    return Database(
        vehicle_lines=build_vehicle_lines(names),
        institutions=institutions,
        plans=tuple(default_plans()),
        reference_price=REFERENCE_PRICE,
    )


def load_database(payload: Mapping[str, Any]) -> Database:
    """
    Build a Database from the JSON document kept by the persistence layer.

    Expected shape:
        metadata.contexto_agencia.lineas_vehiculos: list of line names
        metadata.contexto_agencia.precio_promedio: reference price
        financieras.<name>.bonos_especiales: bonus bulletin
        financieras.<name>.planes_financiamiento: optional plan terms
        precios: optional line -> list price
        planes: optional list of plan records
    """
    try:
        context = payload["metadata"]["contexto_agencia"]
        line_names = [sstr(n) for n in context["lineas_vehiculos"]]
        lenders = payload["financieras"]
    except (KeyError, TypeError) as e:
        raise ValidationError(f"Database document is missing required section: {e}") from e

    reference_price = float(context.get("precio_promedio") or REFERENCE_PRICE)

    institutions = []
    for name, data in lenders.items():
        data = data or {}
        institutions.append(build_institution(
            sstr(name),
            data.get("bonos_especiales", {}),
            data.get("planes_financiamiento", {}),
        ))

    plans = [plan_from_record(rec, i) for i, rec in enumerate(payload.get("planes", []) or [])]

    return Database(
        vehicle_lines=build_vehicle_lines(line_names, payload.get("precios"), reference_price),
        institutions=tuple(institutions),
        plans=tuple(plans),
        reference_price=reference_price,
    )


# ================= Plan Records =================

_UNSET_VALUES = ("", "none", "all")


def _clean_value(value) -> str:
    """Plan table sentinels ('', 'none', 'all') mean no restriction."""
    if value is None:
        return ""
    if isinstance(value, float) and pd.isna(value):
        return ""
    text = sstr(value)
    if text.lower() in _UNSET_VALUES:
        return ""
    return text


def _json_list(value) -> List[str]:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return []
    if isinstance(value, (list, tuple)):
        return [sstr(v) for v in value]
    text = sstr(value)
    if not text:
        return []
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return [t.strip() for t in text.split(",")]
    if isinstance(parsed, list):
        return [sstr(v) for v in parsed]
    return [sstr(parsed)]


def _num(value, default: float = 0.0) -> float:
    try:
        if value is None or (isinstance(value, float) and pd.isna(value)):
            return default
        return float(value)
    except (TypeError, ValueError):
        return default


def plan_from_record(record: Mapping[str, Any], index: int = 0) -> FinancingPlan:
    """
    Build a plan from one record of the plans table.

    Accepts both the flat row shape (excepcion1_linea ... excepcion3_version)
    and the API shape with an 'excepciones' list of {linea, version}.
    """
    exceptions = []
    if isinstance(record.get("excepciones"), (list, tuple)):
        for exc in record["excepciones"]:
            line = _clean_value(exc.get("linea"))
            if line:
                exceptions.append(PlanException(line, _clean_value(exc.get("version"))))
    else:
        for n in (1, 2, 3):
            line = _clean_value(record.get(f"excepcion{n}_linea"))
            if line:
                exceptions.append(PlanException(line, _clean_value(record.get(f"excepcion{n}_version"))))

    active = record.get("activo", True)
    if active is None or (isinstance(active, float) and pd.isna(active)):
        active = True

    return FinancingPlan(
        plan_id=sstr(record.get("id")) or f"plan_{index + 1}",
        institution=sstr(record.get("financiera")),
        name=sstr(record.get("nombre")),
        applicable_lines=tuple(_json_list(record.get("lineas"))),
        applicable_versions=tuple(_json_list(record.get("versiones"))),
        exceptions=tuple(exceptions),
        institution_share_pct=_num(record.get("participacion_financiera")),
        opening_commission_pct=_num(record.get("comision_apertura")),
        dealer_payment_pct=_num(record.get("pago_distribuidor")),
        min_down_payment_pct=_num(record.get("enganche_minimo")),
        max_down_payment_pct=_num(record.get("enganche_maximo"), 99.0) or 99.0,
        subsidy=_num(record.get("bono_subsidio")),
        priority=int(_num(record.get("prioridad"), 1)),
        rate=_num(record.get("tasa")),
        term_months=int(_num(record.get("plazo"), 12)),
        active=bool(active),
    )


def plans_from_rows(rows_df: pd.DataFrame) -> List[FinancingPlan]:
    """
    Convert the plans table into FinancingPlan objects.

    Rows are ordered by lender, priority and name, matching the order the
    persistence layer serves them in. Inactive rows are kept but flagged.
    """
    if rows_df.empty:
        return []

    df = rows_df.copy()
    if "prioridad" not in df.columns:
        df["prioridad"] = 1
    sort_cols = [c for c in ("financiera", "prioridad", "nombre") if c in df.columns]
    df = df.sort_values(sort_cols, kind="stable")

    plans = []
    for i, (_, row) in enumerate(df.iterrows()):
        plans.append(plan_from_record(row.to_dict(), i))
    return plans
