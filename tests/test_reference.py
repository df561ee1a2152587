"""
tests/test_reference.py

Reference data builders: database document, bonus bulletins and plan rows.
"""

import numpy as np
import pandas as pd
import pytest

from dealer_optimiser.errors import ValidationError
from dealer_optimiser.models import FlatCommission, TieredCommission
from dealer_optimiser.reference import (
    LINE_BOUNDS,
    commission_rule_from_terms,
    default_database,
    load_database,
    parse_bonus_entries,
    plans_from_rows,
)


# ============ Test Fixtures ============

@pytest.fixture
def database_document():
    return {
        "metadata": {
            "contexto_agencia": {
                "lineas_vehiculos": ["CR-V", "City", "Passport"],
                "precio_promedio": 600000,
            }
        },
        "financieras": {
            "BBVA": {
                "bonos_especiales": {
                    "CR-V": {"2025": {"EX": {"bono_sin_iva": 18000}, "Touring": {"bono_sin_iva": 25000}}},
                },
            },
            "Nueva": {
                "planes_financiamiento": {
                    "basico": {"comision": "2.5% - 3%"},
                    "plus": {"comision": "4%"},
                },
            },
        },
        "planes": [
            {"id": "p1", "financiera": "BBVA", "nombre": "Plan 1", "lineas": ["CR-V"],
             "excepciones": [{"linea": "City", "version": ""}], "bono_subsidio": 5000},
        ],
    }


@pytest.fixture
def plan_rows():
    return pd.DataFrame([
        {
            "financiera": "Banorte", "nombre": "Plan SUV", "prioridad": 2,
            "lineas": '["CR-V", "HR-V"]', "versiones": '["", "Touring"]',
            "excepcion1_linea": "Pilot", "excepcion1_version": "none",
            "excepcion2_linea": np.nan, "excepcion2_version": np.nan,
            "excepcion3_linea": "all", "excepcion3_version": "",
            "enganche_minimo": 20, "enganche_maximo": np.nan, "bono_subsidio": 20000, "activo": True,
        },
        {
            "financiera": "Banorte", "nombre": "Plan Base", "prioridad": 1,
            "lineas": "[]", "versiones": "[]",
            "excepcion1_linea": "Odyssey", "excepcion1_version": "",
            "excepcion2_linea": "", "excepcion2_version": "",
            "excepcion3_linea": "", "excepcion3_version": "",
            "enganche_minimo": 10, "enganche_maximo": 60, "bono_subsidio": 15000, "activo": False,
        },
    ])


# ============ Database ============

def test_default_database_shape():
    db = default_database()
    assert db.institution_names() == ["BBVA", "Banorte", "Santander"]
    assert len(db.line_names()) == 11
    assert isinstance(db.institution("Banorte").commission_rule, TieredCommission)
    assert db.institution("Banorte").incentive_bonus == 1000.0
    assert db.line("CR-V").bounds == LINE_BOUNDS["CR-V"]


def test_hybrid_bonus_falls_back_to_base_line():
    bbva = default_database().institution("BBVA")
    lookup = bbva.bonus_table.best_bonus("CR-V Hybrid")
    assert lookup.found
    assert lookup.amount == 25000.0
    assert lookup.model == "Touring"
    assert not bbva.bonus_table.best_bonus("Passport").found


def test_load_database(database_document):
    db = load_database(database_document)

    assert db.reference_price == 600000.0
    assert db.line_names() == ["CR-V", "City", "Passport"]
    assert db.line("Passport").list_price == 600000.0
    assert db.institution("BBVA").bonus_table.best_bonus("CR-V").amount == 25000.0

    nueva = db.institution("Nueva").commission_rule
    assert isinstance(nueva, FlatCommission)
    assert nueva.rate == pytest.approx(0.035)

    assert len(db.plans) == 1
    assert db.plans[0].exceptions[0].line == "City"


def test_load_database_missing_section():
    with pytest.raises(ValidationError):
        load_database({"financieras": {}})


def test_parse_bonus_entries_mixed_values():
    table = parse_bonus_entries({"City": {"2025": {"LX": 7000, "Sport": {"bono_sin_iva": "8000"}, "Bad": "n/a"}}})
    assert table == {"City": {"2025": {"LX": 7000.0, "Sport": 8000.0}}}


def test_commission_from_terms_default():
    assert commission_rule_from_terms({}).rate == 0.02


# ============ Plan Rows ============

def test_plans_from_rows(plan_rows):
    plans = plans_from_rows(plan_rows)

    # Ordered by lender then priority
    assert [p.name for p in plans] == ["Plan Base", "Plan SUV"]

    base, suv = plans
    assert not base.active
    assert base.applicable_lines == ()
    assert base.max_down_payment_pct == 60.0

    assert suv.applicable_lines == ("CR-V", "HR-V")
    assert suv.applicable_versions == ("", "Touring")
    assert len(suv.exceptions) == 1
    assert suv.exceptions[0].line == "Pilot"
    assert suv.exceptions[0].version == ""
    assert suv.max_down_payment_pct == 99.0
    assert suv.priority == 2


def test_plans_from_empty_frame():
    assert plans_from_rows(pd.DataFrame()) == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
