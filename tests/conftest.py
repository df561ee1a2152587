"""
tests/conftest.py

Shared fixtures: default reference data and the historical 28-unit request.
"""

import pytest

from dealer_optimiser.config import Settings
from dealer_optimiser.engine import OptimizationEngine
from dealer_optimiser.models import AllocationRequest
from dealer_optimiser.reference import DEFAULT_CONSTRAINTS, default_database


HISTORICAL_VOLUMES = {
    "CR-V": 7,
    "HR-V": 6,
    "BR-V": 5,
    "City": 3,
    "Civic": 3,
    "Pilot": 2,
    "Odyssey": 1,
    "Accord": 1,
}


@pytest.fixture
def settings():
    """Default settings, ignoring any local .env file"""
    return Settings(_env_file=None)


@pytest.fixture
def database():
    return default_database()


@pytest.fixture
def constraints():
    return DEFAULT_CONSTRAINTS


@pytest.fixture
def historical_request():
    """28 units spread like the historical monthly mix"""
    return AllocationRequest(
        vehicle_volumes=dict(HISTORICAL_VOLUMES),
        monthly_volume=28,
        salespeople_count=6,
    )


@pytest.fixture
def engine(database, constraints, settings):
    return OptimizationEngine(database, constraints, settings)
