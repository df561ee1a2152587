"""
tests/test_config.py

Settings loading from the environment.
"""

import pytest

from dealer_optimiser.config import Settings, get_settings


def test_defaults():
    settings = Settings(_env_file=None)
    assert settings.per_assignment_cap == 2
    assert settings.ga_tournament_size == 3
    assert settings.ga_volume_penalty == 10000.0
    assert settings.refine_with_genetic is False
    assert settings.ga_seed is None


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("OPTIMISER_PER_ASSIGNMENT_CAP", "3")
    monkeypatch.setenv("OPTIMISER_REFINE_WITH_GENETIC", "true")
    monkeypatch.setenv("OPTIMISER_GA_SEED", "1234")

    settings = Settings(_env_file=None)
    assert settings.per_assignment_cap == 3
    assert settings.refine_with_genetic is True
    assert settings.ga_seed == 1234


def test_get_settings_is_cached():
    get_settings.cache_clear()
    assert get_settings() is get_settings()
    get_settings.cache_clear()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
