"""
Configuration management for the allocation engine
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine tunables, overridable with OPTIMISER_* environment variables"""

    model_config = SettingsConfigDict(
        env_prefix="OPTIMISER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Greedy pass: no more than this many units per (line, institution) step
    per_assignment_cap: int = 2

    # Lease path: flat commission over invoice price
    lease_commission_rate: float = 0.02
    lease_bonus_factor: float = 0.5

    # Window used when no down payment preference is supplied
    down_payment_window_min: float = 20.0
    down_payment_window_max: float = 40.0

    # Genetic refinement
    refine_with_genetic: bool = False
    ga_population_size: int = 50
    ga_generations: int = 100
    ga_mutation_rate: float = 0.1
    ga_down_payment_mutation_rate: float = 0.3
    ga_tournament_size: int = 3
    ga_volume_penalty: float = 10000.0
    ga_concentration_penalty: float = 5000.0
    ga_seed: Optional[int] = None
    ga_deadline_seconds: Optional[float] = None

    # Recommendations
    concentration_warning_share: float = 0.6


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
