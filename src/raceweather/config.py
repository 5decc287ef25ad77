"""Runtime configuration.

Every value can be overridden through an environment variable prefixed with
``RACEWEATHER_`` (e.g. ``RACEWEATHER_DATABASE_PATH``) or a ``.env`` file in
the working directory.
"""

from datetime import timedelta
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Project root is 3 levels up from this file (src/raceweather/config.py)
_PROJECT_ROOT = Path(__file__).parent.parent.parent
DEFAULT_DB_PATH = _PROJECT_ROOT / "data" / "cache" / "raceweather.duckdb"


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="RACEWEATHER_",
        env_file=".env",
        extra="ignore",
    )

    # Storage
    database_path: Path = Field(default=DEFAULT_DB_PATH)

    # Upstream provider (api.met.no requires an identifying User-Agent)
    yr_base_url: str = Field(default="https://api.met.no")
    yr_user_agent: str = Field(default="raceweather/0.1")
    request_timeout_s: float = Field(default=30.0, gt=0)
    expiry_fallback_minutes: int = Field(default=60, ge=1)
    # Parallel upstream requests when resolving a whole race
    race_max_concurrent_fetches: int = Field(default=4, ge=1)

    # Background poller
    poller_enabled: bool = Field(default=True)
    poller_min_speed_kmh: float = Field(default=10.0, gt=0)
    poller_max_speed_kmh: float = Field(default=30.0, gt=0)
    poller_lookback_days: int = Field(default=1, ge=0)
    poller_lookahead_days: int = Field(default=10, ge=1)
    poller_wake_margin_s: int = Field(default=30, ge=0)
    poller_min_sleep_s: int = Field(default=60, ge=0)
    poller_max_sleep_s: int = Field(default=1800, ge=1)
    poller_retry_delay_s: int = Field(default=120, ge=0)
    poller_max_retries: int = Field(default=5, ge=0)
    poller_idle_sleep_s: int = Field(default=3600, ge=1)
    fetch_log_retention_days: int = Field(default=7, ge=1)

    # Elevation-adjusted pacing
    pacing_k_up: float = Field(default=12.0, ge=0)
    pacing_k_down: float = Field(default=4.0, ge=0)
    pacing_min_cost_factor: float = Field(default=0.5, gt=0)

    # HTTP server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    @property
    def expiry_fallback(self) -> timedelta:
        return timedelta(minutes=self.expiry_fallback_minutes)


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, read once from the environment."""
    return Settings()
