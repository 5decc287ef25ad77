"""Data models for the forecast cache layer."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional


class Resolution(str, Enum):
    """Provider timeseries tier a sample belongs to.

    The provider publishes hourly samples for roughly the first 60 hours and
    six-hourly samples after that. A sample is hourly iff it carries a
    ``next_1_hours`` block.
    """

    HOURLY = "hourly"
    SIX_HOURLY = "six_hourly"

    @property
    def tolerance(self) -> timedelta:
        """Largest distance from a requested instant this tier may serve."""
        if self is Resolution.HOURLY:
            return timedelta(hours=1)
        return timedelta(hours=3)


@dataclass
class Race:
    """Race reference data (owned by course seeding)."""

    id: str
    name: str
    year: int
    start_time: datetime
    distance_km: float


@dataclass
class Checkpoint:
    """A point on the course a forecast is resolved for."""

    id: str
    race_id: str
    name: str
    distance_km: float
    latitude: float
    longitude: float
    elevation_m: float
    sort_order: int


@dataclass
class UpstreamSnapshot:
    """Most recent full provider response for one checkpoint."""

    checkpoint_id: str
    latitude: float
    longitude: float
    elevation_m: float
    payload: dict[str, Any]
    fetched_at: datetime
    expires_at: datetime
    last_modified: Optional[str] = None
    created_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class WeatherSample:
    """One provider timeseries entry with derived fields filled in.

    Units: temperatures in C, wind in m/s, precipitation in mm,
    humidity and cloud cover in percent.
    """

    forecast_time: datetime
    resolution: Resolution
    temperature_c: float
    feels_like_c: float
    wind_speed_ms: float
    wind_direction_deg: float
    precipitation_mm: float
    precipitation_type: str
    humidity_pct: float
    dew_point_c: float
    cloud_cover_pct: float
    symbol_code: str
    temperature_percentile_10_c: Optional[float] = None
    temperature_percentile_90_c: Optional[float] = None
    wind_speed_percentile_10_ms: Optional[float] = None
    wind_speed_percentile_90_ms: Optional[float] = None
    wind_gust_ms: Optional[float] = None
    precipitation_min_mm: Optional[float] = None
    precipitation_max_mm: Optional[float] = None
    uv_index: Optional[float] = None
    snow_temperature_c: Optional[float] = None

    @property
    def wind_speed_kmh(self) -> float:
        return self.wind_speed_ms * 3.6


@dataclass
class ForecastObservation:
    """A row of the append-only forecast history."""

    id: int
    checkpoint_id: str
    fetched_at: datetime
    model_run_at: Optional[datetime]
    source: str
    created_at: datetime
    sample: WeatherSample

    @property
    def forecast_time(self) -> datetime:
        return self.sample.forecast_time


@dataclass
class FetchLog:
    """Log entry for upstream fetches."""

    source: str  # 'yr'
    timestamp: datetime
    status: str  # 'new_data', 'not_modified', 'error'
    records_added: int
    duration_ms: int
    error_message: Optional[str] = None
