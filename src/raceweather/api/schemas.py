"""Pydantic schemas for API responses.

Defines all data models returned by the forecast API. Timestamps are
timezone-aware UTC and serialize as ISO-8601 with a ``Z`` suffix.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class WeatherResponse(BaseModel):
    """Weather at a checkpoint for one provider sample."""

    forecast_time: datetime = Field(..., description="Provider sample instant")
    resolution: str = Field(..., description="'hourly' or 'six_hourly'")
    temperature_c: float
    temperature_percentile_10_c: Optional[float] = None
    temperature_percentile_90_c: Optional[float] = None
    feels_like_c: float = Field(..., description="Wind-chill adjusted temperature")
    wind_speed_ms: float
    wind_speed_percentile_10_ms: Optional[float] = None
    wind_speed_percentile_90_ms: Optional[float] = None
    wind_direction_deg: float
    wind_gust_ms: Optional[float] = None
    precipitation_mm: float
    precipitation_min_mm: Optional[float] = None
    precipitation_max_mm: Optional[float] = None
    precipitation_type: str = Field(..., description="none, snow, sleet or rain")
    humidity_pct: float
    dew_point_c: float
    cloud_cover_pct: float
    uv_index: Optional[float] = None
    symbol_code: str
    snow_temperature_c: Optional[float] = Field(
        default=None, description="Estimated snow surface temperature"
    )


class CheckpointForecastResponse(BaseModel):
    """Forecast for one checkpoint at a requested instant.

    Attributes:
        forecast_available: False when the nearest sample is too far from
            the requested instant (or beyond the forecast horizon)
        stale: True when yr.no was unreachable and an expired cache was used
    """

    checkpoint_id: str
    checkpoint_name: str
    requested_time: datetime
    forecast_available: bool
    weather: Optional[WeatherResponse] = None
    stale: bool
    fetched_at: Optional[datetime] = None
    model_run_at: Optional[datetime] = None
    forecast_horizon: Optional[datetime] = None
    source: str = "yr.no"

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "checkpoint_id": "vasaloppet-2026-smagan",
                    "checkpoint_name": "Smagan",
                    "requested_time": "2026-03-01T08:45:00Z",
                    "forecast_available": True,
                    "weather": {
                        "forecast_time": "2026-03-01T09:00:00Z",
                        "resolution": "hourly",
                        "temperature_c": -6.2,
                        "feels_like_c": -11.4,
                        "wind_speed_ms": 3.4,
                        "wind_direction_deg": 210.0,
                        "precipitation_mm": 0.0,
                        "precipitation_type": "none",
                        "humidity_pct": 82.0,
                        "dew_point_c": -8.9,
                        "cloud_cover_pct": 40.0,
                        "symbol_code": "partlycloudy_day",
                        "snow_temperature_c": -10.2,
                    },
                    "stale": False,
                    "fetched_at": "2026-02-28T21:12:03Z",
                    "model_run_at": "2026-02-28T18:00:00Z",
                    "forecast_horizon": "2026-03-10T00:00:00Z",
                    "source": "yr.no",
                }
            ]
        }
    }


class HistoryEntry(BaseModel):
    """One captured version of a forecast slot."""

    fetched_at: datetime
    model_run_at: Optional[datetime] = None
    weather: WeatherResponse


class ForecastHistoryResponse(BaseModel):
    """How the forecast for one slot changed across model runs."""

    checkpoint_id: str
    checkpoint_name: str
    forecast_time: datetime = Field(
        ..., description="Matched sample instant (requested time when history is empty)"
    )
    history: list[HistoryEntry]


class RaceCheckpointForecastResponse(BaseModel):
    """Weather at one checkpoint at its expected pass time."""

    checkpoint_id: str
    name: str
    distance_km: float
    elevation_m: float
    expected_time: datetime
    forecast_available: bool
    weather: Optional[WeatherResponse] = None


class RaceForecastResponse(BaseModel):
    """Forecast along a whole race for a target finish duration."""

    race_id: str
    race_name: str
    start_time: datetime
    target_duration_hours: float
    stale: bool = Field(..., description="True if any checkpoint used an expired cache")
    earliest_model_run_at: Optional[datetime] = Field(
        default=None, description="Oldest model run among available checkpoints"
    )
    checkpoints: list[RaceCheckpointForecastResponse]


class CheckpointPollStatusResponse(BaseModel):
    """Poller outcome for one checkpoint."""

    checkpoint_id: str
    checkpoint_name: str
    race_name: str
    distance_km: float
    expires_at: Optional[datetime] = None
    last_fetched_at: Optional[datetime] = None
    last_model_run_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    last_poll_result: str
    extraction_count: int


class PollerStatusResponse(BaseModel):
    """Background poller state."""

    phase: str
    active: bool
    next_wakeup_at: Optional[datetime] = None
    last_cycle_started_at: Optional[datetime] = None
    last_cycle_completed_at: Optional[datetime] = None
    last_cycle_duration_ms: Optional[int] = None
    total_polls: int
    checkpoints: list[CheckpointPollStatusResponse]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service status")
    poller_active: bool
    version: str


class ErrorResponse(BaseModel):
    """Error response schema."""

    error: str = Field(..., description="Error code")
    message: str = Field(..., description="Human-readable error message")
