"""Forecast caching layer for raceweather.

Keeps one yr.no snapshot per race checkpoint fresh in DuckDB, extracts the
sample nearest a requested instant, and records every extracted sample in an
append-only history.

Background refresh can be run via:
    python -m raceweather.cache.refresh

Or scheduled via cron:
    */30 * * * * python -m raceweather.cache.refresh
"""

from raceweather.cache.conditions import PrecipType, feels_like, precipitation_type, snow_temperature
from raceweather.cache.database import CacheDatabase
from raceweather.cache.extract import extract, forecast_horizon, model_run_at
from raceweather.cache.freshness import CacheFreshnessManager, PollOutcome
from raceweather.cache.history import HistoryWriter
from raceweather.cache.models import (
    Checkpoint,
    ForecastObservation,
    Race,
    Resolution,
    UpstreamSnapshot,
    WeatherSample,
)
from raceweather.cache.poller import (
    BackgroundPoller,
    PollerConfig,
    PollerStatus,
    compute_extraction_times,
)
from raceweather.cache.resolver import CheckpointForecast, ForecastResolver, RaceForecast
from raceweather.cache.services import ForecastServices
from raceweather.cache.yr import NewData, NotModified, YrClient

__all__ = [
    "BackgroundPoller",
    "CacheDatabase",
    "CacheFreshnessManager",
    "Checkpoint",
    "CheckpointForecast",
    "ForecastObservation",
    "ForecastResolver",
    "ForecastServices",
    "HistoryWriter",
    "NewData",
    "NotModified",
    "PollOutcome",
    "PollerConfig",
    "PollerStatus",
    "PrecipType",
    "Race",
    "RaceForecast",
    "Resolution",
    "UpstreamSnapshot",
    "WeatherSample",
    "YrClient",
    "compute_extraction_times",
    "extract",
    "feels_like",
    "forecast_horizon",
    "model_run_at",
    "precipitation_type",
    "snow_temperature",
]
