"""Forecast API for raceweather.

This module provides:

- create_app: Factory function to create the FastAPI application
- CheckpointForecastResponse / RaceForecastResponse: response schemas
- PollerStatusResponse: background poller introspection

Note: FastAPI-dependent exports (create_app) are lazy-loaded to allow
importing schemas without FastAPI installed.
"""

# Schemas can be imported directly (only depend on pydantic)
from raceweather.api.schemas import (
    CheckpointForecastResponse,
    ErrorResponse,
    ForecastHistoryResponse,
    HealthResponse,
    PollerStatusResponse,
    RaceForecastResponse,
    WeatherResponse,
)


# Lazy imports for FastAPI-dependent components
def __getattr__(name):
    """Lazy load FastAPI-dependent components."""
    if name == "create_app":
        from raceweather.api.app import create_app
        return create_app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "create_app",
    "CheckpointForecastResponse",
    "ErrorResponse",
    "ForecastHistoryResponse",
    "HealthResponse",
    "PollerStatusResponse",
    "RaceForecastResponse",
    "WeatherResponse",
]
