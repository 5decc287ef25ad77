"""FastAPI application for race weather forecasts.

Provides REST API endpoints for:
- Forecast at a checkpoint for a given instant
- Forecast history of a checkpoint slot across model runs
- Forecast along a race for a target finish duration
- Background poller status and health checks

Example:
    >>> from raceweather.api import create_app
    >>> app = create_app()
    >>> # Run with: uvicorn raceweather.api.app:app --reload
"""

import dataclasses
import logging
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from raceweather.api.schemas import (
    CheckpointForecastResponse,
    CheckpointPollStatusResponse,
    ErrorResponse,
    ForecastHistoryResponse,
    HealthResponse,
    HistoryEntry,
    PollerStatusResponse,
    RaceCheckpointForecastResponse,
    RaceForecastResponse,
    WeatherResponse,
)
from raceweather.cache.models import WeatherSample
from raceweather.cache.resolver import CheckpointForecast
from raceweather.cache.services import ForecastServices
from raceweather.config import Settings, get_settings
from raceweather.errors import (
    CheckpointNotFound,
    ProtocolViolation,
    RaceNotFound,
    RaceWeatherError,
    UpstreamUnavailable,
)
from raceweather.utils.time import parse_iso, to_aware_utc

logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"
API_PREFIX = "/api/v1"

# Set on successful responses served from an expired cache
STALE_HEADER = "X-Forecast-Stale"

# HTTP status for each domain error
ERROR_STATUS = {
    CheckpointNotFound: 404,
    RaceNotFound: 404,
    UpstreamUnavailable: 502,
    ProtocolViolation: 500,
}


def weather_response(sample: WeatherSample) -> WeatherResponse:
    fields = dataclasses.asdict(sample)
    fields["forecast_time"] = to_aware_utc(sample.forecast_time)
    fields["resolution"] = sample.resolution.value
    return WeatherResponse(**fields)


def checkpoint_forecast_response(forecast: CheckpointForecast) -> CheckpointForecastResponse:
    return CheckpointForecastResponse(
        checkpoint_id=forecast.checkpoint.id,
        checkpoint_name=forecast.checkpoint.name,
        requested_time=to_aware_utc(forecast.target_time),
        forecast_available=forecast.forecast_available,
        weather=weather_response(forecast.weather) if forecast.weather else None,
        stale=forecast.stale,
        fetched_at=to_aware_utc(forecast.fetched_at),
        model_run_at=to_aware_utc(forecast.model_run_at),
        forecast_horizon=to_aware_utc(forecast.forecast_horizon),
    )


def _parse_datetime(value: str) -> datetime:
    try:
        return parse_iso(value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid datetime: {value!r} ({e})")


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[ForecastServices] = None,
    start_poller: Optional[bool] = None,
) -> FastAPI:
    """Create FastAPI application.

    Args:
        settings: Configuration. Uses get_settings() if not provided.
        services: Pre-built component graph (tests pass one around a
            temporary database and a fake upstream client)
        start_poller: Start the background poller on startup. Defaults to
            settings.poller_enabled.

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_settings()
    services = services or ForecastServices(settings)
    if start_poller is None:
        start_poller = settings.poller_enabled

    app = FastAPI(
        title="Race Weather API",
        description="Weather forecasts along endurance ski race courses",
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup_event():
        """Start the background poller."""
        if start_poller:
            try:
                services.poller.start()
            except Exception as e:
                logger.error(f"Failed to start background poller: {e}")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Stop the poller and close the database."""
        services.close()

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions with custom response."""
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=f"HTTP_{exc.status_code}",
                message=str(exc.detail),
            ).model_dump(),
        )

    @app.exception_handler(RaceWeatherError)
    async def domain_exception_handler(request: Request, exc: RaceWeatherError):
        """Map domain errors to HTTP status codes."""
        status_code = 500
        for error_type, code in ERROR_STATUS.items():
            if isinstance(exc, error_type):
                status_code = code
                break
        if status_code >= 500:
            logger.error(f"{request.url.path}: {type(exc).__name__}: {exc}")
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(
                error=type(exc).__name__,
                message=str(exc),
            ).model_dump(),
        )

    @app.get("/", tags=["info"])
    def root():
        """Root endpoint with API info."""
        return {
            "name": "Race Weather API",
            "version": API_VERSION,
            "docs": "/docs",
        }

    @app.get("/health", response_model=HealthResponse, tags=["info"])
    def health_check():
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            poller_active=services.poller.running,
            version=API_VERSION,
        )

    @app.get(
        f"{API_PREFIX}/forecasts/checkpoint/{{checkpoint_id}}",
        response_model=CheckpointForecastResponse,
        responses={
            400: {"model": ErrorResponse, "description": "Invalid datetime"},
            404: {"model": ErrorResponse, "description": "Checkpoint not found"},
            502: {"model": ErrorResponse, "description": "yr.no unreachable, nothing cached"},
        },
        tags=["forecasts"],
    )
    def get_checkpoint_forecast(
        checkpoint_id: str,
        response: Response,
        datetime_: str = Query(..., alias="datetime", description="ISO-8601 instant"),
    ):
        """Forecast at a checkpoint nearest the requested instant.

        Sets the ``X-Forecast-Stale: true`` header when yr.no could not be
        reached and an expired cache was served.
        """
        target = _parse_datetime(datetime_)
        forecast = services.resolver.resolve_checkpoint(checkpoint_id, target)
        if forecast.stale:
            response.headers[STALE_HEADER] = "true"
        return checkpoint_forecast_response(forecast)

    @app.get(
        f"{API_PREFIX}/forecasts/checkpoint/{{checkpoint_id}}/history",
        response_model=ForecastHistoryResponse,
        responses={
            400: {"model": ErrorResponse, "description": "Invalid datetime"},
            404: {"model": ErrorResponse, "description": "Checkpoint not found"},
        },
        tags=["forecasts"],
    )
    def get_checkpoint_forecast_history(
        checkpoint_id: str,
        datetime_: str = Query(..., alias="datetime", description="ISO-8601 instant"),
        limit: int = Query(default=50, ge=1, le=500),
    ):
        """Every recorded version of the forecast slot nearest the requested instant."""
        target = _parse_datetime(datetime_)
        checkpoint = services.resolver.get_checkpoint(checkpoint_id)
        observations = services.history.history(checkpoint.id, target, limit)

        forecast_time = observations[0].forecast_time if observations else target
        return ForecastHistoryResponse(
            checkpoint_id=checkpoint.id,
            checkpoint_name=checkpoint.name,
            forecast_time=to_aware_utc(forecast_time),
            history=[
                HistoryEntry(
                    fetched_at=to_aware_utc(obs.fetched_at),
                    model_run_at=to_aware_utc(obs.model_run_at),
                    weather=weather_response(obs.sample),
                )
                for obs in observations
            ],
        )

    @app.get(
        f"{API_PREFIX}/forecasts/race/{{race_id}}",
        response_model=RaceForecastResponse,
        responses={
            400: {"model": ErrorResponse, "description": "Invalid target duration"},
            404: {"model": ErrorResponse, "description": "Race not found"},
            502: {"model": ErrorResponse, "description": "yr.no unreachable, nothing cached for a checkpoint"},
        },
        tags=["forecasts"],
    )
    def get_race_forecast(
        race_id: str,
        response: Response,
        target_duration_hours: float = Query(..., description="Target finish duration in hours"),
    ):
        """Forecast at every checkpoint at its expected pass time."""
        if target_duration_hours <= 0:
            raise HTTPException(
                status_code=400, detail="target_duration_hours must be positive"
            )

        forecast = services.resolver.resolve_race(race_id, target_duration_hours)
        if forecast.stale:
            response.headers[STALE_HEADER] = "true"

        return RaceForecastResponse(
            race_id=forecast.race.id,
            race_name=forecast.race.name,
            start_time=to_aware_utc(forecast.race.start_time),
            target_duration_hours=target_duration_hours,
            stale=forecast.stale,
            earliest_model_run_at=to_aware_utc(forecast.earliest_model_run_at),
            checkpoints=[
                RaceCheckpointForecastResponse(
                    checkpoint_id=cp.checkpoint.id,
                    name=cp.checkpoint.name,
                    distance_km=cp.checkpoint.distance_km,
                    elevation_m=cp.checkpoint.elevation_m,
                    expected_time=to_aware_utc(cp.expected_time),
                    forecast_available=cp.forecast_available,
                    weather=weather_response(cp.weather) if cp.weather else None,
                )
                for cp in forecast.checkpoints
            ],
        )

    @app.get(
        f"{API_PREFIX}/poller/status",
        response_model=PollerStatusResponse,
        tags=["poller"],
    )
    def get_poller_status():
        """Background poller state and per-checkpoint outcomes."""
        status = services.poller.status()
        return PollerStatusResponse(
            phase=status.phase.value,
            active=status.active,
            next_wakeup_at=to_aware_utc(status.next_wakeup_at),
            last_cycle_started_at=to_aware_utc(status.last_cycle_started_at),
            last_cycle_completed_at=to_aware_utc(status.last_cycle_completed_at),
            last_cycle_duration_ms=status.last_cycle_duration_ms,
            total_polls=status.total_polls,
            checkpoints=[
                CheckpointPollStatusResponse(
                    checkpoint_id=cp.checkpoint_id,
                    checkpoint_name=cp.checkpoint_name,
                    race_name=cp.race_name,
                    distance_km=cp.distance_km,
                    expires_at=to_aware_utc(cp.expires_at),
                    last_fetched_at=to_aware_utc(cp.last_fetched_at),
                    last_model_run_at=to_aware_utc(cp.last_model_run_at),
                    last_success_at=to_aware_utc(cp.last_success_at),
                    last_failure_at=to_aware_utc(cp.last_failure_at),
                    last_poll_result=cp.last_poll_result,
                    extraction_count=cp.extraction_count,
                )
                for cp in status.checkpoints
            ],
        )

    return app


def main() -> None:
    """Run the API with uvicorn using configured host and port."""
    import uvicorn

    settings = get_settings()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


# Default app instance for uvicorn
app = create_app()

if __name__ == "__main__":
    main()
