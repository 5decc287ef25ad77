"""Read path: resolve the forecast at a checkpoint for a given instant.

    checkpoint + instant
        -> CacheFreshnessManager.ensure_fresh  (may refetch, may degrade)
        -> extract                             (nearest sample within tolerance)
        -> HistoryWriter.record                (best-effort)
        -> CheckpointForecast                  (stale flag carried through)

Race-level resolution first turns a target finish duration into a pass time
per checkpoint with the pacing model, then resolves the checkpoints on a
small thread pool.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from raceweather.cache.database import CacheDatabase
from raceweather.cache.extract import extract, forecast_horizon, model_run_at
from raceweather.cache.freshness import CacheFreshnessManager
from raceweather.cache.history import HistoryWriter
from raceweather.cache.models import Checkpoint, Race, WeatherSample
from raceweather.errors import CheckpointNotFound, RaceNotFound, UpstreamUnavailable
from raceweather.pacing.model import DEFAULT_COEFFICIENTS, PacingCoefficients, expected_arrivals
from raceweather.utils.time import to_naive_utc

logger = logging.getLogger(__name__)

# Upstream requests in flight for one race-level resolution
MAX_CONCURRENT_FETCHES = 4


@dataclass
class CheckpointForecast:
    """Forecast for one checkpoint at one instant.

    Attributes:
        checkpoint: Checkpoint resolved
        target_time: Instant requested (naive UTC)
        forecast_available: False when no sample lies within tolerance
        weather: Nearest sample, None when unavailable
        stale: True when served from an expired snapshot
        fetched_at: When the snapshot was fetched from the provider
        model_run_at: Provider model run, if disclosed
        forecast_horizon: Last instant the snapshot covers
    """

    checkpoint: Checkpoint
    target_time: datetime
    forecast_available: bool
    weather: Optional[WeatherSample]
    stale: bool
    fetched_at: Optional[datetime]
    model_run_at: Optional[datetime]
    forecast_horizon: Optional[datetime]


@dataclass
class RaceCheckpointForecast:
    """One row of a race-level forecast."""

    checkpoint: Checkpoint
    expected_time: datetime
    forecast: CheckpointForecast

    @property
    def forecast_available(self) -> bool:
        return self.forecast.forecast_available

    @property
    def weather(self) -> Optional[WeatherSample]:
        return self.forecast.weather


@dataclass
class RaceForecast:
    """Forecast at every checkpoint for a target finish duration."""

    race: Race
    target_duration_hours: float
    checkpoints: list[RaceCheckpointForecast] = field(default_factory=list)

    @property
    def stale(self) -> bool:
        return any(cp.forecast.stale for cp in self.checkpoints)

    @property
    def earliest_model_run_at(self) -> Optional[datetime]:
        runs = [
            cp.forecast.model_run_at
            for cp in self.checkpoints
            if cp.forecast_available and cp.forecast.model_run_at is not None
        ]
        return min(runs) if runs else None


class ForecastResolver:
    """Facade composing freshness, extraction, history and pacing."""

    def __init__(
        self,
        db: CacheDatabase,
        freshness: CacheFreshnessManager,
        history: HistoryWriter,
        coefficients: PacingCoefficients = DEFAULT_COEFFICIENTS,
        max_workers: int = MAX_CONCURRENT_FETCHES,
    ):
        self.db = db
        self.freshness = freshness
        self.history = history
        self.coefficients = coefficients
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="raceweather-resolve"
        )

    def get_checkpoint(self, checkpoint_id: str) -> Checkpoint:
        checkpoint = self.db.get_checkpoint(checkpoint_id)
        if checkpoint is None:
            raise CheckpointNotFound(f"Checkpoint {checkpoint_id} not found")
        return checkpoint

    def get_race(self, race_id: str) -> Race:
        race = self.db.get_race(race_id)
        if race is None:
            raise RaceNotFound(f"Race {race_id} not found")
        return race

    def resolve_checkpoint(self, checkpoint_id: str, target: datetime) -> CheckpointForecast:
        """Resolve by id.

        Raises:
            CheckpointNotFound: Unknown checkpoint
            UpstreamUnavailable: Provider down and nothing cached
            ProtocolViolation: Provider broke the conditional-request contract
        """
        return self.resolve(self.get_checkpoint(checkpoint_id), target)

    def resolve(self, checkpoint: Checkpoint, target: datetime) -> CheckpointForecast:
        target = to_naive_utc(target)
        snapshot, degraded = self.freshness.ensure_fresh(checkpoint)

        model_run = model_run_at(snapshot.payload)
        sample = extract(snapshot.payload, target)
        if sample is not None:
            self.history.record(checkpoint.id, sample, snapshot.fetched_at, model_run)
        else:
            logger.debug(f"No forecast within tolerance for {checkpoint.name} at {target}")

        return CheckpointForecast(
            checkpoint=checkpoint,
            target_time=target,
            forecast_available=sample is not None,
            weather=sample,
            stale=degraded,
            fetched_at=snapshot.fetched_at,
            model_run_at=model_run,
            forecast_horizon=forecast_horizon(snapshot.payload),
        )

    def resolve_race(self, race_id: str, target_duration_hours: float) -> RaceForecast:
        """Forecast at every checkpoint for a target finish duration.

        Checkpoints are resolved in parallel, at most ``max_workers`` upstream
        requests at a time.

        Raises:
            RaceNotFound: Unknown race
            ValueError: Non-positive target duration
            UpstreamUnavailable: Provider down with nothing cached for some
                checkpoint
            ProtocolViolation: Provider broke the conditional-request contract
        """
        if target_duration_hours <= 0:
            raise ValueError("target_duration_hours must be positive")

        race = self.get_race(race_id)
        checkpoints = self.db.get_checkpoints(race_id)
        arrivals = expected_arrivals(
            race.start_time, checkpoints, target_duration_hours, self.coefficients
        )

        futures = [
            self._executor.submit(self.resolve, checkpoint, expected_time)
            for checkpoint, expected_time in zip(checkpoints, arrivals)
        ]
        try:
            forecasts = [future.result() for future in futures]
        except UpstreamUnavailable as e:
            logger.warning(f"Cannot resolve {race.name}: {e}")
            raise
        finally:
            for future in futures:
                future.cancel()

        result = RaceForecast(race=race, target_duration_hours=target_duration_hours)
        for checkpoint, expected_time, forecast in zip(checkpoints, arrivals, forecasts):
            result.checkpoints.append(
                RaceCheckpointForecast(
                    checkpoint=checkpoint,
                    expected_time=expected_time,
                    forecast=forecast,
                )
            )
        return result

    def close(self) -> None:
        """Shut down the worker threads."""
        self._executor.shutdown(wait=True)
