"""Append-only forecast history.

Every extracted sample is offered to the history table. A row that already
exists for the same checkpoint, sample instant and model run is left
untouched, so readers and the poller can record the same slot any number of
times. Rows are never updated.
"""

import logging
from datetime import datetime
from typing import Optional

import duckdb
import pandas as pd

from raceweather.cache.database import CacheDatabase
from raceweather.cache.models import ForecastObservation, WeatherSample
from raceweather.utils.time import to_naive_utc

logger = logging.getLogger(__name__)

SOURCE = "yr.no"


class HistoryWriter:
    """Best-effort writer and reader for forecast history."""

    def __init__(self, db: CacheDatabase, source: str = SOURCE):
        self.db = db
        self.source = source

    def record(
        self,
        checkpoint_id: str,
        sample: WeatherSample,
        fetched_at: datetime,
        model_run_at: Optional[datetime],
    ) -> bool:
        """Store a sample unless an equivalent row exists.

        Database failures are logged and reported as not recorded; they
        never reach the caller.

        Returns:
            True if a new row was written
        """
        try:
            recorded = self.db.insert_observation(
                checkpoint_id=checkpoint_id,
                sample=sample,
                fetched_at=fetched_at,
                model_run_at=model_run_at,
                source=self.source,
            )
        except duckdb.ConstraintException:
            # Lost an insert race with an identical row
            return False
        except duckdb.Error as e:
            logger.error(
                f"Failed to record forecast for {checkpoint_id} at "
                f"{sample.forecast_time}: {e}"
            )
            return False

        if recorded:
            logger.debug(
                f"Recorded forecast for {checkpoint_id} at {sample.forecast_time} "
                f"(model_run={model_run_at})"
            )
        return recorded

    def history(
        self, checkpoint_id: str, target: datetime, limit: int = 50
    ) -> list[ForecastObservation]:
        """How the forecast for the slot nearest ``target`` changed over model runs."""
        return self.db.get_observation_history(checkpoint_id, to_naive_utc(target), limit)

    def history_frame(
        self, checkpoint_id: str, target: datetime, limit: int = 50
    ) -> pd.DataFrame:
        return self.db.get_observation_history_df(checkpoint_id, to_naive_utc(target), limit)
