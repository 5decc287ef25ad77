"""DuckDB cache database for raceweather."""

import json
import logging
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable, Optional

import duckdb
import pandas as pd

from raceweather.cache.models import (
    Checkpoint,
    FetchLog,
    ForecastObservation,
    Race,
    Resolution,
    UpstreamSnapshot,
    WeatherSample,
)
from raceweather.config import DEFAULT_DB_PATH
from raceweather.utils.time import utcnow

logger = logging.getLogger(__name__)

# Stand-in for a NULL model run in the dedup key. NULL never compares equal,
# so unknown model runs collapse onto this sentinel instead.
UNKNOWN_MODEL_RUN = datetime(1970, 1, 1)

# History lookups match forecast slots within this distance of the target
HISTORY_WINDOW = timedelta(hours=3)

# SQL schema - DuckDB uses sequences for auto-increment
SCHEMA_SQL = """
-- Create sequences for auto-increment IDs
CREATE SEQUENCE IF NOT EXISTS seq_observation_id START 1;
CREATE SEQUENCE IF NOT EXISTS seq_fetch_log_id START 1;

-- Races and checkpoints (written by course seeding, read-only here)
CREATE TABLE IF NOT EXISTS races (
    id VARCHAR PRIMARY KEY,
    name VARCHAR NOT NULL,
    year INTEGER NOT NULL,
    start_time TIMESTAMP NOT NULL,
    distance_km DOUBLE NOT NULL
);

CREATE TABLE IF NOT EXISTS checkpoints (
    id VARCHAR PRIMARY KEY,
    race_id VARCHAR NOT NULL,
    name VARCHAR NOT NULL,
    distance_km DOUBLE NOT NULL,
    latitude DOUBLE NOT NULL,
    longitude DOUBLE NOT NULL,
    elevation_m DOUBLE NOT NULL,
    sort_order INTEGER NOT NULL
);

-- One full provider response per checkpoint, replaced on refetch
CREATE TABLE IF NOT EXISTS upstream_snapshots (
    checkpoint_id VARCHAR PRIMARY KEY,
    latitude DOUBLE NOT NULL,
    longitude DOUBLE NOT NULL,
    elevation_m DOUBLE NOT NULL,
    fetched_at TIMESTAMP NOT NULL,
    expires_at TIMESTAMP NOT NULL,
    last_modified VARCHAR,
    raw_response VARCHAR NOT NULL,
    created_at TIMESTAMP NOT NULL
);

-- Append-only forecast history
CREATE TABLE IF NOT EXISTS forecast_observations (
    id BIGINT DEFAULT nextval('seq_observation_id') PRIMARY KEY,
    checkpoint_id VARCHAR NOT NULL,
    forecast_time TIMESTAMP NOT NULL,
    resolution VARCHAR NOT NULL,
    fetched_at TIMESTAMP NOT NULL,
    model_run_at TIMESTAMP,
    model_run_key TIMESTAMP NOT NULL,
    temperature_c DOUBLE NOT NULL,
    temperature_percentile_10_c DOUBLE,
    temperature_percentile_90_c DOUBLE,
    feels_like_c DOUBLE NOT NULL,
    wind_speed_ms DOUBLE NOT NULL,
    wind_speed_percentile_10_ms DOUBLE,
    wind_speed_percentile_90_ms DOUBLE,
    wind_direction_deg DOUBLE NOT NULL,
    wind_gust_ms DOUBLE,
    precipitation_mm DOUBLE NOT NULL,
    precipitation_min_mm DOUBLE,
    precipitation_max_mm DOUBLE,
    precipitation_type VARCHAR NOT NULL,
    humidity_pct DOUBLE NOT NULL,
    dew_point_c DOUBLE NOT NULL,
    cloud_cover_pct DOUBLE NOT NULL,
    uv_index DOUBLE,
    symbol_code VARCHAR NOT NULL,
    snow_temperature_c DOUBLE,
    source VARCHAR NOT NULL,
    created_at TIMESTAMP NOT NULL,
    UNIQUE(checkpoint_id, forecast_time, model_run_key)
);

CREATE INDEX IF NOT EXISTS idx_observations_lookup
    ON forecast_observations(checkpoint_id, forecast_time);

-- Fetch log for debugging/monitoring
CREATE TABLE IF NOT EXISTS fetch_log (
    id INTEGER DEFAULT nextval('seq_fetch_log_id') PRIMARY KEY,
    source VARCHAR NOT NULL,
    timestamp TIMESTAMP NOT NULL,
    status VARCHAR NOT NULL,
    records_added INTEGER,
    duration_ms INTEGER,
    error_message VARCHAR
);

CREATE INDEX IF NOT EXISTS idx_fetch_log_time ON fetch_log(timestamp);
"""

# WeatherSample fields stored as forecast_observations columns, in order
WEATHER_COLUMNS = (
    "temperature_c",
    "temperature_percentile_10_c",
    "temperature_percentile_90_c",
    "feels_like_c",
    "wind_speed_ms",
    "wind_speed_percentile_10_ms",
    "wind_speed_percentile_90_ms",
    "wind_direction_deg",
    "wind_gust_ms",
    "precipitation_mm",
    "precipitation_min_mm",
    "precipitation_max_mm",
    "precipitation_type",
    "humidity_pct",
    "dew_point_c",
    "cloud_cover_pct",
    "uv_index",
    "symbol_code",
    "snow_temperature_c",
)

_OBSERVATION_SELECT = (
    "id, checkpoint_id, forecast_time, resolution, fetched_at, model_run_at, "
    "source, created_at, " + ", ".join(WEATHER_COLUMNS)
)


class CacheDatabase:
    """DuckDB cache database manager.

    Holds race/checkpoint reference data, the per-checkpoint upstream
    snapshots and the append-only forecast history.

    The database is shared by request handlers and the background poller.
    Each thread gets its own cursor on the shared connection; there is no
    in-process locking around rows. Uniqueness is enforced by the upsert
    and insert-if-absent statements themselves.

    Example:
        >>> db = CacheDatabase()
        >>> db.get_snapshot("cp-1")
        UpstreamSnapshot(...)
    """

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize database connection.

        Args:
            db_path: Path to DuckDB file. Creates if doesn't exist.
        """
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = None
        self._conn_lock = threading.Lock()
        self._local = threading.local()
        self._cursors: list[duckdb.DuckDBPyConnection] = []
        self._init_schema()

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        """Get database connection (lazy initialization with retry)."""
        if self._conn is None:
            with self._conn_lock:
                if self._conn is None:
                    self._conn = self._connect_with_retry()
        return self._conn

    def _connect_with_retry(self, max_retries: int = 3) -> duckdb.DuckDBPyConnection:
        """Connect to database with retry logic for lock handling."""
        last_error = None
        for attempt in range(max_retries):
            try:
                return duckdb.connect(str(self.db_path))
            except duckdb.IOException as e:
                last_error = e
                if "lock" in str(e).lower() and attempt < max_retries - 1:
                    wait_time = 0.5 * (2 ** attempt)  # Exponential backoff
                    logger.warning(f"Database locked, retrying in {wait_time}s...")
                    time.sleep(wait_time)
                else:
                    raise
        raise last_error

    def cursor(self) -> duckdb.DuckDBPyConnection:
        """Cursor bound to the calling thread.

        DuckDB connections are not safe to share between threads, cursors
        derived from one connection are.
        """
        cur = getattr(self._local, "cursor", None)
        if cur is None:
            cur = self.conn.cursor()
            self._local.cursor = cur
            with self._conn_lock:
                self._cursors.append(cur)
        return cur

    def _init_schema(self) -> None:
        """Initialize database schema."""
        for statement in SCHEMA_SQL.split(";"):
            statement = statement.strip()
            if statement:
                self.conn.execute(statement)
        logger.info(f"Cache database initialized at {self.db_path}")

    def close(self) -> None:
        """Close all cursors and the database connection."""
        with self._conn_lock:
            for cur in self._cursors:
                try:
                    cur.close()
                except duckdb.Error as e:
                    logger.debug(f"Ignoring error closing cursor: {e}")
            self._cursors.clear()
            self._local = threading.local()
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # -------------------------------------------------------------------------
    # Race / Checkpoint Operations
    # -------------------------------------------------------------------------

    def upsert_race(self, race: Race) -> None:
        """Insert or replace a race (course seeding contract)."""
        self.cursor().execute(
            """
            INSERT INTO races (id, name, year, start_time, distance_km)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                name = EXCLUDED.name,
                year = EXCLUDED.year,
                start_time = EXCLUDED.start_time,
                distance_km = EXCLUDED.distance_km
            """,
            [race.id, race.name, race.year, race.start_time, race.distance_km],
        )

    def upsert_checkpoints(self, checkpoints: Iterable[Checkpoint]) -> int:
        """Insert or replace checkpoints (course seeding contract).

        Returns:
            Number of checkpoints written
        """
        count = 0
        cur = self.cursor()
        for cp in checkpoints:
            cur.execute(
                """
                INSERT INTO checkpoints
                    (id, race_id, name, distance_km, latitude, longitude,
                     elevation_m, sort_order)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    race_id = EXCLUDED.race_id,
                    name = EXCLUDED.name,
                    distance_km = EXCLUDED.distance_km,
                    latitude = EXCLUDED.latitude,
                    longitude = EXCLUDED.longitude,
                    elevation_m = EXCLUDED.elevation_m,
                    sort_order = EXCLUDED.sort_order
                """,
                [
                    cp.id,
                    cp.race_id,
                    cp.name,
                    cp.distance_km,
                    cp.latitude,
                    cp.longitude,
                    cp.elevation_m,
                    cp.sort_order,
                ],
            )
            count += 1
        return count

    def get_race(self, race_id: str) -> Optional[Race]:
        row = self.cursor().execute(
            "SELECT id, name, year, start_time, distance_km FROM races WHERE id = ?",
            [race_id],
        ).fetchone()
        if row is None:
            return None
        return Race(*row)

    def get_checkpoint(self, checkpoint_id: str) -> Optional[Checkpoint]:
        row = self.cursor().execute(
            """
            SELECT id, race_id, name, distance_km, latitude, longitude,
                   elevation_m, sort_order
            FROM checkpoints WHERE id = ?
            """,
            [checkpoint_id],
        ).fetchone()
        if row is None:
            return None
        return Checkpoint(*row)

    def get_checkpoints(self, race_id: str) -> list[Checkpoint]:
        """Checkpoints of a race in course order."""
        rows = self.cursor().execute(
            """
            SELECT id, race_id, name, distance_km, latitude, longitude,
                   elevation_m, sort_order
            FROM checkpoints
            WHERE race_id = ?
            ORDER BY sort_order, distance_km
            """,
            [race_id],
        ).fetchall()
        return [Checkpoint(*row) for row in rows]

    def get_races_starting_between(self, start: datetime, end: datetime) -> list[Race]:
        """Races whose start_time falls in [start, end], soonest first."""
        rows = self.cursor().execute(
            """
            SELECT id, name, year, start_time, distance_km
            FROM races
            WHERE start_time >= ? AND start_time <= ?
            ORDER BY start_time
            """,
            [start, end],
        ).fetchall()
        return [Race(*row) for row in rows]

    def delete_checkpoint(self, checkpoint_id: str) -> bool:
        """Delete a checkpoint together with its snapshot and history.

        This is the only path that removes forecast history rows.

        Returns:
            True if the checkpoint existed
        """
        cur = self.cursor()
        cur.execute("BEGIN TRANSACTION")
        try:
            cur.execute(
                "DELETE FROM forecast_observations WHERE checkpoint_id = ?",
                [checkpoint_id],
            )
            cur.execute(
                "DELETE FROM upstream_snapshots WHERE checkpoint_id = ?",
                [checkpoint_id],
            )
            deleted = cur.execute(
                "DELETE FROM checkpoints WHERE id = ? RETURNING id",
                [checkpoint_id],
            ).fetchone()
            cur.execute("COMMIT")
        except duckdb.Error:
            cur.execute("ROLLBACK")
            raise
        if deleted is not None:
            logger.info(f"Deleted checkpoint {checkpoint_id} with its forecast data")
        return deleted is not None

    # -------------------------------------------------------------------------
    # Upstream Snapshot Operations
    # -------------------------------------------------------------------------

    def get_snapshot(self, checkpoint_id: str) -> Optional[UpstreamSnapshot]:
        """Stored snapshot for a checkpoint, expired or not."""
        row = self.cursor().execute(
            """
            SELECT checkpoint_id, latitude, longitude, elevation_m, raw_response,
                   fetched_at, expires_at, last_modified, created_at
            FROM upstream_snapshots
            WHERE checkpoint_id = ?
            """,
            [checkpoint_id],
        ).fetchone()
        if row is None:
            return None
        return UpstreamSnapshot(
            checkpoint_id=row[0],
            latitude=row[1],
            longitude=row[2],
            elevation_m=row[3],
            payload=json.loads(row[4]),
            fetched_at=row[5],
            expires_at=row[6],
            last_modified=row[7],
            created_at=row[8],
        )

    def upsert_snapshot(self, snapshot: UpstreamSnapshot) -> None:
        """Replace the checkpoint's snapshot wholesale."""
        self.cursor().execute(
            """
            INSERT INTO upstream_snapshots
                (checkpoint_id, latitude, longitude, elevation_m, fetched_at,
                 expires_at, last_modified, raw_response, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (checkpoint_id) DO UPDATE SET
                latitude = EXCLUDED.latitude,
                longitude = EXCLUDED.longitude,
                elevation_m = EXCLUDED.elevation_m,
                fetched_at = EXCLUDED.fetched_at,
                expires_at = EXCLUDED.expires_at,
                last_modified = EXCLUDED.last_modified,
                raw_response = EXCLUDED.raw_response
            """,
            [
                snapshot.checkpoint_id,
                snapshot.latitude,
                snapshot.longitude,
                snapshot.elevation_m,
                snapshot.fetched_at,
                snapshot.expires_at,
                snapshot.last_modified,
                json.dumps(snapshot.payload),
                snapshot.created_at or utcnow(),
            ],
        )

    def extend_snapshot(
        self,
        checkpoint_id: str,
        expires_at: datetime,
        last_modified: Optional[str],
    ) -> bool:
        """Move a snapshot's expiry forward without rewriting the payload.

        Returns:
            True if a snapshot row was updated
        """
        row = self.cursor().execute(
            """
            UPDATE upstream_snapshots
            SET expires_at = ?, last_modified = ?
            WHERE checkpoint_id = ?
            RETURNING checkpoint_id
            """,
            [expires_at, last_modified, checkpoint_id],
        ).fetchone()
        return row is not None

    def get_earliest_expiry(self, checkpoint_ids: Iterable[str]) -> Optional[datetime]:
        """Soonest snapshot expiry among the given checkpoints."""
        ids = list(checkpoint_ids)
        if not ids:
            return None
        placeholders = ", ".join("?" for _ in ids)
        row = self.cursor().execute(
            f"SELECT MIN(expires_at) FROM upstream_snapshots "
            f"WHERE checkpoint_id IN ({placeholders})",
            ids,
        ).fetchone()
        return row[0] if row else None

    # -------------------------------------------------------------------------
    # Forecast History Operations
    # -------------------------------------------------------------------------

    def insert_observation(
        self,
        checkpoint_id: str,
        sample: WeatherSample,
        fetched_at: datetime,
        model_run_at: Optional[datetime],
        source: str = "yr.no",
    ) -> bool:
        """Insert a history row unless an equivalent one exists.

        Returns:
            True if a row was written, False on a dedup collision
        """
        weather = [getattr(sample, column) for column in WEATHER_COLUMNS]
        row = self.cursor().execute(
            f"""
            INSERT INTO forecast_observations
                (checkpoint_id, forecast_time, resolution, fetched_at,
                 model_run_at, model_run_key, source, created_at,
                 {", ".join(WEATHER_COLUMNS)})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, {", ".join("?" for _ in WEATHER_COLUMNS)})
            ON CONFLICT (checkpoint_id, forecast_time, model_run_key) DO NOTHING
            RETURNING id
            """,
            [
                checkpoint_id,
                sample.forecast_time,
                sample.resolution.value,
                fetched_at,
                model_run_at,
                model_run_at or UNKNOWN_MODEL_RUN,
                source,
                utcnow(),
                *weather,
            ],
        ).fetchone()
        return row is not None

    def _history_query(
        self, checkpoint_id: str, target: datetime, limit: int
    ) -> tuple[str, list[Any]]:
        # Nearest stored forecast slot within the window, then every
        # model run captured for that slot, oldest first.
        sql = f"""
            WITH nearest AS (
                SELECT forecast_time
                FROM forecast_observations
                WHERE checkpoint_id = ?
                  AND forecast_time BETWEEN ? AND ?
                ORDER BY abs(date_diff('second', forecast_time, CAST(? AS TIMESTAMP))), forecast_time
                LIMIT 1
            )
            SELECT {_OBSERVATION_SELECT}
            FROM forecast_observations
            WHERE checkpoint_id = ?
              AND forecast_time = (SELECT forecast_time FROM nearest)
            ORDER BY COALESCE(model_run_at, fetched_at), fetched_at
            LIMIT ?
        """
        params = [
            checkpoint_id,
            target - HISTORY_WINDOW,
            target + HISTORY_WINDOW,
            target,
            checkpoint_id,
            limit,
        ]
        return sql, params

    def get_observation_history(
        self, checkpoint_id: str, target: datetime, limit: int = 50
    ) -> list[ForecastObservation]:
        """How the forecast for the slot nearest ``target`` evolved.

        Args:
            checkpoint_id: Checkpoint to look up
            target: Requested instant (naive UTC)
            limit: Maximum number of rows

        Returns:
            Observations ordered by model run (or capture time when the
            model run is unknown), oldest first
        """
        sql, params = self._history_query(checkpoint_id, target, limit)
        rows = self.cursor().execute(sql, params).fetchall()
        return [self._row_to_observation(row) for row in rows]

    def get_observation_history_df(
        self, checkpoint_id: str, target: datetime, limit: int = 50
    ) -> pd.DataFrame:
        """Same rows as get_observation_history, as a DataFrame."""
        sql, params = self._history_query(checkpoint_id, target, limit)
        return self.cursor().execute(sql, params).df()

    def count_observations(self, checkpoint_id: Optional[str] = None) -> int:
        if checkpoint_id is None:
            row = self.cursor().execute(
                "SELECT COUNT(*) FROM forecast_observations"
            ).fetchone()
        else:
            row = self.cursor().execute(
                "SELECT COUNT(*) FROM forecast_observations WHERE checkpoint_id = ?",
                [checkpoint_id],
            ).fetchone()
        return row[0]

    @staticmethod
    def _row_to_observation(row: tuple) -> ForecastObservation:
        (obs_id, checkpoint_id, forecast_time, resolution, fetched_at,
         model_run_at, source, created_at) = row[:8]
        weather = dict(zip(WEATHER_COLUMNS, row[8:]))
        sample = WeatherSample(
            forecast_time=forecast_time,
            resolution=Resolution(resolution),
            **weather,
        )
        return ForecastObservation(
            id=obs_id,
            checkpoint_id=checkpoint_id,
            fetched_at=fetched_at,
            model_run_at=model_run_at,
            source=source,
            created_at=created_at,
            sample=sample,
        )

    # -------------------------------------------------------------------------
    # Fetch Log Operations
    # -------------------------------------------------------------------------

    def log_fetch(
        self,
        source: str,
        status: str,
        records_added: int = 0,
        duration_ms: int = 0,
        error_message: Optional[str] = None,
    ) -> None:
        """Log an upstream fetch for monitoring."""
        self.cursor().execute(
            """
            INSERT INTO fetch_log (source, timestamp, status, records_added, duration_ms, error_message)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [source, utcnow(), status, records_added, duration_ms, error_message],
        )

    def prune_fetch_log(self, before: datetime) -> int:
        """Delete fetch log rows older than ``before``. Returns rows deleted."""
        rows = self.cursor().execute(
            "DELETE FROM fetch_log WHERE timestamp < ? RETURNING id", [before]
        ).fetchall()
        return len(rows)

    def get_recent_fetches(self, limit: int = 20) -> list[FetchLog]:
        rows = self.cursor().execute(
            """
            SELECT source, timestamp, status, records_added, duration_ms, error_message
            FROM fetch_log
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
            """,
            [limit],
        ).fetchall()
        return [FetchLog(*row) for row in rows]

    def get_stats(self) -> dict:
        """Get cache statistics."""
        cur = self.cursor()
        now = utcnow()

        snapshot_count = cur.execute(
            "SELECT COUNT(*) FROM upstream_snapshots"
        ).fetchone()[0]
        fresh_count = cur.execute(
            "SELECT COUNT(*) FROM upstream_snapshots WHERE expires_at > ?", [now]
        ).fetchone()[0]
        observation_count = cur.execute(
            "SELECT COUNT(*) FROM forecast_observations"
        ).fetchone()[0]
        latest_fetch = cur.execute(
            "SELECT MAX(fetched_at) FROM upstream_snapshots"
        ).fetchone()[0]
        latest_model_run = cur.execute(
            "SELECT MAX(model_run_at) FROM forecast_observations"
        ).fetchone()[0]

        return {
            "races": cur.execute("SELECT COUNT(*) FROM races").fetchone()[0],
            "checkpoints": cur.execute("SELECT COUNT(*) FROM checkpoints").fetchone()[0],
            "snapshots": snapshot_count,
            "fresh_snapshots": fresh_count,
            "stale_snapshots": snapshot_count - fresh_count,
            "observations": observation_count,
            "latest_fetch": latest_fetch,
            "latest_model_run": latest_model_run,
            "db_path": str(self.db_path),
        }
