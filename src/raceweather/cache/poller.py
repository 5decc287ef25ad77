"""Background poller that keeps forecast history complete.

Readers only refresh the checkpoints they ask about. The poller walks every
checkpoint of races that have not yet finished and drives the same
refresh -> extract -> record pipeline, so every upstream model run lands in
the history even when nobody is looking.

Each cycle:

    Idle -> Scanning -> Refreshing(checkpoint)... -> Refreshing(304 retries) -> Idle

Checkpoints that answered 304 are retried together, one delay per round.
The poller then sleeps until the earliest snapshot expiry (plus a safety
margin), clamped to [min_sleep, max_sleep].
"""

import copy
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

import duckdb

from raceweather.cache.database import CacheDatabase
from raceweather.cache.extract import extract, model_run_at
from raceweather.cache.freshness import CacheFreshnessManager, PollOutcome
from raceweather.cache.history import HistoryWriter
from raceweather.cache.models import Checkpoint, Race
from raceweather.utils.time import ceil_hour, floor_hour, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollerConfig:
    """Scheduling constants for the poller."""

    # Plausible skiing speeds, bounding when a checkpoint can be passed
    min_speed_kmh: float = 10.0
    max_speed_kmh: float = 30.0
    # Races starting in [now - lookback, now + lookahead] are polled
    lookback: timedelta = timedelta(days=1)
    lookahead: timedelta = timedelta(days=10)
    wake_margin: timedelta = timedelta(seconds=30)
    min_sleep_s: float = 60.0
    max_sleep_s: float = 1800.0
    # Retries after a 304 on an expired snapshot (model not rerun yet)
    retry_delay_s: float = 120.0
    max_retries: int = 5
    idle_sleep_s: float = 3600.0
    fetch_log_retention: timedelta = timedelta(days=7)


class PollerPhase(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    REFRESHING = "refreshing"


@dataclass
class CheckpointPollStatus:
    """Outcome of the most recent poll of one checkpoint."""

    checkpoint_id: str
    checkpoint_name: str
    race_name: str
    distance_km: float
    expires_at: Optional[datetime] = None
    last_fetched_at: Optional[datetime] = None
    last_model_run_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    # 'pending', 'fresh', 'new_data', 'not_modified' or 'error: <message>'
    last_poll_result: str = "pending"
    # New history rows from the latest poll
    extraction_count: int = 0


PollTarget = tuple[Race, Checkpoint, CheckpointPollStatus]


@dataclass
class PollerStatus:
    """Introspectable poller state."""

    phase: PollerPhase = PollerPhase.IDLE
    active: bool = False
    current_checkpoint_id: Optional[str] = None
    next_wakeup_at: Optional[datetime] = None
    last_cycle_started_at: Optional[datetime] = None
    last_cycle_completed_at: Optional[datetime] = None
    last_cycle_duration_ms: Optional[int] = None
    total_polls: int = 0
    checkpoints: list[CheckpointPollStatus] = field(default_factory=list)


def compute_extraction_times(
    race_start: datetime,
    distance_km: float,
    min_speed_kmh: float = 10.0,
    max_speed_kmh: float = 30.0,
) -> list[datetime]:
    """Hourly instants a skier could plausibly pass a checkpoint.

    Spans from the fastest pace (floored to the hour) to the slowest pace
    (ceiled to the hour).

    Args:
        race_start: Race start time
        distance_km: Checkpoint distance from the start
        min_speed_kmh: Slowest plausible speed
        max_speed_kmh: Fastest plausible speed

    Returns:
        Hourly datetimes, ascending. Just the start hour for the start line.
    """
    if distance_km <= 0:
        return [floor_hour(race_start)]

    earliest = floor_hour(race_start + timedelta(hours=distance_km / max_speed_kmh))
    latest = ceil_hour(race_start + timedelta(hours=distance_km / min_speed_kmh))

    times = []
    current = earliest
    while current <= latest:
        times.append(current)
        current += timedelta(hours=1)
    return times


class BackgroundPoller:
    """Periodic refresher for all checkpoints of upcoming races.

    Runs in a daemon thread started with start(). run_cycle() can also be
    called directly (the refresh CLI does this).

    Example:
        >>> poller = BackgroundPoller(db, freshness, history)
        >>> poller.start()
        >>> poller.status().next_wakeup_at
    """

    def __init__(
        self,
        db: CacheDatabase,
        freshness: CacheFreshnessManager,
        history: HistoryWriter,
        config: Optional[PollerConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.freshness = freshness
        self.history = history
        self.config = config or PollerConfig()
        self._clock = clock

        self._status = PollerStatus()
        self._status_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start the polling thread (no-op if already running)."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="raceweather-poller", daemon=True
        )
        self._thread.start()
        logger.info("Background poller started")

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the thread to stop and wait for it."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        with self._status_lock:
            self._status.active = False
        logger.info("Background poller stopped")

    def join(self, timeout: Optional[float] = None) -> None:
        """Block until the polling thread exits or the timeout passes."""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        with self._status_lock:
            self._status.active = True
        while not self._stop.is_set():
            try:
                sleep_s = self.run_cycle()
            except Exception as e:
                # A broken cycle must not kill the thread
                logger.exception(f"Poller cycle failed: {e}")
                sleep_s = self.config.min_sleep_s
                self._set_phase(PollerPhase.IDLE)
            logger.info(f"Poller sleeping {sleep_s:.0f}s")
            self._stop.wait(sleep_s)
        with self._status_lock:
            self._status.active = False

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    def run_cycle(self) -> float:
        """Poll every checkpoint of every upcoming race once.

        Checkpoints answering 304 are retried together in rounds after the
        first pass, so one delay is paid per round rather than per checkpoint.

        Returns:
            Seconds to sleep before the next cycle
        """
        cycle_start = time.time()
        now = self._clock()
        self._set_phase(PollerPhase.SCANNING)
        with self._status_lock:
            self._status.last_cycle_started_at = now
        self._prune_fetch_log(now)

        races = self.db.get_races_starting_between(
            now - self.config.lookback, now + self.config.lookahead
        )

        if not races:
            logger.info("No upcoming races to poll")
            with self._status_lock:
                self._status.checkpoints = []
            sleep_s = self.config.idle_sleep_s
            self._finish_cycle(cycle_start, now + timedelta(seconds=sleep_s))
            return sleep_s

        targets = self._scan(races)

        not_modified = []
        for target in targets:
            if self._stop.is_set():
                break
            if self._poll_checkpoint(*target) is PollOutcome.NOT_MODIFIED:
                not_modified.append(target)
        self._retry_not_modified(not_modified)

        sleep_s = self._next_sleep([checkpoint.id for _, checkpoint, _ in targets])
        self._finish_cycle(cycle_start, self._clock() + timedelta(seconds=sleep_s))
        return sleep_s

    def _scan(self, races: list[Race]) -> list[PollTarget]:
        """Checkpoints to poll this cycle, with a fresh status entry each."""
        with self._status_lock:
            previous = {entry.checkpoint_id: entry for entry in self._status.checkpoints}

        targets = []
        for race in races:
            checkpoints = self.db.get_checkpoints(race.id)
            logger.info(f"Polling {len(checkpoints)} checkpoints for {race.name}")
            for checkpoint in checkpoints:
                entry = CheckpointPollStatus(
                    checkpoint_id=checkpoint.id,
                    checkpoint_name=checkpoint.name,
                    race_name=race.name,
                    distance_km=checkpoint.distance_km,
                )
                last = previous.get(checkpoint.id)
                if last is not None:
                    entry.last_success_at = last.last_success_at
                    entry.last_failure_at = last.last_failure_at
                targets.append((race, checkpoint, entry))

        with self._status_lock:
            self._status.checkpoints = [entry for _, _, entry in targets]
        return targets

    def _retry_not_modified(self, pending: list[PollTarget]) -> None:
        """Re-poll 304 checkpoints until the model reruns or retries run out."""
        for attempt in range(1, self.config.max_retries + 1):
            if not pending:
                return
            logger.info(
                f"{len(pending)} checkpoints not modified, retry {attempt}/"
                f"{self.config.max_retries} in {self.config.retry_delay_s:.0f}s"
            )
            if self._stop.wait(self.config.retry_delay_s):
                return
            pending = [
                target for target in pending
                if self._poll_checkpoint(*target, force=True) is PollOutcome.NOT_MODIFIED
            ]
        if pending:
            logger.info(f"{len(pending)} checkpoints still not modified after retries")

    def _prune_fetch_log(self, now: datetime) -> None:
        try:
            removed = self.db.prune_fetch_log(now - self.config.fetch_log_retention)
        except duckdb.Error as e:
            logger.warning(f"Failed to prune fetch log: {e}")
            return
        if removed:
            logger.debug(f"Pruned {removed} fetch log rows")

    def _next_sleep(self, checkpoint_ids: list[str]) -> float:
        earliest = self.db.get_earliest_expiry(checkpoint_ids)
        if earliest is None:
            return self.config.max_sleep_s
        wake_at = earliest + self.config.wake_margin
        seconds = (wake_at - self._clock()).total_seconds()
        return min(max(seconds, self.config.min_sleep_s), self.config.max_sleep_s)

    def _poll_checkpoint(
        self,
        race: Race,
        checkpoint: Checkpoint,
        entry: CheckpointPollStatus,
        force: bool = False,
    ) -> Optional[PollOutcome]:
        """Refresh one checkpoint and record its extractions.

        Returns:
            The poll outcome, or None if the poll failed
        """
        with self._status_lock:
            self._status.phase = PollerPhase.REFRESHING
            self._status.current_checkpoint_id = checkpoint.id

        try:
            snapshot, outcome = self.freshness.poll(checkpoint, force=force)

            model_run = model_run_at(snapshot.payload)
            recorded = 0
            for instant in compute_extraction_times(
                race.start_time,
                checkpoint.distance_km,
                self.config.min_speed_kmh,
                self.config.max_speed_kmh,
            ):
                sample = extract(snapshot.payload, instant)
                if sample is not None and self.history.record(
                    checkpoint.id, sample, snapshot.fetched_at, model_run
                ):
                    recorded += 1

            with self._status_lock:
                entry.expires_at = snapshot.expires_at
                entry.last_fetched_at = snapshot.fetched_at
                entry.last_model_run_at = model_run
                entry.last_success_at = self._clock()
                entry.last_poll_result = outcome.value
                entry.extraction_count = recorded
            logger.info(f"{checkpoint.name}: {outcome.value}, {recorded} new observations")

        except Exception as e:
            # One checkpoint failing must not abort the cycle
            logger.error(f"{race.name} / {checkpoint.name}: poll failed - {e}")
            outcome = None
            with self._status_lock:
                entry.last_failure_at = self._clock()
                entry.last_poll_result = f"error: {e}"

        with self._status_lock:
            self._status.total_polls += 1
            self._status.current_checkpoint_id = None
        return outcome

    def _set_phase(self, phase: PollerPhase) -> None:
        with self._status_lock:
            self._status.phase = phase

    def _finish_cycle(self, cycle_start: float, next_wakeup_at: datetime) -> None:
        with self._status_lock:
            self._status.phase = PollerPhase.IDLE
            self._status.current_checkpoint_id = None
            self._status.next_wakeup_at = next_wakeup_at
            self._status.last_cycle_completed_at = self._clock()
            self._status.last_cycle_duration_ms = int((time.time() - cycle_start) * 1000)

    def status(self) -> PollerStatus:
        """Copy of the current status, safe to read while a cycle runs."""
        with self._status_lock:
            return copy.deepcopy(self._status)
