"""Keeps per-checkpoint upstream snapshots fresh.

A snapshot is served as-is until its ``expires_at``. After that the next
caller issues a conditional request carrying the stored ``Last-Modified``
token:

- 200: the snapshot is replaced wholesale
- 304: only the expiry and token are updated (the payload is ~1 MB and
  unchanged, so it is not rewritten)
- transport failure: the expired snapshot is served as degraded, or
  UpstreamUnavailable is raised when nothing is cached

Concurrent refreshes of the same checkpoint are not coordinated. Both
writers upsert equivalent data and the last one wins.
"""

import logging
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

import duckdb

from raceweather.cache.database import CacheDatabase
from raceweather.cache.models import Checkpoint, UpstreamSnapshot
from raceweather.cache.yr import NewData, YrClient
from raceweather.errors import ProtocolViolation, TransportFailure, UpstreamUnavailable
from raceweather.utils.time import utcnow

logger = logging.getLogger(__name__)

FETCH_SOURCE = "yr"

# Used when the provider omits or garbles the Expires header
DEFAULT_EXPIRY_FALLBACK = timedelta(hours=1)

# Raised when two writers refresh the same checkpoint at once: a
# write-write conflict, or both inserting the first snapshot row
WRITE_CONFLICTS = (duckdb.TransactionException, duckdb.ConstraintException)


class PollOutcome(str, Enum):
    """What a refresh attempt found."""
    FRESH = "fresh"  # snapshot not expired, no request made
    NEW_DATA = "new_data"
    NOT_MODIFIED = "not_modified"


class CacheFreshnessManager:
    """Serves fresh upstream snapshots, refetching conditionally on expiry.

    Example:
        >>> manager = CacheFreshnessManager(db, YrClient("raceweather/0.1"))
        >>> snapshot, degraded = manager.ensure_fresh(checkpoint)
    """

    def __init__(
        self,
        db: CacheDatabase,
        client: YrClient,
        expiry_fallback: timedelta = DEFAULT_EXPIRY_FALLBACK,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize manager.

        Args:
            db: CacheDatabase holding the snapshots
            client: Upstream client
            expiry_fallback: Expiry window applied when the provider sends no
                usable Expires header (for both 200 and 304)
            clock: Source of naive-UTC "now"
        """
        self.db = db
        self.client = client
        self.expiry_fallback = expiry_fallback
        self._clock = clock

    def ensure_fresh(self, checkpoint: Checkpoint) -> tuple[UpstreamSnapshot, bool]:
        """Return a usable snapshot for the checkpoint.

        Args:
            checkpoint: Checkpoint whose location is forecast

        Returns:
            Tuple of (snapshot, degraded). ``degraded`` is True when an
            expired snapshot is served because the provider could not be
            reached.

        Raises:
            UpstreamUnavailable: Provider unreachable and nothing cached
            ProtocolViolation: Provider answered 304 with nothing cached
        """
        now = self._clock()
        snapshot = self.db.get_snapshot(checkpoint.id)
        if snapshot is not None and not snapshot.is_expired(now):
            logger.debug(
                f"Cache HIT for {checkpoint.name} ({checkpoint.id}) "
                f"(expires_at={snapshot.expires_at})"
            )
            return snapshot, False

        logger.debug(f"Cache MISS for {checkpoint.name} ({checkpoint.id})")
        try:
            refreshed, _ = self._refresh(checkpoint, snapshot, now)
        except TransportFailure as e:
            if snapshot is not None:
                logger.warning(
                    f"yr.no unavailable for {checkpoint.name}, serving stale cache "
                    f"from {snapshot.fetched_at}: {e}"
                )
                return snapshot, True
            raise UpstreamUnavailable(
                f"yr.no unavailable for {checkpoint.name} and no cached forecast: {e}"
            ) from e
        return refreshed, False

    def poll(
        self, checkpoint: Checkpoint, force: bool = False
    ) -> tuple[UpstreamSnapshot, PollOutcome]:
        """Refresh on behalf of the background poller.

        Unlike ensure_fresh, transport failures propagate so the poller can
        record them.

        Args:
            checkpoint: Checkpoint to refresh
            force: Issue the conditional request even if the snapshot has
                not expired (used when retrying after a 304)

        Returns:
            Tuple of (snapshot, outcome)
        """
        now = self._clock()
        snapshot = self.db.get_snapshot(checkpoint.id)
        if snapshot is not None and not force and not snapshot.is_expired(now):
            return snapshot, PollOutcome.FRESH
        return self._refresh(checkpoint, snapshot, now)

    def _refresh(
        self,
        checkpoint: Checkpoint,
        snapshot: Optional[UpstreamSnapshot],
        now: datetime,
    ) -> tuple[UpstreamSnapshot, PollOutcome]:
        last_modified = snapshot.last_modified if snapshot is not None else None
        start_time = time.time()

        try:
            result = self.client.fetch(
                checkpoint.latitude,
                checkpoint.longitude,
                checkpoint.elevation_m,
                if_modified_since=last_modified,
            )
        except TransportFailure as e:
            self._log_fetch("error", start_time, error_message=str(e))
            raise

        expires_at = result.expires_at or now + self.expiry_fallback

        if isinstance(result, NewData):
            fresh = UpstreamSnapshot(
                checkpoint_id=checkpoint.id,
                latitude=checkpoint.latitude,
                longitude=checkpoint.longitude,
                elevation_m=checkpoint.elevation_m,
                payload=result.payload,
                fetched_at=now,
                expires_at=expires_at,
                last_modified=result.last_modified,
                created_at=snapshot.created_at if snapshot is not None else now,
            )
            try:
                self.db.upsert_snapshot(fresh)
            except WRITE_CONFLICTS as e:
                # Another writer got there first; its data is equivalent
                logger.warning(f"Concurrent snapshot write for {checkpoint.name}: {e}")
            self._log_fetch("new_data", start_time, records_added=1)
            logger.info(
                f"Fetched new yr.no data for {checkpoint.name} "
                f"(expires_at={expires_at}, last_modified={result.last_modified})"
            )
            return fresh, PollOutcome.NEW_DATA

        if snapshot is None:
            message = (
                f"yr.no returned 304 Not Modified for {checkpoint.name} "
                f"({checkpoint.id}) but no snapshot is cached"
            )
            self._log_fetch("error", start_time, error_message=message)
            logger.error(message)
            raise ProtocolViolation(message)

        token = result.last_modified or snapshot.last_modified
        try:
            self.db.extend_snapshot(checkpoint.id, expires_at, token)
        except WRITE_CONFLICTS as e:
            logger.warning(f"Concurrent snapshot write for {checkpoint.name}: {e}")
        self._log_fetch("not_modified", start_time)
        logger.debug(f"yr.no data unchanged for {checkpoint.name}, expiry now {expires_at}")

        snapshot.expires_at = expires_at
        snapshot.last_modified = token
        return snapshot, PollOutcome.NOT_MODIFIED

    def _log_fetch(
        self,
        status: str,
        start_time: float,
        records_added: int = 0,
        error_message: Optional[str] = None,
    ) -> None:
        # Monitoring only, never allowed to fail the refresh it describes
        try:
            self.db.log_fetch(
                source=FETCH_SOURCE,
                status=status,
                records_added=records_added,
                duration_ms=int((time.time() - start_time) * 1000),
                error_message=error_message[:500] if error_message else None,
            )
        except duckdb.Error as e:
            logger.warning(f"Failed to log {status} fetch: {e}")
