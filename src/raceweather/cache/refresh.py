"""Poll upstream forecasts for all upcoming races from the command line.

Runs the same cycle as the in-process background poller. Useful from cron
when the API runs with the poller disabled, or to pre-warm a fresh database:

    # Every 30 minutes
    */30 * * * * python -m raceweather.cache.refresh

Usage:
    python -m raceweather.cache.refresh           # One poll cycle
    python -m raceweather.cache.refresh --loop    # Poll forever
    python -m raceweather.cache.refresh --status  # Show cache status
"""

import argparse
import logging
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from raceweather.cache.database import CacheDatabase
from raceweather.cache.poller import BackgroundPoller, PollerStatus
from raceweather.cache.services import ForecastServices
from raceweather.config import DEFAULT_DB_PATH, get_settings

logger = logging.getLogger(__name__)


@dataclass
class RefreshResult:
    """Result of one poll cycle."""

    total: int
    success: int
    failed: int
    skipped: int
    duration_ms: int

    @property
    def success_rate(self) -> float:
        """Percentage of checkpoints that did not fail."""
        if self.total == 0:
            return 0.0
        return ((self.success + self.skipped) / self.total) * 100

    def __str__(self) -> str:
        return (
            f"Refresh complete: {self.success}/{self.total} new data, "
            f"{self.failed} failed, {self.skipped} unchanged "
            f"({self.duration_ms}ms)"
        )

    @classmethod
    def from_status(cls, status: PollerStatus) -> "RefreshResult":
        results = [cp.last_poll_result for cp in status.checkpoints]
        return cls(
            total=len(results),
            success=sum(1 for r in results if r == "new_data"),
            failed=sum(1 for r in results if r.startswith("error")),
            skipped=sum(1 for r in results if r in ("fresh", "not_modified")),
            duration_ms=status.last_cycle_duration_ms or 0,
        )


def refresh_upcoming_races(poller: BackgroundPoller) -> RefreshResult:
    """Run one poll cycle and summarize it."""
    poller.run_cycle()
    result = RefreshResult.from_status(poller.status())
    logger.info(str(result))
    return result


def get_cache_status(db: CacheDatabase) -> dict:
    """Cache statistics plus the most recent upstream fetches."""
    stats = db.get_stats()
    stats["recent_fetches"] = db.get_recent_fetches(limit=10)
    return stats


def print_status(status: dict) -> None:
    """Print cache status in human-readable format."""
    print()
    print("=" * 60)
    print("Race Weather Cache Status")
    print("=" * 60)
    print(f"Database: {status['db_path']}")
    print(f"Races: {status['races']}  Checkpoints: {status['checkpoints']}")
    print()
    print(f"Snapshots: {status['snapshots']} "
          f"({status['fresh_snapshots']} fresh, {status['stale_snapshots']} expired)")
    print(f"Forecast observations: {status['observations']}")

    if status["latest_fetch"]:
        print(f"Latest fetch: {status['latest_fetch']}")
    if status["latest_model_run"]:
        print(f"Latest model run: {status['latest_model_run']}")

    if status["recent_fetches"]:
        print()
        print("Recent fetches:")
        print("-" * 60)
        for entry in status["recent_fetches"]:
            error = f"  {entry.error_message}" if entry.error_message else ""
            print(f"  {entry.timestamp:%Y-%m-%d %H:%M:%S} {entry.status:<13} "
                  f"{entry.duration_ms:>6}ms{error}")

    print("=" * 60)


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point for upstream refresh."""
    parser = argparse.ArgumentParser(
        description="Refresh yr.no forecasts for all checkpoints of upcoming races",
        epilog="""
Examples:
  python -m raceweather.cache.refresh           # One cycle
  python -m raceweather.cache.refresh --loop    # Run the poller in the foreground
  python -m raceweather.cache.refresh --status  # Show status
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep polling, sleeping until the next snapshot expiry",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Show current cache status",
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help=f"Database path (default: {DEFAULT_DB_PATH})",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress output except errors",
    )

    args = parser.parse_args(argv)

    if args.quiet:
        level = logging.ERROR
    elif args.verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    settings = get_settings()
    if args.db is not None:
        settings = settings.model_copy(update={"database_path": args.db})
    services = ForecastServices(settings)

    try:
        if args.status:
            print_status(get_cache_status(services.db))
            return 0

        if args.loop:
            poller = services.poller
            signal.signal(signal.SIGTERM, lambda *_: poller.stop())
            poller.start()
            try:
                while poller.running:
                    poller.join(timeout=1.0)
            except KeyboardInterrupt:
                logger.info("Interrupted, stopping poller")
            return 0

        result = refresh_upcoming_races(services.poller)
        return 1 if result.failed > 0 else 0

    except Exception as e:
        logger.error(f"Refresh failed: {e}")
        return 1

    finally:
        services.close()


if __name__ == "__main__":
    sys.exit(main())
