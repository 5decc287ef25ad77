"""Wiring for the forecast cache components.

Builds the database, upstream client, freshness manager, history writer,
resolver and poller from Settings. Components are created on first use so
importing the API module does not open the database.
"""

import logging
from datetime import timedelta
from typing import Optional

from raceweather.cache.database import CacheDatabase
from raceweather.cache.freshness import CacheFreshnessManager
from raceweather.cache.history import HistoryWriter
from raceweather.cache.poller import BackgroundPoller, PollerConfig
from raceweather.cache.resolver import ForecastResolver
from raceweather.cache.yr import YrClient
from raceweather.config import Settings, get_settings
from raceweather.pacing.model import PacingCoefficients

logger = logging.getLogger(__name__)


def poller_config_from_settings(settings: Settings) -> PollerConfig:
    return PollerConfig(
        min_speed_kmh=settings.poller_min_speed_kmh,
        max_speed_kmh=settings.poller_max_speed_kmh,
        lookback=timedelta(days=settings.poller_lookback_days),
        lookahead=timedelta(days=settings.poller_lookahead_days),
        wake_margin=timedelta(seconds=settings.poller_wake_margin_s),
        min_sleep_s=settings.poller_min_sleep_s,
        max_sleep_s=settings.poller_max_sleep_s,
        retry_delay_s=settings.poller_retry_delay_s,
        max_retries=settings.poller_max_retries,
        idle_sleep_s=settings.poller_idle_sleep_s,
        fetch_log_retention=timedelta(days=settings.fetch_log_retention_days),
    )


def pacing_coefficients_from_settings(settings: Settings) -> PacingCoefficients:
    return PacingCoefficients(
        k_up=settings.pacing_k_up,
        k_down=settings.pacing_k_down,
        min_cost_factor=settings.pacing_min_cost_factor,
    )


class ForecastServices:
    """Lazily constructed component graph.

    Example:
        >>> services = ForecastServices()
        >>> services.resolver.resolve_checkpoint("cp-1", utcnow())
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        db: Optional[CacheDatabase] = None,
        client: Optional[YrClient] = None,
    ):
        """Initialize container.

        Args:
            settings: Configuration. Uses get_settings() if not provided.
            db: Pre-built database (tests pass a temporary one)
            client: Pre-built upstream client (tests pass a fake)
        """
        self.settings = settings or get_settings()
        self._db = db
        self._client = client
        self._freshness: Optional[CacheFreshnessManager] = None
        self._history: Optional[HistoryWriter] = None
        self._resolver: Optional[ForecastResolver] = None
        self._poller: Optional[BackgroundPoller] = None

    @property
    def db(self) -> CacheDatabase:
        if self._db is None:
            self._db = CacheDatabase(self.settings.database_path)
        return self._db

    @property
    def client(self) -> YrClient:
        if self._client is None:
            self._client = YrClient(
                user_agent=self.settings.yr_user_agent,
                base_url=self.settings.yr_base_url,
                timeout=self.settings.request_timeout_s,
            )
        return self._client

    @property
    def freshness(self) -> CacheFreshnessManager:
        if self._freshness is None:
            self._freshness = CacheFreshnessManager(
                self.db, self.client, expiry_fallback=self.settings.expiry_fallback
            )
        return self._freshness

    @property
    def history(self) -> HistoryWriter:
        if self._history is None:
            self._history = HistoryWriter(self.db)
        return self._history

    @property
    def resolver(self) -> ForecastResolver:
        if self._resolver is None:
            self._resolver = ForecastResolver(
                self.db,
                self.freshness,
                self.history,
                coefficients=pacing_coefficients_from_settings(self.settings),
                max_workers=self.settings.race_max_concurrent_fetches,
            )
        return self._resolver

    @property
    def poller(self) -> BackgroundPoller:
        if self._poller is None:
            self._poller = BackgroundPoller(
                self.db,
                self.freshness,
                self.history,
                config=poller_config_from_settings(self.settings),
            )
        return self._poller

    def close(self) -> None:
        """Stop the poller and release connections."""
        if self._poller is not None and self._poller.running:
            self._poller.stop()
        if self._resolver is not None:
            self._resolver.close()
        if self._db is not None:
            self._db.close()
        logger.debug("Forecast services closed")
