"""Tests for the background poller."""

import time
from datetime import datetime, timedelta

import pytest

from raceweather.cache.freshness import CacheFreshnessManager
from raceweather.cache.history import HistoryWriter
from raceweather.cache.poller import (
    BackgroundPoller,
    PollerConfig,
    PollerPhase,
    compute_extraction_times,
)
from raceweather.cache.yr import NewData, NotModified
from raceweather.errors import TransportFailure
from raceweather.utils.time import utcnow

NOW = datetime(2026, 2, 28, 10, 0)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def config():
    return PollerConfig(retry_delay_s=0, max_retries=2, max_sleep_s=3600)


@pytest.fixture
def poller(seeded_db, fake_client, clock, config):
    freshness = CacheFreshnessManager(seeded_db, fake_client, clock=clock)
    return BackgroundPoller(seeded_db, freshness, HistoryWriter(seeded_db), config, clock=clock)


def _queue_new_data(fake_client, payload, count, expires_in=timedelta(minutes=30)):
    fake_client.queue(*[NewData(payload, NOW + expires_in, "LM1") for _ in range(count)])


class TestComputeExtractionTimes:
    """Tests for the plausible pass-time window."""

    def test_start_line(self):
        start = datetime(2026, 3, 1, 8, 0)
        assert compute_extraction_times(start, 0.0) == [start]

    def test_start_line_floors_to_hour(self):
        assert compute_extraction_times(datetime(2026, 3, 1, 8, 10), 0.0) == [datetime(2026, 3, 1, 8, 0)]

    def test_window(self):
        """11 km at 30 km/h is 08:22, at 10 km/h 09:06."""
        times = compute_extraction_times(datetime(2026, 3, 1, 8, 0), 11.0)
        assert times == [
            datetime(2026, 3, 1, 8, 0),
            datetime(2026, 3, 1, 9, 0),
            datetime(2026, 3, 1, 10, 0),
        ]

    def test_exact_hours_not_extended(self):
        """90 km spans exactly 3 h to 9 h."""
        times = compute_extraction_times(datetime(2026, 3, 1, 8, 0), 90.0)
        assert times[0] == datetime(2026, 3, 1, 11, 0)
        assert times[-1] == datetime(2026, 3, 1, 17, 0)
        assert len(times) == 7

    def test_custom_speeds(self):
        times = compute_extraction_times(datetime(2026, 3, 1, 8, 0), 20.0, 20.0, 20.0)
        assert times == [datetime(2026, 3, 1, 9, 0)]

    def test_hourly_steps(self):
        times = compute_extraction_times(datetime(2026, 3, 1, 8, 0), 62.0)
        assert all(b - a == timedelta(hours=1) for a, b in zip(times, times[1:]))


class TestRunCycle:
    """Tests for a single poll cycle."""

    def test_polls_every_checkpoint(self, poller, fake_client, checkpoints, yr_payload, seeded_db, race):
        _queue_new_data(fake_client, yr_payload, len(checkpoints))

        poller.run_cycle()
        status = poller.status()

        assert len(fake_client.calls) == len(checkpoints)
        assert [cp.checkpoint_id for cp in status.checkpoints] == [cp.id for cp in checkpoints]
        assert all(cp.last_poll_result == "new_data" for cp in status.checkpoints)
        assert status.total_polls == len(checkpoints)

        expected = sum(
            len(compute_extraction_times(race.start_time, cp.distance_km)) for cp in checkpoints
        )
        assert seeded_db.count_observations() == expected

    def test_checkpoint_status_fields(self, poller, fake_client, checkpoints, yr_payload, race):
        _queue_new_data(fake_client, yr_payload, len(checkpoints))

        poller.run_cycle()
        smagan = poller.status().checkpoints[1]

        assert smagan.checkpoint_name == "Smagan"
        assert smagan.race_name == race.name
        assert smagan.distance_km == 11.0
        assert smagan.expires_at == NOW + timedelta(minutes=30)
        assert smagan.last_fetched_at == NOW
        assert smagan.last_model_run_at == datetime(2026, 2, 28, 9, 30)
        assert smagan.last_success_at == NOW
        assert smagan.last_failure_at is None
        assert smagan.extraction_count == 3

    def test_second_cycle_records_nothing_new(self, poller, fake_client, checkpoints, yr_payload, seeded_db):
        """Snapshots are still fresh, so no requests and no duplicate rows."""
        _queue_new_data(fake_client, yr_payload, len(checkpoints))
        poller.run_cycle()
        count = seeded_db.count_observations()
        fake_client.calls.clear()

        poller.run_cycle()

        assert fake_client.calls == []
        assert seeded_db.count_observations() == count
        assert all(cp.last_poll_result == "fresh" for cp in poller.status().checkpoints)
        assert all(cp.extraction_count == 0 for cp in poller.status().checkpoints)
        assert all(cp.last_success_at == NOW for cp in poller.status().checkpoints)

    def test_error_isolation(self, poller, fake_client, checkpoints, yr_payload):
        fake_client.queue(TransportFailure("HTTP 503", status_code=503))
        _queue_new_data(fake_client, yr_payload, len(checkpoints) - 1)

        poller.run_cycle()
        status = poller.status()

        assert status.checkpoints[0].last_poll_result.startswith("error")
        assert status.checkpoints[0].last_failure_at == NOW
        assert all(cp.last_poll_result == "new_data" for cp in status.checkpoints[1:])

    def test_not_modified_retries(self, poller, fake_client, checkpoints, yr_payload, clock, config):
        """A 304 on an expired snapshot is retried up to max_retries times."""
        _queue_new_data(fake_client, yr_payload, len(checkpoints))
        poller.run_cycle()

        clock.now = NOW + timedelta(hours=1)
        fake_client.calls.clear()
        expiry = NOW + timedelta(hours=2)
        for _ in checkpoints:
            fake_client.queue(*[NotModified(expiry, "LM1")] * (config.max_retries + 1))

        poller.run_cycle()

        assert len(fake_client.calls) == len(checkpoints) * (config.max_retries + 1)
        assert all(cp.last_poll_result == "not_modified" for cp in poller.status().checkpoints)

    def test_retry_stops_on_new_data(self, poller, fake_client, checkpoints, yr_payload, clock, payload_factory, forecast_start):
        _queue_new_data(fake_client, yr_payload, len(checkpoints))
        poller.run_cycle()

        clock.now = NOW + timedelta(hours=1)
        fake_client.calls.clear()
        rerun = payload_factory(forecast_start, updated_at=datetime(2026, 2, 28, 10, 30))
        fake_client.queue(*[NotModified(NOW + timedelta(hours=2), "LM1") for _ in checkpoints])
        fake_client.queue(*[NewData(rerun, NOW + timedelta(hours=2), "LM2") for _ in checkpoints])

        poller.run_cycle()
        status = poller.status()

        assert len(fake_client.calls) == 2 * len(checkpoints)
        assert all(cp.last_poll_result == "new_data" for cp in status.checkpoints)
        assert status.checkpoints[1].last_model_run_at == datetime(2026, 2, 28, 10, 30)
        assert status.checkpoints[1].extraction_count == 3

    def test_retries_wait_once_per_round(self, seeded_db, fake_client, checkpoints, yr_payload, clock, monkeypatch):
        """The retry delay is paid per round, not per checkpoint."""
        config = PollerConfig(retry_delay_s=120, max_retries=3)
        freshness = CacheFreshnessManager(seeded_db, fake_client, clock=clock)
        poller = BackgroundPoller(seeded_db, freshness, HistoryWriter(seeded_db), config, clock=clock)
        waits = []
        monkeypatch.setattr(poller._stop, "wait", lambda timeout=None: waits.append(timeout) or False)

        _queue_new_data(fake_client, yr_payload, len(checkpoints))
        poller.run_cycle()
        clock.now = NOW + timedelta(hours=1)
        fake_client.queue(
            *[NotModified(NOW + timedelta(hours=2), "LM1")] * (len(checkpoints) * (config.max_retries + 1))
        )

        poller.run_cycle()

        assert waits == [120] * config.max_retries
        assert len(fake_client.calls) == len(checkpoints) * (config.max_retries + 2)

    def test_retry_rounds_bound_cycle_time(self, seeded_db, fake_client, checkpoints, yr_payload, clock):
        config = PollerConfig(retry_delay_s=0.2, max_retries=2)
        freshness = CacheFreshnessManager(seeded_db, fake_client, clock=clock)
        poller = BackgroundPoller(seeded_db, freshness, HistoryWriter(seeded_db), config, clock=clock)
        _queue_new_data(fake_client, yr_payload, len(checkpoints))
        poller.run_cycle()
        clock.now = NOW + timedelta(hours=1)
        fake_client.queue(
            *[NotModified(NOW + timedelta(hours=2), "LM1")] * (len(checkpoints) * (config.max_retries + 1))
        )

        started = time.monotonic()
        poller.run_cycle()
        elapsed = time.monotonic() - started

        # Per-checkpoint retries would sleep 9 * 2 * 0.2 = 3.6s
        assert elapsed < 2.0
        assert all(cp.last_poll_result == "not_modified" for cp in poller.status().checkpoints)

    def test_only_not_modified_are_retried(self, poller, fake_client, checkpoints, yr_payload, clock, payload_factory, forecast_start):
        _queue_new_data(fake_client, yr_payload, len(checkpoints))
        poller.run_cycle()

        clock.now = NOW + timedelta(hours=1)
        fake_client.calls.clear()
        rerun = payload_factory(forecast_start, updated_at=datetime(2026, 2, 28, 10, 30))
        expires = NOW + timedelta(hours=2)
        fake_client.queue(NotModified(expires, "LM1"))
        fake_client.queue(*[NewData(rerun, expires, "LM2") for _ in checkpoints[1:]])
        fake_client.queue(NewData(rerun, expires, "LM2"))

        poller.run_cycle()
        status = poller.status()

        assert len(fake_client.calls) == len(checkpoints) + 1
        assert fake_client.calls[-1]["lat"] == checkpoints[0].latitude
        assert all(cp.last_poll_result == "new_data" for cp in status.checkpoints)

    def test_no_races_clears_status(self, poller, fake_client, checkpoints, yr_payload, clock, race):
        _queue_new_data(fake_client, yr_payload, len(checkpoints))
        poller.run_cycle()
        assert len(poller.status().checkpoints) == len(checkpoints)

        clock.now = race.start_time + timedelta(days=2)
        poller.run_cycle()

        assert poller.status().checkpoints == []

    def test_prunes_old_fetch_log(self, temp_db, fake_client, clock, config):
        temp_db.log_fetch("yr", "new_data")
        clock.now = utcnow() + config.fetch_log_retention + timedelta(hours=1)
        freshness = CacheFreshnessManager(temp_db, fake_client, clock=clock)
        poller = BackgroundPoller(temp_db, freshness, HistoryWriter(temp_db), config, clock=clock)

        poller.run_cycle()

        assert temp_db.get_recent_fetches() == []

    def test_phases_during_cycle(self, poller, fake_client, checkpoints, yr_payload):
        _queue_new_data(fake_client, yr_payload, len(checkpoints))
        seen = []
        fetch = fake_client.fetch

        def recording_fetch(*args, **kwargs):
            status = poller.status()
            seen.append((status.phase, status.current_checkpoint_id))
            return fetch(*args, **kwargs)

        fake_client.fetch = recording_fetch
        poller.run_cycle()

        assert seen[0] == (PollerPhase.REFRESHING, checkpoints[0].id)
        assert poller.status().phase is PollerPhase.IDLE
        assert poller.status().current_checkpoint_id is None


class TestSleepScheduling:
    """Tests for the next wakeup computation."""

    def test_sleep_until_earliest_expiry(self, poller, fake_client, checkpoints, yr_payload):
        """30 minutes to expiry plus the 30 second margin."""
        _queue_new_data(fake_client, yr_payload, len(checkpoints))

        sleep_s = poller.run_cycle()

        assert sleep_s == pytest.approx(1830)
        assert poller.status().next_wakeup_at == NOW + timedelta(seconds=1830)

    def test_sleep_clamped_to_max(self, seeded_db, fake_client, clock, checkpoints, yr_payload):
        freshness = CacheFreshnessManager(seeded_db, fake_client, clock=clock)
        poller = BackgroundPoller(
            seeded_db, freshness, HistoryWriter(seeded_db),
            PollerConfig(max_sleep_s=600), clock=clock,
        )
        _queue_new_data(fake_client, yr_payload, len(checkpoints))

        assert poller.run_cycle() == 600

    def test_sleep_clamped_to_min(self, poller, fake_client, checkpoints, yr_payload, config):
        _queue_new_data(fake_client, yr_payload, len(checkpoints), expires_in=timedelta(seconds=5))

        assert poller.run_cycle() == config.min_sleep_s

    def test_no_races(self, temp_db, fake_client, clock, config):
        freshness = CacheFreshnessManager(temp_db, fake_client, clock=clock)
        poller = BackgroundPoller(temp_db, freshness, HistoryWriter(temp_db), config, clock=clock)

        sleep_s = poller.run_cycle()

        assert sleep_s == config.idle_sleep_s
        assert fake_client.calls == []
        assert poller.status().phase is PollerPhase.IDLE

    def test_finished_race_not_polled(self, poller, fake_client, clock, race):
        clock.now = race.start_time + timedelta(days=2)

        poller.run_cycle()

        assert fake_client.calls == []


class TestLifecycle:
    """Tests for the polling thread."""

    def test_status_is_a_copy(self, poller):
        status = poller.status()
        status.total_polls = 99

        assert poller.status().total_polls == 0

    def test_start_and_stop(self, temp_db, fake_client, clock, config):
        freshness = CacheFreshnessManager(temp_db, fake_client, clock=clock)
        poller = BackgroundPoller(temp_db, freshness, HistoryWriter(temp_db), config, clock=clock)

        poller.start()
        assert poller.running
        poller.stop()

        assert not poller.running
        assert poller.status().active is False

    def test_start_twice_is_noop(self, temp_db, fake_client, clock, config):
        freshness = CacheFreshnessManager(temp_db, fake_client, clock=clock)
        poller = BackgroundPoller(temp_db, freshness, HistoryWriter(temp_db), config, clock=clock)

        poller.start()
        thread = poller._thread
        poller.start()

        assert poller._thread is thread
        poller.stop()
