"""Live smoke tests against api.met.no.

These tests verify that the real provider still answers in the shape the
extractor expects and honours conditional requests. They are slow and
require network access. Skip by default.

Run with: pytest tests/live/ -v --run-live
"""

from datetime import timedelta

import pytest

# All tests in this file are live tests
pytestmark = pytest.mark.live

MORA = (61.0047, 14.5371, 165.0)
USER_AGENT = "raceweather-smoketest/0.1 https://github.com/raceweather"


class TestYrLive:
    """Smoke tests for the Locationforecast client - no auth required."""

    def test_fetch_and_extract(self):
        """Verify a real document parses into samples in both tiers."""
        from raceweather.cache.extract import extract, forecast_horizon
        from raceweather.cache.models import Resolution
        from raceweather.cache.yr import NewData, YrClient
        from raceweather.utils.time import utcnow

        client = YrClient(USER_AGENT)
        try:
            result = client.fetch(*MORA)
        finally:
            client.close()

        assert isinstance(result, NewData)
        assert result.expires_at is not None, "met.no should send Expires"
        assert result.last_modified, "met.no should send Last-Modified"

        near = extract(result.payload, utcnow() + timedelta(hours=3))
        assert near is not None
        assert near.resolution == Resolution.HOURLY
        assert -60 < near.temperature_c < 50

        far = extract(result.payload, utcnow() + timedelta(days=6))
        assert far is not None
        assert far.resolution == Resolution.SIX_HOURLY

        assert forecast_horizon(result.payload) > utcnow() + timedelta(days=8)

    def test_conditional_request(self):
        """Re-sending Last-Modified immediately should yield 304."""
        from raceweather.cache.yr import NotModified, YrClient

        client = YrClient(USER_AGENT)
        try:
            first = client.fetch(*MORA)
            second = client.fetch(*MORA, if_modified_since=first.last_modified)
        finally:
            client.close()

        assert isinstance(second, NotModified)
