"""Shared pytest fixtures for raceweather tests.

Test Tiers:
- unit: Fast tests with fixtures, no network (default)
- integration: Tests against a real temporary DuckDB database
- live: Real yr.no requests, slow, requires network

Run live tests with: pytest -m live --run-live
"""

import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import pytest

from raceweather.cache.database import CacheDatabase
from raceweather.cache.models import Checkpoint, Race


def pytest_addoption(parser):
    """Add command line options for test configuration."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run live API tests (slow, requires network)",
    )


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: fast unit tests using fixtures")
    config.addinivalue_line("markers", "integration: tests against a temporary database")
    config.addinivalue_line("markers", "live: real API tests (slow, requires network)")


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is specified."""
    if config.getoption("--run-live"):
        return

    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# -----------------------------------------------------------------------------
# Provider payloads
# -----------------------------------------------------------------------------

def _iso(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def _entry(time: datetime, temperature: float, hourly: bool, precipitation: float) -> dict:
    data = {
        "instant": {
            "details": {
                "air_temperature": temperature,
                "air_temperature_percentile_10": temperature - 1.0,
                "air_temperature_percentile_90": temperature + 1.0,
                "wind_speed": 3.2,
                "wind_speed_percentile_10": 2.0,
                "wind_speed_percentile_90": 4.5,
                "wind_speed_of_gust": 6.1,
                "wind_from_direction": 210.0,
                "relative_humidity": 80.0,
                "dew_point_temperature": temperature - 3.5,
                "cloud_area_fraction": 50.0,
                "ultraviolet_index_clear_sky": 0.5,
            }
        },
        "next_6_hours": {
            "summary": {"symbol_code": "cloudy"},
            "details": {
                "precipitation_amount": precipitation * 6,
                "precipitation_amount_min": 0.0,
                "precipitation_amount_max": precipitation * 8,
            },
        },
    }
    if hourly:
        data["next_1_hours"] = {
            "summary": {"symbol_code": "lightsnow"},
            "details": {
                "precipitation_amount": precipitation,
                "precipitation_amount_min": 0.0,
                "precipitation_amount_max": precipitation * 2,
            },
        }
    return {"time": _iso(time), "data": data}


def make_yr_payload(
    start: datetime,
    hourly_count: int = 60,
    six_hourly_count: int = 8,
    updated_at: Optional[datetime] = None,
    precipitation: float = 0.4,
) -> dict:
    """Locationforecast-shaped document.

    Hourly samples start at ``start``; six-hourly samples follow the last
    hourly one. Each sample's air temperature equals its index in the
    timeseries, so tests can tell which sample was picked.
    """
    series = []
    for i in range(hourly_count):
        series.append(_entry(start + timedelta(hours=i), float(i), True, precipitation))
    last = start + timedelta(hours=hourly_count - 1)
    for j in range(1, six_hourly_count + 1):
        series.append(
            _entry(last + timedelta(hours=6 * j), float(len(series)), False, precipitation)
        )

    meta = {"units": {"air_temperature": "celsius"}}
    if updated_at is not None:
        meta["updated_at"] = _iso(updated_at)

    return {
        "type": "Feature",
        "geometry": {"type": "Point", "coordinates": [14.2, 61.1, 350]},
        "properties": {"meta": meta, "timeseries": series},
    }


@pytest.fixture
def payload_factory():
    """Factory for provider payloads (see make_yr_payload)."""
    return make_yr_payload


@pytest.fixture
def forecast_start() -> datetime:
    """First hourly sample of the default payload."""
    return datetime(2026, 2, 28, 12, 0)


@pytest.fixture
def yr_payload(forecast_start) -> dict:
    """60 hourly + 8 six-hourly samples with a known model run."""
    return make_yr_payload(forecast_start, updated_at=datetime(2026, 2, 28, 9, 30))


# -----------------------------------------------------------------------------
# Fake upstream
# -----------------------------------------------------------------------------

class FakeYrClient:
    """Stands in for YrClient, replaying queued results in order.

    Queued exceptions are raised instead of returned.
    """

    def __init__(self):
        self.responses: list = []
        self.calls: list[dict] = []

    def queue(self, *results) -> None:
        self.responses.extend(results)

    def fetch(self, lat, lon, altitude, if_modified_since=None):
        self.calls.append(
            {
                "lat": lat,
                "lon": lon,
                "altitude": altitude,
                "if_modified_since": if_modified_since,
            }
        )
        if not self.responses:
            raise AssertionError("Unexpected upstream request")
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def fake_client() -> FakeYrClient:
    return FakeYrClient()


# -----------------------------------------------------------------------------
# Database and reference data
# -----------------------------------------------------------------------------

@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.duckdb"
        db = CacheDatabase(db_path)
        yield db
        db.close()


@pytest.fixture
def race(forecast_start) -> Race:
    """A 90 km race starting in the hourly part of the default payload."""
    return Race(
        id="vasaloppet-2026",
        name="Vasaloppet",
        year=2026,
        start_time=forecast_start + timedelta(hours=20),
        distance_km=90.0,
    )


@pytest.fixture
def checkpoints(race) -> list[Checkpoint]:
    """Checkpoints along the course, start to finish."""
    rows = [
        ("berga", "Berga", 0.0, 61.1637, 13.7489, 350.0),
        ("smagan", "Smagan", 11.0, 61.1311, 13.9066, 500.0),
        ("mangsbodarna", "Mangsbodarna", 24.0, 61.0747, 14.0947, 450.0),
        ("risberg", "Risberg", 35.0, 61.0592, 14.2580, 420.0),
        ("evertsberg", "Evertsberg", 47.0, 61.1240, 14.3660, 470.0),
        ("oxberg", "Oxberg", 62.0, 61.1126, 14.1863, 300.0),
        ("hokberg", "Hokberg", 71.0, 61.0771, 14.3303, 290.0),
        ("eldris", "Eldris", 81.0, 61.0162, 14.4649, 240.0),
        ("mora", "Mora", 90.0, 61.0047, 14.5371, 165.0),
    ]
    return [
        Checkpoint(
            id=f"{race.id}-{cp_id}",
            race_id=race.id,
            name=name,
            distance_km=distance,
            latitude=lat,
            longitude=lon,
            elevation_m=elevation,
            sort_order=i,
        )
        for i, (cp_id, name, distance, lat, lon, elevation) in enumerate(rows)
    ]


@pytest.fixture
def checkpoint(checkpoints) -> Checkpoint:
    return checkpoints[1]


@pytest.fixture
def seeded_db(temp_db, race, checkpoints) -> CacheDatabase:
    """Temporary database with the race and its checkpoints."""
    temp_db.upsert_race(race)
    temp_db.upsert_checkpoints(checkpoints)
    return temp_db
