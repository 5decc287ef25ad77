"""Nearest-sample extraction from cached provider payloads.

The payload is a met.no locationforecast 2.0 "complete" document:

    properties.meta.updated_at         model run instant (may be absent)
    properties.timeseries[].time       sample instant
    properties.timeseries[].data.instant.details
    properties.timeseries[].data.next_1_hours   (hourly tier only)
    properties.timeseries[].data.next_6_hours

Everything here is pure: no I/O, no clock, safe to call from any thread.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from raceweather.cache.conditions import feels_like, precipitation_type, snow_temperature
from raceweather.cache.models import Resolution, WeatherSample
from raceweather.errors import ProtocolViolation
from raceweather.utils.time import parse_iso, to_naive_utc

logger = logging.getLogger(__name__)

# Instant fields every sample should carry; missing ones default to 0.0
REQUIRED_DETAILS = {
    "temperature_c": "air_temperature",
    "wind_speed_ms": "wind_speed",
    "wind_direction_deg": "wind_from_direction",
    "humidity_pct": "relative_humidity",
    "dew_point_c": "dew_point_temperature",
    "cloud_cover_pct": "cloud_area_fraction",
}

OPTIONAL_DETAILS = {
    "temperature_percentile_10_c": "air_temperature_percentile_10",
    "temperature_percentile_90_c": "air_temperature_percentile_90",
    "wind_speed_percentile_10_ms": "wind_speed_percentile_10",
    "wind_speed_percentile_90_ms": "wind_speed_percentile_90",
    "wind_gust_ms": "wind_speed_of_gust",
    "uv_index": "ultraviolet_index_clear_sky",
}


def _timeseries(payload: dict[str, Any]) -> list[dict[str, Any]]:
    try:
        series = payload["properties"]["timeseries"]
    except (KeyError, TypeError) as e:
        raise ProtocolViolation("Provider payload has no properties.timeseries") from e
    if not series:
        raise ProtocolViolation("Provider payload has an empty timeseries")
    return series


def _entry_time(entry: dict[str, Any]) -> Optional[datetime]:
    try:
        return parse_iso(entry["time"])
    except (KeyError, TypeError, ValueError):
        logger.warning(f"Skipping timeseries entry with unparseable time: {entry.get('time')!r}")
        return None


def _resolution(entry: dict[str, Any]) -> Resolution:
    if entry.get("data", {}).get("next_1_hours") is not None:
        return Resolution.HOURLY
    return Resolution.SIX_HOURLY


def model_run_at(payload: dict[str, Any]) -> Optional[datetime]:
    """Model run instant from ``properties.meta.updated_at``, if disclosed."""
    try:
        value = payload["properties"]["meta"]["updated_at"]
    except (KeyError, TypeError):
        return None
    if not value:
        return None
    try:
        return parse_iso(value)
    except ValueError:
        logger.warning(f"Unparseable model run timestamp: {value!r}")
        return None


def forecast_horizon(payload: dict[str, Any]) -> Optional[datetime]:
    """Instant of the last sample in the payload."""
    for entry in reversed(_timeseries(payload)):
        parsed = _entry_time(entry)
        if parsed is not None:
            return parsed
    return None


def parse_sample(entry: dict[str, Any], forecast_time: datetime) -> WeatherSample:
    """Build a WeatherSample (derived fields included) from one entry."""
    data = entry.get("data", {})
    details = data.get("instant", {}).get("details", {})
    resolution = _resolution(entry)

    values: dict[str, Any] = {}
    for field_name, key in REQUIRED_DETAILS.items():
        value = details.get(key)
        if value is None:
            logger.warning(f"Sample at {forecast_time} has no {key}, defaulting to 0.0")
            value = 0.0
        values[field_name] = float(value)
    for field_name, key in OPTIONAL_DETAILS.items():
        value = details.get(key)
        values[field_name] = float(value) if value is not None else None

    # Period block: hourly tier carries next_1_hours, otherwise next_6_hours
    period = data.get("next_1_hours") or data.get("next_6_hours") or {}
    symbol_code = period.get("summary", {}).get("symbol_code") or "unknown"
    period_details = period.get("details", {})
    precipitation = float(period_details.get("precipitation_amount") or 0.0)
    precip_min = period_details.get("precipitation_amount_min")
    precip_max = period_details.get("precipitation_amount_max")

    temperature = values["temperature_c"]
    wind = values["wind_speed_ms"]
    return WeatherSample(
        forecast_time=forecast_time,
        resolution=resolution,
        feels_like_c=feels_like(temperature, wind),
        precipitation_mm=precipitation,
        precipitation_min_mm=float(precip_min) if precip_min is not None else None,
        precipitation_max_mm=float(precip_max) if precip_max is not None else None,
        precipitation_type=precipitation_type(precipitation, symbol_code, temperature).value,
        symbol_code=symbol_code,
        snow_temperature_c=snow_temperature(
            temperature,
            details.get("dew_point_temperature"),
            details.get("cloud_area_fraction"),
            wind,
        ),
        **values,
    )


def extract(payload: dict[str, Any], target: datetime) -> Optional[WeatherSample]:
    """Nearest sample to ``target`` within its tier's tolerance.

    Hourly samples may serve instants up to 1 hour away, six-hourly samples
    up to 3 hours away (inclusive). On equal distance the earlier entry in
    the payload wins.

    Args:
        payload: Cached provider document
        target: Requested instant (naive UTC or aware)

    Returns:
        WeatherSample, or None when no sample is close enough

    Raises:
        ProtocolViolation: If the payload has no timeseries, or no entry
            with a readable time
    """
    target = to_naive_utc(target)
    best_entry = None
    best_time = None
    best_delta = None

    for entry in _timeseries(payload):
        entry_time = _entry_time(entry)
        if entry_time is None:
            continue
        delta = abs(entry_time - target)
        if best_delta is None or delta < best_delta:
            best_entry, best_time, best_delta = entry, entry_time, delta

    if best_entry is None:
        raise ProtocolViolation("Provider timeseries has no entries with valid timestamps")

    resolution = _resolution(best_entry)
    if best_delta > resolution.tolerance:
        logger.debug(
            f"Nearest sample {best_time} is {best_delta} from {target}, "
            f"beyond {resolution.value} tolerance"
        )
        return None

    return parse_sample(best_entry, best_time)

